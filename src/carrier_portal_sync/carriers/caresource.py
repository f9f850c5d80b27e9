from __future__ import annotations

from typing import Any, Mapping, Optional

from ..models import NormalizedMember
from .base import CarrierAdapter, build_member


LOGIN_URL = "https://caresource2.destinationrx.com/PC/Agent/Account/Login"

# Capture the bearer JWT, agent GUID and API base from the DRX SPA's calls to drxwebservices.com.
SETUP_SCRIPT = r"""
(function() {
    function capture(url, auth) {
        if (!url || !url.includes('drxwebservices.com')) return;
        const guid = url.match(/\/Agent\/([0-9a-f-]{36})\//i);
        if (guid) window.__cps_drx_agent_guid = guid[1];
        const base = url.match(/(https:\/\/www\.drxwebservices\.com\/[^\/]+\/v\d+)/);
        if (base) window.__cps_drx_api_base = base[1];
        if (auth && auth.startsWith('Bearer ')) window.__cps_drx_token = auth.substring(7);
    }

    const origFetch = window.fetch;
    window.fetch = function(resource, init) {
        try {
            const url = typeof resource === 'string' ? resource :
                        (resource instanceof Request ? resource.url : String(resource));
            let headers = init && init.headers;
            if (!headers && resource instanceof Request) headers = resource.headers;
            let auth = null;
            if (headers instanceof Headers) {
                auth = headers.get('Authorization');
            } else if (Array.isArray(headers)) {
                const e = headers.find(function(h) { return h[0].toLowerCase() === 'authorization'; });
                auth = e ? e[1] : null;
            } else if (headers) {
                auth = headers['Authorization'] || headers['authorization'] || null;
            }
            capture(url, auth);
        } catch (e) {}
        return origFetch.apply(this, arguments);
    };

    const origOpen = XMLHttpRequest.prototype.open;
    const origSetHeader = XMLHttpRequest.prototype.setRequestHeader;
    XMLHttpRequest.prototype.open = function(method, url) {
        this.__cps_url = typeof url === 'string' ? url : String(url);
        return origOpen.apply(this, arguments);
    };
    XMLHttpRequest.prototype.setRequestHeader = function(name, value) {
        try {
            capture(this.__cps_url || '', name.toLowerCase() === 'authorization' ? value : null);
        } catch (e) {}
        return origSetHeader.apply(this, arguments);
    };
})();
"""

# MemberProfileSearch only accepts ~31-day application windows, so walk from Oct 1 of last year through today.
# Members recur across windows; duplicates are left in and removed by member id during reconciliation.
EXTRACTION_SCRIPT = r"""
const token = window.__cps_drx_token;
const agentGuid = window.__cps_drx_agent_guid;
if (!token || !agentGuid) {
    throw new Error('Auth token or agent ID not captured yet. Open the Reports page so the app makes an API ' +
        'call, then sync again.');
}
const base = window.__cps_drx_api_base || ('https://www.drxwebservices.com/spa' + new Date().getFullYear() + '/v1');
const endpoint = base + '/Agent/' + agentGuid + '/MemberProfileSearch';

const now = new Date();
const ranges = [];
let start = new Date(now.getFullYear() - 1, 9, 1);
while (start < now) {
    let end = new Date(start);
    end.setDate(end.getDate() + 30);
    if (end > now) end = new Date(now);
    ranges.push({
        start: start.toISOString().replace(/T.*/, 'T00:00:00.000Z'),
        end: end.toISOString().replace(/T.*/, 'T23:59:59.000Z')
    });
    start = new Date(start);
    start.setDate(start.getDate() + 31);
}

const records = [];
for (const range of ranges) {
    const resp = await fetch(endpoint, {
        method: 'POST',
        headers: {
            'Authorization': 'Bearer ' + token,
            'Content-Type': 'application/json',
            'Accept': 'application/json, text/plain, */*'
        },
        body: JSON.stringify({
            applicationStartDate: range.start,
            applicationEndDate: range.end,
            enrollmentType: 'medicare',
            agentReport: true
        })
    });
    if (resp.status === 401 || resp.status === 403) {
        throw new Error('Session expired (HTTP ' + resp.status + '). Log in again and retry.');
    }
    if (!resp.ok) {
        const text = await resp.text().catch(() => '');
        throw new Error('MemberProfileSearch returned ' + resp.status + ': ' + text.substring(0, 300));
    }
    for (const m of await resp.json()) records.push(m);
}
return records;
"""


class CareSourceAdapter(CarrierAdapter):
    """
    CareSource (DRX): REST search replayed with the bearer token captured from the portal's own requests.
    """

    id = "carrier-caresource"
    name = "CareSource"
    login_url = LOGIN_URL
    setup_script = SETUP_SCRIPT
    extraction_script = EXTRACTION_SCRIPT

    def to_member(self, record: Mapping[str, Any]) -> Optional[NormalizedMember]:
        enrollments = record.get("enrollments") or []
        enrollment: Mapping[str, Any] = enrollments[0] if enrollments else {}

        return build_member(
            first_name=record.get("firstName"),
            last_name=record.get("lastName"),
            member_id=record.get("memberID"),
            date_of_birth=record.get("dateOfBirth"),
            plan_name=enrollment.get("plan"),
            effective_date=enrollment.get("enrollmentDate"),
            status=record.get("carrierStatus"),
            state=record.get("state"),
            city=record.get("city"),
            phone=record.get("homePhone"),
            email=record.get("primaryEmailAddress"),
        )

from __future__ import annotations

from typing import Any, Mapping, Optional

from ..models import NormalizedMember
from .base import CarrierAdapter, build_member


LOGIN_URL = "https://www.uhcjarvis.com/content/jarvis/en/secure/book-of-business-search.html"

# Jarvis reports open-ended policies with this far-future term date.
OPEN_ENDED_TERM_DATE = "2300-01-01"

# Patch fetch + XHR so we can read the agent's partyID (request body) and opd (query string) from the SPA's own
# bookOfBusiness call. Angular may use either transport.
SETUP_SCRIPT = r"""
(function() {
    function fromUrl(url) {
        try {
            const u = new URL(url, window.location.origin);
            const opd = u.searchParams.get('opd');
            if (opd) window.__cps_uhc_opd = opd;
            const hp = u.searchParams.get('hasPrincipalOrCorp');
            if (hp !== null) window.__cps_uhc_has_principal = hp;
        } catch (e) {}
    }
    function fromBody(body) {
        if (!body) return;
        try {
            const parsed = typeof body === 'string' ? JSON.parse(body) : body;
            if (parsed.partyID) window.__cps_uhc_party_id = parsed.partyID;
        } catch (e) {}
    }

    const origFetch = window.fetch;
    window.fetch = function(resource, init) {
        try {
            const url = typeof resource === 'string' ? resource :
                        (resource instanceof Request ? resource.url : String(resource));
            if (url.includes('bookOfBusiness')) {
                fromUrl(url);
                if (init && init.body) fromBody(init.body);
            }
        } catch (e) {}
        return origFetch.apply(this, arguments);
    };

    const origOpen = XMLHttpRequest.prototype.open;
    const origSend = XMLHttpRequest.prototype.send;
    XMLHttpRequest.prototype.open = function(method, url) {
        this.__cps_url = typeof url === 'string' ? url : String(url);
        return origOpen.apply(this, arguments);
    };
    XMLHttpRequest.prototype.send = function(body) {
        try {
            if (this.__cps_url && this.__cps_url.includes('bookOfBusiness')) {
                fromUrl(this.__cps_url);
                fromBody(body);
            }
        } catch (e) {}
        return origSend.apply(this, arguments);
    };
})();
"""

# Returns the raw `bookOfBusinessList` entries. The API answers with up to 500 active members, no paging.
EXTRACTION_SCRIPT = r"""
let partyID = window.__cps_uhc_party_id;
let opd = window.__cps_uhc_opd;

if (!opd) {
    for (const entry of performance.getEntriesByType('resource')) {
        if (!entry.name.includes('bookOfBusiness')) continue;
        try { opd = new URL(entry.name).searchParams.get('opd') || opd; } catch (e) {}
    }
}

if (!partyID || !opd) {
    function deepFind(obj, depth) {
        if (!obj || typeof obj !== 'object' || depth > 4) return;
        if (!partyID && (obj.partyID || obj.partyId)) partyID = obj.partyID || obj.partyId;
        if (!opd && obj.opd) opd = obj.opd;
        for (const k in obj) {
            if (typeof obj[k] === 'object') deepFind(obj[k], depth + 1);
            if (typeof obj[k] === 'string' && obj[k].startsWith('{')) {
                try { deepFind(JSON.parse(obj[k]), depth + 1); } catch (e) {}
            }
        }
    }
    for (const store of [sessionStorage, localStorage]) {
        for (let i = 0; i < store.length && !(partyID && opd); i++) {
            try { deepFind(JSON.parse(store.getItem(store.key(i))), 0); } catch (e) {}
        }
    }
}

if (!partyID) {
    try {
        const resp = await fetch('/JarvisAccountInfo/azure/api/secure/userprofile/partyID/v1', {
            headers: { 'Accept': 'application/json' }
        });
        if (resp.ok) {
            const data = await resp.json();
            partyID = data.partyID || data.partyId || null;
            if (!partyID) {
                const m = JSON.stringify(data).match(/"party[Ii][Dd]"\s*:\s*"([^"]+)"/);
                if (m) partyID = m[1];
            }
        }
    } catch (e) {}
}

if (!partyID || !opd) {
    throw new Error('Could not find agent party ID / operator code. Open Book of Business Search once, then retry. ' +
        'captured=' + JSON.stringify({ partyID: !!partyID, opd: !!opd }));
}

const url = '/JarvisMemberProfileAPI/azure/api/secure/bookOfBusiness/details/v1' +
    '?hasPrincipalOrCorp=' + encodeURIComponent(window.__cps_uhc_has_principal || 'false') +
    '&opd=' + encodeURIComponent(opd) +
    '&homePage=false';

const resp = await fetch(url, {
    method: 'POST',
    headers: { 'Content-Type': 'application/json', 'Accept': 'application/json' },
    body: JSON.stringify({
        contractNumber: null,
        memberFirstName: '',
        memberLastName: '',
        memberNumber: null,
        planStatus: ['Active'],
        partyID: partyID,
        state: null,
        product: null
    })
});
if (resp.status === 401 || resp.status === 403) {
    throw new Error('Session expired (HTTP ' + resp.status + '). Log in again and retry.');
}
if (!resp.ok) {
    const text = await resp.text().catch(() => '');
    throw new Error('Book of Business API returned ' + resp.status + ': ' + text.substring(0, 300));
}
const data = await resp.json();
if (data.errors && data.errors.length > 0) {
    throw new Error('Book of Business API errors: ' + data.errors.join('; '));
}
return data.bookOfBusinessList || [];
"""


class UhcAdapter(CarrierAdapter):
    """
    UnitedHealthcare Jarvis: REST book-of-business call using identifiers sniffed from the SPA's own traffic.
    """

    id = "carrier-uhc"
    name = "UnitedHealthcare"
    login_url = LOGIN_URL
    setup_script = SETUP_SCRIPT
    extraction_script = EXTRACTION_SCRIPT

    def to_member(self, record: Mapping[str, Any]) -> Optional[NormalizedMember]:
        term = record.get("policyTermDate")
        if isinstance(term, str) and term.strip().startswith(OPEN_ENDED_TERM_DATE):
            term = None

        status = record.get("memberStatus")
        if status == "A":
            status = "Active"

        return build_member(
            first_name=record.get("memberFirstName"),
            last_name=record.get("memberLastName"),
            member_id=record.get("memberNumber") or record.get("mbiNumber"),
            date_of_birth=record.get("dateOfBirth"),
            plan_name=record.get("planName"),
            effective_date=record.get("policyEffectiveDate"),
            end_date=term,
            status=status,
            policy_status=record.get("policyStatus"),
            state=record.get("memberState"),
            city=record.get("memberCity"),
            phone=record.get("memberPhone"),
            email=record.get("memberEmail"),
        )

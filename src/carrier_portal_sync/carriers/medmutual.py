from __future__ import annotations

from typing import Any, Mapping, Optional

from ..models import NormalizedMember
from ..util.names import split_first_last
from .base import CarrierAdapter, build_member


LOGIN_URL = "https://mybrokerlink.com/"

# Fetch the server-rendered Book of Business page with the session cookies and read `#member-table`.
# Works from any page of the portal. Each row becomes {data-col-name: text}.
EXTRACTION_SCRIPT = r"""
const resp = await fetch('/mybusiness/bookofbusiness', { credentials: 'include' });
if (resp.status === 401 || resp.status === 403 || resp.redirected && /login/i.test(resp.url)) {
    throw new Error('Session expired. Log in to MyBrokerLink again and retry.');
}
if (!resp.ok) {
    throw new Error('Failed to fetch Book of Business page: HTTP ' + resp.status);
}
const doc = new DOMParser().parseFromString(await resp.text(), 'text/html');
const table = doc.querySelector('#member-table');
if (!table) {
    throw new Error('Could not find the member table. Make sure you are logged in to MyBrokerLink.');
}

const records = [];
for (const row of table.querySelectorAll('tbody tr')) {
    const rec = {};
    for (const td of row.querySelectorAll('td[data-col-name]')) {
        const content = td.querySelector('.sb-content');
        const text = content ? content.textContent.trim() : '';
        rec[td.getAttribute('data-col-name')] = text || null;
    }
    const attention = row.querySelector('td[data-col-name="Attention"] button');
    rec['Attention'] = attention ? attention.textContent.trim() : null;
    records.push(rec);
}
return records;
"""


class MedMutualAdapter(CarrierAdapter):
    """
    Medical Mutual of Ohio (MyBrokerLink): parses the server-rendered book-of-business table.
    """

    id = "carrier-medmutual"
    name = "Medical Mutual of Ohio"
    login_url = LOGIN_URL
    extraction_script = EXTRACTION_SCRIPT

    def to_member(self, record: Mapping[str, Any]) -> Optional[NormalizedMember]:
        first, last = split_first_last(record.get("Name"))
        # An empty attention column means the policy is in good standing; otherwise it carries e.g. "Canceled".
        status = record.get("Attention") or "Active"

        return build_member(
            first_name=first,
            last_name=last,
            # GroupNumber identifies the policy, which a whole household can share; it is not a member id.
            date_of_birth=record.get("DateOfBirth"),
            plan_name=record.get("MarketSegment"),
            effective_date=record.get("EffectiveDate"),
            status=status,
            state=record.get("State"),
            city=record.get("City"),
            phone=record.get("Phone"),
            email=record.get("Email"),
        )

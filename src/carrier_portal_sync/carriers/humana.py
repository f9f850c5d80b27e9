from __future__ import annotations

from typing import Any, Mapping, Optional

from ..models import NormalizedMember
from ..util.names import split_last_comma_first
from .base import CarrierAdapter, build_member


LOGIN_URL = "https://agentportal.humana.com/Vantage/apps/index.html?agenthome=-1#!/"

# Vantage "My Humana Business" grid at #!/businessCenter. Each row becomes a {header text: cell text} object;
# the grid is split into a header table and a scrolling body table.
EXTRACTION_SCRIPT = r"""
function sleep(ms) { return new Promise(function(r) { setTimeout(r, ms); }); }
function waitFor(fn, ms) {
    return new Promise(function(resolve) {
        const start = Date.now();
        const iv = setInterval(function() {
            const found = fn();
            if (found) { clearInterval(iv); resolve(found); }
            else if (Date.now() - start > ms) { clearInterval(iv); resolve(null); }
        }, 300);
    });
}
function findHeaderTable() {
    for (const t of document.querySelectorAll('table')) {
        for (const th of t.querySelectorAll('th')) {
            if (th.textContent.trim() === 'Humana ID') return t;
        }
    }
    return null;
}
function findBodyTable() {
    const header = findHeaderTable();
    for (const t of document.querySelectorAll('table')) {
        if (t !== header && t.querySelectorAll('td').length > 0) return t;
    }
    if (header && header.querySelectorAll('tbody tr td').length > 0) return header;
    return null;
}
function headers() {
    const t = findHeaderTable();
    return t ? Array.from(t.querySelectorAll('th')).map(function(th) { return th.textContent.trim(); }) : [];
}
function scrapeRows() {
    const body = findBodyTable();
    if (!body) return [];
    const cols = headers();
    let rows = body.querySelectorAll('tbody tr');
    if (rows.length === 0) rows = body.querySelectorAll('tr');
    const out = [];
    for (const row of rows) {
        const cells = row.querySelectorAll('td');
        if (cells.length < 6) continue;
        const rec = {};
        cols.forEach(function(name, idx) {
            if (name && idx < cells.length) rec[name] = cells[idx].textContent.trim() || null;
        });
        if (rec['Name']) out.push(rec);
    }
    return out;
}

if (!window.location.hash.includes('businessCenter')) {
    window.location.hash = '#!/businessCenter';
    await sleep(3000);
}
if (!(await waitFor(findHeaderTable, 10000))) {
    throw new Error('Could not find the member table. Make sure you are logged in and on the Business Center page.');
}

for (const a of document.querySelectorAll('a')) {
    if (a.textContent.trim().toLowerCase() === 'view all customers') {
        a.click();
        await sleep(3000);
        await waitFor(findBodyTable, 5000);
        break;
    }
}

let records = [];
for (let page = 0; page < 50; page++) {
    records = records.concat(scrapeRows());

    let next = null;
    for (const btn of document.querySelectorAll('button, a')) {
        const text = btn.textContent.trim();
        const aria = (btn.getAttribute('aria-label') || '').toLowerCase();
        const title = (btn.getAttribute('title') || '').toLowerCase();
        if ((text === '>' || text === '›' || text === '»' || aria.includes('next') || title.includes('next'))
            && !btn.disabled && btn.offsetParent !== null) {
            next = btn;
            break;
        }
    }
    if (!next) break;

    let lastPage = false;
    for (const el of document.querySelectorAll('*')) {
        if (el.children.length !== 0) continue;
        const m = el.textContent.trim().match(/(\d+)\s*[-–]\s*(\d+)\s+of\s+(\d+)/i);
        if (m && parseInt(m[2]) >= parseInt(m[3])) { lastPage = true; break; }
    }
    if (lastPage) break;

    next.click();
    await sleep(1500);
}

if (records.length === 0) {
    const body = findBodyTable();
    throw new Error('No members found in the Business Center grid. ' + JSON.stringify({
        headers: headers(),
        bodyTableFound: !!body,
        bodyRowCount: body ? body.querySelectorAll('tr').length : 0,
        tables: document.querySelectorAll('table').length
    }));
}
return records;
"""


class HumanaAdapter(CarrierAdapter):
    """
    Humana Vantage: scrapes the rendered Business Center grid page by page.
    """

    id = "carrier-humana"
    name = "Humana"
    login_url = LOGIN_URL
    extraction_script = EXTRACTION_SCRIPT

    def to_member(self, record: Mapping[str, Any]) -> Optional[NormalizedMember]:
        first, last = split_last_comma_first(record.get("Name"))

        plan_parts = [record.get("Plan Type"), record.get("Sales Product")]
        plan_name = " - ".join(p.strip() for p in plan_parts if p and p.strip())

        phone = record.get("Phone")
        if phone and phone.strip().lower() == "unavailable":
            phone = None

        return build_member(
            first_name=first,
            last_name=last,
            member_id=record.get("Humana ID"),
            date_of_birth=record.get("BirthDate"),
            plan_name=plan_name or None,
            effective_date=record.get("Effective Date"),
            end_date=record.get("Inactive Date"),
            status=record.get("Status") or record.get("Status Reason") or "Active",
            policy_status=record.get("Status Description"),
            phone=phone,
            email=record.get("Email"),
        )

from __future__ import annotations

from typing import Any, Mapping, Optional

from ..models import NormalizedMember
from .base import CarrierAdapter, build_member


LOGIN_URL = "https://agent.devoted.com/"

# Cursor-paginated GraphQL query issued with the portal's session cookies. Returns the raw `node` objects.
EXTRACTION_SCRIPT = r"""
const query = `
query AgentMembers($first: Int, $after: String) {
    agentMembers(first: $first, after: $after) {
        edges {
            node {
                firstName
                lastName
                memberId
                planName
                effectiveDate
                endDate
                status
            }
        }
        pageInfo { hasNextPage endCursor }
    }
}`;

const nodes = [];
let after = null;
for (let page = 0; page < 200; page++) {
    const resp = await fetch('/graphql', {
        method: 'POST',
        credentials: 'include',
        headers: { 'Content-Type': 'application/json', 'Accept': 'application/json' },
        body: JSON.stringify({ query: query, variables: { first: 100, after: after } })
    });
    if (resp.status === 401 || resp.status === 403) {
        throw new Error('Session expired (HTTP ' + resp.status + '). Log in again and retry.');
    }
    if (!resp.ok) {
        const text = await resp.text().catch(() => '');
        throw new Error('GraphQL endpoint returned ' + resp.status + ': ' + text.substring(0, 300));
    }
    const body = await resp.json();
    if (body.errors && body.errors.length > 0) {
        throw new Error('GraphQL errors: ' + body.errors.map(function(e) { return e.message; }).join('; '));
    }
    const conn = body.data && body.data.agentMembers;
    if (!conn) throw new Error('No agentMembers in GraphQL response');
    for (const edge of conn.edges || []) {
        if (edge && edge.node) nodes.push(edge.node);
    }
    if (!conn.pageInfo || !conn.pageInfo.hasNextPage) break;
    after = conn.pageInfo.endCursor;
}
return nodes;
"""


class DevotedAdapter(CarrierAdapter):
    id = "carrier-devoted"
    name = "Devoted Health"
    login_url = LOGIN_URL
    extraction_script = EXTRACTION_SCRIPT

    def to_member(self, record: Mapping[str, Any]) -> Optional[NormalizedMember]:
        return build_member(
            first_name=record.get("firstName"),
            last_name=record.get("lastName"),
            member_id=record.get("memberId"),
            date_of_birth=record.get("dateOfBirth"),
            plan_name=record.get("planName"),
            effective_date=record.get("effectiveDate"),
            end_date=record.get("endDate"),
            status=record.get("status"),
        )

from __future__ import annotations

import logging
import sqlite3
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Iterable, Mapping, Optional, Union

from pydantic import ValidationError

from .errors import ReconciliationMutationError
from .models import (
    Disenrollment,
    HeldEnrollment,
    LocalEnrollmentSnapshot,
    NormalizedMember,
    SyncLogEntry,
    SyncResult,
    SyncStatus,
)
from .store import BookStore
from .util.names import normalize_name


logger = logging.getLogger(__name__)

WeakKey = tuple[str, str]
StrongKey = tuple[str, str, date]


def weak_key(last_name: str, first_name: str) -> WeakKey:
    return normalize_name(last_name), normalize_name(first_name)


def strong_key(last_name: str, first_name: str, dob: Optional[date]) -> Optional[StrongKey]:
    if dob is None:
        return None
    return normalize_name(last_name), normalize_name(first_name), dob


@dataclass
class ReconciliationPlan:
    """
    The computed three-way diff for one run, before anything is written.
    """

    portal_count: int
    local_count: int
    matches: list[tuple[NormalizedMember, LocalEnrollmentSnapshot]] = field(default_factory=list)
    to_disenroll: list[LocalEnrollmentSnapshot] = field(default_factory=list)
    held: list[LocalEnrollmentSnapshot] = field(default_factory=list)
    new_in_portal: list[NormalizedMember] = field(default_factory=list)
    skipped: int = 0
    duplicates: int = 0

    @property
    def matched(self) -> int:
        return len(self.matches)


def _coerce_members(
    members: Iterable[Union[NormalizedMember, Mapping[str, Any]]],
) -> tuple[list[NormalizedMember], int]:
    valid: list[NormalizedMember] = []
    skipped = 0
    for m in members:
        try:
            member = m if isinstance(m, NormalizedMember) else NormalizedMember.model_validate(m)
        except ValidationError:
            skipped += 1
            continue
        # model_construct() can bypass validation; re-check the one invariant matching depends on.
        if not normalize_name(member.first_name) or not normalize_name(member.last_name):
            skipped += 1
            continue
        valid.append(member)
    return valid, skipped


def _dedupe_by_member_id(members: list[NormalizedMember]) -> tuple[list[NormalizedMember], int]:
    # Family members can share a policy-level id; a row is a repeat only if the person's name matches too.
    seen: set[tuple[str, WeakKey]] = set()
    out: list[NormalizedMember] = []
    for m in members:
        if m.member_id:
            key = (m.member_id.strip().casefold(), weak_key(m.last_name, m.first_name))
            if key in seen:
                continue
            seen.add(key)
        out.append(m)
    return out, len(members) - len(out)


class _CandidatePool:
    """
    Unmatched local enrollments indexed by member id, strong key and weak key.

    An enrollment leaves every index the moment it is matched, so it can never be claimed twice.
    """

    def __init__(self, locals_: list[LocalEnrollmentSnapshot]) -> None:
        self._by_mbi: dict[str, list[LocalEnrollmentSnapshot]] = defaultdict(list)
        self._by_strong: dict[StrongKey, list[LocalEnrollmentSnapshot]] = defaultdict(list)
        self._by_weak: dict[WeakKey, list[LocalEnrollmentSnapshot]] = defaultdict(list)
        self._matched: set[str] = set()
        # Enrollments some lookup could not tell apart; never disenrolled on this run.
        self.ambiguous: set[str] = set()

        for le in locals_:
            if le.client_mbi:
                self._by_mbi[le.client_mbi.strip().casefold()].append(le)
            sk = strong_key(le.client_last_name, le.client_first_name, le.client_date_of_birth)
            if sk is not None:
                self._by_strong[sk].append(le)
            self._by_weak[weak_key(le.client_last_name, le.client_first_name)].append(le)

    def _open(self, candidates: list[LocalEnrollmentSnapshot]) -> list[LocalEnrollmentSnapshot]:
        return [le for le in candidates if le.enrollment_id not in self._matched]

    def _exactly_one(self, candidates: list[LocalEnrollmentSnapshot]) -> Optional[LocalEnrollmentSnapshot]:
        # Only a lookup that resolves to a single local record matches. Anything more is held, even when the
        # records belong to one client: the portal reports that person, not which of their enrollments it means.
        if len(candidates) == 1:
            return candidates[0]
        self.ambiguous.update(le.enrollment_id for le in candidates)
        return None

    def claim(self, le: LocalEnrollmentSnapshot) -> LocalEnrollmentSnapshot:
        self._matched.add(le.enrollment_id)
        return le

    def by_member_id(self, member: NormalizedMember) -> Optional[LocalEnrollmentSnapshot]:
        if not member.member_id:
            return None
        return self._exactly_one(self._open(self._by_mbi.get(member.member_id.strip().casefold(), [])))

    def by_strong_key(self, member: NormalizedMember) -> Optional[LocalEnrollmentSnapshot]:
        sk = strong_key(member.last_name, member.first_name, member.date_of_birth)
        if sk is None:
            return None
        return self._exactly_one(self._open(self._by_strong.get(sk, [])))

    def by_weak_key(self, member: NormalizedMember) -> Optional[LocalEnrollmentSnapshot]:
        candidates = self._open(self._by_weak.get(weak_key(member.last_name, member.first_name), []))
        if member.date_of_birth is not None:
            # A DOB on both sides that disagrees is a different person; only DOB-less locals stay eligible.
            candidates = [le for le in candidates if le.client_date_of_birth is None]
        return self._exactly_one(candidates)


def compute_plan(
    members: Iterable[Union[NormalizedMember, Mapping[str, Any]]],
    locals_: Iterable[LocalEnrollmentSnapshot],
) -> ReconciliationPlan:
    """
    Diff portal members against local enrollments. Pure and deterministic for a given input order.

    Matching runs in passes so a weaker key can never steal a record a stronger key would have claimed:
    1. member id against client MBI
    2. strong key: normalized last + first name + DOB
    3. weak key: normalized last + first name, and the DOBs do not contradict each other

    Every pass matches only when its lookup resolves to exactly one unmatched local record. Records a lookup
    could not tell apart are held when nothing else claims them: neither matched nor disenrolled, and not
    counted in `local_count`.
    """
    raw = list(members)
    local_list = sorted(locals_, key=lambda le: le.enrollment_id)
    valid, skipped = _coerce_members(raw)
    unique, duplicates = _dedupe_by_member_id(valid)

    plan = ReconciliationPlan(
        portal_count=len(raw),
        local_count=len(local_list),
        skipped=skipped,
        duplicates=duplicates,
    )

    pool = _CandidatePool(local_list)
    matched_by_idx: dict[int, LocalEnrollmentSnapshot] = {}
    for lookup in (pool.by_member_id, pool.by_strong_key, pool.by_weak_key):
        for idx, member in enumerate(unique):
            if idx in matched_by_idx:
                continue
            hit = lookup(member)
            if hit is not None:
                matched_by_idx[idx] = pool.claim(hit)

    matched_ids = set()
    for idx, member in enumerate(unique):
        hit = matched_by_idx.get(idx)
        if hit is None:
            plan.new_in_portal.append(member)
        else:
            plan.matches.append((member, hit))
            matched_ids.add(hit.enrollment_id)

    for le in local_list:
        if le.enrollment_id in matched_ids:
            continue
        if le.enrollment_id in pool.ambiguous:
            plan.held.append(le)
        else:
            plan.to_disenroll.append(le)
    plan.local_count = len(local_list) - len(plan.held)
    return plan


def plan_to_result(plan: ReconciliationPlan, *, carrier_id: str, carrier_name: str) -> SyncResult:
    return SyncResult(
        carrier_id=carrier_id,
        carrier_name=carrier_name,
        portal_count=plan.portal_count,
        local_count=plan.local_count,
        matched=plan.matched,
        disenrolled=[
            Disenrollment(
                client_name=le.display_name(),
                client_id=le.client_id,
                enrollment_id=le.enrollment_id,
                plan_name=le.plan_name,
            )
            for le in plan.to_disenroll
        ],
        new_in_portal=list(plan.new_in_portal),
        held=[
            HeldEnrollment(
                client_name=le.display_name(),
                client_id=le.client_id,
                enrollment_id=le.enrollment_id,
                plan_name=le.plan_name,
            )
            for le in plan.held
        ],
        skipped=plan.skipped,
        duplicates=plan.duplicates,
    )


def _log_entry(carrier_id: str, result: SyncResult, status: SyncStatus) -> SyncLogEntry:
    return SyncLogEntry(
        id=str(uuid.uuid4()),
        carrier_id=carrier_id,
        synced_at=datetime.now(timezone.utc),
        portal_count=result.portal_count,
        matched=result.matched,
        disenrolled=len(result.disenrolled),
        new_found=len(result.new_in_portal),
        status=status,
    )


class Reconciler:
    """
    Runs one reconciliation: snapshot local enrollments, diff, apply the disenrollment sweep, log the outcome.
    """

    def __init__(self, store: BookStore, *, mutation_attempts: int = 3) -> None:
        self.store = store
        self.mutation_attempts = max(1, int(mutation_attempts))

    def run(
        self,
        carrier_id: str,
        carrier_name: str,
        members: Iterable[Union[NormalizedMember, Mapping[str, Any]]],
    ) -> SyncResult:
        locals_ = self.store.active_enrollments(carrier_id)
        plan = compute_plan(members, locals_)
        result = plan_to_result(plan, carrier_id=carrier_id, carrier_name=carrier_name)

        if plan.skipped:
            logger.warning("%s: skipped %d malformed portal member(s)", carrier_id, plan.skipped)
        if plan.held:
            logger.warning(
                "%s: %d enrollment(s) could not be told apart from another local record; left unchanged",
                carrier_id,
                len(plan.held),
            )
        if plan.duplicates:
            logger.info("%s: ignored %d duplicate portal row(s) by member id", carrier_id, plan.duplicates)
        logger.info(
            "%s: diff computed (portal=%d local=%d matched=%d disenroll=%d new=%d)",
            carrier_id,
            result.portal_count,
            result.local_count,
            result.matched,
            len(result.disenrolled),
            len(result.new_in_portal),
        )

        to_disenroll = [le.enrollment_id for le in plan.to_disenroll]
        last_exc: Optional[BaseException] = None
        for attempt in range(1, self.mutation_attempts + 1):
            try:
                applied = self.store.apply_reconciliation(
                    carrier_id, to_disenroll, _log_entry(carrier_id, result, SyncStatus.COMPLETED)
                )
            except sqlite3.Error as e:
                last_exc = e
                logger.warning(
                    "%s: applying reconciliation failed (attempt %d/%d); rolled back. (%s)",
                    carrier_id,
                    attempt,
                    self.mutation_attempts,
                    e,
                )
                continue

            logger.info("%s: reconciliation applied (disenrolled=%d)", carrier_id, len(applied))
            if len(applied) == len(to_disenroll):
                return result
            # Records deactivated since the snapshot are no longer local actives; report only what changed.
            kept = set(applied)
            return result.model_copy(
                update={
                    "disenrolled": [d for d in result.disenrolled if d.enrollment_id in kept],
                    "local_count": result.local_count - (len(to_disenroll) - len(applied)),
                }
            )

        self._append_failed(carrier_id, result)
        raise ReconciliationMutationError(carrier_id, attempts=self.mutation_attempts, result=result) from last_exc

    def _append_failed(self, carrier_id: str, result: SyncResult) -> None:
        try:
            self.store.append_sync_log(_log_entry(carrier_id, result, SyncStatus.FAILED))
        except sqlite3.Error:
            logger.error("%s: could not record FAILED sync log entry", carrier_id, exc_info=True)

from __future__ import annotations

from datetime import date
from typing import Optional

from carrier_portal_sync.models import LocalEnrollmentSnapshot, NormalizedMember
from carrier_portal_sync.reconcile import compute_plan


def _local(
    eid: str,
    first: str,
    last: str,
    dob: Optional[date] = None,
    *,
    client_id: Optional[str] = None,
    mbi: Optional[str] = None,
) -> LocalEnrollmentSnapshot:
    return LocalEnrollmentSnapshot(
        enrollment_id=eid,
        client_id=client_id or f"c-{eid}",
        client_first_name=first,
        client_last_name=last,
        client_date_of_birth=dob,
        client_mbi=mbi,
        plan_name="Gold PPO",
        carrier_id="carrier-test",
    )


def _member(first: str, last: str, dob: Optional[date] = None, member_id: Optional[str] = None) -> NormalizedMember:
    return NormalizedMember(first_name=first, last_name=last, date_of_birth=dob, member_id=member_id)


def _matched_pairs(plan) -> set[tuple[str, str]]:
    return {(m.display_name(), le.enrollment_id) for m, le in plan.matches}


def test_clean_match() -> None:
    plan = compute_plan([_member("Jane", "Doe", date(1945, 3, 2))], [_local("e1", "Jane", "Doe", date(1945, 3, 2))])
    assert plan.matched == 1
    assert plan.to_disenroll == []
    assert plan.new_in_portal == []


def test_silent_disenrollment() -> None:
    plan = compute_plan([], [_local("e1", "Jane", "Doe", date(1945, 3, 2))])
    assert plan.matched == 0
    assert [le.enrollment_id for le in plan.to_disenroll] == ["e1"]


def test_new_portal_member() -> None:
    plan = compute_plan([_member("Sam", "Roe")], [])
    assert plan.matched == 0
    assert [m.display_name() for m in plan.new_in_portal] == ["Roe, Sam"]
    assert plan.to_disenroll == []


def test_names_are_normalized() -> None:
    plan = compute_plan(
        [_member("  jane ", "DOE", date(1945, 3, 2))],
        [_local("e1", "Jane", "Doe", date(1945, 3, 2))],
    )
    assert plan.matched == 1


def test_strong_key_wins_over_name_only_candidate() -> None:
    locals_ = [
        _local("e1", "John", "Smith"),
        _local("e2", "John", "Smith", date(1950, 1, 1)),
    ]
    plan = compute_plan([_member("John", "Smith", date(1950, 1, 1))], locals_)
    assert _matched_pairs(plan) == {("Smith, John", "e2")}
    assert [le.enrollment_id for le in plan.to_disenroll] == ["e1"]


def test_strong_match_removes_record_from_weak_pool() -> None:
    # The DOB-less member would otherwise weak-match e1; e1 is already claimed by the strong key.
    locals_ = [_local("e1", "Ann", "Lee", date(1940, 5, 5))]
    members = [_member("Ann", "Lee"), _member("Ann", "Lee", date(1940, 5, 5))]
    plan = compute_plan(members, locals_)
    assert plan.matched == 1
    assert plan.matches[0][0].date_of_birth == date(1940, 5, 5)
    assert [m.date_of_birth for m in plan.new_in_portal] == [None]


def test_ambiguous_weak_match_is_never_resolved() -> None:
    locals_ = [_local("e1", "John", "Smith"), _local("e2", "John", "Smith")]
    plan = compute_plan([_member("John", "Smith")], locals_)
    assert plan.matched == 0
    assert plan.to_disenroll == []
    assert {le.enrollment_id for le in plan.held} == {"e1", "e2"}
    assert len(plan.new_in_portal) == 1
    assert plan.matched + len(plan.to_disenroll) == plan.local_count


def test_same_name_locals_are_disenrolled_when_portal_has_nobody_by_that_name() -> None:
    locals_ = [_local("e1", "John", "Smith"), _local("e2", "John", "Smith")]
    plan = compute_plan([_member("Sam", "Roe")], locals_)
    assert plan.held == []
    assert {le.enrollment_id for le in plan.to_disenroll} == {"e1", "e2"}


def test_weak_match_with_two_enrollments_for_one_client_is_held() -> None:
    # The portal row names the person, not which of their enrollments is still live.
    locals_ = [_local("e1", "Mary", "Major", client_id="c1"), _local("e2", "Mary", "Major", client_id="c1")]
    plan = compute_plan([_member("Mary", "Major")], locals_)
    assert plan.matched == 0
    assert plan.to_disenroll == []
    assert {le.enrollment_id for le in plan.held} == {"e1", "e2"}
    assert [m.display_name() for m in plan.new_in_portal] == ["Major, Mary"]
    assert plan.matched + len(plan.to_disenroll) == plan.local_count == 0


def test_weak_match_when_only_local_lacks_dob() -> None:
    plan = compute_plan([_member("Rita", "Ray", date(1951, 2, 3))], [_local("e1", "Rita", "Ray")])
    assert plan.matched == 1


def test_contradicting_dobs_never_match() -> None:
    plan = compute_plan(
        [_member("Rita", "Ray", date(1951, 2, 3))],
        [_local("e1", "Rita", "Ray", date(1960, 1, 1))],
    )
    assert plan.matched == 0
    assert len(plan.new_in_portal) == 1
    assert [le.enrollment_id for le in plan.to_disenroll] == ["e1"]


def test_member_id_matches_client_mbi_first() -> None:
    # Name changed at the carrier (marriage); MBI still ties the records together.
    locals_ = [_local("e1", "Ruth", "Old", date(1944, 4, 4), mbi="1EG4TE5MK73")]
    plan = compute_plan([_member("Ruth", "New", date(1944, 4, 4), member_id="1eg4te5mk73")], locals_)
    assert _matched_pairs(plan) == {("New, Ruth", "e1")}


def test_two_enrollments_sharing_an_mbi_are_held() -> None:
    locals_ = [
        _local("e1", "Ruth", "Old", date(1944, 4, 4), client_id="c1", mbi="1EG4TE5MK73"),
        _local("e2", "Ruth", "Old", date(1944, 4, 4), client_id="c1", mbi="1EG4TE5MK73"),
    ]
    plan = compute_plan([_member("Ruth", "Old", date(1944, 4, 4), member_id="1EG4TE5MK73")], locals_)
    assert plan.matched == 0
    assert plan.to_disenroll == []
    assert {le.enrollment_id for le in plan.held} == {"e1", "e2"}


def test_duplicate_member_ids_are_counted_once() -> None:
    members = [
        _member("Jane", "Doe", date(1945, 3, 2), member_id="M1"),
        _member("Jane", "Doe", date(1945, 3, 2), member_id="M1"),
        _member("Sam", "Roe", member_id="M2"),
    ]
    plan = compute_plan(members, [_local("e1", "Jane", "Doe", date(1945, 3, 2))])
    assert plan.portal_count == 3
    assert plan.duplicates == 1
    assert plan.matched == 1
    assert [m.display_name() for m in plan.new_in_portal] == ["Roe, Sam"]
    assert plan.matched + len(plan.new_in_portal) <= plan.portal_count


def test_household_sharing_a_member_id_is_not_deduplicated() -> None:
    members = [
        _member("Ann", "Lee", date(1941, 1, 1), member_id="G100"),
        _member("Bob", "Lee", date(1940, 2, 2), member_id="G100"),
    ]
    locals_ = [_local("e1", "Ann", "Lee", date(1941, 1, 1)), _local("e2", "Bob", "Lee", date(1940, 2, 2))]
    plan = compute_plan(members, locals_)
    assert plan.duplicates == 0
    assert _matched_pairs(plan) == {("Lee, Ann", "e1"), ("Lee, Bob", "e2")}
    assert plan.to_disenroll == []


def test_malformed_members_are_skipped() -> None:
    members = [
        {"first_name": "", "last_name": "Doe"},
        {"first_name": "Jane"},
        {"first_name": "Jane", "last_name": "Doe", "date_of_birth": "03/02/1945"},
    ]
    plan = compute_plan(members, [_local("e1", "Jane", "Doe", date(1945, 3, 2))])
    assert plan.skipped == 2
    assert plan.matched == 1


def test_count_invariant_and_determinism() -> None:
    locals_ = [
        _local("e1", "John", "Smith"),
        _local("e2", "John", "Smith"),
        _local("e3", "Jane", "Doe", date(1945, 3, 2)),
        _local("e4", "Al", "Ames", date(1939, 9, 9)),
        _local("e5", "Bo", "Bell"),
    ]
    members = [
        _member("John", "Smith"),
        _member("Jane", "Doe", date(1945, 3, 2)),
        _member("Bo", "Bell", date(1950, 1, 1)),
        _member("Cy", "Cole"),
    ]
    first = compute_plan(members, locals_)
    second = compute_plan(members, list(reversed(locals_)))

    assert {le.enrollment_id for le in first.held} == {"e1", "e2"}
    assert [le.enrollment_id for le in first.to_disenroll] == ["e4"]
    assert first.matched + len(first.to_disenroll) == first.local_count == 3
    assert _matched_pairs(first) == _matched_pairs(second)
    assert [le.enrollment_id for le in first.to_disenroll] == [le.enrollment_id for le in second.to_disenroll]

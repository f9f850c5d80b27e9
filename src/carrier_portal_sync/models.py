from __future__ import annotations

import enum
from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .util.dates import parse_portal_date


class SyncStatus(str, enum.Enum):
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


def _blank_to_none(value: object) -> object:
    # Portal APIs sometimes send ids and phone numbers as JSON numbers.
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


class NormalizedMember(BaseModel):
    """
    One member as reported by a carrier portal, independent of the carrier's own vocabulary.

    Contact/location fields are informational only; matching uses names, DOB and member id.
    """

    model_config = ConfigDict(frozen=True)

    first_name: str
    last_name: str
    member_id: Optional[str] = None
    date_of_birth: Optional[date] = None
    plan_name: Optional[str] = None
    effective_date: Optional[date] = None
    end_date: Optional[date] = None
    status: Optional[str] = None
    policy_status: Optional[str] = None
    state: Optional[str] = None
    city: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None

    @field_validator("first_name", "last_name", mode="before")
    @classmethod
    def _require_name(cls, value: object) -> object:
        if value is None or not str(value).strip():
            raise ValueError("member name parts must be non-empty")
        return " ".join(str(value).split())

    @field_validator("date_of_birth", "effective_date", "end_date", mode="before")
    @classmethod
    def _lenient_date(cls, value: object) -> object:
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date) or value is None:
            return value
        return parse_portal_date(str(value))

    @field_validator(
        "member_id", "plan_name", "status", "policy_status", "state", "city", "phone", "email", mode="before"
    )
    @classmethod
    def _optional_text(cls, value: object) -> object:
        return _blank_to_none(value)

    def display_name(self) -> str:
        return f"{self.last_name}, {self.first_name}"


class LocalEnrollmentSnapshot(BaseModel):
    """
    Read-only projection of one active local enrollment, taken at the start of a reconciliation run.
    """

    model_config = ConfigDict(frozen=True)

    enrollment_id: str
    client_id: str
    client_first_name: str
    client_last_name: str
    client_date_of_birth: Optional[date] = None
    client_mbi: Optional[str] = None
    plan_name: Optional[str] = None
    carrier_id: str
    is_active: bool = True

    @field_validator("client_date_of_birth", mode="before")
    @classmethod
    def _lenient_dob(cls, value: object) -> object:
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date) or value is None:
            return value
        return parse_portal_date(str(value))

    @field_validator("client_mbi", "plan_name", mode="before")
    @classmethod
    def _optional_text(cls, value: object) -> object:
        return _blank_to_none(value)

    def display_name(self) -> str:
        return f"{self.client_last_name}, {self.client_first_name}"


class Disenrollment(BaseModel):
    client_name: str
    client_id: str
    enrollment_id: str
    plan_name: Optional[str] = None


class HeldEnrollment(BaseModel):
    """
    A local enrollment left untouched because the portal roster could not tell it apart from another client.
    """

    client_name: str
    client_id: str
    enrollment_id: str
    plan_name: Optional[str] = None


class SyncResult(BaseModel):
    carrier_id: str
    carrier_name: str
    portal_count: int = 0
    local_count: int = 0
    matched: int = 0
    disenrolled: list[Disenrollment] = Field(default_factory=list)
    new_in_portal: list[NormalizedMember] = Field(default_factory=list)
    held: list[HeldEnrollment] = Field(default_factory=list)
    skipped: int = 0
    duplicates: int = 0


class SyncLogEntry(BaseModel):
    id: str
    carrier_id: str
    carrier_name: Optional[str] = None
    synced_at: datetime
    portal_count: int
    matched: int
    disenrolled: int
    new_found: int
    status: SyncStatus

"""
Pydantic models for the allocation core.

These mirror the records the persistence layer keeps for a session
(people, stations, slots with their runs and circuits) and the allocation
rows the solver produces.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


def new_id() -> str:
    return str(uuid.uuid4())


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------

class Bucket(str, Enum):
    """Availability buckets people are balanced across."""
    AM = "am"
    PM = "pm"
    ANY = "any"


class RunTime(str, Enum):
    """Half of the day a run (or examiner shift) belongs to."""
    AM = "AM"
    PM = "PM"


class Role(str, Enum):
    CANDIDATE = "candidate"
    EXAMINER = "examiner"


# -----------------------------------------------------------------------------
# Availability
# -----------------------------------------------------------------------------

class Availability(BaseModel):
    """When a person can attend. ``{am: false, pm: false}`` is rejected."""
    model_config = ConfigDict(frozen=True)

    am: bool = True
    pm: bool = True

    @model_validator(mode="after")
    def _check_not_empty(self) -> "Availability":
        if not self.am and not self.pm:
            raise ValueError("availability must include at least one of am/pm")
        return self

    @classmethod
    def any(cls) -> "Availability":
        return cls(am=True, pm=True)

    @classmethod
    def am_only(cls) -> "Availability":
        return cls(am=True, pm=False)

    @classmethod
    def pm_only(cls) -> "Availability":
        return cls(am=False, pm=True)

    @classmethod
    def for_bucket(cls, bucket: Bucket) -> "Availability":
        if bucket == Bucket.AM:
            return cls.am_only()
        if bucket == Bucket.PM:
            return cls.pm_only()
        return cls.any()

    @property
    def bucket(self) -> Bucket:
        if self.am and self.pm:
            return Bucket.ANY
        return Bucket.AM if self.am else Bucket.PM

    def covers(self, span: Bucket) -> bool:
        """True when the person can attend for the whole of ``span``."""
        if span == Bucket.ANY:
            return self.am and self.pm
        return self.am if span == Bucket.AM else self.pm

    def available_at(self, run_time: RunTime) -> bool:
        return self.am if run_time == RunTime.AM else self.pm


# -----------------------------------------------------------------------------
# People
# -----------------------------------------------------------------------------

class Candidate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=new_id)
    session_id: str
    first_name: str = ""
    last_name: str = ""
    shortcode: str = Field(..., description="Stable identifier partner preferences refer to")
    female_only: bool = False
    partner_pref: Optional[str] = Field(None, description="Shortcode of the preferred partner")
    availability: Availability = Field(default_factory=Availability.any)
    checked_in: bool = False
    filler: bool = False


class Examiner(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=new_id)
    session_id: str
    first_name: str = ""
    last_name: str = ""
    shortcode: str
    female: bool = False
    availability: Availability = Field(default_factory=Availability.any)
    checked_in: bool = False
    filler: bool = False


# -----------------------------------------------------------------------------
# Session layout
# -----------------------------------------------------------------------------

class Station(BaseModel):
    """A station position; the same stations are replicated in every circuit."""
    id: str = Field(default_factory=new_id)
    session_id: str
    title: str
    index: int

    def is_rest(self, rest_title: str = "rest") -> bool:
        return self.title.strip().lower() == rest_title.strip().lower()


class Run(BaseModel):
    id: str = Field(default_factory=new_id)
    slot_id: str
    scheduled_start: datetime
    scheduled_end: datetime

    def run_time(self, midday_hour: int = 12) -> RunTime:
        return RunTime.AM if self.scheduled_start.hour < midday_hour else RunTime.PM


class Circuit(BaseModel):
    id: str = Field(default_factory=new_id)
    session_id: str
    slot_id: str
    key: str = Field(..., description="Circuit letter (A-Z)")
    female_only: bool = False


class Slot(BaseModel):
    id: str = Field(default_factory=new_id)
    session_id: str
    slot_time: str = ""
    runs: List[Run] = Field(default_factory=list)

    def run_times(self, midday_hour: int = 12) -> List[RunTime]:
        return sorted({run.run_time(midday_hour) for run in self.runs}, key=lambda t: t.value)

    def span(self, midday_hour: int = 12) -> Optional[Bucket]:
        """AM or PM when every run falls in one half, ANY when both; None without runs."""
        times = set(self.run_times(midday_hour))
        if not times:
            return None
        if times == {RunTime.AM}:
            return Bucket.AM
        if times == {RunTime.PM}:
            return Bucket.PM
        return Bucket.ANY


# -----------------------------------------------------------------------------
# Allocation output
# -----------------------------------------------------------------------------

class Assignment(BaseModel):
    """One solved station: two candidates and (outside rest stations) one examiner."""
    model_config = ConfigDict(frozen=True)

    slot_id: str
    circuit_id: str
    station_id: str
    candidate_1: str
    candidate_2: str
    examiner: Optional[str] = None
    run_time: Optional[RunTime] = None

    @property
    def key(self):
        return (self.circuit_id, self.station_id, self.run_time)


class AllocationHistory(BaseModel):
    id: str = Field(default_factory=new_id)
    batch_id: str
    slot_id: str
    circuit_id: str
    station_id: str
    candidate_1: str
    candidate_2: str
    examiner: Optional[str] = None
    run_time: Optional[RunTime] = None
    modified_by: str
    auto_gen: bool = True
    modified_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


__all__ = [
    "Bucket",
    "RunTime",
    "Role",
    "Availability",
    "Candidate",
    "Examiner",
    "Station",
    "Run",
    "Circuit",
    "Slot",
    "Assignment",
    "AllocationHistory",
    "new_id",
]

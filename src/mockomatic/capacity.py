"""Headcount and seat-capacity value objects shared by the balancer and the orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Iterable, List, Sequence

from .models import Bucket, Circuit, Slot, Station


def round_up_even(n: int) -> int:
    return n + (n % 2)


def round_down_even(n: int) -> int:
    return n - (n % 2)


@dataclass(frozen=True)
class BucketCounts:
    am: int = 0
    pm: int = 0
    any: int = 0

    @classmethod
    def from_people(cls, people: Iterable) -> "BucketCounts":
        counts = {Bucket.AM: 0, Bucket.PM: 0, Bucket.ANY: 0}
        for person in people:
            counts[person.availability.bucket] += 1
        return cls(am=counts[Bucket.AM], pm=counts[Bucket.PM], any=counts[Bucket.ANY])

    @property
    def total(self) -> int:
        return self.am + self.pm + self.any

    def get(self, bucket: Bucket) -> int:
        return getattr(self, bucket.value)

    def plus(self, bucket: Bucket, n: int = 1) -> "BucketCounts":
        return replace(self, **{bucket.value: self.get(bucket) + n})

    def odd_buckets(self) -> List[Bucket]:
        return [bucket for bucket in Bucket if self.get(bucket) % 2]


@dataclass(frozen=True)
class BucketCapacity:
    """Seat ceilings per bucket.

    Fixed buckets are checked against their own headcount; the ANY ceiling is
    checked against the whole population since flexible people can be seated
    in any bucket.
    """
    am: int = 0
    pm: int = 0
    any: int = 0

    @property
    def total(self) -> int:
        return self.am + self.pm + self.any

    def get(self, bucket: Bucket) -> int:
        return getattr(self, bucket.value)

    def allows(self, bucket: Bucket, counts: BucketCounts, extra: int = 1) -> bool:
        if bucket == Bucket.ANY:
            return counts.total + extra <= self.total
        return counts.get(bucket) + extra <= self.get(bucket)


@dataclass(frozen=True)
class SlotCapacity:
    slot_id: str
    span: Bucket
    circuits: int
    female_circuits: int
    stations: int
    examiner_stations: int

    @classmethod
    def for_slot(
        cls,
        slot: Slot,
        circuits: Sequence[Circuit],
        stations: Sequence[Station],
        rest_title: str = "rest",
        midday_hour: int = 12,
    ) -> "SlotCapacity":
        span = slot.span(midday_hour)
        if span is None:
            raise ValueError(f"Slot {slot.id} has no runs")
        return cls(
            slot_id=slot.id,
            span=span,
            circuits=len(circuits),
            female_circuits=sum(1 for c in circuits if c.female_only),
            stations=len(stations),
            examiner_stations=sum(1 for s in stations if not s.is_rest(rest_title)),
        )

    @property
    def candidate_seats(self) -> int:
        return self.circuits * self.stations * 2

    @property
    def female_candidate_seats(self) -> int:
        return self.female_circuits * self.stations * 2

    @property
    def examiner_seats(self) -> int:
        return self.circuits * self.examiner_stations

    @property
    def female_examiner_seats(self) -> int:
        return self.female_circuits * self.examiner_stations


__all__ = [
    "BucketCounts",
    "BucketCapacity",
    "SlotCapacity",
    "round_up_even",
    "round_down_even",
]

"""
Roster balancing.

Pure arithmetic over headcounts: every function here decides how many filler
people are needed (and with which availability / gender flag) so that each
slot ends up with exactly the number of candidates and examiners its stations
require. Nothing in this module touches storage; ``apply_fill_plan`` is the
single place where a plan is turned into created records.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from .capacity import BucketCapacity, BucketCounts, round_down_even, round_up_even
from .errors import CapacityExceeded, ImbalanceUnresolved
from .models import Availability, Bucket, Candidate, Examiner, Role

logger = logging.getLogger("mockomatic")

_BUCKET_ORDER = (Bucket.AM, Bucket.PM, Bucket.ANY)


@dataclass(frozen=True)
class FillRequest:
    """Ask the persistence layer for ``count`` filler people of one kind."""
    role: Role
    availability: Availability
    female: bool = False
    count: int = 1


@dataclass
class FillPlan:
    requests: List[FillRequest] = field(default_factory=list)
    overflow: Dict[Bucket, int] = field(default_factory=dict)

    def add(self, role: Role, availability: Availability, female: bool, count: int) -> None:
        if count > 0:
            self.requests.append(FillRequest(role=role, availability=availability, female=female, count=count))

    def extend(self, other: "FillPlan") -> "FillPlan":
        self.requests.extend(other.requests)
        for bucket, extra in other.overflow.items():
            self.overflow[bucket] = self.overflow.get(bucket, 0) + extra
        return self

    def count(self, *, female: Optional[bool] = None, bucket: Optional[Bucket] = None) -> int:
        return sum(
            r.count
            for r in self.requests
            if (female is None or r.female == female)
            and (bucket is None or r.availability.bucket == bucket)
        )

    @property
    def total(self) -> int:
        return self.count()

    @property
    def overflow_total(self) -> int:
        return sum(self.overflow.values())


@dataclass(frozen=True)
class EvenSplit:
    am_split: int
    pm_split: int
    any_split: int
    am_delta: int
    pm_delta: int
    any_delta: int

    def split(self, bucket: Bucket) -> int:
        return {Bucket.AM: self.am_split, Bucket.PM: self.pm_split, Bucket.ANY: self.any_split}[bucket]

    def delta(self, bucket: Bucket) -> int:
        return {Bucket.AM: self.am_delta, Bucket.PM: self.pm_delta, Bucket.ANY: self.any_delta}[bucket]

    def __iter__(self) -> Iterator[int]:
        yield from (self.am_split, self.pm_split, self.any_split, self.am_delta, self.pm_delta, self.any_delta)


# -----------------------------------------------------------------------------
# even_split
# -----------------------------------------------------------------------------

def even_split(total: int, am_fixed: int, pm_fixed: int, any_flex: int, any_cap: int) -> EvenSplit:
    """
    Split ``total`` people into even-sized AM/PM(/ANY) buckets.

    ``am_fixed`` and ``pm_fixed`` people can only go to their own bucket;
    the ``any_flex`` flexible people are handed out as deltas so that every
    bucket is even and holds at least its fixed people. With ``any_cap == 0``
    there are no full-day seats and only AM and PM are used.

    Raises:
        ImbalanceUnresolved: the total is odd, does not match its parts, or no
            even split honouring the fixed counts (and ``any_cap``) exists.
    """
    for name, value in (("total", total), ("am_fixed", am_fixed), ("pm_fixed", pm_fixed),
                        ("any_flex", any_flex), ("any_cap", any_cap)):
        if value < 0:
            raise ValueError(f"{name} must be non-negative, got {value}")
    if total != am_fixed + pm_fixed + any_flex:
        raise ImbalanceUnresolved(
            f"total {total} does not equal am_fixed + pm_fixed + any_flex "
            f"({am_fixed} + {pm_fixed} + {any_flex})",
            stage="even_split",
        )
    if total % 2:
        raise ImbalanceUnresolved(f"cannot split odd total {total} into even buckets", stage="even_split")
    if round_up_even(am_fixed) + round_up_even(pm_fixed) > total:
        raise ImbalanceUnresolved(
            f"fixed counts am={am_fixed} pm={pm_fixed} cannot both be rounded up to even within {total}",
            stage="even_split",
        )

    if any_cap == 0:
        am_split, pm_split = _split_two(total, am_fixed, pm_fixed)
        any_split = 0
    else:
        am_split, pm_split, any_split = _split_three(total, am_fixed, pm_fixed, any_cap)

    result = EvenSplit(
        am_split=am_split,
        pm_split=pm_split,
        any_split=any_split,
        am_delta=am_split - am_fixed,
        pm_delta=pm_split - pm_fixed,
        any_delta=any_split,
    )
    if min(result.am_delta, result.pm_delta, result.any_delta) < 0 or \
            result.am_delta + result.pm_delta + result.any_delta != any_flex:
        raise ImbalanceUnresolved(f"split {result} does not conserve {any_flex} flexible people", stage="even_split")
    logger.debug(
        "balancer.even_split total=%d am_fixed=%d pm_fixed=%d any_flex=%d any_cap=%d split=%s",
        total, am_fixed, pm_fixed, any_flex, any_cap, tuple(result),
    )
    return result


def _split_two(total: int, am_fixed: int, pm_fixed: int) -> Tuple[int, int]:
    am_min, pm_min = round_up_even(am_fixed), round_up_even(pm_fixed)
    am = total // 2
    pm = total - am
    if am % 2:
        # both halves odd: move one unit towards the bucket with more fixed people
        if am_fixed >= pm_fixed:
            am, pm = am + 1, pm - 1
        else:
            am, pm = am - 1, pm + 1
    if am < am_min:
        am, pm = am_min, total - am_min
    elif pm < pm_min:
        am, pm = total - pm_min, pm_min
    gap = total - am - pm
    if gap:
        if am >= pm:
            am += gap
        else:
            pm += gap
    return am, pm


def _split_three(total: int, am_fixed: int, pm_fixed: int, any_cap: int) -> Tuple[int, int, int]:
    minimum = {Bucket.AM: round_up_even(am_fixed), Bucket.PM: round_up_even(pm_fixed), Bucket.ANY: 0}
    ceiling = round_down_even(any_cap)
    base = round_down_even(total // 3)
    split = {bucket: base for bucket in _BUCKET_ORDER}

    remainder = total - 3 * base
    spare = iter(_BUCKET_ORDER)
    while remainder > 0:
        short = [b for b in _BUCKET_ORDER if split[b] < minimum[b]]
        if short:
            target = max(short, key=lambda b: minimum[b] - split[b])
        else:
            target = next(spare)
        split[target] += 2
        remainder -= 2

    # every move takes two people off the violation (deficits plus ANY overflow),
    # which is at most the total
    for _ in range(total // 2 + 3):
        deficit = {b: minimum[b] - split[b] for b in _BUCKET_ORDER}
        over = split[Bucket.ANY] - ceiling
        if over <= 0 and all(d <= 0 for d in deficit.values()):
            return split[Bucket.AM], split[Bucket.PM], split[Bucket.ANY]
        if over > 0:
            donor = Bucket.ANY
            receiver = Bucket.AM if split[Bucket.AM] <= split[Bucket.PM] else Bucket.PM
        else:
            receiver = max(_BUCKET_ORDER, key=lambda b: deficit[b])
            donors = [b for b in _BUCKET_ORDER if b != receiver and split[b] - minimum[b] >= 2]
            if not donors:
                raise ImbalanceUnresolved(
                    f"no bucket can donate to {receiver.value} (split={split}, minimum={minimum})",
                    stage="even_split",
                    bucket=receiver.value,
                )
            donor = max(donors, key=lambda b: split[b] - minimum[b])
        split[donor] -= 2
        split[receiver] += 2

    raise ImbalanceUnresolved(
        f"three-way split did not converge (split={split}, minimum={minimum}, any_cap={any_cap})",
        stage="even_split",
    )


# -----------------------------------------------------------------------------
# Parity
# -----------------------------------------------------------------------------

def fill_any_priority(counts: BucketCounts, capacity: BucketCapacity) -> Bucket:
    """Pick the bucket a single parity filler should join.

    With exactly one odd bucket that bucket is topped up; with all three odd
    the filler is flexible (ANY) so it can later be placed where needed.
    """
    if counts.total % 2 == 0:
        raise ValueError(f"parity filler requested for even total {counts.total}")
    odd = counts.odd_buckets()
    bucket = odd[0] if len(odd) == 1 else Bucket.ANY
    if not capacity.allows(bucket, counts):
        raise CapacityExceeded(
            f"no seat left for a parity filler in bucket {bucket.value} "
            f"(counts={counts}, capacity={capacity})",
            stage="parity",
            bucket=bucket.value,
        )
    return bucket


def balance_parity(
    female_counts: BucketCounts,
    general_counts: BucketCounts,
    capacity: BucketCapacity,
    female_capacity: Optional[BucketCapacity] = None,
    role: Role = Role.CANDIDATE,
) -> FillPlan:
    """
    Make the female-only sub-population and the whole population even.

    The female-only side is fixed first; its filler also counts towards the
    general population, so one filler can fix both.
    """
    plan = FillPlan()
    if female_counts.total % 2:
        bucket = fill_any_priority(female_counts, female_capacity or capacity)
        plan.add(role, Availability.for_bucket(bucket), True, 1)
        general_counts = general_counts.plus(bucket)
    if general_counts.total % 2:
        bucket = fill_any_priority(general_counts, capacity)
        plan.add(role, Availability.for_bucket(bucket), False, 1)
    logger.debug(
        "balancer.parity role=%s female=%s general=%s fillers=%d",
        role.value, female_counts, general_counts, plan.total,
    )
    return plan


# -----------------------------------------------------------------------------
# Examiner filling
# -----------------------------------------------------------------------------

def fill_by_slot(
    female_examiners: int,
    total_examiners: int,
    female_cap: int,
    cap: int,
    availability: Optional[Availability] = None,
) -> FillPlan:
    """Top up examiners for a slot that runs in a single half of the day.

    Female shortfall is filled first and counts towards the total. Supply
    beyond ``cap`` is reported as overflow and nothing is created for it.
    """
    availability = availability or Availability.any()
    plan = FillPlan()
    female_short = max(0, female_cap - female_examiners)
    plan.add(Role.EXAMINER, availability, True, female_short)
    supplied = total_examiners + female_short
    if supplied > cap:
        plan.overflow[availability.bucket] = supplied - cap
    else:
        plan.add(Role.EXAMINER, availability, False, cap - supplied)
    return plan


def fill_by_time(
    am_count: int,
    pm_count: int,
    cap: int,
    female_am: int = 0,
    female_pm: int = 0,
    female_cap: int = 0,
) -> FillPlan:
    """Top up examiners for a full-day slot, half by half.

    Shortfalls present in both halves are covered by full-day fillers; the
    remainder of each half gets half-day fillers.
    """
    plan = FillPlan()

    female_am_short = max(0, female_cap - female_am)
    female_pm_short = max(0, female_cap - female_pm)
    female_both = min(female_am_short, female_pm_short)
    plan.add(Role.EXAMINER, Availability.any(), True, female_both)
    plan.add(Role.EXAMINER, Availability.am_only(), True, female_am_short - female_both)
    plan.add(Role.EXAMINER, Availability.pm_only(), True, female_pm_short - female_both)

    am_total = am_count + female_am_short
    pm_total = pm_count + female_pm_short
    am_short = max(0, cap - am_total)
    pm_short = max(0, cap - pm_total)
    both = min(am_short, pm_short)
    plan.add(Role.EXAMINER, Availability.any(), False, both)
    plan.add(Role.EXAMINER, Availability.am_only(), False, am_short - both)
    plan.add(Role.EXAMINER, Availability.pm_only(), False, pm_short - both)

    if am_total > cap:
        plan.overflow[Bucket.AM] = am_total - cap
    if pm_total > cap:
        plan.overflow[Bucket.PM] = pm_total - cap
    return plan


# -----------------------------------------------------------------------------
# Candidate filling
# -----------------------------------------------------------------------------

def fill_slot_fixed_time(
    count: int,
    female_count: int,
    cap: int,
    female_cap: int,
    availability: Availability,
) -> FillPlan:
    """Fill every candidate seat of one slot exactly.

    ``count`` includes the ``female_count`` female-only candidates. Female
    seats take female-only candidates only, the rest take everyone else.
    """
    bucket = availability.bucket.value
    if female_count > female_cap:
        raise CapacityExceeded(
            f"{female_count} female-only candidates for {female_cap} female-only seats",
            stage="fill_slot_fixed_time",
            bucket=bucket,
        )
    if count > cap:
        raise CapacityExceeded(
            f"{count} candidates for {cap} seats",
            stage="fill_slot_fixed_time",
            bucket=bucket,
        )
    general_seats = cap - female_cap
    general_count = count - female_count
    if general_count > general_seats:
        raise CapacityExceeded(
            f"{general_count} candidates for {general_seats} general seats",
            stage="fill_slot_fixed_time",
            bucket=bucket,
        )
    plan = FillPlan()
    plan.add(Role.CANDIDATE, availability, True, female_cap - female_count)
    plan.add(Role.CANDIDATE, availability, False, general_seats - general_count)
    return plan


def distribute(count: int, capacities: Sequence[int], bucket: Optional[Bucket] = None) -> List[int]:
    """Spread an even ``count`` over slots in order, keeping every share even.

    ``bucket`` only labels the error raised when the capacities run out.
    """
    if count % 2:
        raise ValueError(f"cannot distribute odd count {count} in even shares")
    shares = []
    remaining = count
    for capacity in capacities:
        take = min(remaining, round_down_even(capacity))
        shares.append(take)
        remaining -= take
    if remaining:
        raise CapacityExceeded(
            f"{remaining} people left over after filling capacities {list(capacities)}",
            bucket=bucket.value if bucket is not None else None,
        )
    return shares


# -----------------------------------------------------------------------------
# Applying a plan
# -----------------------------------------------------------------------------

def apply_fill_plan(plan: FillPlan, creator, session_id: str) -> Tuple[List[Candidate], List[Examiner]]:
    """Create every requested filler through ``creator`` (a ``FillerCreator``)."""
    candidates: List[Candidate] = []
    examiners: List[Examiner] = []
    for request in plan.requests:
        for _ in range(request.count):
            if request.role == Role.CANDIDATE:
                candidates.append(
                    creator.create_filler_candidate(session_id, request.availability, request.female)
                )
            else:
                examiners.append(
                    creator.create_filler_examiner(session_id, request.availability, request.female)
                )
    if candidates or examiners:
        logger.info(
            "balancer.fillers.created session=%s candidates=%d examiners=%d",
            session_id, len(candidates), len(examiners),
        )
    return candidates, examiners


__all__ = [
    "FillRequest",
    "FillPlan",
    "EvenSplit",
    "even_split",
    "fill_any_priority",
    "balance_parity",
    "fill_by_slot",
    "fill_by_time",
    "fill_slot_fixed_time",
    "distribute",
    "apply_fill_plan",
]

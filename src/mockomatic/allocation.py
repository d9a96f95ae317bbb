"""
Session allocation.

Reads a session from the store, balances candidates and examiners across its
slots (creating fillers where seats would stay empty), solves every slot and
writes the allocations back, all inside one store transaction so a failure
leaves the session untouched.
"""
from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set

from .analysis import detect_conflicts
from .balancer import (
    apply_fill_plan,
    balance_parity,
    distribute,
    even_split,
    fill_by_slot,
    fill_by_time,
    fill_slot_fixed_time,
)
from .capacity import BucketCapacity, BucketCounts, SlotCapacity, round_down_even
from .config import SolverOptions
from .errors import AllocationError, CapacityExceeded, InternalConsistency
from .models import (
    Assignment,
    Availability,
    Bucket,
    Candidate,
    Circuit,
    Examiner,
    RunTime,
    Slot,
    Station,
)
from .solver import SlotSolution, solve_slot

logger = logging.getLogger("mockomatic")


@dataclass
class SlotLayout:
    slot: Slot
    circuits: List[Circuit]
    capacity: SlotCapacity

    @property
    def span(self) -> Bucket:
        return self.capacity.span

    def candidate_seats(self, female_only: bool) -> int:
        if female_only:
            return self.capacity.female_candidate_seats
        return self.capacity.candidate_seats - self.capacity.female_candidate_seats


@dataclass
class SlotOutcome:
    slot_id: str
    span: Bucket
    solutions: List[SlotSolution] = field(default_factory=list)
    candidates: int = 0
    examiners: Dict[str, int] = field(default_factory=dict)
    examiner_overflow: Dict[str, int] = field(default_factory=dict)

    @property
    def assignments(self) -> List[Assignment]:
        return [row for solution in self.solutions for row in solution.assignments]

    @property
    def status(self) -> str:
        if all(s.status == "optimal" for s in self.solutions):
            return "optimal"
        return "feasible"

    @property
    def objective(self) -> int:
        # the PM shift of a full-day slot repeats the AM candidate layout
        return self.solutions[0].objective if self.solutions else 0


@dataclass
class AllocationOutcome:
    session_id: str
    batch_id: str
    slots: List[SlotOutcome] = field(default_factory=list)
    filler_candidates: List[Candidate] = field(default_factory=list)
    filler_examiners: List[Examiner] = field(default_factory=list)
    elapsed_sec: float = 0.0

    @property
    def assignments(self) -> List[Assignment]:
        return [row for slot in self.slots for row in slot.assignments]

    @property
    def objective(self) -> int:
        return sum(slot.objective for slot in self.slots)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "batch_id": self.batch_id,
            "objective": self.objective,
            "rows": len(self.assignments),
            "filler_candidates": len(self.filler_candidates),
            "filler_examiners": len(self.filler_examiners),
            "elapsed_sec": self.elapsed_sec,
            "slots": [
                {
                    "slot_id": slot.slot_id,
                    "span": slot.span.value,
                    "status": slot.status,
                    "objective": slot.objective,
                    "candidates": slot.candidates,
                    "examiners": slot.examiners,
                    "examiner_overflow": slot.examiner_overflow,
                    "solve_time_sec": sum(s.solve_time_sec for s in slot.solutions),
                    "satisfied_preferences": [list(p) for p in slot.solutions[0].satisfied_preferences]
                    if slot.solutions else [],
                }
                for slot in self.slots
            ],
        }


def allocate_session(store, session_id: str, modified_by: str, settings: Optional[Dict[str, Any]] = None) -> AllocationOutcome:
    """Balance, solve and write allocations for every slot of ``session_id``.

    Raises:
        AllocationError: any balancing or solving failure. The store is rolled
            back and the error carries the stage (and slot) that failed.
    """
    options = SolverOptions.from_settings(settings)
    outcome = AllocationOutcome(session_id=session_id, batch_id=uuid.uuid4().hex)
    start = time.monotonic()
    stage = "load"
    try:
        with store.transaction():
            stations = store.get_stations(session_id)
            layouts = _load_layouts(store, session_id, stations, options)
            logger.info(
                "allocation.session.start session=%s batch=%s slots=%d stations=%d spans=%s",
                session_id,
                outcome.batch_id,
                len(layouts),
                len(stations),
                [layout.span.value for layout in layouts],
            )

            stage = "candidates"
            seated = _seat_candidates(store, session_id, layouts, outcome)

            stage = "examiners"
            used: Dict[RunTime, Set[str]] = {RunTime.AM: set(), RunTime.PM: set()}
            for layout in layouts:
                try:
                    slot_outcome = _allocate_slot(
                        store, session_id, layout, stations, seated[layout.slot.id], used, options, outcome
                    )
                except AllocationError as exc:
                    raise exc.with_context(slot_id=layout.slot.id)
                store.replace_allocations(
                    layout.slot.id,
                    slot_outcome.assignments,
                    batch_id=outcome.batch_id,
                    modified_by=modified_by,
                    auto_gen=True,
                )
                outcome.slots.append(slot_outcome)

            stage = "validate"
            _validate(store, session_id, outcome, stations, options)
    except AllocationError as exc:
        exc.with_context(stage=stage)
        logger.error(
            "allocation.session.failed session=%s batch=%s stage=%s slot=%s error=%s",
            session_id,
            outcome.batch_id,
            exc.stage,
            exc.slot_id,
            exc.message,
        )
        raise

    outcome.elapsed_sec = time.monotonic() - start
    logger.info(
        "allocation.session.done session=%s batch=%s rows=%d objective=%d filler_candidates=%d "
        "filler_examiners=%d elapsed_sec=%.3f",
        session_id,
        outcome.batch_id,
        len(outcome.assignments),
        outcome.objective,
        len(outcome.filler_candidates),
        len(outcome.filler_examiners),
        outcome.elapsed_sec,
    )
    return outcome


def _load_layouts(store, session_id: str, stations: Sequence[Station], options: SolverOptions) -> List[SlotLayout]:
    slots = store.get_slots(session_id)
    if not slots:
        raise AllocationError(f"session {session_id} has no slots", stage="load")
    layouts = []
    for slot in slots:
        if slot.span(options.midday_hour) is None:
            raise AllocationError(f"slot {slot.slot_time or slot.id} has no runs", stage="load", slot_id=slot.id)
        circuits = store.get_circuits(session_id, slot.id)
        capacity = SlotCapacity.for_slot(
            slot, circuits, stations, rest_title=options.rest_station_title, midday_hour=options.midday_hour
        )
        layouts.append(SlotLayout(slot=slot, circuits=circuits, capacity=capacity))
    return layouts


# -----------------------------------------------------------------------------
# Candidates
# -----------------------------------------------------------------------------

def _seat_candidates(store, session_id: str, layouts: List[SlotLayout], outcome: AllocationOutcome) -> Dict[str, List[Candidate]]:
    candidates = store.get_candidates(session_id)
    if len(layouts) == 1:
        layout = layouts[0]
        eligible = [c for c in candidates if c.availability.covers(layout.span)]
        if len(eligible) < len(candidates):
            logger.warning(
                "allocation.candidates.unavailable session=%s slot=%s span=%s skipped=%d",
                session_id,
                layout.slot.id,
                layout.span.value,
                len(candidates) - len(eligible),
            )
        return {layout.slot.id: _fill_slot(store, session_id, layout, eligible, outcome)}

    by_span = {bucket: [l for l in layouts if l.span == bucket] for bucket in Bucket}

    def seats(female_only: bool) -> BucketCapacity:
        return BucketCapacity(
            **{b.value: sum(l.candidate_seats(female_only) for l in by_span[b]) for b in Bucket}
        )

    female = [c for c in candidates if c.female_only]
    general_capacity = BucketCapacity(
        **{b.value: sum(l.capacity.candidate_seats for l in by_span[b]) for b in Bucket}
    )
    parity = balance_parity(
        BucketCounts.from_people(female),
        BucketCounts.from_people(candidates),
        general_capacity,
        female_capacity=seats(True),
    )
    created, _ = apply_fill_plan(parity, store, session_id)
    outcome.filler_candidates.extend(created)
    # re-read so the parity fillers take part in the split
    candidates = store.get_candidates(session_id)

    placed: Dict[str, List[Candidate]] = {l.slot.id: [] for l in layouts}
    for female_only in (True, False):
        people = [c for c in candidates if c.female_only == female_only]
        if not people:
            continue
        members = _split_population(people, by_span, seats(female_only), female_only)
        for bucket, group in members.items():
            targets = by_span[bucket]
            if not group:
                continue
            shares = distribute(len(group), [l.candidate_seats(female_only) for l in targets], bucket=bucket)
            offset = 0
            for layout, share in zip(targets, shares):
                placed[layout.slot.id].extend(group[offset:offset + share])
                offset += share

    return {
        layout.slot.id: _fill_slot(store, session_id, layout, placed[layout.slot.id], outcome)
        for layout in layouts
    }


def _split_population(
    people: List[Candidate],
    by_span: Dict[Bucket, List[SlotLayout]],
    capacity: BucketCapacity,
    female_only: bool,
) -> Dict[Bucket, List[Candidate]]:
    """Assign every person of one sub-population to an AM, PM or ANY bucket."""
    subset = "female_only" if female_only else "general"
    fixed = {
        bucket: sorted((p for p in people if p.availability.bucket == bucket), key=lambda p: p.shortcode)
        for bucket in (Bucket.AM, Bucket.PM)
    }
    flexible = _order_flexible([p for p in people if p.availability.bucket == Bucket.ANY])
    for bucket, group in fixed.items():
        if group and not by_span[bucket]:
            raise CapacityExceeded(
                f"{len(group)} {subset} candidates are only available {bucket.value.upper()} "
                f"but the session has no {bucket.value.upper()} slot",
                stage="candidates",
                bucket=bucket.value,
            )

    total = len(people)
    am_fixed, pm_fixed, any_flex = len(fixed[Bucket.AM]), len(fixed[Bucket.PM]), len(flexible)
    any_cap = capacity.any if by_span[Bucket.ANY] else 0

    if by_span[Bucket.AM] and by_span[Bucket.PM]:
        split = even_split(total, am_fixed, pm_fixed, any_flex, any_cap)
        deltas = {Bucket.AM: split.am_delta, Bucket.PM: split.pm_delta, Bucket.ANY: split.any_delta}
    else:
        half = Bucket.AM if by_span[Bucket.AM] else Bucket.PM if by_span[Bucket.PM] else None
        deltas = {Bucket.AM: 0, Bucket.PM: 0, Bucket.ANY: 0}
        if half is None:
            deltas[Bucket.ANY] = any_flex
        else:
            half_fixed = len(fixed[half])
            split = even_split(total, half_fixed, 0, any_flex, 0)
            to_any = min(split.pm_split, round_down_even(any_cap))
            deltas[Bucket.ANY] = to_any
            deltas[half] = any_flex - to_any

    ceilings = {b: round_down_even(capacity.get(b)) if by_span[b] else 0 for b in Bucket}
    fixed_sizes = {Bucket.AM: am_fixed, Bucket.PM: pm_fixed, Bucket.ANY: 0}
    deltas = _fit_to_capacity(fixed_sizes, deltas, ceilings, subset)

    logger.info(
        "allocation.balance.even_split subset=%s total=%d am_fixed=%d pm_fixed=%d any_flex=%d any_cap=%d "
        "am_delta=%d pm_delta=%d any_delta=%d",
        subset, total, am_fixed, pm_fixed, any_flex, any_cap,
        deltas[Bucket.AM], deltas[Bucket.PM], deltas[Bucket.ANY],
    )

    am_end = deltas[Bucket.AM]
    pm_end = am_end + deltas[Bucket.PM]
    return {
        Bucket.AM: fixed[Bucket.AM] + flexible[:am_end],
        Bucket.PM: fixed[Bucket.PM] + flexible[am_end:pm_end],
        Bucket.ANY: flexible[pm_end:],
    }


def _fit_to_capacity(
    fixed_sizes: Dict[Bucket, int],
    deltas: Dict[Bucket, int],
    ceilings: Dict[Bucket, int],
    subset: str,
) -> Dict[Bucket, int]:
    """Move flexible people, two at a time, out of buckets whose seats are full.

    A bucket over its ceiling hands its surplus to the other half first, then
    to the full-day bucket. Fixed people never move.
    """
    deltas = dict(deltas)
    receivers = {
        Bucket.AM: (Bucket.PM, Bucket.ANY),
        Bucket.PM: (Bucket.AM, Bucket.ANY),
        Bucket.ANY: (Bucket.AM, Bucket.PM),
    }

    def size(bucket: Bucket) -> int:
        return fixed_sizes[bucket] + deltas[bucket]

    for bucket in Bucket:
        if fixed_sizes[bucket] > ceilings[bucket]:
            raise CapacityExceeded(
                f"{fixed_sizes[bucket]} {subset} candidates are only available {bucket.value.upper()} "
                f"but {ceilings[bucket]} seats exist",
                stage="candidates",
                bucket=bucket.value,
            )
        while size(bucket) > ceilings[bucket]:
            target = next((r for r in receivers[bucket] if size(r) + 2 <= ceilings[r]), None)
            if target is None:
                raise CapacityExceeded(
                    f"{sum(size(b) for b in Bucket)} {subset} candidates do not fit the "
                    f"{sum(ceilings.values())} seats of the session",
                    stage="candidates",
                    bucket=bucket.value,
                )
            # sizes and ceilings are even, so whole pairs move
            deltas[bucket] -= 2
            deltas[target] += 2
    return deltas


def _order_flexible(people: List[Candidate]) -> List[Candidate]:
    """Stable shortcode order, with each preferred partner pulled in right behind."""
    ordered = sorted(people, key=lambda p: p.shortcode)
    by_code = {p.shortcode: p for p in ordered}
    result: List[Candidate] = []
    taken: Set[str] = set()
    for person in ordered:
        if person.id in taken:
            continue
        result.append(person)
        taken.add(person.id)
        partner = by_code.get(person.partner_pref) if person.partner_pref else None
        if partner is not None and partner.id not in taken:
            result.append(partner)
            taken.add(partner.id)
    return result


def _fill_slot(store, session_id: str, layout: SlotLayout, people: List[Candidate], outcome: AllocationOutcome) -> List[Candidate]:
    capacity = layout.capacity
    try:
        plan = fill_slot_fixed_time(
            len(people),
            sum(1 for p in people if p.female_only),
            capacity.candidate_seats,
            capacity.female_candidate_seats,
            Availability.for_bucket(layout.span),
        )
        created, _ = apply_fill_plan(plan, store, session_id)
    except AllocationError as exc:
        raise exc.with_context(slot_id=layout.slot.id)
    outcome.filler_candidates.extend(created)
    logger.info(
        "allocation.candidates.slot slot=%s span=%s seated=%d fillers=%d seats=%d",
        layout.slot.id,
        layout.span.value,
        len(people),
        len(created),
        capacity.candidate_seats,
    )
    return list(people) + created


# -----------------------------------------------------------------------------
# Examiners and solving
# -----------------------------------------------------------------------------

def _examiner_pool(store, session_id: str, run_time: RunTime, used: Dict[RunTime, Set[str]]) -> List[Examiner]:
    pool = [
        e for e in store.get_examiners(session_id)
        if e.availability.available_at(run_time) and e.id not in used[run_time]
    ]
    return sorted(pool, key=lambda e: (e.filler, e.shortcode))


def _allocate_slot(
    store,
    session_id: str,
    layout: SlotLayout,
    stations: Sequence[Station],
    candidates: List[Candidate],
    used: Dict[RunTime, Set[str]],
    options: SolverOptions,
    outcome: AllocationOutcome,
) -> SlotOutcome:
    capacity = layout.capacity
    result = SlotOutcome(slot_id=layout.slot.id, span=layout.span, candidates=len(candidates))

    if layout.span == Bucket.ANY:
        pools = {rt: _examiner_pool(store, session_id, rt, used) for rt in (RunTime.AM, RunTime.PM)}
        plan = fill_by_time(
            len(pools[RunTime.AM]),
            len(pools[RunTime.PM]),
            capacity.examiner_seats,
            female_am=sum(1 for e in pools[RunTime.AM] if e.female),
            female_pm=sum(1 for e in pools[RunTime.PM] if e.female),
            female_cap=capacity.female_examiner_seats,
        )
        _, created = apply_fill_plan(plan, store, session_id)
        for examiner in created:
            for rt in (RunTime.AM, RunTime.PM):
                if examiner.availability.available_at(rt):
                    pools[rt].append(examiner)
        shifts = [RunTime.AM, RunTime.PM]
    else:
        run_time = RunTime.AM if layout.span == Bucket.AM else RunTime.PM
        pool = _examiner_pool(store, session_id, run_time, used)
        plan = fill_by_slot(
            sum(1 for e in pool if e.female),
            len(pool),
            capacity.female_examiner_seats,
            capacity.examiner_seats,
            Availability.for_bucket(layout.span),
        )
        _, created = apply_fill_plan(plan, store, session_id)
        pools = {run_time: pool + created}
        shifts = [run_time]

    outcome.filler_examiners.extend(created)
    result.examiner_overflow = {bucket.value: n for bucket, n in plan.overflow.items()}
    if plan.overflow:
        logger.info(
            "allocation.examiners.overflow slot=%s overflow=%s",
            layout.slot.id,
            result.examiner_overflow,
        )

    fixed: Optional[List[Assignment]] = None
    for run_time in shifts:
        result.examiners[run_time.value] = len(pools[run_time])
        solution = solve_slot(
            layout.circuits,
            stations,
            candidates,
            pools[run_time],
            options,
            fixed=fixed,
            slot_id=layout.slot.id,
            run_time=run_time,
        )
        used[run_time].update(row.examiner for row in solution.assignments if row.examiner)
        result.solutions.append(solution)
        fixed = solution.assignments

    logger.info(
        "allocation.slot.solved slot=%s span=%s status=%s objective=%d rows=%d",
        layout.slot.id,
        layout.span.value,
        result.status,
        result.objective,
        len(result.assignments),
    )
    return result


def _validate(store, session_id: str, outcome: AllocationOutcome, stations, options: SolverOptions) -> None:
    report = detect_conflicts(
        outcome.assignments,
        store.get_candidates(session_id),
        store.get_examiners(session_id),
        store.get_circuits(session_id),
        stations,
        rest_title=options.rest_station_title,
    )
    if report["num_conflicts"]:
        first = report["conflicts"][0]
        raise InternalConsistency(
            f"{report['num_conflicts']} conflicts in solved allocation, first: {first['description']}",
            stage="validate",
        )


__all__ = ["allocate_session", "AllocationOutcome", "SlotOutcome", "SlotLayout"]

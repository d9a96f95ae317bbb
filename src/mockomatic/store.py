"""
Persistence seams and an in-memory implementation.

The allocation core only talks to storage through the three protocols below
plus ``transaction()``. ``InMemoryStore`` backs the CLI and the tests.
"""
from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Protocol, Sequence, Tuple

from .models import (
    AllocationHistory,
    Assignment,
    Availability,
    Bucket,
    Candidate,
    Circuit,
    Examiner,
    Run,
    RunTime,
    Slot,
    Station,
)

logger = logging.getLogger("mockomatic")

FILLER_FIRST_NAME = "fill"


class EntityReader(Protocol):
    def get_candidates(
        self, session_id: str, bucket: Optional[Bucket] = None, female_only: Optional[bool] = None
    ) -> List[Candidate]: ...

    def get_examiners(
        self, session_id: str, bucket: Optional[Bucket] = None, female: Optional[bool] = None
    ) -> List[Examiner]: ...

    def get_stations(self, session_id: str) -> List[Station]: ...

    def get_circuits(self, session_id: str, slot_id: Optional[str] = None) -> List[Circuit]: ...

    def get_slots(self, session_id: str) -> List[Slot]: ...

    def get_runs(self, slot_id: str, run_time: Optional[RunTime] = None) -> List[Run]: ...


class FillerCreator(Protocol):
    def create_filler_candidate(
        self, session_id: str, availability: Availability, female_only: bool = False
    ) -> Candidate: ...

    def create_filler_examiner(
        self, session_id: str, availability: Availability, female: bool = False
    ) -> Examiner: ...


class AllocationWriter(Protocol):
    def replace_allocations(
        self,
        slot_id: str,
        assignments: Sequence[Assignment],
        batch_id: str,
        modified_by: str,
        auto_gen: bool = True,
    ) -> int: ...


@dataclass
class _State:
    candidates: Dict[str, Candidate] = field(default_factory=dict)
    examiners: Dict[str, Examiner] = field(default_factory=dict)
    stations: Dict[str, Station] = field(default_factory=dict)
    slots: Dict[str, Slot] = field(default_factory=dict)
    circuits: Dict[str, Circuit] = field(default_factory=dict)
    allocations: Dict[str, Dict[Tuple, Assignment]] = field(default_factory=dict)
    history: List[AllocationHistory] = field(default_factory=list)

    def copy(self) -> "_State":
        return _State(
            candidates=dict(self.candidates),
            examiners=dict(self.examiners),
            stations=dict(self.stations),
            slots=dict(self.slots),
            circuits=dict(self.circuits),
            allocations={slot_id: dict(rows) for slot_id, rows in self.allocations.items()},
            history=list(self.history),
        )


class InMemoryStore:
    """Thread-safe store; every public method takes the same re-entrant lock."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._state = _State()

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["InMemoryStore"]:
        """Hold the lock for the whole block and roll back on any exception."""
        with self._lock:
            snapshot = self._state.copy()
            try:
                yield self
            except BaseException:
                self._state = snapshot
                logger.warning("store.transaction.rollback")
                raise

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    def add_candidate(self, candidate: Candidate) -> Candidate:
        with self._lock:
            self._state.candidates[candidate.id] = candidate
        return candidate

    def add_examiner(self, examiner: Examiner) -> Examiner:
        with self._lock:
            self._state.examiners[examiner.id] = examiner
        return examiner

    def add_station(self, station: Station) -> Station:
        with self._lock:
            self._state.stations[station.id] = station
        return station

    def add_slot(self, slot: Slot) -> Slot:
        with self._lock:
            self._state.slots[slot.id] = slot
        return slot

    def add_circuit(self, circuit: Circuit) -> Circuit:
        with self._lock:
            if circuit.slot_id not in self._state.slots:
                raise ValueError(f"Circuit {circuit.key} refers to unknown slot {circuit.slot_id}")
            self._state.circuits[circuit.id] = circuit
        return circuit

    # -------------------------------------------------------------------------
    # EntityReader
    # -------------------------------------------------------------------------

    def get_candidates(self, session_id, bucket=None, female_only=None):
        with self._lock:
            rows = [c for c in self._state.candidates.values() if c.session_id == session_id]
        if bucket is not None:
            rows = [c for c in rows if c.availability.bucket == bucket]
        if female_only is not None:
            rows = [c for c in rows if c.female_only == female_only]
        return rows

    def get_examiners(self, session_id, bucket=None, female=None):
        with self._lock:
            rows = [e for e in self._state.examiners.values() if e.session_id == session_id]
        if bucket is not None:
            rows = [e for e in rows if e.availability.bucket == bucket]
        if female is not None:
            rows = [e for e in rows if e.female == female]
        return rows

    def get_stations(self, session_id):
        with self._lock:
            rows = [s for s in self._state.stations.values() if s.session_id == session_id]
        return sorted(rows, key=lambda s: s.index)

    def get_circuits(self, session_id, slot_id=None):
        with self._lock:
            rows = [c for c in self._state.circuits.values() if c.session_id == session_id]
        if slot_id is not None:
            rows = [c for c in rows if c.slot_id == slot_id]
        return sorted(rows, key=lambda c: c.key)

    def get_slots(self, session_id):
        with self._lock:
            rows = [s for s in self._state.slots.values() if s.session_id == session_id]
        return sorted(rows, key=lambda s: (s.slot_time, s.id))

    def get_runs(self, slot_id, run_time=None, midday_hour=12):
        with self._lock:
            slot = self._state.slots.get(slot_id)
        if slot is None:
            raise KeyError(f"Unknown slot {slot_id}")
        runs = sorted(slot.runs, key=lambda r: r.scheduled_start)
        if run_time is not None:
            runs = [r for r in runs if r.run_time(midday_hour) == run_time]
        return runs

    def session_ids(self) -> List[str]:
        with self._lock:
            return sorted({s.session_id for s in self._state.slots.values()})

    # -------------------------------------------------------------------------
    # FillerCreator
    # -------------------------------------------------------------------------

    def create_filler_candidate(self, session_id, availability, female_only=False):
        candidate = Candidate(
            session_id=session_id,
            first_name=FILLER_FIRST_NAME,
            last_name="candidate",
            shortcode=str(uuid.uuid4()),
            female_only=female_only,
            availability=availability,
            filler=True,
        )
        return self.add_candidate(candidate)

    def create_filler_examiner(self, session_id, availability, female=False):
        examiner = Examiner(
            session_id=session_id,
            first_name=FILLER_FIRST_NAME,
            last_name="examiner",
            shortcode=str(uuid.uuid4()),
            female=female,
            availability=availability,
            filler=True,
        )
        return self.add_examiner(examiner)

    def fillers(self, session_id: str) -> Tuple[List[Candidate], List[Examiner]]:
        return (
            [c for c in self.get_candidates(session_id) if c.filler],
            [e for e in self.get_examiners(session_id) if e.filler],
        )

    # -------------------------------------------------------------------------
    # AllocationWriter
    # -------------------------------------------------------------------------

    def replace_allocations(self, slot_id, assignments, batch_id, modified_by, auto_gen=True):
        """Replace every allocation row of ``slot_id`` with ``assignments``."""
        rows: Dict[Tuple, Assignment] = {}
        for row in assignments:
            if row.slot_id != slot_id:
                raise ValueError(f"Assignment for slot {row.slot_id} written to slot {slot_id}")
            if row.key in rows:
                raise ValueError(f"Duplicate allocation for circuit/station/run time {row.key}")
            rows[row.key] = row
        with self._lock:
            self._state.allocations[slot_id] = rows
            self._state.history.extend(
                AllocationHistory(
                    batch_id=batch_id,
                    modified_by=modified_by,
                    auto_gen=auto_gen,
                    **row.model_dump(),
                )
                for row in rows.values()
            )
        logger.debug("store.allocations.replace slot=%s rows=%d batch=%s", slot_id, len(rows), batch_id)
        return len(rows)

    def get_allocations(self, slot_id: Optional[str] = None) -> List[Assignment]:
        with self._lock:
            if slot_id is not None:
                return list(self._state.allocations.get(slot_id, {}).values())
            return [row for rows in self._state.allocations.values() for row in rows.values()]

    def get_history(self, batch_id: Optional[str] = None) -> List[AllocationHistory]:
        with self._lock:
            rows = list(self._state.history)
        if batch_id is not None:
            rows = [h for h in rows if h.batch_id == batch_id]
        return rows


__all__ = [
    "EntityReader",
    "FillerCreator",
    "AllocationWriter",
    "InMemoryStore",
    "FILLER_FIRST_NAME",
]

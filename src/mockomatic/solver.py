"""
Station allocation model.

For one slot (and one half of the day) the model places every candidate in
exactly one station of one circuit, two per station, and puts one examiner
on every non-rest station. Partner preferences are the only soft goal: the
model maximises the number of candidates seated with the partner they asked
for.

Variables:
    candidate_at[c, i, s]   candidate i sits at station s of circuit c
    examiner_at[c, k, s]    examiner k staffs station s of circuit c
    paired_at[c, i, j, s]   candidates i and j share station s of circuit c
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from itertools import combinations
from typing import Dict, List, Optional, Sequence, Tuple

import cpmpy as cp
import numpy as np
from cpmpy.solvers.solver_interface import ExitStatus

from .config import SolverOptions
from .errors import Infeasible, InternalConsistency
from .models import Assignment, Candidate, Circuit, Examiner, RunTime, Station

logger = logging.getLogger("mockomatic")

PAIR_VARIABLE_MODES = ("weighted", "all")


def preference_weights(candidates: Sequence[Candidate]) -> Dict[Tuple[int, int], int]:
    """Weight per unordered candidate index pair: one per directional match.

    A mutual preference (A wants B and B wants A) weighs 2.
    """
    by_shortcode: Dict[str, List[int]] = {}
    for i, cand in enumerate(candidates):
        by_shortcode.setdefault(cand.shortcode, []).append(i)

    weights: Dict[Tuple[int, int], int] = {}
    for i, cand in enumerate(candidates):
        if not cand.partner_pref:
            continue
        for j in by_shortcode.get(cand.partner_pref, []):
            if j == i:
                continue
            pair = (min(i, j), max(i, j))
            weights[pair] = weights.get(pair, 0) + 1
    return weights


class StationAllocationModel(cp.Model):
    def __init__(
        self,
        circuits: Sequence[Circuit],
        stations: Sequence[Station],
        candidates: Sequence[Candidate],
        examiners: Sequence[Examiner],
        pair_variables: str = "weighted",
        rest_station_title: str = "rest",
    ):
        super().__init__()
        if pair_variables not in PAIR_VARIABLE_MODES:
            raise ValueError(f"pair_variables must be one of {PAIR_VARIABLE_MODES}, got {pair_variables!r}")

        self.circuits = list(circuits)
        self.stations = list(stations)
        self.candidates = list(candidates)
        self.examiners = list(examiners)
        self.rest_station_title = rest_station_title
        self.is_rest = [st.is_rest(rest_station_title) for st in self.stations]

        self.no_circuits = len(self.circuits)
        self.no_stations = len(self.stations)
        self.no_candidates = len(self.candidates)
        self.no_examiners = len(self.examiners)

        self.candidate_at = cp.boolvar(
            shape=(self.no_circuits, self.no_candidates, self.no_stations), name="candidate_at"
        )
        # an all-rest layout needs no examiners at all
        self.examiner_at = None
        if self.no_examiners:
            self.examiner_at = cp.boolvar(
                shape=(self.no_circuits, self.no_examiners, self.no_stations), name="examiner_at"
            )

        self.pair_weights = preference_weights(self.candidates)
        if pair_variables == "all":
            pairs = list(combinations(range(self.no_candidates), 2))
        else:
            pairs = sorted(self.pair_weights)
        self.paired_at = {
            (c, i, j, s): cp.boolvar(name=f"paired_at[{c},{i},{j},{s}]")
            for c in range(self.no_circuits)
            for (i, j) in pairs
            for s in range(self.no_stations)
        }

        self.add_labeled("station_candidates", self.station_candidate_constraints())
        self.add_labeled("candidate_at_most_once", self.candidate_once_constraints())
        self.add_labeled("station_examiners", self.station_examiner_constraints())
        self.add_labeled("examiner_at_most_once", self.examiner_once_constraints())
        self.add_labeled("female_only_circuits", self.female_only_constraints())
        self.add_labeled("pair_linking", self.pair_linking_constraints())

        terms = [
            self.pair_weights[(i, j)] * var
            for (c, i, j, s), var in self.paired_at.items()
            if self.pair_weights.get((i, j), 0) > 0
        ]
        self.preference_obj = None
        if terms:
            self.preference_obj = cp.sum(terms)
            self.maximize(self.preference_obj)

    def add_labeled(self, label, constraints):
        """Add a named group of constraints to the model."""
        if not constraints:
            return
        super().add(constraints)
        logger.debug("solver.model.constraints group=%s count=%d", label, len(constraints))

    # -------------------------------------------------------------------------
    # Constraints
    # -------------------------------------------------------------------------

    def station_candidate_constraints(self):
        return [
            cp.sum(self.candidate_at[c, :, s]) == 2
            for c in range(self.no_circuits)
            for s in range(self.no_stations)
        ]

    def candidate_once_constraints(self):
        return [cp.sum(self.candidate_at[:, i, :]) <= 1 for i in range(self.no_candidates)]

    def station_examiner_constraints(self):
        if self.examiner_at is None:
            return []
        return [
            cp.sum(self.examiner_at[c, :, s]) == (0 if self.is_rest[s] else 1)
            for c in range(self.no_circuits)
            for s in range(self.no_stations)
        ]

    def examiner_once_constraints(self):
        if self.examiner_at is None:
            return []
        return [cp.sum(self.examiner_at[:, k, :]) <= 1 for k in range(self.no_examiners)]

    def female_only_constraints(self):
        constraints = []
        for c, circuit in enumerate(self.circuits):
            if not circuit.female_only:
                continue
            for i, cand in enumerate(self.candidates):
                if not cand.female_only:
                    constraints.append(cp.sum(self.candidate_at[c, i, :]) == 0)
            if self.examiner_at is None:
                continue
            for k, examiner in enumerate(self.examiners):
                if not examiner.female:
                    constraints.append(cp.sum(self.examiner_at[c, k, :]) == 0)
        return constraints

    def pair_linking_constraints(self):
        constraints = []
        for (c, i, j, s), var in self.paired_at.items():
            constraints.append(var <= self.candidate_at[c, i, s])
            constraints.append(var <= self.candidate_at[c, j, s])
            constraints.append(var >= self.candidate_at[c, i, s] + self.candidate_at[c, j, s] - 1)
        return constraints

    def fix_candidates(self, assignments: Sequence[Assignment]) -> int:
        """Pin candidates to the stations they hold in ``assignments``.

        Used for the second half of a full-day slot, where the candidate layout
        carries over and only examiners change.
        """
        circuit_index = {circuit.id: c for c, circuit in enumerate(self.circuits)}
        station_index = {station.id: s for s, station in enumerate(self.stations)}
        candidate_index = {cand.id: i for i, cand in enumerate(self.candidates)}
        fixed = []
        for row in assignments:
            c = circuit_index.get(row.circuit_id)
            s = station_index.get(row.station_id)
            if c is None or s is None:
                raise InternalConsistency(
                    f"fixed placement refers to unknown circuit/station {row.circuit_id}/{row.station_id}",
                    stage="solve",
                    slot_id=row.slot_id,
                    circuit_id=row.circuit_id,
                )
            for cand_id in (row.candidate_1, row.candidate_2):
                i = candidate_index.get(cand_id)
                if i is None:
                    raise InternalConsistency(
                        f"fixed placement refers to candidate {cand_id} not in this slot",
                        stage="solve",
                        slot_id=row.slot_id,
                        circuit_id=row.circuit_id,
                    )
                fixed.append(self.candidate_at[c, i, s] == 1)
        self.add_labeled("fixed_candidates", fixed)
        logger.debug("solver.model.fix_candidates fixed=%d", len(fixed))
        return len(fixed)

    # -------------------------------------------------------------------------
    # Extraction
    # -------------------------------------------------------------------------

    def extract(self, slot_id: str, run_time: Optional[RunTime] = None) -> List[Assignment]:
        cand_values = np.asarray(self.candidate_at.value(), dtype=bool)
        exam_values = None
        if self.examiner_at is not None:
            exam_values = np.asarray(self.examiner_at.value(), dtype=bool)

        rows = []
        for c, circuit in enumerate(self.circuits):
            for s, station in enumerate(self.stations):
                seated = np.flatnonzero(cand_values[c, :, s])
                if len(seated) != 2:
                    raise InternalConsistency(
                        f"station {station.title} holds {len(seated)} candidates, expected 2",
                        stage="extract",
                        slot_id=slot_id,
                        circuit_id=circuit.id,
                    )
                examiner_id = None
                staffed = np.flatnonzero(exam_values[c, :, s]) if exam_values is not None else []
                expected = 0 if self.is_rest[s] else 1
                if len(staffed) != expected:
                    raise InternalConsistency(
                        f"station {station.title} has {len(staffed)} examiners, expected {expected}",
                        stage="extract",
                        slot_id=slot_id,
                        circuit_id=circuit.id,
                    )
                if expected:
                    examiner_id = self.examiners[int(staffed[0])].id
                rows.append(
                    Assignment(
                        slot_id=slot_id,
                        circuit_id=circuit.id,
                        station_id=station.id,
                        candidate_1=self.candidates[int(seated[0])].id,
                        candidate_2=self.candidates[int(seated[1])].id,
                        examiner=examiner_id,
                        run_time=run_time,
                    )
                )
        return rows


@dataclass
class SlotSolution:
    assignments: List[Assignment] = field(default_factory=list)
    status: str = "optimal"
    objective: int = 0
    satisfied_preferences: List[Tuple[str, str]] = field(default_factory=list)
    solve_time_sec: float = 0.0


def satisfied_preferences(assignments: Sequence[Assignment], candidates: Sequence[Candidate]) -> List[Tuple[str, str]]:
    """Directional (shortcode, partner shortcode) matches seated together."""
    by_id = {cand.id: cand for cand in candidates}
    matches = []
    for row in assignments:
        first, second = by_id.get(row.candidate_1), by_id.get(row.candidate_2)
        if first is None or second is None:
            continue
        if first.partner_pref and first.partner_pref == second.shortcode:
            matches.append((first.shortcode, second.shortcode))
        if second.partner_pref and second.partner_pref == first.shortcode:
            matches.append((second.shortcode, first.shortcode))
    return matches


def _check_supply(circuits, stations, candidates, examiners, rest_title, context) -> None:
    seats = len(circuits) * len(stations) * 2
    female_circuits = sum(1 for c in circuits if c.female_only)
    examiner_stations = sum(1 for s in stations if not s.is_rest(rest_title))

    if len(candidates) < seats:
        raise Infeasible(
            f"{len(candidates)} candidates for {seats} candidate seats",
            status="precheck",
            stage="solve",
            **context,
        )
    female_seats = female_circuits * len(stations) * 2
    female_candidates = sum(1 for cand in candidates if cand.female_only)
    if female_candidates < female_seats:
        raise Infeasible(
            f"{female_candidates} female-only candidates for {female_seats} female-only seats",
            status="precheck",
            stage="solve",
            **context,
        )
    examiner_seats = len(circuits) * examiner_stations
    if len(examiners) < examiner_seats:
        raise Infeasible(
            f"{len(examiners)} examiners for {examiner_seats} examiner seats",
            status="precheck",
            stage="solve",
            **context,
        )
    female_examiner_seats = female_circuits * examiner_stations
    female_examiners = sum(1 for ex in examiners if ex.female)
    if female_examiners < female_examiner_seats:
        raise Infeasible(
            f"{female_examiners} female examiners for {female_examiner_seats} female-only examiner seats",
            status="precheck",
            stage="solve",
            **context,
        )


def _solver_kwargs(options: SolverOptions) -> dict:
    kwargs = {}
    if options.time_limit_sec:
        kwargs["time_limit"] = float(options.time_limit_sec)
    if options.solver == "ortools" and options.solver_workers:
        kwargs["num_search_workers"] = int(max(1, options.solver_workers))
    return kwargs


def solve_slot(
    circuits: Sequence[Circuit],
    stations: Sequence[Station],
    candidates: Sequence[Candidate],
    examiners: Sequence[Examiner],
    options: Optional[SolverOptions] = None,
    fixed: Optional[Sequence[Assignment]] = None,
    slot_id: Optional[str] = None,
    run_time: Optional[RunTime] = None,
) -> SlotSolution:
    """
    Solve one slot (or one half of a full-day slot).

    Args:
        circuits: circuits of the slot, in order
        stations: session stations, in order
        candidates: at least two per station per circuit; the rest stay unseated
        examiners: at least one per non-rest station per circuit
        options: solver backend, time limit and model settings
        fixed: earlier assignments whose candidate placement must be kept
        slot_id / run_time: copied onto the produced assignments

    Raises:
        Infeasible: the supply cannot fill the slot or the solver proved
            (or failed to find within the time limit) no assignment.
        InternalConsistency: the solver returned a solution that breaks a
            structural invariant.
    """
    options = options or SolverOptions()
    slot_id = slot_id or (circuits[0].slot_id if circuits else "")
    context = {"slot_id": slot_id}

    if not circuits or not stations:
        logger.info("solver.slot.empty slot=%s circuits=%d stations=%d", slot_id, len(circuits), len(stations))
        return SlotSolution()

    _check_supply(circuits, stations, candidates, examiners, options.rest_station_title, context)

    t_model = time.monotonic()
    model = StationAllocationModel(
        circuits,
        stations,
        candidates,
        examiners,
        pair_variables=options.pair_variables,
        rest_station_title=options.rest_station_title,
    )
    if fixed:
        model.fix_candidates(fixed)
    model_elapsed = time.monotonic() - t_model

    start = time.time()
    solver = cp.SolverLookup.get(options.solver, model)
    found = solver.solve(**_solver_kwargs(options))
    solve_time = time.time() - start
    exit_status = solver.status().exitstatus

    logger.info(
        "solver.slot.solve slot=%s run_time=%s circuits=%d stations=%d candidates=%d examiners=%d "
        "model_sec=%.3f solve_sec=%.3f status=%s",
        slot_id,
        run_time.value if run_time else None,
        len(circuits),
        len(stations),
        len(candidates),
        len(examiners),
        model_elapsed,
        solve_time,
        exit_status.name,
    )

    if not found:
        raise Infeasible(
            "no assignment satisfies the hard constraints"
            if exit_status == ExitStatus.UNSATISFIABLE
            else "no assignment found within the time limit",
            status=exit_status.name.lower(),
            stage="solve",
            **context,
        )

    assignments = model.extract(slot_id, run_time)
    matches = satisfied_preferences(assignments, candidates)
    # without an objective any feasible layout is optimal
    optimal = exit_status == ExitStatus.OPTIMAL or model.preference_obj is None
    return SlotSolution(
        assignments=assignments,
        status="optimal" if optimal else "feasible",
        objective=len(matches),
        satisfied_preferences=matches,
        solve_time_sec=solve_time,
    )


__all__ = [
    "StationAllocationModel",
    "SlotSolution",
    "preference_weights",
    "satisfied_preferences",
    "solve_slot",
]

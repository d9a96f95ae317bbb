"""End-to-end allocation over an in-memory session."""

import pytest

from helpers import SESSION, candidate, examiner
from mockomatic.allocation import allocate_session
from mockomatic.analysis import detect_conflicts
from mockomatic.errors import AllocationError, CapacityExceeded
from mockomatic.models import Availability, RunTime

SETTINGS = {"time_limit_sec": 20, "solver_workers": 1}


def candidates_of(store, slot_id, run_time=None):
    rows = [r for r in store.get_allocations(slot_id) if run_time is None or r.run_time == run_time]
    return {cid for r in rows for cid in (r.candidate_1, r.candidate_2)}


def assert_no_conflicts(store):
    report = detect_conflicts(
        store.get_allocations(),
        store.get_candidates(SESSION),
        store.get_examiners(SESSION),
        store.get_circuits(SESSION),
        store.get_stations(SESSION),
    )
    assert report["num_conflicts"] == 0, report["conflicts"]


class TestSingleSlot:
    def test_odd_candidates_get_a_filler_and_extra_examiners_overflow(self, build_session):
        store = build_session(
            candidates=[candidate("A", partner_pref="B"), candidate("B", partner_pref="A"), candidate("C")],
            examiners=[examiner("E1"), examiner("E2"), examiner("E3")],
        )

        outcome = allocate_session(store, SESSION, "tester", SETTINGS)

        assert len(outcome.assignments) == 2
        assert len(outcome.filler_candidates) == 1
        assert outcome.filler_candidates[0].availability == Availability.am_only()
        assert outcome.filler_examiners == []
        assert outcome.slots[0].examiner_overflow == {"am": 1}
        assert outcome.objective == 2
        assert len(store.get_allocations("slot-am")) == 2
        history = store.get_history(outcome.batch_id)
        assert len(history) == 2
        assert {h.modified_by for h in history} == {"tester"}
        assert all(h.modified_at.tzinfo is not None for h in history)
        assert all(h.auto_gen for h in history)
        assert_no_conflicts(store)

    def test_female_circuit_gets_female_fillers(self, build_session):
        store = build_session(
            station_titles=("Examination",),
            slots=(("slot-am", (9,), ("A", "B"), ("A",)),),
            candidates=[candidate("F1", female_only=True), candidate("G1"), candidate("G2")],
            examiners=[examiner("EM")],
        )

        outcome = allocate_session(store, SESSION, "tester", SETTINGS)

        assert [c.female_only for c in outcome.filler_candidates] == [True]
        assert [e.female for e in outcome.filler_examiners] == [True]
        female_row = next(r for r in outcome.assignments if r.circuit_id == "slot-am-circuit-A")
        people = {c.id: c for c in store.get_candidates(SESSION)}
        assert people[female_row.candidate_1].female_only
        assert people[female_row.candidate_2].female_only
        assert_no_conflicts(store)

    def test_full_day_slot_solves_both_shifts_with_one_layout(self, build_session):
        store = build_session(
            station_titles=("Examination",),
            slots=(("slot-day", (9, 14), ("A",), ()),),
            candidates=[candidate("Z1"), candidate("Z2"), candidate("P1", availability="pm")],
            examiners=[examiner("E1", availability="am")],
        )

        outcome = allocate_session(store, SESSION, "tester", SETTINGS)

        assert len(outcome.assignments) == 2
        assert candidates_of(store, "slot-day", RunTime.AM) == {"cand-Z1", "cand-Z2"}
        assert candidates_of(store, "slot-day", RunTime.PM) == {"cand-Z1", "cand-Z2"}
        am_row = next(r for r in outcome.assignments if r.run_time == RunTime.AM)
        pm_row = next(r for r in outcome.assignments if r.run_time == RunTime.PM)
        assert am_row.examiner == "exam-E1"
        assert pm_row.examiner == outcome.filler_examiners[0].id
        assert outcome.filler_examiners[0].availability == Availability.pm_only()
        assert_no_conflicts(store)

    def test_rerun_reuses_earlier_fillers(self, build_session):
        store = build_session(
            candidates=[candidate("A"), candidate("B"), candidate("C")],
            examiners=[examiner("E1"), examiner("E2")],
        )
        allocate_session(store, SESSION, "tester", SETTINGS)
        second = allocate_session(store, SESSION, "tester", SETTINGS)

        assert second.filler_candidates == []
        assert len(store.get_allocations("slot-am")) == 2
        assert len(store.get_history()) == 4


class TestSeveralSlots:
    def test_fixed_availability_lands_in_its_half(self, build_session):
        store = build_session(
            station_titles=("Examination",),
            slots=(("slot-am", (9,), ("A",), ()), ("slot-pm", (14,), ("A",), ())),
            candidates=[
                candidate("X1", availability="am"),
                candidate("Y1", availability="pm"),
                candidate("Z1"),
                candidate("Z2"),
            ],
            examiners=[examiner("E1")],
        )

        outcome = allocate_session(store, SESSION, "tester", SETTINGS)

        assert outcome.filler_candidates == []
        assert outcome.filler_examiners == []
        assert candidates_of(store, "slot-am") == {"cand-X1", "cand-Z1"}
        assert candidates_of(store, "slot-pm") == {"cand-Y1", "cand-Z2"}
        assert {r.examiner for r in outcome.assignments} == {"exam-E1"}
        assert_no_conflicts(store)

    def test_examiners_are_not_reused_within_a_half(self, build_session):
        store = build_session(
            station_titles=("Examination",),
            slots=(
                ("slot-am", (9,), ("A",), ()),
                ("slot-day", (10, 14), ("A",), ()),
                ("slot-pm", (15,), ("A",), ()),
            ),
            candidates=[candidate(f"Z{i}") for i in range(6)],
            examiners=[examiner("E1")],
        )

        outcome = allocate_session(store, SESSION, "tester", SETTINGS)

        assert [len(slot.assignments) for slot in outcome.slots] == [1, 2, 1]
        assert len(outcome.filler_examiners) == 2
        assert len(candidates_of(store, "slot-day")) == 2
        assert_no_conflicts(store)

    def test_flexible_people_follow_seat_capacity_of_each_half(self, build_session):
        store = build_session(
            station_titles=("Examination",),
            slots=(("slot-am", (9,), ("A",), ()), ("slot-pm", (14,), ("A", "B", "C"), ())),
            candidates=[candidate(f"Z{i}") for i in range(8)],
            examiners=[examiner(f"E{i}") for i in range(4)],
        )

        outcome = allocate_session(store, SESSION, "tester", SETTINGS)

        assert outcome.filler_candidates == []
        assert len(candidates_of(store, "slot-am")) == 2
        assert len(candidates_of(store, "slot-pm")) == 6
        assert_no_conflicts(store)

    def test_female_circuit_in_one_half_only(self, build_session):
        store = build_session(
            station_titles=("Examination",),
            slots=(("slot-am", (9,), ("A",), ()), ("slot-pm", (14,), ("A",), ("A",))),
            candidates=[
                candidate("F1", female_only=True),
                candidate("F2", female_only=True),
                candidate("G1"),
                candidate("G2"),
            ],
            examiners=[examiner("EF", female=True), examiner("EM")],
        )

        outcome = allocate_session(store, SESSION, "tester", SETTINGS)

        assert outcome.filler_candidates == []
        assert candidates_of(store, "slot-am") == {"cand-G1", "cand-G2"}
        assert candidates_of(store, "slot-pm") == {"cand-F1", "cand-F2"}
        assert_no_conflicts(store)

    def test_more_flexible_people_than_seats(self, build_session):
        store = build_session(
            station_titles=("Examination",),
            slots=(("slot-am", (9,), ("A",), ()), ("slot-pm", (14,), ("A",), ())),
            candidates=[candidate(f"Z{i}") for i in range(6)],
            examiners=[examiner("E1")],
        )

        with pytest.raises(CapacityExceeded) as excinfo:
            allocate_session(store, SESSION, "tester", SETTINGS)
        assert excinfo.value.stage == "candidates"
        assert excinfo.value.bucket in ("am", "pm")
        assert store.get_allocations() == []

    def test_half_day_candidates_without_their_half(self, build_session):
        store = build_session(
            station_titles=("Examination",),
            slots=(("slot-am", (9,), ("A",), ()), ("slot-am2", (10,), ("A",), ())),
            candidates=[candidate("Y1", availability="pm"), candidate("Y2", availability="pm")],
            examiners=[examiner("E1"), examiner("E2")],
        )

        with pytest.raises(CapacityExceeded) as excinfo:
            allocate_session(store, SESSION, "tester", SETTINGS)
        assert excinfo.value.stage == "candidates"
        assert excinfo.value.bucket == "pm"


class TestFailures:
    def test_failed_rerun_keeps_previous_allocations(self, build_session):
        store = build_session(
            candidates=[candidate(c) for c in "ABCD"],
            examiners=[examiner("E1"), examiner("E2")],
        )
        first = allocate_session(store, SESSION, "tester", SETTINGS)
        before = sorted(store.get_allocations(), key=lambda r: r.station_id)

        store.add_candidate(candidate("E"))
        with pytest.raises(CapacityExceeded) as excinfo:
            allocate_session(store, SESSION, "tester", SETTINGS)

        assert excinfo.value.slot_id == "slot-am"
        assert sorted(store.get_allocations(), key=lambda r: r.station_id) == before
        assert {h.batch_id for h in store.get_history()} == {first.batch_id}
        assert len(store.get_candidates(SESSION)) == 5

    def test_slot_without_runs(self, build_session):
        store = build_session(slots=(("slot-empty", (), ("A",), ()),))
        with pytest.raises(AllocationError) as excinfo:
            allocate_session(store, SESSION, "tester", SETTINGS)
        assert excinfo.value.stage == "load"
        assert excinfo.value.slot_id == "slot-empty"

    def test_session_without_slots(self, store):
        with pytest.raises(AllocationError):
            allocate_session(store, SESSION, "tester", SETTINGS)

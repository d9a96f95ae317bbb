import pytest

from helpers import SESSION, circuits, slot, stations
from mockomatic.store import InMemoryStore


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def build_session(store):
    """Fill the store with one session: stations, slots with circuits, people."""

    def _build(
        station_titles=("History", "Examination"),
        slots=(("slot-am", (9,), ("A",), ()),),
        candidates=(),
        examiners=(),
        session_id=SESSION,
    ):
        for station in stations(*station_titles, session_id=session_id):
            store.add_station(station)
        for slot_id, hours, keys, female_keys in slots:
            store.add_slot(slot(slot_id, *hours, session_id=session_id))
            for circuit in circuits(slot_id, *keys, female_keys=female_keys, session_id=session_id):
                store.add_circuit(circuit)
        for person in candidates:
            store.add_candidate(person)
        for person in examiners:
            store.add_examiner(person)
        return store

    return _build

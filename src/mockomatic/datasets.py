"""Session directory loading and allocation export."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd

from .config import str_to_bool
from .models import Availability, Candidate, Circuit, Examiner, Run, Slot, Station
from .store import InMemoryStore

CANDIDATE_COLUMNS = ["session_id", "shortcode", "am", "pm"]
CANDIDATE_OPTIONAL_COLUMNS = ["id", "first_name", "last_name", "female_only", "partner_pref", "checked_in"]

EXAMINER_COLUMNS = ["session_id", "shortcode", "am", "pm"]
EXAMINER_OPTIONAL_COLUMNS = ["id", "first_name", "last_name", "female", "checked_in"]

STATION_COLUMNS = ["session_id", "title", "index"]

SLOT_KEY = "slots"


def read_csv(path: Path, required_headers: List[str], optional_headers: Optional[List[str]] = None) -> pd.DataFrame:
    if not path.exists():
        raise FileNotFoundError(f"Missing file {path.name}")
    df = pd.read_csv(path, dtype=str, keep_default_na=False)
    missing = [col for col in required_headers if col not in df.columns]
    if missing:
        raise ValueError(f"Missing required columns in {path.name}: {missing}")
    for opt in optional_headers or []:
        if opt not in df.columns:
            df[opt] = ""
    return df


def read_json(path: Path, required_keys: List[str]) -> Dict:
    if not path.exists():
        raise FileNotFoundError(f"Missing file {path.name}")
    data = json.loads(path.read_text(encoding="utf-8"))
    for key in required_keys:
        if key not in data:
            raise ValueError(f"Missing key '{key}' in {path.name}")
    return data


def _optional(value: str) -> Optional[str]:
    value = (value or "").strip()
    return value or None


def _with_id(row: Dict[str, str]) -> Dict[str, str]:
    if not _optional(row.get("id", "")):
        row.pop("id", None)
    return row


def load_session_dir(session_dir, store: Optional[InMemoryStore] = None) -> InMemoryStore:
    """Load ``candidates.csv``, ``examiners.csv``, ``stations.csv`` and ``slots.json``."""
    session_dir = Path(session_dir)
    store = store or InMemoryStore()

    stations = read_csv(session_dir / "stations.csv", STATION_COLUMNS, ["id"])
    for row in stations.to_dict(orient="records"):
        row = _with_id(row)
        store.add_station(Station(**{**row, "index": int(row["index"])}))

    slots = read_json(session_dir / "slots.json", [SLOT_KEY])
    for raw in slots[SLOT_KEY]:
        slot = Slot(
            session_id=raw["session_id"],
            slot_time=raw.get("slot_time", ""),
            **({"id": raw["id"]} if raw.get("id") else {}),
        )
        slot.runs = [Run(slot_id=slot.id, **run) for run in raw.get("runs", [])]
        store.add_slot(slot)
        for circuit in raw.get("circuits", []):
            if isinstance(circuit, str):
                circuit = {"key": circuit}
            store.add_circuit(Circuit(session_id=slot.session_id, slot_id=slot.id, **circuit))

    candidates = read_csv(session_dir / "candidates.csv", CANDIDATE_COLUMNS, CANDIDATE_OPTIONAL_COLUMNS)
    for row in candidates.to_dict(orient="records"):
        row = _with_id(row)
        store.add_candidate(
            Candidate(
                **{k: v for k, v in row.items() if k in ("id", "session_id", "shortcode", "first_name", "last_name")},
                female_only=str_to_bool(row["female_only"]),
                partner_pref=_optional(row["partner_pref"]),
                availability=Availability(am=str_to_bool(row["am"]), pm=str_to_bool(row["pm"])),
                checked_in=str_to_bool(row["checked_in"]),
            )
        )

    examiners = read_csv(session_dir / "examiners.csv", EXAMINER_COLUMNS, EXAMINER_OPTIONAL_COLUMNS)
    for row in examiners.to_dict(orient="records"):
        row = _with_id(row)
        store.add_examiner(
            Examiner(
                **{k: v for k, v in row.items() if k in ("id", "session_id", "shortcode", "first_name", "last_name")},
                female=str_to_bool(row["female"]),
                availability=Availability(am=str_to_bool(row["am"]), pm=str_to_bool(row["pm"])),
                checked_in=str_to_bool(row["checked_in"]),
            )
        )
    return store


# -----------------------------------------------------------------------------
# Export
# -----------------------------------------------------------------------------

def allocations_frame(store: InMemoryStore, session_id: str) -> pd.DataFrame:
    candidates = {c.id: c for c in store.get_candidates(session_id)}
    examiners = {e.id: e for e in store.get_examiners(session_id)}
    stations = {s.id: s for s in store.get_stations(session_id)}
    circuits = {c.id: c for c in store.get_circuits(session_id)}
    slots = {s.id: s for s in store.get_slots(session_id)}

    rows = []
    for slot_id, slot in slots.items():
        for row in store.get_allocations(slot_id):
            station = stations.get(row.station_id)
            examiner = examiners.get(row.examiner) if row.examiner else None
            rows.append(
                {
                    "slot_time": slot.slot_time,
                    "run_time": row.run_time.value if row.run_time else "",
                    "circuit": circuits[row.circuit_id].key if row.circuit_id in circuits else row.circuit_id,
                    "station_index": station.index if station else None,
                    "station": station.title if station else row.station_id,
                    "candidate_1": candidates[row.candidate_1].shortcode,
                    "candidate_2": candidates[row.candidate_2].shortcode,
                    "examiner": examiner.shortcode if examiner else "",
                }
            )
    columns = ["slot_time", "run_time", "circuit", "station_index", "station", "candidate_1", "candidate_2", "examiner"]
    df = pd.DataFrame(rows, columns=columns)
    if not df.empty:
        df = df.sort_values(["slot_time", "run_time", "circuit", "station_index"]).reset_index(drop=True)
    return df


def history_frame(store: InMemoryStore, batch_id: Optional[str] = None) -> pd.DataFrame:
    rows = [h.model_dump(mode="json") for h in store.get_history(batch_id)]
    return pd.DataFrame(rows)


def fillers_frame(store: InMemoryStore, session_id: str) -> pd.DataFrame:
    candidates, examiners = store.fillers(session_id)
    rows = [
        {
            "role": "candidate",
            "id": c.id,
            "shortcode": c.shortcode,
            "female": c.female_only,
            "am": c.availability.am,
            "pm": c.availability.pm,
        }
        for c in candidates
    ] + [
        {
            "role": "examiner",
            "id": e.id,
            "shortcode": e.shortcode,
            "female": e.female,
            "am": e.availability.am,
            "pm": e.availability.pm,
        }
        for e in examiners
    ]
    return pd.DataFrame(rows, columns=["role", "id", "shortcode", "female", "am", "pm"])


def output_csv(store: InMemoryStore, session_id: str, output_folder, batch_id: Optional[str] = None) -> List[Path]:
    output_folder = Path(output_folder)
    written = []
    for name, df in (
        ("allocations.csv", allocations_frame(store, session_id)),
        ("history.csv", history_frame(store, batch_id)),
        ("fillers.csv", fillers_frame(store, session_id)),
    ):
        path = output_folder / name
        df.to_csv(path, index=False)
        written.append(path)
    return written


__all__ = [
    "load_session_dir",
    "read_csv",
    "read_json",
    "allocations_frame",
    "history_frame",
    "fillers_frame",
    "output_csv",
]

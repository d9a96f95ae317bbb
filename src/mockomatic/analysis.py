from __future__ import annotations

from collections import defaultdict
from typing import Dict, List, Optional, Sequence

from .models import Assignment, Candidate, Circuit, Examiner, RunTime, Station


def detect_conflicts(
    assignments: Sequence[Assignment],
    candidates: Sequence[Candidate],
    examiners: Sequence[Examiner],
    circuits: Sequence[Circuit],
    stations: Optional[Sequence[Station]] = None,
    rest_title: str = "rest",
) -> Dict:
    """Check written allocations against the hard rules.

    A candidate or examiner may appear once per half of the day, female-only
    circuits only hold female-only candidates and female examiners, and rest
    stations carry no examiner.
    """
    conflicts = []
    cand_by_id = {c.id: c for c in candidates}
    exam_by_id = {e.id: e for e in examiners}
    circuit_by_id = {c.id: c for c in circuits}
    rest_ids = {s.id for s in stations or [] if s.is_rest(rest_title)}

    seated = defaultdict(list)
    staffed = defaultdict(list)
    for row in assignments:
        half = row.run_time.value if isinstance(row.run_time, RunTime) else row.run_time
        for cid in (row.candidate_1, row.candidate_2):
            seated[(cid, half)].append(row)
        if row.examiner:
            staffed[(row.examiner, half)].append(row)

        circuit = circuit_by_id.get(row.circuit_id)
        if circuit is not None and circuit.female_only:
            for cid in (row.candidate_1, row.candidate_2):
                cand = cand_by_id.get(cid)
                if cand is not None and not cand.female_only:
                    conflicts.append(
                        {
                            "participant_id": cid,
                            "conflict_type": "gender_containment",
                            "description": f"Candidate {cand.shortcode} seated in female-only circuit {circuit.key}",
                            "affected_entities": [row.circuit_id, row.station_id],
                        }
                    )
            examiner = exam_by_id.get(row.examiner) if row.examiner else None
            if examiner is not None and not examiner.female:
                conflicts.append(
                    {
                        "participant_id": row.examiner,
                        "conflict_type": "gender_containment",
                        "description": f"Examiner {examiner.shortcode} staffs female-only circuit {circuit.key}",
                        "affected_entities": [row.circuit_id, row.station_id],
                    }
                )

        if row.station_id in rest_ids and row.examiner:
            conflicts.append(
                {
                    "participant_id": row.examiner,
                    "conflict_type": "rest_station_examiner",
                    "description": "Rest station has an examiner",
                    "affected_entities": [row.circuit_id, row.station_id],
                }
            )
        if stations is not None and row.station_id not in rest_ids and not row.examiner:
            conflicts.append(
                {
                    "participant_id": None,
                    "conflict_type": "missing_examiner",
                    "description": "Station has no examiner",
                    "affected_entities": [row.circuit_id, row.station_id],
                }
            )
        if row.candidate_1 == row.candidate_2:
            conflicts.append(
                {
                    "participant_id": row.candidate_1,
                    "conflict_type": "unsaturated_station",
                    "description": "Station holds the same candidate twice",
                    "affected_entities": [row.circuit_id, row.station_id],
                }
            )

    for kind, index in (("candidate", seated), ("examiner", staffed)):
        for (pid, half), rows in index.items():
            if len(rows) > 1:
                conflicts.append(
                    {
                        "participant_id": pid,
                        "conflict_type": "double_booking",
                        "description": f"{kind.capitalize()} {pid} placed {len(rows)} times in {half}",
                        "affected_entities": [r.station_id for r in rows],
                    }
                )
    return {"conflicts": conflicts, "num_conflicts": len(conflicts)}


def summarize(
    assignments: Sequence[Assignment],
    candidates: Sequence[Candidate],
    examiners: Sequence[Examiner],
) -> Dict:
    cand_by_id = {c.id: c for c in candidates}
    matched: List[List[str]] = []
    seen = set()
    for row in assignments:
        # full-day slots repeat the candidate layout for the PM shift
        pair_key = (row.slot_id, row.circuit_id, row.station_id, row.candidate_1, row.candidate_2)
        if pair_key in seen:
            continue
        seen.add(pair_key)
        first, second = cand_by_id.get(row.candidate_1), cand_by_id.get(row.candidate_2)
        if first is None or second is None:
            continue
        if first.partner_pref and first.partner_pref == second.shortcode:
            matched.append([first.shortcode, second.shortcode])
        if second.partner_pref and second.partner_pref == first.shortcode:
            matched.append([second.shortcode, first.shortcode])

    requested = sum(1 for c in candidates if c.partner_pref and not c.filler)
    return {
        "rows": len(assignments),
        "candidates": sum(1 for c in candidates if not c.filler),
        "examiners": sum(1 for e in examiners if not e.filler),
        "filler_candidates": sum(1 for c in candidates if c.filler),
        "filler_examiners": sum(1 for e in examiners if e.filler),
        "preferences_requested": requested,
        "preferences_satisfied": len(matched),
        "satisfied_pairs": matched,
    }


__all__ = ["detect_conflicts", "summarize"]

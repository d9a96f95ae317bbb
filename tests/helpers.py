import json
from datetime import datetime

from mockomatic.models import Availability, Candidate, Circuit, Examiner, Run, Slot, Station

SESSION = "session-1"

AVAILABILITY = {
    "any": Availability.any(),
    "am": Availability.am_only(),
    "pm": Availability.pm_only(),
}


def candidate(shortcode, female_only=False, partner_pref=None, availability="any", session_id=SESSION):
    return Candidate(
        id=f"cand-{shortcode}",
        session_id=session_id,
        first_name=shortcode,
        shortcode=shortcode,
        female_only=female_only,
        partner_pref=partner_pref,
        availability=AVAILABILITY[availability],
    )


def examiner(shortcode, female=False, availability="any", session_id=SESSION):
    return Examiner(
        id=f"exam-{shortcode}",
        session_id=session_id,
        first_name=shortcode,
        shortcode=shortcode,
        female=female,
        availability=AVAILABILITY[availability],
    )


def stations(*titles, session_id=SESSION):
    return [
        Station(id=f"{session_id}-station-{i}", session_id=session_id, title=title, index=i)
        for i, title in enumerate(titles, start=1)
    ]


def slot(slot_id, *hours, session_id=SESSION, slot_time=None):
    runs = [
        Run(
            slot_id=slot_id,
            scheduled_start=datetime(2024, 3, 4, hour, 0),
            scheduled_end=datetime(2024, 3, 4, hour, 50),
        )
        for hour in hours
    ]
    return Slot(id=slot_id, session_id=session_id, slot_time=slot_time or slot_id, runs=runs)


def circuits(slot_id, *keys, female_keys=(), session_id=SESSION):
    return [
        Circuit(
            id=f"{slot_id}-circuit-{key}",
            session_id=session_id,
            slot_id=slot_id,
            key=key,
            female_only=key in female_keys,
        )
        for key in keys
    ]


def write_session_dir(folder, candidates=("A", "B", "C", "D"), examiners=("E1", "E2"), sessions=(SESSION,)):
    """Write one AM slot per session in the on-disk format ``load_session_dir`` reads."""
    folder.mkdir(parents=True, exist_ok=True)
    stations, slots = ["session_id,title,index"], []
    people = ["session_id,shortcode,first_name,female_only,partner_pref,am,pm"]
    staff = ["session_id,shortcode,female,am,pm"]
    for n, session_id in enumerate(sessions):
        stations += [f"{session_id},History,1", f"{session_id},Examination,2"]
        slots.append(
            {
                "id": "slot-am" if n == 0 else f"slot-am-{n}",
                "session_id": session_id,
                "slot_time": "09:00",
                "runs": [{"scheduled_start": "2024-03-04T09:00:00", "scheduled_end": "2024-03-04T09:50:00"}],
                "circuits": ["A"],
            }
        )
        people += [f"{session_id},{code},{code},false,,true,true" for code in candidates]
        staff += [f"{session_id},{code},no,yes,yes" for code in examiners]
    (folder / "stations.csv").write_text("\n".join(stations) + "\n")
    (folder / "slots.json").write_text(json.dumps({"slots": slots}))
    (folder / "candidates.csv").write_text("\n".join(people) + "\n")
    (folder / "examiners.csv").write_text("\n".join(staff) + "\n")
    return folder

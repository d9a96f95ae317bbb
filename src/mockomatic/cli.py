from __future__ import annotations

import datetime
import json
import logging
import os
import sys

import yaml

from .analysis import summarize
from .config import get_settings
from .datasets import load_session_dir, output_csv
from .tasks import AllocationRunManager

logger = logging.getLogger("mockomatic")


def create_run_folder(base="data/output"):
    run_id = datetime.datetime.now().strftime("%Y%m%d_%H%M%S_%f")
    folder_path = os.path.join(base, run_id)
    os.makedirs(folder_path, exist_ok=True)
    return folder_path, run_id


def _session_assignments(store, session_id):
    return [row for slot in store.get_slots(session_id) for row in store.get_allocations(slot.id)]


def save_summary(result, store, session_id, output_folder):
    summary = dict(result)
    summary.update(
        summarize(
            _session_assignments(store, session_id),
            store.get_candidates(session_id),
            store.get_examiners(session_id),
        )
    )
    with open(f"{output_folder}/summary.json", "w") as f:
        json.dump(summary, f, indent=2)
    return summary


def run_sessions(store, session_ids, modified_by, cfg):
    """Allocate every session on the run manager and wait for all of them."""
    manager = AllocationRunManager(store, max_workers=cfg["max_workers"])
    try:
        runs = [manager.submit(session_id, modified_by, cfg) for session_id in session_ids]
        return [manager.wait(run.id) for run in runs]
    finally:
        manager.shutdown()


def main(argv=None):
    cfg, args = get_settings(argv)
    logging.basicConfig(
        level=getattr(logging, str(cfg["log_level"]).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    store = load_session_dir(args.session_dir)
    session_ids = [args.session_id] if args.session_id else store.session_ids()
    if not session_ids:
        raise ValueError(f"No sessions found in {args.session_dir}")

    output_folder, run_id = create_run_folder(base=cfg["output_dir"])
    logger.info("cli.run.start run_id=%s sessions=%s output=%s", run_id, session_ids, output_folder)
    with open(os.path.join(output_folder, "config_resolved.yaml"), "w") as f:
        yaml.safe_dump(cfg, f, sort_keys=True)

    exit_code = 0
    for record in run_sessions(store, session_ids, args.user, cfg):
        # several sessions each get their own sub folder
        folder = output_folder
        if len(session_ids) > 1:
            folder = os.path.join(output_folder, record.session_id)
            os.makedirs(folder, exist_ok=True)

        if record.status != "succeeded":
            with open(os.path.join(folder, "error.json"), "w") as f:
                json.dump(record.error, f, indent=2)
            where = ", ".join(f"{k}={record.error[k]}" for k in ("stage", "bucket", "slot_id") if record.error.get(k))
            print(f"Allocation failed for {record.session_id}: {record.error['message']} ({where})", file=sys.stderr)
            exit_code = 1
            continue

        output_csv(store, record.session_id, folder, batch_id=record.result["batch_id"])
        summary = save_summary(record.result, store, record.session_id, folder)
        print(
            f"Session {record.session_id} (run {run_id}): "
            f"Allocated {summary['rows']} stations, "
            f"{summary['preferences_satisfied']} partner preferences satisfied, "
            f"{summary['filler_candidates']} filler candidates, {summary['filler_examiners']} filler examiners.\n"
            f"Output: {folder}"
        )
    return exit_code


if __name__ == "__main__":
    sys.exit(main())

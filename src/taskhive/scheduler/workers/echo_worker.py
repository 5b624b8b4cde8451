"""Local demo worker for command-worker integration tests and CLI demos."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from taskhive.scheduler.mission import read_mission_payload, write_json

BLOCK_MARKER = "[blocked]"
FAIL_MARKER = "[fail]"


def main(argv: list[str] | None = None) -> int:
    """Answer the mission deterministically from its objective."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--mission", required=True)
    parser.add_argument("--result", required=True)
    args = parser.parse_args(argv)

    mission = read_mission_payload(Path(args.mission))
    objective = mission["objective"].strip()
    lowered = objective.lower()
    if FAIL_MARKER in lowered:
        sys.stderr.write("temporarily unavailable: echo worker asked to fail\n")
        return 1
    if BLOCK_MARKER in lowered:
        payload = {"status": "BLOCKED", "reason": f"echo worker refused: {objective}"}
    else:
        payload = {
            "status": "COMPLETE",
            "files_touched": list(mission.get("deliverables", [])),
            "decisions": [
                {"decision": f"echoed {mission['task_id']}", "rationale": "demo worker"},
            ],
            "rationale": f"echo: {objective}",
        }
    write_json(Path(args.result), payload)
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())

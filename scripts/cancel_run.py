#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from taskpulse.runtime.errors import RunError  # noqa: E402
from taskpulse.runtime.lifecycle import RunLifecycle  # noqa: E402
from taskpulse.runtime.projection import project_run  # noqa: E402
from taskpulse.storage.sqlite_store import SQLiteStore  # noqa: E402


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Cancel a queued or executing run (SQLite-backed).")
    p.add_argument("--project", required=True, help="Project the run belongs to.")
    p.add_argument("--run-id", required=True, help="Run id to cancel (e.g. run_<hex>).")
    p.add_argument("--db-path", default="", help="SQLite path (default: env TASKPULSE_SQLITE_PATH or data/taskpulse.db).")
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv if argv is not None else sys.argv[1:])
    store = SQLiteStore(args.db_path or None)
    try:
        try:
            run = RunLifecycle(store).cancel(str(args.project), str(args.run_id))
        except RunError as e:
            print(f"{e.code}: {e.message}", file=sys.stderr)
            return 1
        print(json.dumps(project_run(run), ensure_ascii=False, indent=2))
        return 0
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())

#!/usr/bin/env python3
"""Print a run's event stream to stdout, exactly as the SSE endpoint would send it."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from taskpulse.config.load_config import load_app_config  # noqa: E402
from taskpulse.runtime.errors import RunError  # noqa: E402
from taskpulse.runtime.streaming import RunEventStream, RunSnapshot  # noqa: E402
from taskpulse.storage.sqlite_store import SQLiteStore  # noqa: E402


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Replay a run's logs as server-sent events.")
    p.add_argument("--project", required=True, help="Project the run belongs to.")
    p.add_argument("--run-id", required=True, help="Run id to replay.")
    p.add_argument("--db-path", default="", help="SQLite path (default: env TASKPULSE_SQLITE_PATH or data/taskpulse.db).")
    p.add_argument("--config", default="", help="Config TOML (default: env TASKPULSE_CONFIG_PATH or config/default.toml).")
    return p.parse_args(argv)


async def _tail(stream: RunEventStream) -> None:
    async for chunk in stream.encoded():
        sys.stdout.write(chunk)
        sys.stdout.flush()


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv if argv is not None else sys.argv[1:])
    config = load_app_config(Path(args.config) if args.config else None)

    store = SQLiteStore(args.db_path or None)
    try:
        snapshot = RunSnapshot.load(store, project=str(args.project), run_id=str(args.run_id))
    except RunError as e:
        print(f"{e.code}: {e.message}", file=sys.stderr)
        return 1
    finally:
        store.close()

    try:
        asyncio.run(_tail(RunEventStream(snapshot, config.stream)))
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

#!/usr/bin/env python3
from __future__ import annotations

import os
import sys
from pathlib import Path

import uvicorn


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))


def main() -> int:
    host = os.getenv("TASKPULSE_HOST", "127.0.0.1")
    port = int(os.getenv("TASKPULSE_PORT", "8000"))
    reload = os.getenv("TASKPULSE_RELOAD", "1").strip().lower() in {"1", "true", "yes", "y", "on"}

    uvicorn.run(
        "taskpulse.api.app:app",
        host=host,
        port=port,
        reload=reload,
        log_level=os.getenv("TASKPULSE_LOG_LEVEL", "info").lower(),
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

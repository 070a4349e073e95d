"""HTTP API layer (FastAPI).

A small, versioned `/api/v1` surface over the run engine:
- register and list tasks per project
- trigger, list, inspect, cancel and retry runs
- stream a run's logs as server-sent events

The API is thin: behavior lives in `taskpulse.runtime` and `taskpulse.storage`.
"""

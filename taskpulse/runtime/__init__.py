"""Run engine: timeline simulation, attempt accounting, lifecycle and streaming.

This layer is independent from the HTTP layer (`taskpulse.api`), so the API,
the background worker and the CLI scripts share the same logic.
"""

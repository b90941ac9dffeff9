"""HTTP API layer (FastAPI).

This module exposes a small, versioned `/api/v1` surface for the board UI:
- create/list/move tickets
- launch agent runs (NDJSON stage stream) and advance them in bounded slices
- deliver board signals and persist per-project agent status

The API is intentionally thin: core behavior lives in `src/workflow`, `src/runtime` and `src/storage`.
"""

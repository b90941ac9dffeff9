"""Runtime orchestration (agent runs, completion, signals, background worker).

This layer is responsible for:
- submitting work to the agent service and polling it within a time budget
- applying completion side effects exactly once
- delivering board signals to the state machine

It should remain independent from the HTTP layer (`src/api`), so both CLI and API
can reuse the same execution logic.
"""

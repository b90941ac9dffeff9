from __future__ import annotations

import logging
import os


_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Root logging setup for the API server and the CLI.

    Level comes from the argument, else TICKETFLOW_LOG_LEVEL, else INFO. No-op when
    the host (uvicorn, pytest) already installed handlers.
    """
    name = (level or os.getenv("TICKETFLOW_LOG_LEVEL") or "INFO").strip().upper()
    resolved = logging.getLevelName(name)
    if not isinstance(resolved, int):
        resolved = logging.INFO
    logging.basicConfig(level=resolved, format=_FORMAT)
    logging.getLogger("src").setLevel(resolved)

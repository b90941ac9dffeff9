#!/usr/bin/env python3
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "y", "on"}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Serve the ticketflow API with uvicorn.")
    parser.add_argument("--host", default=os.getenv("TICKETFLOW_HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("TICKETFLOW_PORT", "8000")))
    parser.add_argument("--no-reload", action="store_true", help="Disable auto-reload (env TICKETFLOW_RELOAD).")
    args = parser.parse_args(argv if argv is not None else sys.argv[1:])

    try:
        import uvicorn  # type: ignore
    except Exception as e:
        print("Missing dependency: uvicorn. Install it in your runtime environment.", file=sys.stderr)
        print(str(e), file=sys.stderr)
        return 1

    uvicorn.run(
        "src.api.app:app",
        host=args.host,
        port=int(args.port),
        reload=_env_bool("TICKETFLOW_RELOAD", "1") and not args.no_reload,
        log_level=os.getenv("TICKETFLOW_LOG_LEVEL", "info").lower(),
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

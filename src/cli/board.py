from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from typing import Any

from src.config.load_config import ConfigError, default_config_path, load_app_config
from src.providers.cloud_agent import CloudAgentClient
from src.runtime.coordinator import LaunchRequest, RunCoordinator
from src.runtime.stage_events import StageEvent
from src.storage.sqlite_store import SQLiteStore
from src.utils.logging_setup import configure_logging
from src.workflow.errors import WorkflowError
from src.workflow.state_machine import StateMachine
from src.workflow.tickets import create_work_item


_logger = logging.getLogger(__name__)


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="ticketflow board CLI (tickets and agent runs).")
    parser.add_argument("--db-path", default="", help="SQLite path (default: env TICKETFLOW_SQLITE_PATH or data/ticketflow.db).")
    parser.add_argument("--config", default="", help="Config TOML (default: env TICKETFLOW_CONFIG_PATH or config/default.toml).")
    parser.add_argument("--log-level", default="", help="Override TICKETFLOW_LOG_LEVEL.")
    sub = parser.add_subparsers(dest="command", required=True)

    p_create = sub.add_parser("create", help="Create a ticket.")
    p_create.add_argument("--title", required=True)
    p_create.add_argument("--body", default="", help="Markdown body, or @path to read it from a file.")
    p_create.add_argument("--repo", default="")
    p_create.add_argument("--column", default="", help="Column id (default: board default column).")

    p_list = sub.add_parser("list", help="List tickets.")
    p_list.add_argument("--column", default="")

    p_move = sub.add_parser("move", help="Move a ticket (guarded).")
    p_move.add_argument("item_id")
    p_move.add_argument("column")
    p_move.add_argument("--trigger", default="manual")

    p_launch = sub.add_parser("launch", help="Launch an agent run and follow it until done.")
    p_launch.add_argument("item_id")
    p_launch.add_argument("--agent", default="implementation")
    p_launch.add_argument("--instruction", default="")
    p_launch.add_argument("--budget-ms", type=int, default=0)
    p_launch.add_argument("--no-follow", action="store_true", help="Return after the first budget slice.")

    p_advance = sub.add_parser("advance", help="Advance an existing run by one budget slice.")
    p_advance.add_argument("run_id")
    p_advance.add_argument("--budget-ms", type=int, default=0)

    return parser.parse_args(argv)


def _print_event(event: StageEvent) -> None:
    detail = f" ({event.detail})" if event.detail else ""
    print(f"[{event.seq:>3}] {event.stage.value}{detail}", flush=True)


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2))


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv or sys.argv[1:])
    configure_logging(args.log_level or None)

    try:
        cfg = load_app_config(Path(args.config).expanduser().resolve() if args.config else default_config_path())
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2

    store = SQLiteStore(args.db_path or None)
    try:
        if args.command == "create":
            body = args.body
            if body.startswith("@"):
                body = Path(body[1:]).read_text(encoding="utf-8")
            record = create_work_item(
                store, cfg, title=args.title, body=body, repo=args.repo, column_id=args.column or None
            )
            print(f"{record.display_id}\t{record.column_id}\t{record.title}")
            return 0

        if args.command == "list":
            for it in store.list_work_items(column_id=args.column or None):
                print(f"{it['display_id']}\t{it['column_id']}\t{it['position']}\t{it['title']}")
            return 0

        if args.command == "move":
            row = store.find_work_item(args.item_id)
            item_id = str(row["item_id"]) if row is not None else args.item_id
            result = StateMachine(store, cfg.board).move_work_item(item_id, args.column, args.trigger)
            _print_json(result.to_dict())
            return 0

        coordinator = RunCoordinator(store, cfg, CloudAgentClient(cfg.service))
        if args.command == "launch":
            result = coordinator.launch(
                LaunchRequest(item_id=args.item_id, agent_kind=args.agent, instruction=args.instruction, caller="cli"),
                budget_ms=args.budget_ms or None,
                listener=_print_event,
            )
            while not result.done and not args.no_follow:
                time.sleep(cfg.coordinator.poll_interval_s)
                result = coordinator.advance(
                    str(result.run["run_id"]), budget_ms=args.budget_ms or None, listener=_print_event
                )
        else:
            result = coordinator.advance(args.run_id, budget_ms=args.budget_ms or None, listener=_print_event)
        _print_json(result.to_dict())
        return 1 if result.error else 0
    except WorkflowError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        _logger.info("interrupted; the run keeps its state and can be advanced later")
        return 130
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())

from __future__ import annotations

import json
from pathlib import Path

import pytest

from src.cli.board import main


def test_create_list_move(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    db = str(tmp_path / "cli.db")
    body_file = tmp_path / "body.md"
    body_file.write_text("## Goal\n\nFooter.\n", encoding="utf-8")

    assert main(["--db-path", db, "create", "--title", "Footer", "--repo", "acme/hal", "--body", f"@{body_file}"]) == 0
    assert capsys.readouterr().out.strip() == "HAL-0001\tcol-unassigned\tFooter"

    assert main(["--db-path", db, "move", "HAL-0001", "col-todo"]) == 0
    moved = json.loads(capsys.readouterr().out)
    assert moved["moved"] is True
    assert moved["column_id"] == "col-todo"

    assert main(["--db-path", db, "list", "--column", "col-todo"]) == 0
    assert capsys.readouterr().out.strip() == "HAL-0001\tcol-todo\t0\tFooter"


def test_errors_exit_non_zero(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    db = str(tmp_path / "cli.db")
    assert main(["--db-path", db, "move", "0042", "col-todo"]) == 1
    assert "Work item not found" in capsys.readouterr().err

    monkeypatch.delenv("TICKETFLOW_AGENT_API_KEY", raising=False)
    main(["--db-path", db, "create", "--title", "Footer", "--repo", "acme/hal"])
    assert main(["--db-path", db, "launch", "0001"]) == 1
    assert "API key is not set" in capsys.readouterr().err

    assert main(["--db-path", db, "--config", str(tmp_path / "missing.toml"), "list"]) == 2

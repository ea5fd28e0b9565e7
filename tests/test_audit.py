from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any

from codex_router.audit import JsonlAuditLogger, redact_event


def _wait_for_lines(path: Path, count: int = 1) -> list[str]:
    deadline = time.time() + 1.0
    lines: list[str] = []
    while time.time() < deadline:
        if path.exists():
            lines = path.read_text(encoding="utf-8").strip().splitlines()
            if len(lines) >= count:
                break
        time.sleep(0.02)
    return lines


def test_audit_logger_writes_records_before_close(tmp_path: Path) -> None:
    log_path = tmp_path / "logs" / "dispatch_events.jsonl"
    logger = JsonlAuditLogger(path=log_path, enabled=True)
    try:
        logger.log({"event": "dispatch_result", "dispatch_id": "d-1"})
        lines = _wait_for_lines(log_path)

        assert lines
        payload = json.loads(lines[0])
        assert payload["event"] == "dispatch_result"
        assert payload["dispatch_id"] == "d-1"
        assert isinstance(payload["ts"], int)
    finally:
        logger.close()


def test_audit_logger_redacts_prompt_bearing_fields(tmp_path: Path) -> None:
    log_path = tmp_path / "events.jsonl"
    logger = JsonlAuditLogger(path=log_path)
    try:
        logger.log(
            {
                "event": "dispatch_result",
                "prompt": "my private prompt",
                "metadata": {"command": "augment ask 'secret'", "exit_code": 0},
            }
        )
        payload = json.loads(_wait_for_lines(log_path)[0])
    finally:
        logger.close()

    assert payload["prompt"] == "[redacted]"
    assert payload["metadata"]["command"] == "[redacted]"
    assert payload["metadata"]["exit_code"] == 0


def test_redact_event_leaves_original_untouched() -> None:
    event: dict[str, Any] = {"prompt": "keep me", "nested": {"input": "x"}, "empty": ""}

    redacted = redact_event(event)

    assert redacted == {
        "prompt": "[redacted]",
        "nested": {"input": "[redacted]"},
        "empty": "",
    }
    assert event["prompt"] == "keep me"


def test_disabled_audit_logger_writes_nothing(tmp_path: Path) -> None:
    log_path = tmp_path / "events.jsonl"
    logger = JsonlAuditLogger(path=log_path, enabled=False)
    logger.log({"event": "dispatch_result"})
    logger.close()

    assert not log_path.exists()

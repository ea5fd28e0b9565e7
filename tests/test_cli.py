from __future__ import annotations

import stat
import sys
from pathlib import Path
from typing import Any, Iterator

import pytest
import yaml

from codex_router.cache import store_cache
from codex_router.cli import main
from codex_router.settings import get_settings


@pytest.fixture
def router_env(tmp_path: Path, monkeypatch: Any) -> Iterator[Path]:
    script = tmp_path / "fake-augment"
    script.write_text('#!/bin/sh\necho "augment says: $2"\n', encoding="utf-8")
    script.chmod(script.stat().st_mode | stat.S_IXUSR)

    config_path = tmp_path / "router.yaml"
    config_path.write_text(
        yaml.safe_dump(
            {
                "providers": {
                    "default": "augment",
                    "fallback": None,
                    "priority": ["augment"],
                    "augment": {"executable": str(script)},
                    "cursor": {"executable": str(tmp_path / "missing-cursor")},
                }
            }
        ),
        encoding="utf-8",
    )
    monkeypatch.setenv("ROUTER_CONFIG_PATH", str(config_path))
    monkeypatch.setenv("CACHE_DIR", str(tmp_path / "cache"))
    monkeypatch.setenv("ROUTER_AUDIT_LOG_PATH", str(tmp_path / "audit.jsonl"))
    monkeypatch.delenv("CODEX_ACCESS_TOKEN", raising=False)
    get_settings.cache_clear()
    yield tmp_path
    get_settings.cache_clear()


@pytest.mark.skipif(sys.platform == "win32", reason="fake CLI is a shell script")
def test_ask_prints_backend_output(router_env: Path, capsys: Any) -> None:
    assert main(["ask", "hello world", "--no-audit", "--show-metadata"]) == 0

    captured = capsys.readouterr()
    assert captured.out.strip() == "augment says: hello world"
    summary = yaml.safe_load(captured.err)
    assert summary["backend"] == "augment"
    assert summary["attempted"] == ["augment"]


def test_ask_reports_failures_on_stderr(router_env: Path, capsys: Any) -> None:
    assert main(["ask", "hello", "--backend", "cursor", "--no-audit"]) == 1

    err = capsys.readouterr().err
    assert "error: [cursor/process]" in err


def test_backends_lists_statuses(router_env: Path, capsys: Any) -> None:
    assert main(["backends"]) == 0

    payload = yaml.safe_load(capsys.readouterr().out)
    ids = [item["id"] for item in payload["backends"]]
    assert ids == ["codex", "augment", "cursor"]
    codex = payload["backends"][0]
    assert codex["authenticated"] is False


def test_prompt_cache_reports_cached_entries(router_env: Path, capsys: Any) -> None:
    cache_dir = router_env / "cache"
    store_cache(
        cache_dir / "opencode-codex.txt",
        cache_dir / "opencode-codex-meta.json",
        "Bridge prompt body",
        {"etag": "b1", "lastChecked": 1},
    )

    assert main(["prompt-cache", "--chars", "6"]) == 0

    payload = yaml.safe_load(capsys.readouterr().out)
    assert payload["codex_instructions"]["cached"] is False
    assert payload["bridge_prompt"]["cached"] is True
    assert payload["bridge_prompt"]["prefix"] == "Bridge"
    assert payload["bridge_prompt"]["metadata"]["etag"] == "b1"

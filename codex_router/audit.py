from __future__ import annotations

import json
import time
from pathlib import Path
from queue import Full, Queue
from threading import Lock, Thread
from typing import Any

REDACTED = "[redacted]"
REDACTED_FIELDS = frozenset({"prompt", "command", "messages", "input"})


def redact_event(event: dict[str, Any]) -> dict[str, Any]:
    redacted: dict[str, Any] = {}
    for key, value in event.items():
        if key in REDACTED_FIELDS and value not in (None, ""):
            redacted[key] = REDACTED
        elif isinstance(value, dict):
            redacted[key] = redact_event(value)
        else:
            redacted[key] = value
    return redacted


class JsonlAuditLogger:
    """Appends one JSON line per dispatch event from a background writer thread."""

    def __init__(
        self,
        path: str | Path,
        enabled: bool = True,
        max_queue_size: int = 8192,
    ) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self._lock = Lock()
        self._queue: Queue[str | None] | None = None
        self._worker: Thread | None = None
        self._dropped_records = 0
        if self.enabled:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._queue = Queue(maxsize=max_queue_size)
            self._worker = Thread(
                target=self._drain_queue, name="dispatch-audit-writer", daemon=True
            )
            self._worker.start()

    def log(self, event: dict[str, Any]) -> None:
        queue = self._queue
        if not self.enabled or queue is None:
            return

        record = {"ts": int(time.time()), **redact_event(event)}
        try:
            queue.put_nowait(_dump(record))
        except Full:
            with self._lock:
                self._dropped_records += 1

    @property
    def dropped_records(self) -> int:
        with self._lock:
            return self._dropped_records

    def close(self) -> None:
        queue = self._queue
        worker = self._worker
        if not self.enabled or queue is None or worker is None:
            return
        queue.put(None)
        worker.join(timeout=2.0)

    def _drain_queue(self) -> None:
        queue = self._queue
        if queue is None:
            return
        with self.path.open("a", encoding="utf-8") as handle:
            while True:
                item = queue.get()
                if item is None:
                    queue.task_done()
                    break
                handle.write(item + "\n")
                handle.flush()
                queue.task_done()

            with self._lock:
                dropped = self._dropped_records
                self._dropped_records = 0
            if dropped > 0:
                handle.write(
                    _dump(
                        {
                            "ts": int(time.time()),
                            "event": "audit_logger_dropped_records",
                            "dropped_count": dropped,
                        }
                    )
                    + "\n"
                )
                handle.flush()


def _dump(record: dict[str, Any]) -> str:
    return json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str)

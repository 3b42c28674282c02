from __future__ import annotations

import json
import logging
import os
import secrets
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def get_logger(name: str, logs_dir: Optional[Path] = None) -> logging.Logger:
    logger = logging.getLogger(f"xcpipe.{name}")
    if logs_dir is None or logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    logs_dir.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(logs_dir / f"{name}.log")
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(file_handler)
    return logger


def close_logger(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)


def new_run_id(prefix: str = "run") -> str:
    ts = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    return f"{prefix}-{ts}-{os.getpid()}-{secrets.token_hex(4)}"


class EventLogger:
    """JSONL event stream for a single run.

    Several runs may append to the same file; each record carries the run id
    and its position within that run.
    """

    def __init__(self, path: Path, run_id: Optional[str] = None) -> None:
        self.path = path
        self.run_id = run_id or new_run_id()
        self._seq = 0
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def record(self, event: dict) -> None:
        payload = dict(event)
        payload.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        payload["run_id"] = self.run_id
        payload["seq"] = self._seq
        self._seq += 1
        line = json.dumps(payload, sort_keys=True, ensure_ascii=True, default=str)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")


def get_event_logger(logs_dir: Optional[Path]) -> Optional[EventLogger]:
    if logs_dir is None:
        return None
    return EventLogger(logs_dir / "events.jsonl")

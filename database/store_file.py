"""
FileMessageStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    messages.json      {message_id: message dict}

Features:
  - Survives process restarts (unlike InMemoryMessageStore)
  - No external dependencies (no database server, no Redis)
  - Flushes on every mutation through a temp file + atomic rename
  - Single-process only (no concurrent write safety across processes)

Best for: small deployments, demos, edge devices, air-gapped environments.
"""
from __future__ import annotations

import json
import os
import structlog
from pathlib import Path

from core.errors import StoreUnavailable
from database.store_memory import InMemoryMessageStore
from models.schemas import Message

logger = structlog.get_logger()


class FileMessageStore(InMemoryMessageStore):
    """
    Extends InMemoryMessageStore with JSON file persistence.

    On init: loads all messages from disk into memory.
    On every write: rewrites messages.json.
    """

    def __init__(self, data_dir: str = "./data"):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._path = self._data_dir / "messages.json"
        self._load()
        logger.info("file_store_initialized",
                    data_dir=str(self._data_dir),
                    messages=len(self._messages))

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            with open(self._path, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StoreUnavailable(f"Cannot read {self._path}: {e}") from e
        self._messages = {
            mid: Message.model_validate(record) for mid, record in data.items()
        }

    def _changed(self, message: Message) -> None:
        payload = {
            mid: m.model_dump(mode="json") for mid, m in self._messages.items()
        }
        tmp_path = self._path.with_suffix(".json.tmp")
        try:
            with open(tmp_path, "w") as f:
                json.dump(payload, f, indent=2, default=str)
            os.replace(tmp_path, self._path)
        except OSError as e:
            logger.error("file_store_write_error", path=str(self._path), error=str(e))
            raise StoreUnavailable(f"Cannot write {self._path}: {e}") from e

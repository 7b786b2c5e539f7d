"""Thread/message storage interface and a file-backed implementation."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class Agent(BaseModel):
    name: str = ""
    a2a_url: str = ""


class Thread(BaseModel):
    id: str
    agents: list[Agent] = Field(default_factory=list)


class ThreadMessage(BaseModel):
    id: str
    speaker: str
    content: str
    timestamp: datetime


class World:
    """History holder for a single thread."""

    def __init__(self, messages: list[ThreadMessage]) -> None:
        self._messages = messages

    def get_history(self) -> list[ThreadMessage]:
        return list(self._messages)


class ThreadStore(Protocol):
    def get_all_threads(self) -> list[Thread]: ...

    def get_world(self, thread_id: str) -> World | None: ...


class InMemoryThreadStore:
    """Thread store over already-loaded threads and histories."""

    def __init__(self, threads: list[Thread], histories: dict[str, list[ThreadMessage]]) -> None:
        self._threads = threads
        self._histories = histories

    def get_all_threads(self) -> list[Thread]:
        return list(self._threads)

    def get_world(self, thread_id: str) -> World | None:
        history = self._histories.get(thread_id)
        if history is None:
            return None
        return World(history)


class FileThreadStore(InMemoryThreadStore):
    """Load threads from a YAML (or JSON) export.

    Expected layout::

        threads:
          - id: thread-1
            agents: [{name: helper, a2a_url: "http://..."}]
            messages:
              - {id: m1, speaker: User, content: "...", timestamp: 2024-05-01T10:00:00Z}
    """

    def __init__(self, path: Path) -> None:
        with open(path, encoding="utf-8") as fh:
            cfg: dict[str, Any] = yaml.safe_load(fh) or {}

        threads: list[Thread] = []
        histories: dict[str, list[ThreadMessage]] = {}
        for raw in cfg.get("threads", []) or []:
            thread = Thread(id=str(raw["id"]), agents=raw.get("agents") or [])
            threads.append(thread)
            histories[thread.id] = [
                ThreadMessage(
                    id=str(m["id"]),
                    speaker=m.get("speaker", ""),
                    content=m.get("content", ""),
                    timestamp=m["timestamp"],
                )
                for m in raw.get("messages", []) or []
            ]

        logger.info("Loaded %d threads from %s", len(threads), path)
        super().__init__(threads, histories)

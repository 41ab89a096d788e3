"""Offline cache of the last known chat state per session.

Entries expire lazily: a read older than the TTL is a miss, but nothing is
deleted; the next write for that session overwrites the entry.
"""

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import quote

from .models import ChatState

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 24 * 60 * 60


class SessionCache:
    """Time-bounded cache of ChatState keyed by session id.

    With a ``directory`` each session is one JSON file ``{state, timestamp}``;
    without one entries live in memory only.
    """

    def __init__(
        self,
        directory: Optional[Path] = None,
        ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.directory = Path(directory) if directory else None
        self.ttl = ttl
        self.clock = clock
        self._memory: dict[str, dict] = {}
        if self.directory:
            self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, session_id: str) -> Path:
        # Percent-encoded, dots included, so every id is one flat file name
        name = quote(session_id, safe="-_").replace(".", "%2E")
        return self.directory / f"{name}.json"

    async def cache_messages(self, session_id: str, state: ChatState) -> None:
        """Overwrite the entry for ``session_id`` with ``state`` stamped now."""
        entry = {"state": state.to_dict(), "timestamp": self.clock()}
        if self.directory is None:
            self._memory[session_id] = entry
            return
        await asyncio.to_thread(self._write, self._path(session_id), entry)

    async def load_cached_messages(self, session_id: str) -> Optional[ChatState]:
        """Return the cached state if younger than the TTL, else None."""
        if self.directory is None:
            entry = self._memory.get(session_id)
        else:
            entry = await asyncio.to_thread(self._read, self._path(session_id))
        if entry is None:
            return None

        age = self.clock() - entry.get("timestamp", 0)
        if age >= self.ttl:
            logger.debug(f"Cache entry for {session_id[:8]} expired ({age / 3600:.1f}h old)")
            return None
        try:
            return ChatState.from_dict(entry["state"])
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Discarding malformed cache entry for {session_id[:8]}: {e}")
            return None

    @staticmethod
    def _write(path: Path, entry: dict) -> None:
        tmp = path.with_suffix(".tmp")
        with open(tmp, "w") as f:
            json.dump(entry, f)
        tmp.replace(path)

    @staticmethod
    def _read(path: Path) -> Optional[dict]:
        if not path.exists():
            return None
        try:
            with open(path, "r") as f:
                return json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Unreadable cache file {path.name}: {e}")
            return None

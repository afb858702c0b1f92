from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class ConversationLocks:
    """
    One mutex per conversation id, for read-modify-write cycles on
    conversation metadata.

    Locks are created lazily and kept for the life of the process. The
    registry grows with the number of distinct conversations seen, which is
    expected to stay small for a single-user deployment.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def lock_for(self, conversation_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(conversation_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[conversation_id] = lock
            return lock

    @contextmanager
    def hold(self, conversation_id: str) -> Iterator[None]:
        lock = self.lock_for(conversation_id)
        with lock:
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

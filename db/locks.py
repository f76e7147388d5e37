import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Tuple


class KeyedLock:
    """One lock per key, created on first use and dropped when nobody holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, Tuple[threading.Lock, int]] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock, refs = self._locks.get(key, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[key] = (lock, refs + 1)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                lock, refs = self._locks[key]
                if refs <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, refs - 1)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class ChatSequencer:
    """FIFO turn ordering per chat.

    ``ticket(chat_id)`` is taken when a request is accepted; ``wait`` blocks
    until every earlier ticket for that chat has been released. A turn may be
    released from a different thread than the one that waited.
    Every ticket must eventually be released or later turns wait forever.
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._next: Dict[str, int] = {}
        self._serving: Dict[str, int] = {}

    def ticket(self, chat_id: str) -> int:
        with self._cond:
            t = self._next.get(chat_id, 0)
            self._next[chat_id] = t + 1
            self._serving.setdefault(chat_id, 0)
            return t

    def wait(self, chat_id: str, ticket: int) -> None:
        with self._cond:
            while self._serving[chat_id] != ticket:
                self._cond.wait()

    def release(self, chat_id: str, ticket: int) -> None:
        with self._cond:
            if self._serving.get(chat_id) != ticket:
                return
            served = ticket + 1
            if served == self._next.get(chat_id):
                # idle: forget the chat
                self._next.pop(chat_id, None)
                self._serving.pop(chat_id, None)
            else:
                self._serving[chat_id] = served
            self._cond.notify_all()

    def pending(self, chat_id: str) -> int:
        with self._cond:
            return self._next.get(chat_id, 0) - self._serving.get(chat_id, 0)

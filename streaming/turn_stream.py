import json
import queue
import threading
import uuid
from typing import Callable, Dict, Iterator, List, Optional

from common.errors import Forbidden, InvalidRequest, NotFound
from common.logging_setup import get_logger
from streaming.relay import SinkClosed

log = get_logger("turns")

_EOF = b""
QUEUE_DEPTH = 256
PUT_POLL = 0.1


class QueueSink:
    """Client-facing sink. The relay writes records, the HTTP response drains them.

    At most ``maxsize`` records are buffered; past that ``write`` blocks until
    the reader catches up or goes away, so a slow client slows the backend read.
    """

    def __init__(self, maxsize: int = QUEUE_DEPTH):
        self._q: "queue.Queue[bytes]" = queue.Queue(maxsize=maxsize)
        self._reader_gone = threading.Event()

    def _put(self, data: bytes) -> bool:
        while not self._reader_gone.is_set():
            try:
                self._q.put(data, timeout=PUT_POLL)
                return True
            except queue.Full:
                continue
        return False

    def write(self, data: bytes) -> None:
        if not self._put(data):
            raise SinkClosed("client disconnected")

    def flush(self) -> None:
        if self._reader_gone.is_set():
            raise SinkClosed("client disconnected")

    def close_reader(self) -> None:
        self._reader_gone.set()

    def finish(self) -> None:
        # nobody is left to read the end marker once the reader is gone
        self._put(_EOF)

    def poll(self, timeout: Optional[float] = None) -> Optional[bytes]:
        """Next record, ``b""`` at end of stream, ``None`` if nothing arrived within timeout."""
        try:
            return self._q.get(timeout=timeout)
        except queue.Empty:
            return None


class TurnStream:
    """One streamed action running on its own thread.

    The worker gets the stream itself and writes through ``stream.sink``.
    ``detach()`` is called when the client goes away; ``cancel()`` is an
    explicit abort and also closes any backend source bound to the stream.
    """

    def __init__(self, session_id: str, kind: str, work: Callable[["TurnStream"], None],
                 cancellable: bool = True, chat_id: Optional[str] = None):
        self.id = uuid.uuid4().hex
        self.session_id = session_id
        self.kind = kind
        self.chat_id = chat_id
        self.cancellable = cancellable
        self.sink = QueueSink()
        self.cancel_event = threading.Event()
        self.result = None
        self._work = work
        self._sources: List = []
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._on_exit: List[Callable[["TurnStream"], None]] = []
        self._thread = threading.Thread(target=self._run, name=f"turn-{self.id[:8]}", daemon=True)

    def start(self) -> "TurnStream":
        self._thread.start()
        return self

    def _run(self) -> None:
        try:
            self._work(self)
        except Exception as e:
            log.exception("Stream %s (%s) crashed", self.id, self.kind)
            self.write_line({"done": True, "state": "truncated", "error": str(e), "code": "internal_error"})
        finally:
            self.sink.finish()
            for cb in self._on_exit:
                cb(self)
            self._done.set()

    def on_exit(self, cb: Callable[["TurnStream"], None]) -> None:
        self._on_exit.append(cb)

    def bind_source(self, source) -> None:
        with self._lock:
            self._sources.append(source)
            cancelled = self.cancel_event.is_set()
        if cancelled:
            source.close()

    def write_line(self, payload: Dict) -> None:
        """Write a server-generated record; a gone client is not an error here."""
        try:
            self.sink.write(json.dumps(payload).encode() + b"\n")
        except SinkClosed:
            pass

    def write_raw(self, data: bytes) -> None:
        try:
            self.sink.write(data)
        except SinkClosed:
            pass

    def cancel(self) -> None:
        if not self.cancellable:
            raise InvalidRequest(f"{self.kind} streams cannot be cancelled")
        with self._lock:
            self.cancel_event.set()
            sources = list(self._sources)
        for src in sources:
            src.close()
        log.info("Stream %s cancelled", self.id)

    def detach(self) -> None:
        if not self._done.is_set():
            self.sink.close_reader()

    def poll(self, timeout: Optional[float] = None) -> Optional[bytes]:
        return self.sink.poll(timeout)

    def __iter__(self) -> Iterator[bytes]:
        while True:
            item = self.sink.poll()
            if item == _EOF:
                return
            yield item

    def join(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)


class StreamRegistry:
    """In-flight streams by id, so a session can cancel its own stream."""

    def __init__(self):
        self._lock = threading.Lock()
        self._streams: Dict[str, TurnStream] = {}

    def register(self, stream: TurnStream) -> TurnStream:
        with self._lock:
            self._streams[stream.id] = stream
        stream.on_exit(self.discard)
        return stream

    def discard(self, stream: TurnStream) -> None:
        with self._lock:
            self._streams.pop(stream.id, None)

    def get(self, session_id: str, stream_id: str) -> TurnStream:
        with self._lock:
            stream = self._streams.get(stream_id)
        if stream is None:
            raise NotFound("Stream not found or already finished")
        if stream.session_id != session_id:
            raise Forbidden("Stream belongs to another session")
        return stream

    def __len__(self) -> int:
        with self._lock:
            return len(self._streams)

"""Line-delimited JSON relay between the backend and a waiting client.

The backend answers generate/chat/pull with one JSON object per line. The
relay reads those records one at a time, forwards each record to the client
sink as soon as it is complete (write + flush, no batching), and appends the
record's text fragment to an accumulator so the full answer can be persisted.

Terminal states:
    COMPLETED  the backend sent an explicit ``done: true``
    TRUNCATED  the source ended (or failed) before ``done``
    ABORTED    the relay was cancelled before either side finished

Every terminal state carries whatever text was accumulated.
"""
import json
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from common.errors import BackendError, BackendProtocolError, BackendRejected
from common.logging_setup import get_logger

log = get_logger("relay")


class RelayState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETED = "completed"
    TRUNCATED = "truncated"
    ABORTED = "aborted"


class SinkClosed(Exception):
    """The client side of the relay is gone."""


@dataclass
class Chunk:
    raw: bytes
    data: Dict[str, Any]
    fragment: Optional[str]
    done: bool


def parse_chunk(line: bytes) -> Chunk:
    """Parse one complete record.

    The fragment is ``response`` (generate) or ``message.content`` (chat).
    An ``error`` field is the backend reporting failure inside a 200 stream.
    """
    try:
        data = json.loads(line)
    except (ValueError, UnicodeDecodeError) as e:
        raise BackendProtocolError(f"Malformed stream record: {line[:200]!r}") from e
    if not isinstance(data, dict):
        raise BackendProtocolError(f"Stream record is not an object: {line[:200]!r}")
    if data.get("error"):
        err = str(data["error"])
        raise BackendRejected(200, err, message=f"Ollama reported an error mid-stream: {err}")

    fragment = None
    if isinstance(data.get("response"), str):
        fragment = data["response"]
    elif isinstance(data.get("message"), dict) and isinstance(data["message"].get("content"), str):
        fragment = data["message"]["content"]
    return Chunk(raw=line, data=data, fragment=fragment, done=data.get("done") is True)


def pull_finished(chunk: Chunk) -> bool:
    return chunk.done or chunk.data.get("status") == "success"


class LineSplitter:
    """Cuts a byte stream into newline-terminated records.

    A trailing piece with no newline stays buffered until more bytes arrive.
    """

    def __init__(self):
        self._buf = bytearray()

    def feed(self, data: bytes) -> Iterator[bytes]:
        self._buf.extend(data)
        while True:
            idx = self._buf.find(b"\n")
            if idx < 0:
                return
            line = bytes(self._buf[:idx]).strip()
            del self._buf[:idx + 1]
            if line:
                yield line

    def remainder(self) -> bytes:
        rest = bytes(self._buf).strip()
        self._buf.clear()
        return rest


def iter_records(source: Iterable[bytes]) -> Iterator[bytes]:
    """Pull-based view of a byte stream as complete records; torn tails are dropped."""
    splitter = LineSplitter()
    for data in source:
        yield from splitter.feed(data)
    tail = splitter.remainder()
    if tail and _is_json_object(tail):
        yield tail
    elif tail:
        log.warning("Dropping torn trailing record (%d bytes)", len(tail))


class Accumulator:
    def __init__(self):
        self._parts: List[str] = []

    def append(self, fragment: str) -> None:
        self._parts.append(fragment)

    @property
    def fragments(self) -> int:
        return len(self._parts)

    @property
    def text(self) -> str:
        return "".join(self._parts)


@dataclass
class RelayResult:
    state: RelayState = RelayState.IDLE
    text: str = ""
    records: int = 0
    fragments: int = 0
    error: Optional[BackendError] = None
    client_disconnected: bool = False


class StreamRelay:
    """Bridges a backend byte stream to a client sink and an accumulator.

    ``sink`` is any object with ``write(bytes)`` and ``flush()``. If the sink
    fails the relay stops writing to it; with ``drain_on_disconnect`` it keeps
    reading the source so the answer can still be recorded, otherwise it stops
    and the result is ABORTED.
    """

    def __init__(self, drain_on_disconnect: bool = True,
                 is_terminal: Callable[[Chunk], bool] = lambda c: c.done):
        self.drain_on_disconnect = drain_on_disconnect
        self.is_terminal = is_terminal

    def relay(self, source: Iterable[bytes], sink, accumulator: Optional[Accumulator] = None,
              cancel: Optional[threading.Event] = None) -> RelayResult:
        result = RelayResult(state=RelayState.STREAMING)
        acc = accumulator if accumulator is not None else Accumulator()
        sink_open = [True]

        def finish(state: RelayState) -> RelayResult:
            result.state = state
            result.text = acc.text
            result.fragments = acc.fragments
            return result

        def handle(line: bytes) -> Optional[RelayState]:
            chunk = parse_chunk(line)
            result.records += 1
            if sink_open[0]:
                try:
                    sink.write(line + b"\n")
                    sink.flush()
                except (SinkClosed, OSError) as e:
                    sink_open[0] = False
                    result.client_disconnected = True
                    log.info("Client went away after %d records (%s)", result.records, e)
                    if not self.drain_on_disconnect:
                        if chunk.fragment:
                            acc.append(chunk.fragment)
                        return RelayState.ABORTED
            if chunk.fragment:
                acc.append(chunk.fragment)
            if self.is_terminal(chunk):
                return RelayState.COMPLETED
            return None

        try:
            for line in iter_records(source):
                if cancel is not None and cancel.is_set():
                    return finish(RelayState.ABORTED)
                state = handle(line)
                if state is not None:
                    return finish(state)
            if cancel is not None and cancel.is_set():
                return finish(RelayState.ABORTED)
            log.warning("Stream ended without done after %d records", result.records)
            return finish(RelayState.TRUNCATED)
        except BackendError as e:
            result.error = e
            log.warning("Stream failed after %d records: %s", result.records, e.message)
            if cancel is not None and cancel.is_set():
                return finish(RelayState.ABORTED)
            return finish(RelayState.TRUNCATED)
        finally:
            close = getattr(source, "close", None)
            if close is not None:
                close()


def terminal_marker(result: RelayResult) -> Optional[bytes]:
    """The closing line the client gets when the backend's own done record was not the end."""
    if result.state == RelayState.COMPLETED:
        return None
    if result.state == RelayState.ABORTED:
        payload = {"done": True, "state": RelayState.ABORTED.value, "error": "aborted"}
    elif result.error is not None:
        payload = {"done": True, "state": RelayState.TRUNCATED.value,
                   "error": result.error.message, "code": result.error.code}
    else:
        payload = {"done": True, "state": RelayState.TRUNCATED.value,
                   "error": "stream ended before completion"}
    return json.dumps(payload).encode() + b"\n"


def _is_json_object(raw: bytes) -> bool:
    try:
        return isinstance(json.loads(raw), dict)
    except (ValueError, UnicodeDecodeError):
        return False

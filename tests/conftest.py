import json
from typing import Callable, Dict, List, Optional, Tuple, Union

import pytest
import requests
from fastapi.testclient import TestClient

from api.main import create_app
from config import Settings
from db.init_db import init_db
from db.session import make_engine, make_session_factory
from db.store import ConversationStore
from inference.ollama_client import OllamaClient


def ndjson(*records) -> bytes:
    return b"".join(json.dumps(r).encode() + b"\n" for r in records)


class FakeResponse:
    """Just enough of requests.Response for the Ollama client."""

    def __init__(self, status_code: int = 200, chunks: Optional[List[bytes]] = None,
                 body=None, text: Optional[str] = None, fail_after: Optional[Exception] = None):
        self.status_code = status_code
        self._chunks = list(chunks or [])
        self._body = body
        self._text = text
        self._fail_after = fail_after
        self.closed = False

    @property
    def text(self) -> str:
        if self._text is not None:
            return self._text
        if self._body is not None:
            return json.dumps(self._body)
        return b"".join(self._chunks).decode("utf-8", errors="replace")

    def json(self):
        if self._body is not None:
            return self._body
        return json.loads(self.text)

    def iter_content(self, chunk_size=None):
        for chunk in self._chunks:
            if self.closed:
                return
            yield chunk
        if self._fail_after is not None:
            raise self._fail_after

    def close(self):
        self.closed = True


Handler = Union[FakeResponse, Exception, Callable[..., FakeResponse]]


class FakeHttp:
    """Stands in for requests.Session; answers by (method, path)."""

    def __init__(self):
        self.routes: Dict[Tuple[str, str], List[Handler]] = {}
        self.calls: List[dict] = []

    def on(self, method: str, path: str, *handlers: Handler) -> "FakeHttp":
        # one handler per call; the last one repeats
        self.routes[(method, path)] = list(handlers)
        return self

    def request(self, method, url, **kwargs):
        path = "/" + url.split("/", 3)[3] if url.count("/") >= 3 else url
        self.calls.append({"method": method, "url": url, "path": path, **kwargs})
        handlers = self.routes.get((method, path))
        if not handlers:
            raise requests.exceptions.ConnectionError(f"no route for {method} {path}")
        handler = handlers.pop(0) if len(handlers) > 1 else handlers[0]
        if isinstance(handler, Exception):
            raise handler
        if callable(handler) and not isinstance(handler, FakeResponse):
            return handler(**kwargs)
        return handler

    def get(self, url, **kwargs):
        return self.request("GET", url, **kwargs)

    def calls_to(self, path: str) -> List[dict]:
        return [c for c in self.calls if c["path"] == path]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'chat.db'}",
        upload_dir=str(tmp_path / "uploads"),
        log_dir=None,
        log_level="DEBUG",
        huggingface_url="http://hf.test",
    )


@pytest.fixture
def store(settings):
    engine = make_engine(settings.database_url)
    init_db(engine)
    yield ConversationStore(make_session_factory(engine))
    engine.dispose()


@pytest.fixture
def http():
    return FakeHttp()


@pytest.fixture
def client(settings, http):
    return OllamaClient.from_settings(settings, http=http)


@pytest.fixture
def hf_http():
    return FakeHttp()


@pytest.fixture
def app(settings, http, hf_http):
    app = create_app(settings, http=http, hf_http=hf_http)
    yield app
    app.state.engine.dispose()


@pytest.fixture
def api(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def session_headers(api):
    sid = api.post("/api/session").json()["id"]
    return {"X-Session-Id": sid}

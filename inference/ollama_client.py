"""HTTP client for the local Ollama server.

One attempt per call, no retries. Each operation has its own timeout:
generate/chat are long (slow models), list/delete are short, pull is very
long because it downloads model weights.

Failures map onto the shared taxonomy:
- connection refused / timeout  -> BackendUnavailable
- non-2xx status                -> BackendRejected(status, body)
- body that is not the expected JSON -> BackendProtocolError
"""
from typing import Any, Dict, Iterator, List, Optional

import requests

from common.errors import BackendProtocolError, BackendRejected, BackendUnavailable
from common.logging_setup import get_logger
from inference.options import GenerationOptions

log = get_logger("ollama")

# operation -> (method, path)
ENDPOINTS = {
    "generate": ("POST", "/api/generate"),
    "chat": ("POST", "/api/chat"),
    "list": ("GET", "/api/tags"),
    "pull": ("POST", "/api/pull"),
    "delete": ("DELETE", "/api/delete"),
}

# Ollama is local; never route it through a system proxy
NO_PROXIES = {"http": None, "https": None}


class BackendStream:
    """An open streaming response. Iterating yields raw byte chunks as they arrive."""

    def __init__(self, response, operation: str):
        self._response = response
        self.operation = operation
        self.status_code = response.status_code
        self.closed = False

    def __iter__(self) -> Iterator[bytes]:
        try:
            for chunk in self._response.iter_content(chunk_size=None):
                if chunk:
                    yield chunk
        except Exception as e:
            if self.closed:
                # closed from another thread to unblock a read
                return
            if isinstance(e, requests.exceptions.RequestException):
                raise BackendUnavailable(f"Ollama stream broke during {self.operation}: {e}") from e
            raise

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._response.close()


class OllamaClient:
    def __init__(self, base_url: str, timeouts: Dict[str, float], connect_timeout: float = 5.0,
                 http: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeouts = dict(timeouts)
        self.connect_timeout = connect_timeout
        self._http = http or requests.Session()

    @classmethod
    def from_settings(cls, settings, http=None) -> "OllamaClient":
        return cls(
            settings.ollama_host,
            timeouts={
                "generate": settings.generate_timeout,
                "chat": settings.generate_timeout,
                "list": settings.list_timeout,
                "pull": settings.pull_timeout,
                "delete": settings.delete_timeout,
            },
            connect_timeout=settings.connect_timeout,
            http=http,
        )

    # --- operations

    def generate(self, model: str, prompt: str, options: Optional[GenerationOptions] = None) -> BackendStream:
        payload = {"model": model, "prompt": prompt, "stream": True,
                   "options": (options or GenerationOptions()).to_payload()}
        return self.invoke("generate", payload, stream=True)

    def chat(self, model: str, messages: List[Dict[str, str]],
             options: Optional[GenerationOptions] = None) -> BackendStream:
        payload = {"model": model, "messages": messages, "stream": True,
                   "options": (options or GenerationOptions()).to_payload()}
        return self.invoke("chat", payload, stream=True)

    def list_models(self) -> Dict[str, Any]:
        data = self.invoke("list")
        if not isinstance(data, dict) or not isinstance(data.get("models"), list):
            raise BackendProtocolError("Ollama tags response has no 'models' list")
        return data

    def pull(self, name: str) -> BackendStream:
        return self.invoke("pull", {"name": name, "stream": True}, stream=True)

    def delete(self, name: str) -> Dict[str, Any]:
        data = self.invoke("delete", {"name": name})
        return data or {"status": "success", "name": name}

    # --- transport

    def invoke(self, operation: str, payload: Optional[Dict[str, Any]] = None,
               timeout: Optional[float] = None, stream: bool = False):
        """Run one backend call.

        Returns a ``BackendStream`` when ``stream`` is set, else the decoded JSON
        body (``None`` for an empty body).
        """
        method, path = ENDPOINTS[operation]
        read_timeout = timeout if timeout is not None else self.timeouts[operation]
        url = f"{self.base_url}{path}"
        try:
            resp = self._http.request(
                method, url,
                json=payload,
                stream=stream,
                timeout=(self.connect_timeout, read_timeout),
                proxies=NO_PROXIES,
            )
        except requests.exceptions.RequestException as e:
            log.warning("Ollama %s unreachable at %s: %s", operation, url, e)
            raise BackendUnavailable(
                f"Could not connect to Ollama at {self.base_url}. Please ensure Ollama is running. {e}"
            ) from e

        if not 200 <= resp.status_code < 300:
            body = (resp.text or "").strip()
            resp.close()
            log.warning("Ollama %s returned status %s: %s", operation, resp.status_code, body[:500])
            raise BackendRejected(resp.status_code, body)

        if stream:
            return BackendStream(resp, operation)
        try:
            if not (resp.text or "").strip():
                return None
            return resp.json()
        except ValueError as e:
            raise BackendProtocolError(f"Ollama {operation} returned a malformed body: {e}") from e
        finally:
            resp.close()

"""Action Dispatcher: validate a client action and wire backend -> relay -> store.

Chat turn sequencing:
  1. validate everything (ownership, model, content, options, files)
  2. take the chat's ticket and wait for earlier turns on that chat
  3. persist the user message
  4. load history and open the backend stream
  5. relay on a worker thread, then persist the accumulated assistant text

Failures in 1 leave no side effects. Failures in 4 surface as an immediate
error, with the user message already stored.
"""
import html
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from common.errors import InvalidRequest, ProxyError
from common.logging_setup import get_logger
from db.locks import ChatSequencer
from db.models import ROLES
from db.store import ConversationStore
from dispatch.actions import ACTION_TYPES, Action
from inference.ollama_client import OllamaClient
from inference.options import GenerationOptions
from streaming.relay import (
    Accumulator, RelayResult, RelayState, StreamRelay, pull_finished, terminal_marker,
)
from streaming.turn_stream import StreamRegistry, TurnStream

log = get_logger("dispatch")

DEFAULT_TITLE = "New chat"
TEXT_MIME_PREFIXES = ("text/",)
TEXT_MIME_TYPES = {"application/json", "application/xml", "application/x-yaml", "application/javascript"}
PER_FILE_CHAR_LIMIT = 20000


class ActionDispatcher:
    def __init__(self, store: ConversationStore, client: OllamaClient, settings,
                 streams: Optional[StreamRegistry] = None, sequencer: Optional[ChatSequencer] = None):
        self.store = store
        self.client = client
        self.settings = settings
        self.streams = streams or StreamRegistry()
        self.sequencer = sequencer or ChatSequencer()

    def handle(self, session_id: str, raw: Any) -> Union[Dict[str, Any], TurnStream]:
        """Run one client action.

        Returns a JSON-able dict for list/delete, or a started ``TurnStream``
        for generate/chat/pull.
        """
        action = Action.parse(raw)
        kind = action.action_type
        if kind not in ACTION_TYPES:
            raise InvalidRequest(f"Unknown action type: {kind}")

        if kind == "list":
            return self.client.list_models()
        if kind == "delete":
            name = self._model_name(action.model)
            result = self.client.delete(name)
            log.info("Deleted model %s", name)
            return result
        if kind == "pull":
            return self._pull(session_id, self._model_name(action.model))
        if kind == "generate":
            return self._generate(session_id, action)
        return self._chat(session_id, action)

    # --- administrative

    def _pull(self, session_id: str, name: str) -> TurnStream:
        source = self.client.pull(name)
        log.info("Pulling model %s", name)

        def work(stream: TurnStream) -> None:
            relay = StreamRelay(drain_on_disconnect=True, is_terminal=pull_finished)
            result = self._relay(stream, source, relay)
            log.info("Pull of %s ended %s after %d records", name, result.state.value, result.records)

        return self._launch(TurnStream(session_id, "pull", work, cancellable=False), source)

    # --- generate / chat

    def _generate(self, session_id: str, action: Action) -> TurnStream:
        prompt = self._content(action.prompt)
        options = GenerationOptions.parse(action.options)
        if not action.chat_id:
            model = self._model_name(action.model)
            files = self._check_files(session_id, action.files)
            source = self.client.generate(model, with_attachments(prompt, files), options)
            return self._launch(TurnStream(session_id, "generate", self._relay_only(source)), source)

        chat = self.store.get_chat(session_id, action.chat_id)
        model = self._model_name(action.model or chat.model)
        files = self._check_files(session_id, action.files)
        return self._turn(session_id, chat.id, "generate", prompt, action.files,
                          lambda: self.client.generate(model, with_attachments(prompt, files), options))

    def _chat(self, session_id: str, action: Action) -> TurnStream:
        options = GenerationOptions.parse(action.options)

        if action.chat_id is None and action.turn_text is None and action.messages is not None:
            model = self._model_name(action.model)
            messages = self._stateless_messages(action.messages)
            source = self.client.chat(model, messages, options)
            return self._launch(TurnStream(session_id, "chat", self._relay_only(source)), source)

        text = self._content(action.turn_text)
        self._check_files(session_id, action.files)
        if action.chat_id:
            chat = self.store.get_chat(session_id, action.chat_id)
            model = self._model_name(action.model or chat.model)
        else:
            model = self._model_name(action.model)
            chat = self.store.create_chat(session_id, derive_title(text, self.settings.max_title_chars), model)
            log.info("Created chat %s for session %s", chat.id, session_id)

        def open_source():
            return self.client.chat(model, self.build_context(chat.id), options)

        return self._turn(session_id, chat.id, "chat", text, action.files, open_source)

    def _turn(self, session_id: str, chat_id: str, kind: str, text: str,
              file_ids: Sequence[str], open_source) -> TurnStream:
        ticket = self.sequencer.ticket(chat_id)
        self.sequencer.wait(chat_id, ticket)

        def work(stream: TurnStream) -> None:
            try:
                self._relay_and_record(stream, source, chat_id)
            finally:
                self.sequencer.release(chat_id, ticket)

        try:
            self.store.append_message(chat_id, "user", text, file_ids)
            source = open_source()
            return self._launch(TurnStream(session_id, kind, work, chat_id=chat_id), source)
        except Exception:
            self.sequencer.release(chat_id, ticket)
            raise

    def _relay_and_record(self, stream: TurnStream, source, chat_id: str) -> RelayResult:
        relay = StreamRelay(drain_on_disconnect=self.settings.drain_on_disconnect)
        result = self._relay(stream, source, relay, Accumulator())
        # a turn that produced no text leaves only the user message behind
        if result.state == RelayState.COMPLETED or result.fragments > 0:
            try:
                self.store.append_message(chat_id, "assistant", result.text)
            except ProxyError as e:
                # the client already has the tokens; make the lost history visible
                log.exception("Could not save assistant message for chat %s", chat_id)
                stream.write_line({"done": True, "state": result.state.value,
                                   "error": "assistant message was not saved", "code": e.code})
        if result.state != RelayState.COMPLETED:
            log.warning("Chat %s turn ended %s with %d fragments", chat_id, result.state.value, result.fragments)
        return result

    def _relay_only(self, source):
        def work(stream: TurnStream) -> None:
            relay = StreamRelay(drain_on_disconnect=self.settings.drain_on_disconnect)
            self._relay(stream, source, relay, Accumulator())
        return work

    def _relay(self, stream: TurnStream, source, relay: StreamRelay,
               accumulator: Optional[Accumulator] = None) -> RelayResult:
        stream.bind_source(source)
        result = relay.relay(source, stream.sink, accumulator, cancel=stream.cancel_event)
        stream.result = result
        marker = terminal_marker(result)
        if marker:
            stream.write_raw(marker)
        return result

    def _launch(self, stream: TurnStream, source) -> TurnStream:
        self.streams.register(stream)
        try:
            return stream.start()
        except Exception:
            log.exception("Could not start %s stream %s", stream.kind, stream.id)
            self.streams.discard(stream)
            source.close()
            raise

    # --- context

    def build_context(self, chat_id: str) -> List[Dict[str, str]]:
        """Stored history in order, as backend chat messages; text attachments are inlined."""
        history = self.store.list_messages(chat_id)
        files_by_msg: Dict[int, list] = {}
        for f in self.store.files_for_messages([m.id for m in history]):
            files_by_msg.setdefault(f.message_id, []).append(f)
        return [{"role": m.role, "content": with_attachments(m.content, files_by_msg.get(m.id, []))}
                for m in history]

    # --- validation

    def _model_name(self, model: Optional[str]) -> str:
        name = (model or "").strip()
        if not name:
            raise InvalidRequest("model is required")
        if len(name) > self.settings.max_model_name_chars:
            raise InvalidRequest("model name is too long")
        return name

    def _content(self, text: Optional[str]) -> str:
        if text is None or not text.strip():
            raise InvalidRequest("message content is required")
        if len(text) > self.settings.max_prompt_chars:
            raise InvalidRequest(f"message exceeds {self.settings.max_prompt_chars} characters")
        return text

    def _stateless_messages(self, messages) -> List[Dict[str, str]]:
        if not messages:
            raise InvalidRequest("messages must not be empty")
        total = 0
        out = []
        for m in messages:
            if m.role not in ROLES:
                raise InvalidRequest(f"Unknown role: {m.role}")
            total += len(m.content)
            out.append({"role": m.role, "content": m.content})
        if not out[-1]["content"].strip():
            raise InvalidRequest("message content is required")
        if total > self.settings.max_prompt_chars:
            raise InvalidRequest(f"messages exceed {self.settings.max_prompt_chars} characters")
        return out

    def _check_files(self, session_id: str, file_ids: Sequence[str]) -> list:
        files = []
        for fid in file_ids:
            f = self.store.get_file(session_id, fid)
            if f.message_id is not None:
                raise InvalidRequest(f"File already attached: {fid}")
            files.append(f)
        return files


# --- helpers for chat auto-naming -------------------------------------------

def _strip_html(s: str) -> str:
    return html.unescape(re.sub(r"<[^>]+>", "", s)).strip()


def derive_title(user_text: str, max_len: int = 60) -> str:
    base = _strip_html(user_text or "")
    if not base:
        return DEFAULT_TITLE
    first = re.split(r"(?<=[.!?])\s+", base, maxsplit=1)[0].strip()
    cand = (first or base).splitlines()[0].lstrip("-• ").rstrip(" .!?")
    limit = min(max_len, 60)
    if len(cand) > limit:
        cand = cand[:limit].rstrip() + "…"
    if not cand:
        return DEFAULT_TITLE
    return cand[:1].upper() + cand[1:]


def with_attachments(content: str, files) -> str:
    """``content`` followed by the text of each readable text attachment."""
    for f in files:
        block = _read_text_attachment(f)
        if block:
            content += f"\n\n[Attached file: {f.filename}]\n{block}"
    return content


def _is_text_mime(mime: str) -> bool:
    return mime.startswith(TEXT_MIME_PREFIXES) or mime in TEXT_MIME_TYPES


def _read_text_attachment(f) -> str:
    if not _is_text_mime(f.mime_type or ""):
        return ""
    try:
        text = Path(f.path).read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        log.warning("Attachment %s unreadable: %s", f.id, e)
        return ""
    return text[:PER_FILE_CHAR_LIMIT]

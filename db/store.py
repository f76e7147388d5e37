import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator, List, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session as DBSession, sessionmaker

from common.errors import Forbidden, InvalidRequest, NotFound, StorageError
from common.logging_setup import get_logger
from db.locks import KeyedLock
from db.models import ROLES, Chat, File, Message, Session

log = get_logger("store")

# timestamps must strictly advance even when the clock does not
_TICK = timedelta(microseconds=1)


class ConversationStore:
    """Durable sessions, chats, messages and file records.

    The store is the only writer of chats and messages. ``append_message`` is
    the only path that advances ``Chat.updated_at``; appends on the same chat
    are serialized so the timestamp and message order never go backwards.
    """

    def __init__(self, session_factory: sessionmaker, locks: Optional[KeyedLock] = None):
        self._session_factory = session_factory
        self._locks = locks or KeyedLock()

    @contextmanager
    def _db(self) -> Iterator[DBSession]:
        db = self._session_factory()
        try:
            yield db
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(str(e)) from e
        finally:
            db.close()

    # --- sessions

    def create_session(self) -> Session:
        with self._db() as db:
            now = datetime.utcnow()
            s = Session(id=str(uuid.uuid4()), created_at=now, last_seen_at=now)
            db.add(s)
            db.commit()
            return s

    def touch_session(self, session_id: str) -> Session:
        with self._db() as db:
            s = db.get(Session, session_id)
            if not s:
                raise NotFound("Session not found")
            s.last_seen_at = datetime.utcnow()
            db.commit()
            return s

    # --- chats

    def create_chat(self, session_id: str, title: str, model: str) -> Chat:
        with self._db() as db:
            if not db.get(Session, session_id):
                raise NotFound("Session not found")
            now = datetime.utcnow()
            chat = Chat(id=str(uuid.uuid4()), session_id=session_id, title=title, model=model,
                        created_at=now, updated_at=now)
            db.add(chat)
            db.commit()
            return chat

    def get_chat(self, session_id: str, chat_id: str) -> Chat:
        """Return the chat if it belongs to ``session_id``; Forbidden otherwise."""
        with self._db() as db:
            chat = db.get(Chat, chat_id)
            if not chat:
                raise NotFound("Chat not found")
            if chat.session_id != session_id:
                raise Forbidden("Chat belongs to another session")
            return chat

    def list_chats(self, session_id: str, q: Optional[str] = None, limit: int = 100) -> List[Chat]:
        with self._db() as db:
            qry = db.query(Chat).filter(Chat.session_id == session_id)
            if q:
                qry = qry.filter(Chat.title.ilike(f"%{q}%"))
            return qry.order_by(Chat.updated_at.desc(), Chat.id).limit(limit).all()

    def rename_chat(self, session_id: str, chat_id: str, title: str) -> Chat:
        with self._db() as db:
            chat = self._owned(db, session_id, chat_id)
            chat.title = title
            db.commit()
            return chat

    def delete_chat(self, session_id: str, chat_id: str) -> None:
        with self._locks.hold(chat_id), self._db() as db:
            chat = self._owned(db, session_id, chat_id)
            db.delete(chat)
            db.commit()
        log.info("Deleted chat %s", chat_id)

    # --- messages

    def append_message(self, chat_id: str, role: str, content: str,
                       file_ids: Sequence[str] = ()) -> Message:
        if role not in ROLES:
            raise InvalidRequest(f"Unknown role: {role}")
        with self._locks.hold(chat_id), self._db() as db:
            chat = db.get(Chat, chat_id)
            if not chat:
                raise NotFound("Chat not found")
            last = db.query(func.max(Message.created_at)).filter(Message.chat_id == chat_id).scalar()
            now = datetime.utcnow()
            floor = max(t for t in (chat.updated_at, last) if t is not None)
            if now <= floor:
                now = floor + _TICK
            msg = Message(chat_id=chat_id, role=role, content=content, created_at=now)
            db.add(msg)
            db.flush()
            for fid in file_ids:
                f = db.get(File, fid)
                if not f or f.session_id != chat.session_id:
                    raise NotFound(f"File not found: {fid}")
                if f.message_id is not None:
                    raise InvalidRequest(f"File already attached: {fid}")
                f.message_id = msg.id
            chat.updated_at = now
            db.commit()
            return msg

    def list_messages(self, chat_id: str) -> List[Message]:
        """Messages of a chat, oldest first. This order is the model's context."""
        with self._db() as db:
            return (db.query(Message)
                    .filter(Message.chat_id == chat_id)
                    .order_by(Message.created_at.asc(), Message.id.asc())
                    .all())

    def count_messages(self, chat_id: str) -> int:
        with self._db() as db:
            return db.query(Message).filter(Message.chat_id == chat_id).count()

    # --- files

    def add_file(self, session_id: str, filename: str, mime_type: str, size_bytes: int, path: str,
                 file_id: Optional[str] = None) -> File:
        with self._db() as db:
            f = File(id=file_id or str(uuid.uuid4()), session_id=session_id, filename=filename,
                     mime_type=mime_type, size_bytes=size_bytes, path=path, created_at=datetime.utcnow())
            db.add(f)
            db.commit()
            return f

    def get_file(self, session_id: str, file_id: str) -> File:
        with self._db() as db:
            f = db.get(File, file_id)
            if not f:
                raise NotFound("File not found")
            if f.session_id != session_id:
                raise Forbidden("File belongs to another session")
            return f

    def files_for_messages(self, message_ids: Sequence[int]) -> List[File]:
        if not message_ids:
            return []
        with self._db() as db:
            return (db.query(File)
                    .filter(File.message_id.in_(list(message_ids)))
                    .order_by(File.created_at.asc())
                    .all())

    # --- helpers

    def _owned(self, db: DBSession, session_id: str, chat_id: str) -> Chat:
        chat = db.get(Chat, chat_id)
        if not chat:
            raise NotFound("Chat not found")
        if chat.session_id != session_id:
            raise Forbidden("Chat belongs to another session")
        return chat

# api/chats.py
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict, Field

from api.security import require_session
from db.store import ConversationStore
from dispatch.dispatcher import DEFAULT_TITLE

router = APIRouter(prefix="/api/chats", tags=["chats"])


def get_store(request: Request) -> ConversationStore:
    return request.app.state.store


# --- Schemas
class ChatOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    model: str
    created_at: datetime
    updated_at: datetime


class ChatCreate(BaseModel):
    title: Optional[str] = Field(None, max_length=200)
    model: str = Field(..., min_length=1, max_length=200)


class ChatRename(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)


class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    role: str             # "user" | "assistant" | "system"
    content: str
    files: List[str] = []
    created_at: datetime


@router.get("", response_model=List[ChatOut])
def list_chats(
    session_id: str = Depends(require_session),
    store: ConversationStore = Depends(get_store),
    q: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
):
    return store.list_chats(session_id, q=q, limit=limit)


@router.post("", response_model=ChatOut)
def create_chat(
    body: ChatCreate,
    session_id: str = Depends(require_session),
    store: ConversationStore = Depends(get_store),
):
    title = (body.title or "").strip() or DEFAULT_TITLE
    return store.create_chat(session_id, title, body.model.strip())


@router.get("/{chat_id}", response_model=ChatOut)
def get_chat(chat_id: str, session_id: str = Depends(require_session),
             store: ConversationStore = Depends(get_store)):
    return store.get_chat(session_id, chat_id)


@router.patch("/{chat_id}", response_model=ChatOut)
def rename_chat(chat_id: str, body: ChatRename, session_id: str = Depends(require_session),
                store: ConversationStore = Depends(get_store)):
    return store.rename_chat(session_id, chat_id, body.title.strip())


@router.delete("/{chat_id}")
def delete_chat(chat_id: str, session_id: str = Depends(require_session),
                store: ConversationStore = Depends(get_store)):
    store.delete_chat(session_id, chat_id)
    return {"ok": True}


@router.get("/{chat_id}/messages", response_model=List[MessageOut])
def list_messages(chat_id: str, session_id: str = Depends(require_session),
                  store: ConversationStore = Depends(get_store)):
    chat = store.get_chat(session_id, chat_id)
    msgs = store.list_messages(chat.id)
    files_by_msg = {}
    for f in store.files_for_messages([m.id for m in msgs]):
        files_by_msg.setdefault(f.message_id, []).append(f.id)
    return [
        MessageOut(id=m.id, role=m.role, content=m.content,
                   files=files_by_msg.get(m.id, []), created_at=m.created_at)
        for m in msgs
    ]

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from common.errors import InvalidRequest

ACTION_TYPES = ("generate", "chat", "list", "pull", "delete")


class ChatMessageIn(BaseModel):
    role: str
    content: str


class Action(BaseModel):
    """Inbound client action, as posted to /api/ollama-action."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    action_type: str = Field(alias="actionType")
    model: Optional[str] = None
    prompt: Optional[str] = None
    message: Optional[str] = None                  # one chat turn, persisted server-side
    messages: Optional[List[ChatMessageIn]] = None  # stateless chat, nothing persisted
    options: Optional[Dict[str, Any]] = None
    chat_id: Optional[str] = Field(None, alias="chatID")
    files: List[str] = Field(default_factory=list)

    @classmethod
    def parse(cls, raw: Any) -> "Action":
        if not isinstance(raw, dict):
            raise InvalidRequest("Request body must be a JSON object")
        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            err = e.errors()[0]
            loc = ".".join(str(p) for p in err.get("loc", ()))
            raise InvalidRequest(f"Invalid request payload: {loc}: {err.get('msg')}") from e

    @property
    def turn_text(self) -> Optional[str]:
        return self.message if self.message is not None else self.prompt

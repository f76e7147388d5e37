from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from common.errors import InvalidRequest


class GenerationOptions(BaseModel):
    """Sampling options forwarded to the backend as ``options``.

    Only these keys are recognized; anything else is rejected.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    temperature: float = Field(0.8, ge=0.0, le=2.0)
    top_p: float = Field(0.9, ge=0.0, le=1.0)
    num_predict: int = Field(-1, ge=-1, le=131072)   # -1 = until the model stops

    @classmethod
    def parse(cls, raw: Optional[Dict[str, Any]]) -> "GenerationOptions":
        if raw is None:
            return cls()
        if not isinstance(raw, dict):
            raise InvalidRequest("options must be an object")
        try:
            return cls(**raw)
        except ValidationError as e:
            raise InvalidRequest(f"Invalid options: {_first_error(e)}") from e

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump()


def _first_error(e: ValidationError) -> str:
    err = e.errors()[0]
    loc = ".".join(str(p) for p in err.get("loc", ()))
    return f"{loc}: {err.get('msg')}" if loc else str(err.get("msg"))

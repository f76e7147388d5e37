# config.py: settings for the chat proxy (defaults < config.yaml < environment)

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

PROJECT_ROOT = Path(__file__).resolve().parent

DEFAULT_ORIGINS = (
    "http://localhost:8080",
    "http://127.0.0.1:8080",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
)

# env var -> settings field
ENV_KEYS = {
    "OLLAMA_HOST": "ollama_host",
    "DATABASE_URL": "database_url",
    "UPLOAD_DIR": "upload_dir",
    "MAX_UPLOAD_BYTES": "max_upload_bytes",
    "HOST": "host",
    "PORT": "port",
    "CONNECT_TIMEOUT": "connect_timeout",
    "GENERATE_TIMEOUT": "generate_timeout",
    "LIST_TIMEOUT": "list_timeout",
    "PULL_TIMEOUT": "pull_timeout",
    "DELETE_TIMEOUT": "delete_timeout",
    "MAX_PROMPT_CHARS": "max_prompt_chars",
    "RELAY_DRAIN_ON_DISCONNECT": "drain_on_disconnect",
    "LOG_DIR": "log_dir",
    "LOG_LEVEL": "log_level",
    "HUGGINGFACE_URL": "huggingface_url",
    "HUGGINGFACE_TIMEOUT": "huggingface_timeout",
    "CATALOG_TTL": "catalog_ttl",
}


@dataclass(frozen=True)
class Settings:
    ollama_host: str = "http://localhost:11434"
    database_url: str = "sqlite:///./chat.db"
    upload_dir: str = str(PROJECT_ROOT / "uploads")
    max_upload_bytes: int = 100 << 20
    host: str = "127.0.0.1"
    port: int = 8080

    # seconds
    connect_timeout: float = 5.0
    generate_timeout: float = 300.0
    list_timeout: float = 10.0
    pull_timeout: float = 1800.0
    delete_timeout: float = 10.0

    max_prompt_chars: int = 32000
    max_model_name_chars: int = 200
    max_title_chars: int = 200
    drain_on_disconnect: bool = True

    log_dir: Optional[str] = str(PROJECT_ROOT / "logs")
    log_level: str = "INFO"
    allowed_origins: Tuple[str, ...] = field(default=DEFAULT_ORIGINS)

    huggingface_url: str = "https://huggingface.co"
    huggingface_timeout: float = 3.0
    catalog_ttl: float = 300.0

    @classmethod
    def load(cls, path: Optional[Path] = None, environ: Optional[Dict[str, str]] = None) -> "Settings":
        environ = os.environ if environ is None else environ
        cfg_path = Path(path or environ.get("CHATPROXY_CONFIG") or PROJECT_ROOT / "config.yaml")
        values: Dict[str, Any] = {}
        if cfg_path.exists():
            with open(cfg_path, "r", encoding="utf-8") as f:
                values.update(yaml.safe_load(f) or {})
        for env_key, name in ENV_KEYS.items():
            if environ.get(env_key) not in (None, ""):
                values[name] = environ[env_key]
        extra = environ.get("FRONTEND_ORIGINS")
        if extra:
            values["allowed_origins"] = DEFAULT_ORIGINS + tuple(o.strip() for o in extra.split(",") if o.strip())
        return cls().with_values(values)

    def with_values(self, values: Dict[str, Any]) -> "Settings":
        known = {f.name: f for f in fields(self)}
        unknown = set(values) - set(known)
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")
        coerced = {name: _coerce(getattr(self, name), raw) for name, raw in values.items()}
        return replace(self, **coerced)


def _coerce(default: Any, raw: Any) -> Any:
    if isinstance(default, bool):
        if isinstance(raw, bool):
            return raw
        return str(raw).strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    if isinstance(default, tuple):
        return tuple(raw)
    return raw

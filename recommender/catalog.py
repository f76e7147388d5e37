import threading
import time
from dataclasses import asdict, dataclass, field, replace
from typing import Callable, Dict, List, Optional

from common.errors import BackendError, InvalidRequest
from common.logging_setup import get_logger
from recommender.huggingface import HuggingFaceLookup

log = get_logger("catalog")

DEFAULT_VRAM_GB = 8
DEFAULT_RAM_GB = 16
VRAM_RANGE = (1, 1024)
RAM_RANGE = (1, 2048)


@dataclass(frozen=True)
class HardwareReq:
    min_vram_gb: int
    min_ram_gb: int


@dataclass(frozen=True)
class ModelInfo:
    name: str
    description: str
    tasks: List[str] = field(default_factory=list)
    hardware_req: HardwareReq = HardwareReq(DEFAULT_VRAM_GB, DEFAULT_RAM_GB)
    score: int = 6

    def to_dict(self) -> dict:
        return asdict(self)


STATIC_MODELS: Dict[str, ModelInfo] = {m.name: m for m in (
    ModelInfo("tinyllama", "A compact language model, great for resource-constrained environments "
              "or quick experiments. Ideal for simple tasks.",
              ["chat", "summarization", "experiment"], HardwareReq(2, 4), 5),
    ModelInfo("mistral", "A small, yet powerful, language model from Mistral AI, optimized for "
              "performance. Excellent general purpose model.",
              ["chat", "generate", "code", "general"], HardwareReq(6, 8), 8),
    ModelInfo("llama2:7b-chat", "The 7-billion parameter chat variant of Meta's Llama 2. A strong "
              "baseline model for conversational AI.",
              ["chat", "generate", "general"], HardwareReq(8, 16), 7),
    ModelInfo("codellama:7b-code", "A model from Meta specifically fine-tuned for code generation "
              "and understanding.",
              ["code", "generate", "programming"], HardwareReq(8, 16), 9),
    ModelInfo("gemma:2b", "A lightweight, high-quality open model from Google. Great for efficiency.",
              ["chat", "summarization", "generate", "experiment"], HardwareReq(3, 6), 6),
    ModelInfo("llama2:13b", "The 13-billion parameter version of Llama 2. Requires substantial "
              "resources for good performance.",
              ["chat", "generate", "advanced", "general"], HardwareReq(12, 32), 10),
)}

PLACEHOLDER = ModelInfo("", "Assigned generic tasks and default hardware requirements.",
                        ["chat", "generate", "general"], HardwareReq(DEFAULT_VRAM_GB, DEFAULT_RAM_GB), 6)


class ModelCatalog:
    """Installed models merged with static metadata; rebuilt after ``ttl`` seconds.

    ``list_installed`` returns the backend's tags payload. When it fails the
    static table is used as-is.
    """

    def __init__(self, list_installed: Callable[[], dict], lookup: Optional[HuggingFaceLookup] = None,
                 ttl: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self._list_installed = list_installed
        self._lookup = lookup
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._models: Dict[str, ModelInfo] = {}
        self._built_at: Optional[float] = None
        # enrichment results survive refreshes
        self._enriched: Dict[str, ModelInfo] = {}

    def models(self) -> Dict[str, ModelInfo]:
        with self._lock:
            now = self._clock()
            if self._built_at is None or now - self._built_at >= self.ttl:
                self._models = self._build()
                self._built_at = now
            return dict(self._models)

    def invalidate(self) -> None:
        with self._lock:
            self._built_at = None

    def _build(self) -> Dict[str, ModelInfo]:
        try:
            installed = [m.get("name", "") for m in self._list_installed().get("models", [])]
        except BackendError as e:
            log.warning("Could not list Ollama models, using the static table only: %s", e.message)
            return dict(STATIC_MODELS)

        out: Dict[str, ModelInfo] = {}
        for raw in installed:
            name = raw[:-len(":latest")] if raw.endswith(":latest") else raw
            if not name:
                continue
            if name in STATIC_MODELS:
                out[name] = STATIC_MODELS[name]
            else:
                out[name] = self._enrich(name)
        log.info("Model catalog rebuilt with %d models", len(out))
        return out

    def _enrich(self, name: str) -> ModelInfo:
        if name in self._enriched:
            return self._enriched[name]
        hit = self._lookup.lookup(name) if self._lookup else None
        if hit is None:
            info = replace(PLACEHOLDER, name=name, description=(
                f"Model '{name}' is installed on Ollama, but specific metadata is missing. "
                f"{PLACEHOLDER.description}"))
        else:
            hf_id, tasks = hit
            tasks = tasks or list(PLACEHOLDER.tasks)
            info = replace(PLACEHOLDER, name=name, tasks=tasks, description=(
                f"Model '{name}' is installed on Ollama. Found potential match on Hugging Face as "
                f"'{hf_id}'. Primary tasks identified: {', '.join(tasks)}. Hardware estimates remain at "
                f"default ({DEFAULT_VRAM_GB} GB VRAM / {DEFAULT_RAM_GB} GB RAM)."))
        self._enriched[name] = info
        return info

    def tasks(self) -> List[str]:
        return sorted({t for m in self.models().values() for t in m.tasks})

    def recommend(self, vram_gb: int, ram_gb: int, task: str = "") -> List[ModelInfo]:
        task = (task or "").strip().lower()
        picked = []
        for m in self.models().values():
            if vram_gb < m.hardware_req.min_vram_gb or ram_gb < m.hardware_req.min_ram_gb:
                continue
            if task and not any(task in t.lower() for t in m.tasks):
                continue
            picked.append(m)
        return sorted(picked, key=lambda m: (-m.score, m.name))


def parse_hardware(raw: Optional[str], default: int, bounds, label: str) -> int:
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise InvalidRequest(f"{label} must be a valid integer")
    lo, hi = bounds
    if not lo <= value <= hi:
        raise InvalidRequest(f"{label} must be between {lo} and {hi} GB")
    return value

import pytest
import requests

from common.errors import BackendUnavailable, InvalidRequest
from conftest import FakeHttp, FakeResponse
from recommender.catalog import STATIC_MODELS, VRAM_RANGE, ModelCatalog, parse_hardware
from recommender.huggingface import HuggingFaceLookup


class Installed:
    def __init__(self, *names, fail=False):
        self.names = names
        self.fail = fail
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.fail:
            raise BackendUnavailable("Ollama is down")
        return {"models": [{"name": n} for n in self.names]}


@pytest.fixture
def hf():
    return FakeHttp()


def lookup(hf):
    return HuggingFaceLookup("http://hf.test", timeout=3, http=hf)


def test_installed_models_are_merged_and_enriched(hf):
    hf.on("GET", "/api/models", FakeResponse(body=[{"modelId": "microsoft/phi-3", "pipeline_tag": "text-generation"}]))
    catalog = ModelCatalog(Installed("mistral:latest", "phi3:mini", "tinyllama"), lookup(hf))

    models = catalog.models()
    assert set(models) == {"mistral", "phi3:mini", "tinyllama"}
    assert models["mistral"] == STATIC_MODELS["mistral"]
    phi = models["phi3:mini"]
    assert phi.tasks == ["text generation"]
    assert phi.hardware_req.min_vram_gb == 8 and phi.score == 6
    assert "microsoft/phi-3" in phi.description

    call = hf.calls_to("/api/models")[0]
    assert call["params"] == {"search": "phi3", "limit": 1}
    assert call["timeout"] == 3


def test_tags_used_when_no_pipeline_tag(hf):
    hf.on("GET", "/api/models", FakeResponse(body=[{"id": "x/y", "tags": ["pytorch", "code", "Chat"]}]))
    catalog = ModelCatalog(Installed("starcoder"), lookup(hf))
    assert catalog.models()["starcoder"].tasks == ["code", "Chat"]


@pytest.mark.parametrize("answer", [
    requests.exceptions.ConnectTimeout("slow"),
    FakeResponse(status_code=503, text="busy"),
    FakeResponse(body=[]),
    FakeResponse(text="not json"),
])
def test_lookup_failures_fall_back_to_placeholder(hf, answer):
    hf.on("GET", "/api/models", answer)
    catalog = ModelCatalog(Installed("mystery"), lookup(hf))
    info = catalog.models()["mystery"]
    assert info.tasks == ["chat", "generate", "general"]
    assert "metadata is missing" in info.description


def test_backend_down_uses_static_table():
    catalog = ModelCatalog(Installed(fail=True))
    assert set(catalog.models()) == set(STATIC_MODELS)


def test_catalog_refreshes_after_ttl(hf):
    now = [0.0]
    installed = Installed("mistral")
    catalog = ModelCatalog(installed, lookup(hf), ttl=300, clock=lambda: now[0])
    catalog.models()
    catalog.models()
    assert installed.calls == 1
    now[0] = 301.0
    catalog.models()
    assert installed.calls == 2
    catalog.invalidate()
    catalog.models()
    assert installed.calls == 3


def test_enrichment_is_looked_up_once(hf):
    hf.on("GET", "/api/models", FakeResponse(body=[]))
    catalog = ModelCatalog(Installed("mystery"), lookup(hf), ttl=0)
    catalog.models()
    catalog.models()
    assert len(hf.calls) == 1


def test_recommend_filters_and_sorts():
    catalog = ModelCatalog(Installed(fail=True))
    names = [m.name for m in catalog.recommend(8, 16)]
    assert names == ["codellama:7b-code", "mistral", "llama2:7b-chat", "gemma:2b", "tinyllama"]
    assert [m.name for m in catalog.recommend(8, 16, "CODE")] == ["codellama:7b-code", "mistral"]
    assert [m.name for m in catalog.recommend(2, 4)] == ["tinyllama"]
    assert catalog.recommend(1, 1) == []
    assert [m.name for m in catalog.recommend(64, 64, "advanced")] == ["llama2:13b"]


def test_tasks_are_unique_and_sorted():
    catalog = ModelCatalog(Installed(fail=True))
    tasks = catalog.tasks()
    assert tasks == sorted(set(tasks))
    assert "programming" in tasks and "summarization" in tasks


def test_parse_hardware():
    assert parse_hardware(None, 8, VRAM_RANGE, "VRAM") == 8
    assert parse_hardware("", 8, VRAM_RANGE, "VRAM") == 8
    assert parse_hardware("24", 8, VRAM_RANGE, "VRAM") == 24
    with pytest.raises(InvalidRequest):
        parse_hardware("lots", 8, VRAM_RANGE, "VRAM")
    with pytest.raises(InvalidRequest):
        parse_hardware("0", 8, VRAM_RANGE, "VRAM")
    with pytest.raises(InvalidRequest):
        parse_hardware("2048", 8, VRAM_RANGE, "VRAM")

from typing import List, Optional, Tuple

import requests

from common.logging_setup import get_logger

log = get_logger("huggingface")

# tags that say something about what a model is good at
RELEVANT_TASK_TAGS = {
    "llama", "mistral", "gemma", "phi",
    "code", "chat", "instruct", "conversation",
    "text-generation", "conversational", "causal-lm",
    "question-answering", "summarization", "translation",
    "text2text-generation", "fill-mask",
}


class HuggingFaceLookup:
    """One best-effort search per unknown model; never raises."""

    def __init__(self, base_url: str = "https://huggingface.co", timeout: float = 3.0,
                 http: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http = http or requests.Session()

    def lookup(self, model_name: str) -> Optional[Tuple[str, List[str]]]:
        """Return ``(hf_model_id, tasks)`` for the best match, or None."""
        query = model_name.split(":")[0]
        try:
            resp = self._http.get(f"{self.base_url}/api/models",
                                  params={"search": query, "limit": 1}, timeout=self.timeout)
            if resp.status_code != 200:
                log.warning("HF search returned %s for %s", resp.status_code, model_name)
                return None
            results = resp.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            log.warning("HF search failed for %s: %s", model_name, e)
            return None
        if not isinstance(results, list) or not results or not isinstance(results[0], dict):
            log.info("HF search found nothing for %s", query)
            return None

        hit = results[0]
        tasks: List[str] = []
        if hit.get("pipeline_tag"):
            tasks = [str(hit["pipeline_tag"]).replace("-", " ")]
        else:
            tasks = [t for t in hit.get("tags") or [] if str(t).lower() in RELEVANT_TASK_TAGS]
        return str(hit.get("modelId") or hit.get("id") or query), tasks

"""OpenAI-compatible HTTP adapters: chat completions for extraction and
consistency checks, and the embeddings endpoint.

Only the REST surface is used, so any server speaking the same protocol
(vLLM, Ollama, LM Studio, ...) works through ``base_url``.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from typing import Any

import httpx

from ..cancel import CancelToken, check
from ..errors import LLMError
from ..models import ConsistencyIssue, Fact
from .http import HttpClientFactory, transient_retry

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_CHAT_MODEL = "gpt-4o-mini"
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"
# dimension of text-embedding-3-small
DEFAULT_EMBEDDING_DIM = 1536

EXTRACTION_PROMPT = """You are a fact extractor for fictional worlds. Extract facts from the given text.

For each fact, identify:
- type: one of {types}
- subject: What/who the fact is about
- predicate: The property or relationship
- object: The value or target
- context: Any relevant context (optional)
- confidence: How confident you are (0.0-1.0)

Return ONLY a valid JSON array, no other text.

Example:
Input: "Frodo has blue eyes and lives in the Shire."
Output: [
  {{"type": "character", "subject": "Frodo", "predicate": "eye_color", "object": "blue", "confidence": 0.95}},
  {{"type": "character", "subject": "Frodo", "predicate": "lives_in", "object": "the Shire", "confidence": 0.95}}
]"""

CONSISTENCY_PROMPT = """Compare these new facts against existing facts. Identify any inconsistencies or contradictions.

New facts:
{new}

Existing facts:
{existing}

For each inconsistency found, return:
- new_fact_index: Index of the conflicting new fact (0-based)
- existing_fact_index: Index of the contradicted existing fact (0-based)
- description: What the conflict is
- severity: "minor", "major", or "critical"

Return ONLY a valid JSON array, no other text. Return empty array [] if no inconsistencies found."""

SEVERITIES = ("minor", "major", "critical")


def clean_json_response(content: str) -> str:
    """Strip a surrounding markdown code fence, if any."""
    content = content.strip()
    if content.startswith("```json"):
        content = content[len("```json") :]
    elif content.startswith("```"):
        content = content[3:]
    else:
        return content
    if content.endswith("```"):
        content = content[:-3]
    return content.strip()


def object_to_string(obj: Any) -> str:
    """Models sometimes answer with a bare number or bool for ``object``."""
    if isinstance(obj, str):
        return obj
    if isinstance(obj, bool):
        return "true" if obj else "false"
    if isinstance(obj, float) and obj.is_integer():
        return str(int(obj))
    if obj is None:
        return ""
    return str(obj)


def _clamp(x: Any) -> float:
    try:
        v = float(x)
    except (TypeError, ValueError):
        return 1.0
    return min(1.0, max(0.0, v))


def fact_to_raw(f: Fact) -> dict[str, Any]:
    raw: dict[str, Any] = {
        "type": f.type,
        "subject": f.subject,
        "predicate": f.predicate,
        "object": f.object,
        "confidence": f.confidence,
    }
    if f.context:
        raw["context"] = f.context
    return raw


class _OpenAIBase:
    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        *,
        max_attempts: int = 5,
        retry_initial_s: float = 0.5,
        transport: httpx.BaseTransport | None = None,
    ):
        if not api_key:
            raise LLMError("API key is required")
        self._client = HttpClientFactory.client(
            base_url=base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {api_key}"},
            transport=transport,
        )
        self._retry = transient_retry(attempts=max_attempts, initial=retry_initial_s)

    def close(self) -> None:
        self._client.close()

    def _post_once(self, path: str, payload: dict[str, Any], cancel: CancelToken | None) -> dict[str, Any]:
        # runs once per attempt, so cancellation is honoured between retries
        check(cancel)
        r = self._client.post(path, json=payload)
        r.raise_for_status()
        return r.json()

    def _post(self, path: str, payload: dict[str, Any], cancel: CancelToken | None) -> dict[str, Any]:
        try:
            return self._retry(self._post_once)(path, payload, cancel)
        except httpx.HTTPStatusError as e:
            raise LLMError(f"calling {path}: HTTP {e.response.status_code}: {e.response.text[:200]}") from e
        except httpx.HTTPError as e:
            raise LLMError(f"calling {path}: {e}") from e
        except ValueError as e:
            raise LLMError(f"calling {path}: invalid JSON response: {e}") from e


class OpenAIChatClient(_OpenAIBase):
    """Fact extractor and consistency checker backed by a chat model."""

    def __init__(self, api_key: str, base_url: str = DEFAULT_BASE_URL, model: str = DEFAULT_CHAT_MODEL, **kw):
        super().__init__(api_key, base_url, **kw)
        self.model = model or DEFAULT_CHAT_MODEL

    def _chat(self, messages: list[dict[str, str]], cancel: CancelToken | None) -> str:
        data = self._post(
            "/chat/completions",
            {"model": self.model, "messages": messages, "temperature": 0.1},
            cancel,
        )
        choices = data.get("choices") or []
        if not choices:
            raise LLMError("no response from model")
        return clean_json_response(choices[0].get("message", {}).get("content") or "")

    @staticmethod
    def _json_array(content: str, what: str) -> list[dict[str, Any]]:
        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as e:
            raise LLMError(f"parsing {what} JSON: {e} (response: {content[:200]})") from e
        if not isinstance(parsed, list):
            raise LLMError(f"parsing {what} JSON: expected an array (response: {content[:200]})")
        return [x for x in parsed if isinstance(x, dict)]

    def extract_facts(
        self, text: str, valid_types: Sequence[str], *, cancel: CancelToken | None = None
    ) -> list[Fact]:
        system = EXTRACTION_PROMPT.format(types=", ".join(valid_types))
        content = self._chat(
            [{"role": "system", "content": system}, {"role": "user", "content": text}], cancel
        )
        facts: list[Fact] = []
        for raw in self._json_array(content, "facts"):
            facts.append(
                Fact(
                    type=str(raw.get("type") or "").strip().lower(),
                    subject=object_to_string(raw.get("subject")),
                    predicate=object_to_string(raw.get("predicate")),
                    object=object_to_string(raw.get("object")),
                    context=object_to_string(raw.get("context")),
                    confidence=_clamp(raw.get("confidence", 1.0)),
                )
            )
        logger.debug("Model returned %d facts", len(facts))
        return facts

    def check_consistency(
        self,
        new_facts: Sequence[Fact],
        existing_facts: Sequence[Fact],
        *,
        cancel: CancelToken | None = None,
    ) -> list[ConsistencyIssue]:
        if not new_facts or not existing_facts:
            return []
        prompt = CONSISTENCY_PROMPT.format(
            new=json.dumps([fact_to_raw(f) for f in new_facts]),
            existing=json.dumps([fact_to_raw(f) for f in existing_facts]),
        )
        content = self._chat([{"role": "user", "content": prompt}], cancel)

        issues: list[ConsistencyIssue] = []
        for raw in self._json_array(content, "consistency"):
            try:
                ni = int(raw["new_fact_index"])
                ei = int(raw["existing_fact_index"])
            except (KeyError, TypeError, ValueError):
                continue
            if not (0 <= ni < len(new_facts) and 0 <= ei < len(existing_facts)):
                continue
            severity = str(raw.get("severity") or "minor").lower()
            issues.append(
                ConsistencyIssue(
                    new_fact=new_facts[ni],
                    existing_fact=existing_facts[ei],
                    description=str(raw.get("description") or ""),
                    severity=severity if severity in SEVERITIES else "minor",
                )
            )
        return issues


class OpenAIEmbedder(_OpenAIBase):
    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        model: str = DEFAULT_EMBEDDING_MODEL,
        dim: int = DEFAULT_EMBEDDING_DIM,
        **kw,
    ):
        super().__init__(api_key, base_url, **kw)
        self.model = model or DEFAULT_EMBEDDING_MODEL
        self.dim = dim

    def embed(self, text: str, *, cancel: CancelToken | None = None) -> list[float]:
        vectors = self.embed_batch([text], cancel=cancel)
        if not vectors:
            raise LLMError("no embeddings returned")
        return vectors[0]

    def embed_batch(self, texts: Sequence[str], *, cancel: CancelToken | None = None) -> list[list[float]]:
        if not texts:
            return []
        data = self._post("/embeddings", {"model": self.model, "input": list(texts)}, cancel)
        items = sorted(data.get("data") or [], key=lambda d: d.get("index", 0))
        return [[float(x) for x in item["embedding"]] for item in items]

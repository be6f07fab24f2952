"""Async OpenAI client wrapper and related value objects.

Classes:
    EmbeddingBatch: Collected embedding vectors plus metadata returned from the embeddings API.
    LabelCompletion: Raw text returned by the text-generation service for one labeling prompt.
    OpenAIService: Handles embeddings and cluster-labeling completions with retry semantics.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Optional

from openai import AsyncOpenAI
from tenacity import RetryError, retry, stop_after_attempt, wait_exponential

from opinion_map.core.config import get_settings

LABELING_SYSTEM_PROMPT = (
    "You are an expert analyst identifying opinion clusters in social media data. "
    "Respond with a single valid JSON object and nothing else."
)

_EMBED_BATCH_MAX = 256


@dataclass(slots=True)
class EmbeddingBatch:
    vectors: list[list[float]]
    model: str
    dim: int
    model_revision: str | None = None
    provider: str = "openai"
    tokens: int | None = None


@dataclass(slots=True)
class LabelCompletion:
    text: str
    model: str
    finish_reason: Optional[str] = None
    usage: Optional[dict[str, Any]] = None


class OpenAIService:
    def __init__(self, client: Optional[AsyncOpenAI] = None) -> None:
        settings = get_settings()
        api_key = settings.openai_api_key.get_secret_value() if settings.openai_api_key else None
        if client is not None:
            self._client = client
        elif api_key:
            self._client = AsyncOpenAI(
                api_key=api_key,
                base_url=settings.openai_base_url,
                timeout=settings.openai_timeout_seconds,
            )
        else:
            self._client = None
        self._settings = settings

    @property
    def is_configured(self) -> bool:
        return self._client is not None

    async def embed_texts(
        self,
        texts: Iterable[str],
        *,
        model: Optional[str] = None,
    ) -> EmbeddingBatch:
        docs = list(texts)
        if self._client is None:
            raise RuntimeError("OpenAI client not configured. Set OPENAI_API_KEY.")

        chosen_model = model or self._settings.openai_embedding_model
        if not docs:
            return EmbeddingBatch(vectors=[], model=chosen_model, dim=0)

        vectors: list[list[float]] = []
        dim = 0
        model_revision: str | None = None
        tokens = 0

        for start in range(0, len(docs), _EMBED_BATCH_MAX):
            chunk = docs[start : start + _EMBED_BATCH_MAX]
            payload = dict(model=chosen_model, input=chunk)
            try:
                response = await _retry_embeddings(self._client, payload)
            except RetryError as exc:  # pragma: no cover - surfaces original error message
                raise exc.last_attempt.result()  # type: ignore[misc]

            chunk_vectors = [item.embedding for item in response.data]
            vectors.extend(chunk_vectors)
            if not dim and chunk_vectors:
                dim = len(chunk_vectors[0])
            response_model = getattr(response, "model", None)
            if response_model:
                model_revision = response_model
            usage = getattr(response, "usage", None)
            if usage is not None:
                tokens += int(getattr(usage, "total_tokens", 0) or 0)

        return EmbeddingBatch(
            vectors=vectors,
            model=chosen_model,
            dim=dim,
            model_revision=model_revision,
            provider="openai",
            tokens=tokens or None,
        )

    async def complete_label(
        self,
        prompt: str,
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> LabelCompletion:
        if self._client is None:
            raise RuntimeError("OpenAI client not configured. Set OPENAI_API_KEY.")

        chosen_model = model or self._settings.openai_labeling_model
        payload: dict[str, Any] = dict(
            model=chosen_model,
            messages=[
                {"role": "system", "content": LABELING_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            temperature=temperature if temperature is not None else self._settings.labeling_temperature,
            response_format={"type": "json_object"},
            n=1,
        )
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens

        try:
            response = await _retry_chat(self._client, payload)
        except RetryError as exc:  # pragma: no cover - surfaces original error message
            raise exc.last_attempt.result()  # type: ignore[misc]

        choice = response.choices[0]
        content = getattr(choice.message, "content", "") or ""
        usage_dict = (
            response.usage.model_dump()  # type: ignore[attr-defined]
            if getattr(response.usage, "model_dump", None)
            else dict(response.usage or {})
        )
        return LabelCompletion(
            text=content.strip(),
            model=chosen_model,
            finish_reason=getattr(choice, "finish_reason", None),
            usage=usage_dict,
        )


@retry(wait=wait_exponential(multiplier=1, min=1, max=20), stop=stop_after_attempt(3))
async def _retry_chat(client: AsyncOpenAI, payload: dict[str, Any]):
    return await client.chat.completions.create(**payload)


@retry(wait=wait_exponential(multiplier=1, min=1, max=20), stop=stop_after_attempt(3))
async def _retry_embeddings(client: AsyncOpenAI, payload: dict[str, Any]):
    return await client.embeddings.create(**payload)

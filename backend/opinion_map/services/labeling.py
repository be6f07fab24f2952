"""AI labeling of opinion clusters.

Labels are written in the zone's configured language so reports and chat can use
them as-is. When the text-generation service fails, a keyword-based label is
produced instead; labeling never aborts the pipeline.

Classes:
    ClusterGroup: Member texts of one cluster awaiting a label.
    ClusterLabel: Label, keywords, sentiment and rationale for one cluster.
    ClusterLabeler: Calls the text-generation service with bounded concurrency.

Functions:
    extract_keywords(texts, top_n): Most frequent informative tokens.
    sample_texts(texts, sample_size): Evenly spaced subset of texts.
    parse_label_response(text): Validate and normalise a model response.
    fallback_label(cluster_id, keywords, language): Keyword label used on failure.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional, Sequence

from opinion_map.core.config import get_settings
from opinion_map.core.exceptions import LabelingError
from opinion_map.services.openai_client import OpenAIService
from opinion_map.utils.text import keyword_tokens

_LOGGER = logging.getLogger(__name__)

MAX_LABEL_CHARS = 80
MAX_REASONING_CHARS = 350
LABEL_CONFIDENCE = 0.8
FALLBACK_CONFIDENCE = 0.3

LANGUAGE_NAMES = {
    "en": "English",
    "fr": "French",
    "es": "Spanish",
    "pt": "Portuguese",
    "de": "German",
    "it": "Italian",
    "ar": "Arabic",
}

FALLBACK_MESSAGES = {
    "en": ("This cluster discusses topics related to", "Cluster analysis unavailable."),
    "fr": ("Ce cluster traite de sujets liés à", "Analyse du cluster non disponible."),
    "es": ("Este cluster discute temas relacionados con", "Análisis del cluster no disponible."),
    "pt": ("Este cluster discute tópicos relacionados a", "Análise do cluster não disponível."),
    "de": ("Dieser Cluster diskutiert Themen im Zusammenhang mit", "Cluster-Analyse nicht verfügbar."),
    "it": ("Questo cluster discute argomenti relativi a", "Analisi del cluster non disponibile."),
    "ar": ("تناقش هذه المجموعة موضوعات متعلقة بـ", "تحليل المجموعة غير متوفر."),
}

_CODE_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")
_CONTROL_CHARS = re.compile(r"[\u0000-\u001f\u007f-\u009f]")
_TRAILING_COMMA = re.compile(r",(\s*[}\]])")


@dataclass(slots=True)
class ClusterGroup:
    cluster_id: int
    texts: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ClusterLabel:
    cluster_id: int
    label: str
    keywords: list[str] = field(default_factory=list)
    sentiment: float = 0.0
    confidence: float = FALLBACK_CONFIDENCE
    reasoning: Optional[str] = None
    is_fallback: bool = False


def extract_keywords(texts: Sequence[str], top_n: int = 10) -> list[str]:
    counts: Counter[str] = Counter()
    for text in texts:
        counts.update(keyword_tokens(text))
    # Counter.most_common keeps first-seen order among ties.
    return [word for word, _ in counts.most_common(top_n)]


def sample_texts(texts: Sequence[str], sample_size: Optional[int] = None) -> list[str]:
    size = sample_size or get_settings().labeling_max_posts
    if len(texts) <= size:
        return list(texts)
    step = len(texts) / size
    return [texts[int(math.floor(index * step))] for index in range(size)]


def parse_label_response(text: str) -> dict[str, Any]:
    """Extract and validate the JSON object in a labeling response.

    Tolerates markdown fences, surrounding prose, trailing commas and a
    one-element array. Raises ``LabelingError`` when ``label`` or a finite
    numeric ``sentiment`` is missing.
    """

    payload = (text or "").strip()
    fenced = _CODE_FENCE.search(payload)
    if fenced:
        payload = fenced.group(1).strip()
    if not payload.startswith("["):
        match = _JSON_OBJECT.search(payload)
        if match:
            payload = match.group(0)
    payload = _TRAILING_COMMA.sub(r"\1", _CONTROL_CHARS.sub("", payload)).strip()

    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise LabelingError(f"Response is not valid JSON: {exc}") from exc

    if isinstance(parsed, list):
        if not parsed:
            raise LabelingError("Empty array in response")
        parsed = parsed[0]
    if not isinstance(parsed, dict):
        raise LabelingError(f"Invalid response format: {payload[:200]}")

    label = parsed.get("label")
    sentiment = parsed.get("sentiment")
    if not isinstance(label, str) or len(label.strip()) < 2:
        raise LabelingError(f"Invalid label: {label!r}")
    if isinstance(sentiment, bool) or not isinstance(sentiment, (int, float)):
        raise LabelingError(f"Invalid sentiment: {sentiment!r}")
    if not math.isfinite(sentiment):
        raise LabelingError(f"Invalid sentiment (non-finite): {sentiment!r}")

    result: dict[str, Any] = {
        "label": label.strip()[:MAX_LABEL_CHARS],
        "sentiment": max(-1.0, min(1.0, float(sentiment))),
    }
    for key in ("description", "reasoning"):
        value = parsed.get(key)
        if isinstance(value, str) and value.strip():
            result[key] = value.strip()[:MAX_REASONING_CHARS]
    keywords = parsed.get("keywords")
    if isinstance(keywords, list):
        result["keywords"] = [str(word).strip() for word in keywords if str(word).strip()]
    confidence = parsed.get("confidence")
    if isinstance(confidence, (int, float)) and not isinstance(confidence, bool) and math.isfinite(confidence):
        result["confidence"] = max(0.0, min(1.0, float(confidence)))
    return result


def fallback_label(cluster_id: int, keywords: Sequence[str], language: str = "en") -> ClusterLabel:
    related, unavailable = FALLBACK_MESSAGES.get(language, FALLBACK_MESSAGES["en"])
    if keywords:
        label = ", ".join(keywords[:3])
        reasoning = f"{related} {', '.join(keywords[:5])}."
    else:
        label = f"Cluster {cluster_id}"
        reasoning = unavailable
    return ClusterLabel(
        cluster_id=cluster_id,
        label=label,
        keywords=list(keywords),
        sentiment=0.0,
        confidence=FALLBACK_CONFIDENCE,
        reasoning=reasoning,
        is_fallback=True,
    )


def build_label_prompt(
    texts: Sequence[str],
    keywords: Sequence[str],
    *,
    context: Optional[str] = None,
    language: str = "en",
) -> str:
    target_language = LANGUAGE_NAMES.get(language, LANGUAGE_NAMES["en"])
    context_section = (
        f"\n\nOperational context:\n{context.strip()}\n\n"
        "Use this context to judge the significance of the posts."
        if context and context.strip()
        else ""
    )
    numbered = "\n".join(f"{index + 1}. {text}" for index, text in enumerate(texts))
    return (
        f"Analyze these {len(texts)} social media posts, which were grouped together by "
        f"semantic similarity.{context_section}\n\n"
        f"Posts:\n{numbered}\n\n"
        f"Detected keywords: {', '.join(keywords)}\n\n"
        "Return a JSON object with:\n"
        '- "label": a specific title of 2-5 words saying who says what or what is happening '
        '(avoid vague titles such as "Discussion" or "Mixed Opinions").\n'
        '- "description": 2-4 sentences on the shared narrative, the kind of voices involved '
        "and why it matters for monitoring.\n"
        '- "sentiment": a number from -1.0 (strongly negative) to 1.0 (strongly positive).\n\n'
        f"Write the label and description in {target_language}.\n"
        'Example: {"label": "Media Criticism Wave", "description": "...", "sentiment": -0.4}'
    )


class ClusterLabeler:
    def __init__(self, openai_service: Optional[OpenAIService] = None) -> None:
        self._settings = get_settings()
        self._openai = openai_service or OpenAIService()

    async def generate_cluster_label(
        self,
        texts: Sequence[str],
        cluster_id: int,
        context: Optional[str] = None,
        language: Optional[str] = None,
    ) -> ClusterLabel:
        """Label one cluster, falling back to its keywords on any upstream failure."""

        language = language or self._settings.default_zone_language
        sampled = sample_texts(texts, self._settings.labeling_max_posts)
        keywords = extract_keywords(sampled, 10)
        prompt = build_label_prompt(sampled, keywords, context=context, language=language)

        _LOGGER.info(
            "Labeling cluster %s (%s posts, language=%s, context=%s)",
            cluster_id,
            len(texts),
            language,
            bool(context),
        )
        try:
            completion = await asyncio.wait_for(
                self._openai.complete_label(
                    prompt,
                    temperature=self._settings.labeling_temperature,
                    max_tokens=self._settings.labeling_max_tokens,
                ),
                timeout=self._settings.labeling_timeout_seconds,
            )
            parsed = parse_label_response(completion.text)
        except Exception as exc:
            _LOGGER.warning("Labeling cluster %s failed, using keyword label: %s", cluster_id, exc)
            return fallback_label(cluster_id, keywords, language)

        return ClusterLabel(
            cluster_id=cluster_id,
            label=parsed["label"],
            keywords=keywords,
            sentiment=parsed["sentiment"],
            confidence=parsed.get("confidence", LABEL_CONFIDENCE),
            reasoning=parsed.get("description") or parsed.get("reasoning"),
        )

    async def iter_label_batches(
        self,
        groups: Sequence[ClusterGroup],
        context: Optional[str] = None,
        language: Optional[str] = None,
        concurrency: Optional[int] = None,
    ) -> AsyncIterator[list[ClusterLabel]]:
        """Label clusters in fixed-size concurrent batches, yielding each finished batch."""

        size = max(1, concurrency or self._settings.labeling_concurrency)
        for start in range(0, len(groups), size):
            batch = groups[start : start + size]
            labels = await asyncio.gather(
                *(
                    self.generate_cluster_label(group.texts, group.cluster_id, context, language)
                    for group in batch
                )
            )
            yield list(labels)

import json

import pytest

from opinion_map.core.exceptions import LabelingError
from opinion_map.services.labeling import (
    ClusterGroup,
    ClusterLabeler,
    extract_keywords,
    fallback_label,
    parse_label_response,
    sample_texts,
)


@pytest.mark.parametrize(
    "text",
    [
        '{"label": "Transit fare protest", "description": "Riders object.", "sentiment": -0.6}',
        '```json\n{"label": "Transit fare protest", "description": "Riders object.", "sentiment": -0.6}\n```',
        'Sure! Here it is: {"label": "Transit fare protest", "description": "Riders object.", "sentiment": -0.6,}',
        '[{"label": "Transit fare protest", "description": "Riders object.", "sentiment": -0.6}]',
    ],
)
def test_parse_label_response_tolerates_common_wrappers(text):
    parsed = parse_label_response(text)

    assert parsed["label"] == "Transit fare protest"
    assert parsed["description"] == "Riders object."
    assert parsed["sentiment"] == pytest.approx(-0.6)


def test_parse_label_response_clamps_and_trims():
    parsed = parse_label_response(json.dumps({"label": "  " + "x" * 120, "sentiment": 3, "confidence": 2}))

    assert len(parsed["label"]) == 80
    assert parsed["sentiment"] == 1.0
    assert parsed["confidence"] == 1.0


@pytest.mark.parametrize(
    "text",
    [
        "no json here",
        "[]",
        '{"description": "missing label", "sentiment": 0.1}',
        '{"label": "x", "sentiment": 0.1}',
        '{"label": "Valid label", "sentiment": "positive"}',
        '{"label": "Valid label", "sentiment": true}',
        '{"label": "Valid label"}',
    ],
)
def test_parse_label_response_rejects_invalid_payloads(text):
    with pytest.raises(LabelingError):
        parse_label_response(text)


def test_extract_keywords_skips_stop_words_and_numbers():
    texts = [
        "The tram fares are rising again",
        "Tram fares rising, 2025 budget is a joke",
        "Why are tram fares so high?",
    ]

    keywords = extract_keywords(texts, top_n=3)

    assert keywords == ["tram", "fares", "rising"]


def test_sample_texts_spreads_over_cluster():
    texts = [f"post {index}" for index in range(10)]

    assert sample_texts(texts, 4) == ["post 0", "post 2", "post 5", "post 7"]
    assert sample_texts(texts[:3], 4) == texts[:3]


def test_fallback_label_uses_keywords_and_language():
    label = fallback_label(3, ["tram", "fares", "rising", "budget"], "fr")

    assert label.label == "tram, fares, rising"
    assert label.reasoning.startswith("Ce cluster traite de sujets liés à")
    assert label.is_fallback
    assert label.sentiment == 0.0
    assert label.confidence == pytest.approx(0.3)

    empty = fallback_label(4, [], "xx")
    assert empty.label == "Cluster 4"
    assert empty.reasoning == "Cluster analysis unavailable."


@pytest.mark.asyncio
async def test_generate_cluster_label_uses_model_response(fake_openai):
    labeler = ClusterLabeler(fake_openai)

    label = await labeler.generate_cluster_label(
        ["Tram fares keep rising", "Tram fares are too high"],
        cluster_id=2,
        context="Regional transport authority",
        language="fr",
    )

    assert label.label == "Topic group 1"
    assert label.reasoning == "Posts share a theme."
    assert label.sentiment == pytest.approx(0.25)
    assert label.confidence == pytest.approx(0.8)
    assert not label.is_fallback
    assert label.keywords[:2] == ["tram", "fares"]
    prompt = fake_openai.label_prompts[0]
    assert "Regional transport authority" in prompt
    assert "Write the label and description in French." in prompt


@pytest.mark.asyncio
async def test_generate_cluster_label_falls_back_on_bad_output(openai_factory):
    labeler = ClusterLabeler(openai_factory(label_text="I cannot help with that."))

    label = await labeler.generate_cluster_label(["Tram fares keep rising"], cluster_id=5)

    assert label.is_fallback
    assert label.cluster_id == 5
    assert label.label == "tram, fares, keep"


@pytest.mark.asyncio
async def test_generate_cluster_label_falls_back_on_service_error(openai_factory):
    class BrokenOpenAIService(openai_factory):
        async def complete_label(self, prompt, **_):
            raise RuntimeError("upstream unavailable")

    label = await ClusterLabeler(BrokenOpenAIService()).generate_cluster_label([], cluster_id=1)

    assert label.is_fallback
    assert label.label == "Cluster 1"


@pytest.mark.asyncio
async def test_iter_label_batches_respects_concurrency(fake_openai):
    labeler = ClusterLabeler(fake_openai)
    groups = [ClusterGroup(cluster_id=index, texts=[f"Opinion about item {index}"]) for index in range(5)]

    batches = [batch async for batch in labeler.iter_label_batches(groups, concurrency=2)]

    assert [len(batch) for batch in batches] == [2, 2, 1]
    assert [label.cluster_id for batch in batches for label in batch] == [0, 1, 2, 3, 4]

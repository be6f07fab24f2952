from uuid import uuid4

import pytest
import pytest_asyncio

from opinion_map.api.routes.opinion_map import get_vector_store
from opinion_map.main import app
from opinion_map.models import SessionStatus
from opinion_map.services.dispatch import get_dispatcher
from opinion_map.services.labeling import ClusterLabeler
from opinion_map.services.pipeline import OpinionMapPipeline
from opinion_map.services.sessions import SessionService
from opinion_map.services.vectorization import VectorStore


class RecordingDispatcher:
    def __init__(self) -> None:
        self.dispatched: list[str] = []

    async def dispatch(self, session_id, background_tasks=None) -> str:
        self.dispatched.append(session_id)
        return f"test:{session_id}"


@pytest_asyncio.fixture()
async def dispatcher(client, fake_openai):
    recorder = RecordingDispatcher()
    app.dependency_overrides[get_dispatcher] = lambda: recorder
    app.dependency_overrides[get_vector_store] = lambda: VectorStore(fake_openai, expected_dim=8)
    return recorder


def _generate_payload(zone, **overrides) -> dict:
    payload = {
        "zone_id": str(zone.id),
        "start_date": "2025-01-01T00:00:00",
        "end_date": "2025-01-03T00:00:00",
    }
    payload.update(overrides)
    return payload


@pytest.mark.asyncio
async def test_generate_creates_and_dispatches_session(client, session, zone, make_posts, dispatcher):
    await make_posts(session, zone, per_topic=2, with_embeddings=True)

    response = await client.post("/opinion-map/generate", json=_generate_payload(zone), headers={"X-User-Id": "u-7"})

    assert response.status_code == 202
    payload = response.json()
    assert payload["created"] is True
    assert payload["status"] == SessionStatus.PENDING
    assert payload["sampled_posts"] == 6
    assert payload["total_available"] == 6
    assert payload["sampling_strategy"] == "all"
    assert payload["cache_hit_rate"] == pytest.approx(100.0)
    assert payload["estimated_time_seconds"] > 0
    assert dispatcher.dispatched == [payload["session_id"]]

    record = await SessionService().get_session(session, payload["session_id"])
    assert record.created_by == "u-7"
    assert len(record.sampled_post_ids) == 6
    assert record.config["start_date"] == "2025-01-01T00:00:00"


@pytest.mark.asyncio
async def test_generate_can_prioritize_engagement(client, session, zone, make_posts, dispatcher):
    posts = await make_posts(session, zone, per_topic=2)

    response = await client.post(
        "/opinion-map/generate",
        json=_generate_payload(zone, sample_size=3, prioritize_engagement=True),
    )

    assert response.status_code == 202
    payload = response.json()
    assert payload["sampling_strategy"] == "stratified_engagement"
    assert payload["sampled_posts"] == 3

    record = await SessionService().get_session(session, payload["session_id"])
    assert record.sampled_post_ids == [str(post.id) for post in posts[3:]]
    assert record.config["prioritize_engagement"] is True

@pytest.mark.asyncio
async def test_generate_returns_running_session(client, session, zone, make_posts, dispatcher):
    await make_posts(session, zone, per_topic=2)

    first = (await client.post("/opinion-map/generate", json=_generate_payload(zone))).json()
    second = await client.post("/opinion-map/generate", json=_generate_payload(zone))

    assert second.status_code == 202
    assert second.json()["created"] is False
    assert second.json()["session_id"] == first["session_id"]
    assert dispatcher.dispatched == [first["session_id"]]


@pytest.mark.asyncio
async def test_generate_validation_errors(client, zone, dispatcher):
    response = await client.post("/opinion-map/generate", json=_generate_payload(zone, zone_id=str(uuid4())))
    assert response.status_code == 404

    response = await client.post(
        "/opinion-map/generate",
        json=_generate_payload(zone, start_date="2025-02-01T00:00:00", end_date="2025-01-01T00:00:00"),
    )
    assert response.status_code == 422

    response = await client.post("/opinion-map/generate", json=_generate_payload(zone))
    assert response.status_code == 404
    assert response.json()["detail"] == "No posts found for this period"
    assert dispatcher.dispatched == []


@pytest.mark.asyncio
async def test_status_and_cancel(client, session, zone, make_posts, dispatcher):
    await make_posts(session, zone, per_topic=1)
    session_id = (await client.post("/opinion-map/generate", json=_generate_payload(zone))).json()["session_id"]

    status_response = await client.get("/opinion-map/status", params={"session_id": session_id})
    assert status_response.status_code == 200
    assert status_response.json()["progress"] == 0

    cancelled = await client.post("/opinion-map/cancel", json={"session_id": session_id})
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == SessionStatus.CANCELLED

    again = await client.post("/opinion-map/cancel", json={"session_id": session_id})
    assert again.status_code == 200

    missing = await client.get("/opinion-map/status", params={"session_id": "zone_nope"})
    assert missing.status_code == 404
    assert (await client.post("/opinion-map/cancel", json={"session_id": "zone_nope"})).status_code == 404


@pytest.mark.asyncio
async def test_retry_starts_new_session(client, session, zone, make_posts, dispatcher):
    await make_posts(session, zone, per_topic=1)
    session_id = (await client.post("/opinion-map/generate", json=_generate_payload(zone))).json()["session_id"]

    conflict = await client.post("/opinion-map/retry", json={"session_id": session_id})
    assert conflict.status_code == 409

    await client.post("/opinion-map/cancel", json={"session_id": session_id})
    response = await client.post("/opinion-map/retry", json={"session_id": session_id})

    assert response.status_code == 202
    retried = response.json()
    assert retried["session_id"] != session_id
    assert retried["config"]["retry_of"] == session_id
    assert dispatcher.dispatched == [session_id, retried["session_id"]]


@pytest.mark.asyncio
async def test_latest_returns_map_once_completed(client, session, zone, make_posts, dispatcher, fake_openai):
    empty = await client.get("/opinion-map/latest", params={"zone_id": str(zone.id)})
    assert empty.status_code == 200
    assert empty.json() == {"session": None, "points": [], "clusters": []}

    await make_posts(session, zone, per_topic=1, with_embeddings=True)
    session_id = (await client.post("/opinion-map/generate", json=_generate_payload(zone))).json()["session_id"]

    pending = (await client.get("/opinion-map/latest", params={"zone_id": str(zone.id)})).json()
    assert pending["session"]["session_id"] == session_id
    assert pending["points"] == []

    pipeline = OpinionMapPipeline(
        fake_openai,
        vector_store=VectorStore(fake_openai, expected_dim=8),
        labeler=ClusterLabeler(fake_openai),
    )
    await pipeline.run(session, session_id)

    latest = (await client.get("/opinion-map/latest", params={"zone_id": str(zone.id)})).json()
    assert latest["session"]["status"] == SessionStatus.COMPLETED
    assert len(latest["points"]) == 3
    assert len(latest["clusters"]) == latest["session"]["total_clusters"]

    direct = await client.get(f"/opinion-map/sessions/{session_id}/map")
    assert direct.status_code == 200
    assert len(direct.json()["points"]) == 3


@pytest.mark.asyncio
async def test_cluster_detail_and_evolution(client, session, zone, make_posts, dispatcher, fake_openai):
    await make_posts(session, zone, per_topic=10, with_embeddings=True)
    session_id = (await client.post("/opinion-map/generate", json=_generate_payload(zone))).json()["session_id"]
    pipeline = OpinionMapPipeline(
        fake_openai,
        vector_store=VectorStore(fake_openai, expected_dim=8),
        labeler=ClusterLabeler(fake_openai),
    )
    await pipeline.run(session, session_id)

    clusters = (await client.get(f"/opinion-map/sessions/{session_id}/map")).json()["clusters"]
    assert clusters
    first = clusters[0]

    detail = await client.get(f"/opinion-map/sessions/{session_id}/clusters/{first['cluster_id']}")
    assert detail.status_code == 200
    assert detail.json()["cluster"]["label"] == first["label"]
    assert len(detail.json()["points"]) == first["post_count"]
    assert {point["cluster_id"] for point in detail.json()["points"]} == {first["cluster_id"]}

    assert (await client.get(f"/opinion-map/sessions/{session_id}/clusters/999")).status_code == 404
    assert (await client.get("/opinion-map/sessions/zone_nope/clusters/0")).status_code == 404

    evolution = await client.get(f"/opinion-map/sessions/{session_id}/evolution")
    assert evolution.status_code == 200
    payload = evolution.json()
    assert payload["granularity"] == "6hours"
    assert len(payload["buckets"]) == 9
    key = str(first["cluster_id"])
    assert sum(bucket["counts"][key] for bucket in payload["buckets"]) == first["post_count"]

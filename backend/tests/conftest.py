import base64
import hashlib
import hmac
import json
import time
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta

import numpy as np
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from opinion_map.main import app
from opinion_map.db.session import get_session
from opinion_map.models import Post, Zone
from opinion_map.services.openai_client import EmbeddingBatch, LabelCompletion

EMBED_DIM = 8
QSTASH_TEST_URL = "https://example.test/webhooks/opinion-map-worker"

# Three well separated directions; texts mentioning a topic land near its axis.
TOPIC_AXES = {
    "energy": np.array([1.0, 0.0, 0.0, 0.0, 0.2, 0.0, 0.0, 0.0]),
    "transit": np.array([0.0, 1.0, 0.0, 0.0, 0.0, 0.2, 0.0, 0.0]),
    "housing": np.array([0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 0.2, 0.0]),
}


def topic_vector(text: str) -> list[float]:
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    rng = np.random.default_rng(int.from_bytes(digest[:4], "big"))
    base = np.zeros(EMBED_DIM)
    for topic, axis in TOPIC_AXES.items():
        if topic in text:
            base = base + axis * 5.0
    return (base + rng.normal(scale=0.3, size=EMBED_DIM)).tolist()


class FakeOpenAIService:
    def __init__(self, *, fail_embeddings: bool = False, label_text: str | None = None) -> None:
        self.fail_embeddings = fail_embeddings
        self.label_text = label_text
        self.embed_payloads: list[list[str]] = []
        self.label_prompts: list[str] = []

    @property
    def is_configured(self) -> bool:
        return False

    async def embed_texts(self, texts, **_: object) -> EmbeddingBatch:
        docs = list(texts)
        self.embed_payloads.append(docs)
        if self.fail_embeddings:
            raise RuntimeError("embedding service unavailable")
        return EmbeddingBatch(vectors=[topic_vector(text) for text in docs], model="fake-embedding", dim=EMBED_DIM)

    async def complete_label(self, prompt: str, **_: object) -> LabelCompletion:
        self.label_prompts.append(prompt)
        text = self.label_text or json.dumps(
            {"label": f"Topic group {len(self.label_prompts)}", "description": "Posts share a theme.", "sentiment": 0.25}
        )
        return LabelCompletion(text=text, model="fake-label")


@pytest.fixture()
def fake_openai() -> FakeOpenAIService:
    return FakeOpenAIService()


@pytest_asyncio.fixture()
async def session() -> AsyncGenerator[AsyncSession, None]:
    engine: AsyncEngine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    async_session = AsyncSession(engine, expire_on_commit=False)
    try:
        yield async_session
    finally:
        await async_session.close()
        await engine.dispose()


@pytest_asyncio.fixture()
async def client(session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    async def _override_session():
        yield session

    app.dependency_overrides[get_session] = _override_session
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest_asyncio.fixture()
async def zone(session: AsyncSession) -> Zone:
    record = Zone(name="City council", operational_context="Municipal policy debate", language="en")
    session.add(record)
    await session.commit()
    await session.refresh(record)
    return record


async def seed_posts(
    session,
    zone: Zone,
    *,
    per_topic: int = 10,
    start: datetime | None = None,
    with_embeddings: bool = False,
) -> list[Post]:
    start = start or datetime(2025, 1, 1, 8, 0, 0)
    posts: list[Post] = []
    index = 0
    for topic in TOPIC_AXES:
        for position in range(per_topic):
            text = f"Post {position} about {topic} policy in the city"
            posts.append(
                Post(
                    zone_id=zone.id,
                    external_id=f"ext-{index}",
                    text=text,
                    author_name="Resident",
                    author_username=f"resident{index}",
                    hashtags=[topic],
                    posted_at=start + timedelta(hours=index),
                    total_engagement=index,
                    embedding=topic_vector(text) if with_embeddings else None,
                )
            )
            index += 1
    session.add_all(posts)
    await session.commit()
    return posts


@pytest.fixture()
def make_posts():
    return seed_posts


@pytest.fixture()
def openai_factory():
    return FakeOpenAIService


def _b64(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def sign_qstash(body: bytes, key: str, **overrides) -> str:
    now = int(time.time())
    claims = {
        "iss": "Upstash",
        "sub": QSTASH_TEST_URL,
        "exp": now + 300,
        "nbf": now - 5,
        "iat": now,
        "body": _b64(hashlib.sha256(body).digest()),
    }
    claims.update(overrides)
    header = _b64(json.dumps({"alg": "HS256", "typ": "JWT"}).encode())
    payload = _b64(json.dumps(claims).encode())
    signature = hmac.new(key.encode(), f"{header}.{payload}".encode(), hashlib.sha256).digest()
    return f"{header}.{payload}.{_b64(signature)}"


@pytest.fixture()
def qstash_signer():
    return sign_qstash

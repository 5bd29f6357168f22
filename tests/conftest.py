from io import BytesIO

import httpx
import pytest
from PIL import Image

from thumbforge import throttle
from thumbforge.pipeline.ledger import EntitlementLedger, email_policy
from thumbforge.pipeline.models import GenerationOutcome, ReferenceCandidate
from thumbforge.pipeline.orchestrator import ThumbnailGenerationService
from thumbforge.pipeline.references import ReferenceCollector
from thumbforge.pipeline.service import ThumbnailService
from thumbforge.pipeline.sessions import RegenerateSessionStore
from thumbforge.pipeline.stores import memory_stores

ADMIN_EMAIL = "admin@example.com"


def make_png(color=(220, 30, 30), size=(8, 8)) -> bytes:
    buf = BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


class FakeGenerator:
    """Returns queued outcomes in order, then successes."""

    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [])
        self.requests = []

    async def generate(self, request):
        self.requests.append(request)
        if self.outcomes:
            return self.outcomes.pop(0)
        return GenerationOutcome.success(make_png(), "image/png", "fake-image-model")


class FakeSearch:
    def __init__(self, hits=None, error=None):
        self.hits = hits or []
        self.error = error
        self.queries = []

    async def search(self, query, max_results):
        self.queries.append((query, max_results))
        if self.error is not None:
            raise self.error
        return list(self.hits)


async def fake_sink(user_id, result_id, data, mime_type):
    return f"https://cdn.example.com/thumbnails/{user_id}/{result_id}.png"


def image_transport(images: dict) -> httpx.MockTransport:
    """Serve ``url → bytes``; anything else is a 404."""
    def handler(request):
        body = images.get(str(request.url))
        if body is None:
            return httpx.Response(404)
        return httpx.Response(200, content=body)
    return httpx.MockTransport(handler)


def candidate(n: int, views: int = 50_000) -> ReferenceCandidate:
    return ReferenceCandidate(
        url=f"https://img.example.com/{n}.jpg",
        view_count=views,
        title=f"Video {n}",
        channel_title="Channel",
        video_id=f"vid{n}",
    )


@pytest.fixture
def png():
    return make_png()


@pytest.fixture
def ledger():
    stores = memory_stores()
    return EntitlementLedger(stores.credits, email_policy([ADMIN_EMAIL]), stores.history)


@pytest.fixture(autouse=True)
def _reset_throttle():
    throttle.reset_memory()
    yield
    throttle.reset_memory()


@pytest.fixture
def build(tmp_path):
    """Factory for a fully wired ThumbnailService over in-memory stores."""
    def _build(generator=None, search=None, client=None, variation_delay=0.0, clock=None, image_sink=fake_sink):
        stores = memory_stores()
        ledger = EntitlementLedger(stores.credits, email_policy([ADMIN_EMAIL]), stores.history)
        sessions = (
            RegenerateSessionStore(stores.sessions, clock=clock)
            if clock is not None else RegenerateSessionStore(stores.sessions)
        )
        generation = ThumbnailGenerationService(
            ledger=ledger,
            history=stores.history,
            sessions=sessions,
            collector=ReferenceCollector(search or FakeSearch(), client=client, min_views=1000),
            generator=generator or FakeGenerator(),
            image_sink=image_sink,
            variation_delay=variation_delay,
            scratch_root=tmp_path,
        )
        return ThumbnailService(ledger, sessions, stores.history, generation)
    return _build

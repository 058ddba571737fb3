"""
Tests for the HTTP service.
"""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from application.api.api_server import create_app
from application.app_context import assemble
from domain.context.memory.cache_memory_store import CacheMemoryStore
from domain.models import Memory, MemoryKind, utc_now
from fakes import FakeClock, FakeLanguageModel, FlakyRepository, RecordingSleep, build_test_callers, decision_json


class Harness:
    """Builds the application context inside the app's own event loop"""

    def __init__(self):
        self.repository = FlakyRepository()
        self.llm = FakeLanguageModel()
        self.context = None

    async def __call__(self, settings):
        self.context = assemble(
            settings,
            CacheMemoryStore(),
            self.repository,
            self.llm,
            callers=build_test_callers(FakeClock(), RecordingSleep()),
        )
        return self.context


@pytest.fixture
def harness():
    return Harness()


@pytest.fixture
def client(settings, harness):
    app = create_app(settings, context_factory=harness)
    with TestClient(app) as test_client:
        yield test_client


def post_message(client, text, ts, user="U1", channel="C1", event_id=None):
    return client.post(
        "/api/v1/messages",
        json={"text": text, "user": user, "channel": channel, "timestamp": ts, "event_id": event_id},
    )


class TestApi:

    def test_health_reports_breakers(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert set(body["breakers"]) == {"classification", "embedding", "response", "vibe_analysis"}
        assert set(body["metrics"]) == {"counters", "gauges", "latencies"}

    def test_message_returns_pipeline_result(self, client, harness):
        harness.llm.classification = decision_json(True, True, "joke", 0.9)

        response = post_message(client, "why did the build cross the road", "1.000001")

        assert response.status_code == 200
        body = response.json()
        assert body["response"] == "Sure thing."
        assert body["memoryFormed"] is True
        assert body["shouldTrackCost"] is True

    def test_search_and_recent_memories(self, client, harness):
        harness.llm.classification = decision_json(True, False, "fact", 0.5)
        post_message(client, "retro is on thursday", "1.000002")

        search = client.get("/api/v1/memories/search", params={"q": "retro"})
        recent = client.get("/api/v1/channels/C1/memories")

        assert [m["content"] for m in search.json()] == ["retro is on thursday"]
        assert "embedding" not in search.json()[0]
        assert [m["content"] for m in recent.json()] == ["retro is on thursday"]

    def test_recent_memories_unavailable(self, client, harness):
        harness.repository.failing.add("recent_memories")

        assert client.get("/api/v1/channels/C1/memories").status_code == 503

    def test_cleanup_removes_expired(self, client, harness):
        now = utc_now()
        harness.repository.memories["old"] = Memory(
            id="old", content="stale", kind=MemoryKind.FACT, channel_id="C1", significance=0.1,
            created_at=now - timedelta(days=200), expires_at=now - timedelta(days=20)
        )

        first = client.post("/api/v1/memories/cleanup")
        second = client.post("/api/v1/memories/cleanup")

        assert first.json() == {"deleted": 1}
        assert second.json() == {"deleted": 0}

    def test_delete_user(self, client, harness):
        harness.llm.classification = decision_json(True, False, "preference", 0.5)
        post_message(client, "I only drink oat milk", "1.000003", user="U7")

        response = client.delete("/api/v1/users/U7")

        assert response.json() == {"profile_deleted": True, "memories_deleted": 1}
        assert harness.repository.memories == {}

    def test_usage_summarizes_ledger(self, client):
        post_message(client, "hello", "1.000004")

        usage = client.get("/api/v1/usage").json()

        assert [row["operation_type"] for row in usage] == ["classification"]
        assert usage[0]["calls"] == 1

    def test_invalid_message_is_rejected(self, client):
        assert client.post("/api/v1/messages", json={"text": "no channel"}).status_code == 422

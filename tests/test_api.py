"""HTTP surface tests through FastAPI's TestClient.

The lifespan is not entered, so no database or Redis is needed; services
are wired to the in-memory store through dependency overrides.
"""
import asyncio
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from app.api.deps import (
    get_archive_service,
    get_document_store,
    get_matching_service,
)
from app.main import app
from app.services.archive_service import ArchiveService
from app.services.matching_service import MatchingService
from app.store import CONVERSATIONS, message_batches

AUTH = {"X-User-Id": "me"}
SCHEDULER = {"X-Scheduler-Token": "test-scheduler-token"}


@pytest.fixture
def client(store, storage, lease, clock):
    app.dependency_overrides[get_document_store] = lambda: store
    app.dependency_overrides[get_matching_service] = lambda: MatchingService(store, clock=clock)
    app.dependency_overrides[get_archive_service] = lambda: ArchiveService(
        store, storage, lease, clock=clock
    )
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestHealth:
    def test_liveness(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_request_id_echoed_and_logged(self, client):
        with patch("app.main.logger") as mock_logger:
            response = client.get("/health", headers={"X-Request-ID": "req-42"})

        assert response.headers["X-Request-ID"] == "req-42"
        event, = mock_logger.info.call_args.args
        assert event == "request_handled"
        assert mock_logger.info.call_args.kwargs["status"] == 200

    def test_request_id_generated_when_absent(self, client):
        assert client.get("/health").headers["X-Request-ID"]


class TestMatchingApi:
    def test_requires_caller(self, client):
        response = client.post("/api/v1/match/search", json={"favorite_item_ids": ["s1"]})
        assert response.status_code == 401
        assert response.json()["code"] == "unauthenticated"

    def test_search_then_cooldown(self, client, seed_user, clock):
        asyncio.run(seed_user("me"))
        first = client.post("/api/v1/match/search", json={"favorite_item_ids": ["s1"]}, headers=AUTH)
        assert first.status_code == 200
        assert first.json()["new_matches"] == []

        clock.advance(seconds=15)
        second = client.post("/api/v1/match/search", json={"favorite_item_ids": ["s1"]}, headers=AUTH)
        assert second.status_code == 429
        assert second.headers["Retry-After"] == "45"
        assert second.json()["retry_after_seconds"] == 45

        status = client.get("/api/v1/match/cooldown", headers=AUTH).json()
        assert status["can_search"] is False

    def test_empty_favorites_is_422(self, client, seed_user):
        asyncio.run(seed_user("me"))
        response = client.post("/api/v1/match/search", json={"favorite_item_ids": []}, headers=AUTH)
        assert response.status_code == 422
        assert response.json()["code"] == "invalid_argument"

    def test_unknown_user_is_404(self, client):
        response = client.get("/api/v1/match/cooldown", headers=AUTH)
        assert response.status_code == 404


class TestFavoritesApi:
    def test_add_and_remove(self, client, seed_user, store):
        asyncio.run(seed_user("me"))
        added = client.put("/api/v1/favorites/s1", headers=AUTH)
        assert added.status_code == 200
        assert added.json()["favorite_item_ids"] == ["s1"]

        removed = client.delete("/api/v1/favorites/s1", headers=AUTH)
        assert removed.json()["favorite_item_ids"] == []
        assert client.delete("/api/v1/favorites/s1", headers=AUTH).status_code == 404


class TestArchiveApi:
    def _seed(self, store, total=50):
        async def seed():
            messages = [
                {"id": f"m{i:03d}", "text": str(i), "timestamp": 1_700_000_000_000 + i * 1000}
                for i in range(total)
            ]
            await store.set(message_batches("c1"), "b0", {"messages": messages})
            await store.set(
                CONVERSATIONS, "c1", {"participants": ["me", "bob"], "message_count": total}
            )

        asyncio.run(seed())

    def test_participant_can_archive_and_read_back(self, client, store):
        self._seed(store)
        result = client.post("/api/v1/conversations/c1/archive", headers=AUTH).json()
        assert result["success"] is True
        assert result["archived_count"] == 10

        manifests = client.get("/api/v1/conversations/c1/archives", headers=AUTH).json()
        assert [m["path"] for m in manifests] == [result["archive_path"]]

        loaded = client.get(
            "/api/v1/conversations/c1/archives/messages",
            params={"path": result["archive_path"]},
            headers=AUTH,
        ).json()
        assert [m["id"] for m in loaded["messages"]][:2] == ["m000", "m001"]

    def test_outsider_forbidden(self, client, store):
        self._seed(store)
        response = client.post(
            "/api/v1/conversations/c1/archive", headers={"X-User-Id": "mallory"}
        )
        assert response.status_code == 403

    def test_nothing_to_archive_is_soft(self, client, store):
        self._seed(store, total=5)
        result = client.post("/api/v1/conversations/c1/archive", headers=AUTH).json()
        assert result == {
            "success": False,
            "archived_count": 0,
            "archive_path": None,
            "message": "Nothing to archive",
        }


class TestInternalApi:
    def test_sweep_requires_scheduler_token(self, client):
        assert client.post("/api/v1/internal/archive/sweep").status_code == 403
        response = client.post(
            "/api/v1/internal/archive/sweep", headers={"X-Scheduler-Token": "wrong"}
        )
        assert response.status_code == 403

    def test_sweep_runs(self, client):
        response = client.post("/api/v1/internal/archive/sweep", headers=SCHEDULER)
        assert response.status_code == 200
        assert response.json()["scanned"] == 0

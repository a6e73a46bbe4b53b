from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from influencer_finder.dependencies import reset_cached_dependencies
from influencer_finder.main import create_app
from influencer_finder.telemetry import TelemetryClient, TelemetryEvent, TelemetryValue
from conftest import FIRST_SECRET, SECOND_SECRET, FakeYouTubeService


class _RecordingSink:
    def __init__(self) -> None:
        self.events: list[tuple[TelemetryEvent, dict[str, TelemetryValue]]] = []

    def record(self, event: TelemetryEvent, attributes: Mapping[str, TelemetryValue]) -> None:
        self.events.append((event, dict(attributes)))


@contextmanager
def _configured_client(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    *,
    invalid_keys: frozenset[str],
) -> Iterator[TestClient]:
    data_dir = tmp_path / "runtime-data-invalid-keys"
    data_dir.mkdir(parents=True, exist_ok=True)

    monkeypatch.setattr(
        "influencer_finder.services.platform_client.build_youtube_service",
        FakeYouTubeService(invalid_keys=invalid_keys).build,
    )
    monkeypatch.setenv("INFLUENCER_FINDER_DATA_DIR", str(data_dir))
    monkeypatch.setenv("INFLUENCER_FINDER_YOUTUBE_API_KEYS", f"{FIRST_SECRET},{SECOND_SECRET}")
    monkeypatch.setenv("INFLUENCER_FINDER_CACHE_BACKEND", "memory")
    monkeypatch.setenv("INFLUENCER_FINDER_TELEMETRY_ENABLED", "0")
    monkeypatch.delenv("INFLUENCER_FINDER_OPENAI_API_KEY", raising=False)

    reset_cached_dependencies()
    app = create_app()
    with TestClient(app) as test_client:
        yield test_client
    reset_cached_dependencies()


def _search_body(topic: str = "fitness", **filters: object) -> dict[str, object]:
    return {"topic": topic, "filters": {"max_results": 10, **filters}}


def test_health(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["active_credentials"] == 2
    assert body["cache"]["entries"] == 0
    assert response.headers.get("X-Request-ID")


def test_request_id_header_is_echoed(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Request-ID": "req-abc"})
    assert response.headers["X-Request-ID"] == "req-abc"


def test_search_influencers_returns_ranked_channels(client: TestClient) -> None:
    response = client.post("/search/influencers", json=_search_body())

    assert response.status_code == 200
    body = response.json()
    assert body["topic"] == "fitness"
    assert body["search_keyword"] == "fitness"
    assert body["expanded_keywords"][0] == "fitness"
    assert body["total_found"] == 2
    assert body["cache_hit"] is False
    assert body["partial"] is False
    assert body["failed_variants"] == []

    first = body["results"][0]
    assert first["channel_id"] == "UC_fit_blender"
    assert first["url"] == "https://www.youtube.com/channel/UC_fit_blender"
    assert first["relevance_score"] == 120
    assert first["top_videos"][0]["url"] == "https://www.youtube.com/watch?v=vid_fb_1"
    assert [item["channel_id"] for item in body["results"]] == ["UC_fit_blender", "UC_daily_fitness"]


def test_repeated_search_is_served_from_cache(
    client: TestClient,
    fake_youtube: FakeYouTubeService,
) -> None:
    first = client.post("/search/influencers", json=_search_body())
    upstream_calls = len(fake_youtube.requests)
    second = client.post("/search/influencers", json=_search_body(topic="  Fitness "))

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["cache_hit"] is True
    assert second.json()["results"] == first.json()["results"]
    assert len(fake_youtube.requests) == upstream_calls

    stats = client.get("/cache/stats").json()
    assert stats["writes"] == 1
    assert stats["hits"] == 1
    assert stats["entries"] == 1
    assert stats["ttl_seconds"] == 1800


def test_force_refresh_hits_upstream_again(
    client: TestClient,
    fake_youtube: FakeYouTubeService,
) -> None:
    client.post("/search/influencers", json=_search_body())
    upstream_calls = len(fake_youtube.requests)

    response = client.post(
        "/search/influencers",
        json={**_search_body(), "force_refresh": True},
    )

    assert response.status_code == 200
    assert response.json()["cache_hit"] is False
    assert len(fake_youtube.requests) > upstream_calls


def test_search_videos_returns_video_results(client: TestClient) -> None:
    response = client.post("/search/videos", json=_search_body(min_views=100_000))

    assert response.status_code == 200
    body = response.json()
    assert [item["video_id"] for item in body["results"]] == ["vid_fb_1", "vid_fb_2"]
    first = body["results"][0]
    assert first["url"] == "https://www.youtube.com/watch?v=vid_fb_1"
    assert first["channel"]["title"] == "Fitness Blender"
    assert first["channel"]["url"] == "https://www.youtube.com/channel/UC_fit_blender"
    assert first["duration"] == "PT12M30S"


@pytest.mark.parametrize(
    "body",
    [
        {"topic": "f"},
        {"topic": "fitness!"},
        {"topic": "x" * 101},
        {"topic": "fitness", "filters": {"region": "USA"}},
        {"topic": "fitness", "filters": {"region": "1A"}},
        {"topic": "fitness", "filters": {"max_results": 0}},
        {"topic": "fitness", "filters": {"min_subscribers": -1}},
        {"topic": "fitness", "unexpected": True},
    ],
)
def test_search_rejects_invalid_requests(client: TestClient, body: dict[str, object]) -> None:
    response = client.post("/search/influencers", json=body)
    assert response.status_code == 422


def test_keyword_expansion_falls_back_without_ai_key(client: TestClient) -> None:
    response = client.post("/keywords/expand", json={"topic": "home fitness", "max_keywords": 5})

    assert response.status_code == 200
    body = response.json()
    assert body["original_topic"] == "home fitness"
    assert body["source"] == "fallback"
    assert body["confidence"] == 0.5
    assert body["expanded_keywords"][:2] == ["home fitness", "home"]


def test_credentials_are_listed_masked(client: TestClient) -> None:
    response = client.get("/credentials")

    assert response.status_code == 200
    credentials = response.json()["credentials"]
    assert [item["masked_secret"] for item in credentials] == ["AIza...0001", "AIza...0002"]
    assert [item["label"] for item in credentials] == ["key-1", "key-2"]
    assert credentials[0]["is_current"] is True
    assert FIRST_SECRET not in response.text
    assert SECOND_SECRET not in response.text


def test_search_records_credential_usage(client: TestClient) -> None:
    client.post("/search/influencers", json=_search_body())

    credentials = client.get("/credentials").json()["credentials"]
    assert credentials[0]["quota_used"] > 0
    assert credentials[0]["last_used_at"] is not None
    assert credentials[1]["quota_used"] == 0


def test_replace_and_reset_credentials(client: TestClient) -> None:
    client.post("/search/influencers", json=_search_body())

    replaced = client.put(
        "/credentials",
        json={"credentials": [{"secret": "AIzaReplacementKey9999", "label": "primary"}]},
    )
    assert replaced.status_code == 200
    credentials = replaced.json()["credentials"]
    assert [item["label"] for item in credentials] == ["primary"]
    assert credentials[0]["masked_secret"] == "AIza...9999"
    assert client.get("/cache/stats").json()["entries"] == 0

    missing = client.post("/credentials/cred_unknown/reset")
    assert missing.status_code == 404

    reset = client.post(f"/credentials/{credentials[0]['id']}/reset", params={"clear_usage": True})
    assert reset.status_code == 200
    assert reset.json()["credentials"][0]["status"] == "active"


def test_replace_credentials_rejects_whitespace_secret(client: TestClient) -> None:
    response = client.put("/credentials", json={"credentials": [{"secret": "AIza bad key 123"}]})
    assert response.status_code == 422


def test_cache_invalidation_by_topic_and_all(client: TestClient) -> None:
    client.post("/search/influencers", json=_search_body())
    client.post("/search/influencers", json=_search_body(topic="workout"))

    missing_topic = client.delete("/cache", params={"scope": "topic"})
    assert missing_topic.status_code == 400

    by_topic = client.delete("/cache", params={"scope": "topic", "topic": "fitness"})
    assert by_topic.status_code == 200
    assert by_topic.json() == {"scope": "topic", "removed": 1}

    everything = client.delete("/cache")
    assert everything.json() == {"scope": "all", "removed": 1}
    assert client.get("/cache/stats").json()["entries"] == 0


def test_search_with_only_invalid_keys_returns_no_credential(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    with _configured_client(
        tmp_path,
        monkeypatch,
        invalid_keys=frozenset({FIRST_SECRET, SECOND_SECRET}),
    ) as client:
        response = client.post("/search/influencers", json=_search_body())

        assert response.status_code == 503
        detail = response.json()["detail"]
        assert detail["code"] == "NO_CREDENTIAL"
        assert detail["retryable"] is False

        statuses = [item["status"] for item in client.get("/credentials").json()["credentials"]]
        assert statuses == ["error", "error"]

        health = client.get("/health").json()
        assert health["status"] == "degraded"
        assert health["active_credentials"] == 0


def test_search_rotates_past_invalid_first_key(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    with _configured_client(tmp_path, monkeypatch, invalid_keys=frozenset({FIRST_SECRET})) as client:
        response = client.post("/search/influencers", json=_search_body())

        assert response.status_code == 200
        assert response.json()["total_found"] == 2
        credentials = client.get("/credentials").json()["credentials"]
        assert [item["status"] for item in credentials] == ["error", "active"]
        assert credentials[1]["is_current"] is True


def test_credential_connectivity_check_passes(client: TestClient) -> None:
    credential_id = client.get("/credentials").json()["credentials"][1]["id"]

    response = client.post(f"/credentials/{credential_id}/test")

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["error"] is None
    assert body["credential"]["label"] == "key-2"
    assert body["credential"]["quota_used"] == 100
    assert SECOND_SECRET not in response.text


def test_credential_connectivity_check_unknown_id(client: TestClient) -> None:
    response = client.post("/credentials/cred_unknown/test")
    assert response.status_code == 404


def test_credential_connectivity_check_reports_invalid_key(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    with _configured_client(tmp_path, monkeypatch, invalid_keys=frozenset({FIRST_SECRET})) as client:
        credential_id = client.get("/credentials").json()["credentials"][0]["id"]

        response = client.post(f"/credentials/{credential_id}/test")

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is False
        assert body["error"]["code"] == "INVALID_CREDENTIAL"
        assert body["error"]["upstream_status"] == 400
        assert body["credential"]["status"] == "error"


def test_search_responses_report_cache_status(client: TestClient) -> None:
    first = client.post("/search/influencers", json=_search_body())
    second = client.post("/search/influencers", json=_search_body())

    assert first.headers["X-Cache"] == "MISS"
    assert second.headers["X-Cache"] == "HIT"

    activity = client.get("/health").json()["activity"]
    assert activity["searches"] == 2
    assert activity["cache_hits"] == 1
    assert activity["partial_searches"] == 0


def test_request_telemetry_tags_search_mode_and_cache_hit(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    sink = _RecordingSink()
    monkeypatch.setattr("influencer_finder.main.get_telemetry", lambda: TelemetryClient(sink=sink))

    client.post("/search/videos", json=_search_body(), headers={"X-Request-ID": "req-videos"})
    client.get("/health")

    requests = [attributes for event, attributes in sink.events if event == "api.request"]
    assert requests[0]["request_id"] == "req-videos"
    assert requests[0]["search_mode"] == "videos"
    assert requests[0]["cache_hit"] is False
    assert requests[0]["status_code"] == 200
    assert requests[1]["search_mode"] is None
    assert "cache_hit" not in requests[1]

import base64
import io
import time

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from backend.app import create_app
from config.settings import Settings

from conftest import png_bytes


def make_settings(**overrides) -> Settings:
    values = dict(
        AI_MOCK_MODE=True,
        REDIS_URL=None,
        DEFAULT_AI_PROVIDER=None,
        MAX_CONCURRENT_GENERATIONS=2,
        BACKOFF_BASE_SECONDS=0.01,
        BACKOFF_MAX_SECONDS=0.05,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def client():
    with TestClient(create_app(make_settings())) as c:
        yield c


def sketch_b64(**kwargs) -> str:
    return base64.b64encode(png_bytes(**kwargs)).decode("ascii")


def submit(client: TestClient, prompt: str = "a lighthouse at dusk", **extra) -> str:
    body = {"prompt": prompt, "sketch": sketch_b64(), "params": {"seed": 3}}
    body.update(extra)
    r = client.post("/generate", json=body)
    assert r.status_code == 202, r.text
    return r.json()["job_id"]


def wait_done(client: TestClient, job_id: str, timeout: float = 10.0) -> dict:
    deadline = time.time() + timeout
    while time.time() < deadline:
        body = client.get(f"/status/{job_id}").json()
        if body["state"] in ("completed", "failed", "cancelled"):
            return body
        time.sleep(0.05)
    raise AssertionError(f"job {job_id} did not finish")


class TestGenerateFlow:
    def test_generate_status_and_result(self, client: TestClient) -> None:
        job_id = submit(client)
        status = wait_done(client, job_id)

        assert status["state"] == "completed"
        assert status["progress"] == 100
        assert status["result"]["provider"] == "mock"
        assert status["result"]["cache_hit"] is False
        assert "data" not in status["result"]

        r = client.get(f"/result/{job_id}")
        assert r.status_code == 200
        assert r.headers["content-type"] == "image/png"
        img = Image.open(io.BytesIO(r.content))
        assert img.size == (64, 48)

    def test_repeat_request_hits_cache(self, client: TestClient) -> None:
        wait_done(client, submit(client))
        status = wait_done(client, submit(client))
        assert status["result"]["cache_hit"] is True
        assert status["result"]["cost"] == 0.0

    def test_blank_prompt_is_rejected(self, client: TestClient) -> None:
        r = client.post("/generate", json={"prompt": "   ", "sketch": sketch_b64()})
        assert r.status_code == 400
        assert r.json()["detail"]["code"] == "INVALID_INPUT"

    def test_oversized_sketch_is_rejected(self) -> None:
        with TestClient(create_app(make_settings(MAX_SKETCH_PIXELS=1000))) as c:
            r = c.post("/generate", json={"prompt": "a cat", "sketch": sketch_b64()})
        assert r.status_code == 400
        assert r.json()["detail"]["code"] == "INVALID_INPUT"

    def test_bad_sketch_is_rejected(self, client: TestClient) -> None:
        r = client.post("/generate", json={"prompt": "a cat", "sketch": "@@@"})
        assert r.status_code == 400
        r = client.post(
            "/generate",
            json={"prompt": "a cat", "sketch": base64.b64encode(b"not an image").decode()},
        )
        assert r.status_code == 400

    def test_unknown_provider(self, client: TestClient) -> None:
        r = client.post("/generate", json={"prompt": "a cat", "sketch": sketch_b64(), "provider": "dalle-9"})
        assert r.status_code == 404
        assert r.json()["detail"]["code"] == "PROVIDER_NOT_FOUND"

    def test_unknown_job(self, client: TestClient) -> None:
        r = client.get("/status/does-not-exist")
        assert r.status_code == 404
        assert r.json()["detail"]["code"] == "JOB_NOT_FOUND"

    def test_result_before_completion_and_cancel(self, client: TestClient) -> None:
        client.app.state.registry.entry("mock").adapter.config.latency = 1.0
        job_id = submit(client)

        assert client.get(f"/result/{job_id}").status_code == 400
        r = client.delete(f"/generation/{job_id}")
        assert r.json() == {"job_id": job_id, "status": "cancelled"}
        assert client.get(f"/status/{job_id}").json()["state"] == "cancelled"

        r = client.delete(f"/generation/{job_id}")
        assert r.json()["status"] == "discarded"
        assert client.get(f"/status/{job_id}").status_code == 404

    def test_backpressure(self) -> None:
        with TestClient(create_app(make_settings(MAX_QUEUE_DEPTH=0))) as c:
            r = c.post("/generate", json={"prompt": "a cat", "sketch": sketch_b64()})
        assert r.status_code == 429
        assert r.json()["detail"]["code"] == "QUEUE_FULL"
        assert r.json()["detail"]["retryable"] is True
        assert "retry-after" in r.headers


class TestProviderEndpoints:
    def test_list_providers(self, client: TestClient) -> None:
        body = client.get("/providers").json()
        assert [p["id"] for p in body["providers"]] == ["mock"]
        assert body["providers"][0]["status"] == "online"

    def test_estimate_cost(self, client: TestClient) -> None:
        body = client.post("/estimate-cost", json={}).json()
        assert body == {"provider": "mock", "cost": 0.0, "currency": "USD"}
        assert client.post("/estimate-cost", json={"provider": "nope"}).status_code == 404

    def test_health_check(self, client: TestClient) -> None:
        body = client.post("/health-check/mock").json()
        assert body["healthy"] is True
        assert body["status"] == "online"
        assert client.post("/health-check/nope").status_code == 404


class TestAdminEndpoints:
    def test_stats(self, client: TestClient) -> None:
        wait_done(client, submit(client))
        body = client.get("/stats").json()
        assert body["queue"]["completed"] == 1
        assert body["cache"]["entry_count"] == 1
        assert body["connected_clients"] == 0

    def test_cleanup(self, client: TestClient) -> None:
        body = client.post("/cleanup").json()
        assert body == {"jobs_removed": 0, "cache_entries_removed": 0}


class TestProgressStream:
    def test_websocket_receives_lifecycle(self, client: TestClient) -> None:
        with client.websocket_connect("/ws") as ws:
            assert ws.receive_json()["type"] == "connection_established"
            job_id = submit(client, prompt="a windmill")

            seen = []
            for _ in range(10):
                message = ws.receive_json()
                assert message["job_id"] == job_id
                seen.append(message["type"])
                if message["type"] == "completed":
                    break

        assert seen[0] == "started"
        assert seen[-1] == "completed"

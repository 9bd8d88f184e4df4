"""
Integration tests for the evaluator HTTP API
"""

import uuid

import pytest
from fastapi.testclient import TestClient

from evaluator.api_server import create_app
from evaluator.config import Settings
from evaluator.models import LogEntry, Outcome, WORKER_FAILURES
from evaluator.sandbox import SandboxLaunchError, SandboxTimeoutError
from evaluator.store import ScriptStore

PUBLIC_URL = "http://evaluator.test"


class FakeOrchestrator:
    """Orchestrator stand-in that records staged URLs and replays a result."""

    def __init__(self):
        self.urls = []
        self.result = Outcome.success([LogEntry("log", ["hello"])], 1.25)

    async def run(self, script_url):
        self.urls.append(script_url)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result

    def get_metrics(self):
        return {"workers_launched": len(self.urls), "active_workers": 0}

    def close(self):
        pass


@pytest.fixture
def orchestrator():
    return FakeOrchestrator()


def make_client(fake_redis, orchestrator, environment="test"):
    settings = Settings(environment=environment, public_url=PUBLIC_URL)
    app = create_app(settings, store=ScriptStore(client=fake_redis), orchestrator=orchestrator)
    return TestClient(app)


@pytest.fixture
def client(fake_redis, orchestrator):
    with make_client(fake_redis, orchestrator) as client:
        yield client


def staged_id(orchestrator):
    prefix = f"{PUBLIC_URL}/scripts/"
    assert orchestrator.urls[-1].startswith(prefix)
    return orchestrator.urls[-1][len(prefix):]


class TestHealth:
    """Test suite for liveness and metrics endpoints."""

    def test_up(self, client):
        """Test the liveness probe."""
        response = client.get("/up")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_metrics(self, client, orchestrator):
        """Test metrics come from the orchestrator."""
        client.post("/eval", json={"code": "pass"})

        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.json() == {
            "status": "success",
            "metrics": {"workers_launched": 1, "active_workers": 0},
        }


class TestEval:
    """Test suite for POST /eval."""

    def test_success(self, client, orchestrator, fake_redis):
        """Test a successful run returns logs and duration."""
        response = client.post("/eval", json={"code": "print('hello')"})

        assert response.status_code == 200
        assert response.json() == {"logs": [{"level": "log", "args": ["hello"]}], "duration": 1.25}

        script_id = staged_id(orchestrator)
        assert uuid.UUID(script_id)
        key = f"scripts:{script_id}"
        assert "print('hello')" in fake_redis.data[key][0]
        assert fake_redis.ttl_of(key) == 30

    @pytest.mark.parametrize("body", [{}, {"code": ""}, {"code": None}, {"code": 42}, {"other": "x"}])
    def test_missing_code(self, client, orchestrator, fake_redis, body):
        """Test requests without usable code are rejected before staging."""
        response = client.post("/eval", json=body)

        assert response.status_code == 400
        assert response.json() == {"error": "Missing code"}
        assert orchestrator.urls == []
        assert fake_redis.data == {}

    def test_invalid_json(self, client, orchestrator):
        """Test bodies that are not JSON are rejected."""
        response = client.post(
            "/eval", content=b"print('hi')", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400
        assert response.json() == {"error": "Missing code"}
        assert orchestrator.urls == []

    def test_each_request_staged_separately(self, client, orchestrator):
        """Test every request gets its own script id."""
        client.post("/eval", json={"code": "pass"})
        first = staged_id(orchestrator)
        client.post("/eval", json={"code": "pass"})
        second = staged_id(orchestrator)

        assert first != second

    def test_timeout(self, client, orchestrator):
        """Test timeouts map to a short error."""
        orchestrator.result = SandboxTimeoutError("Execution exceeded timeout (10.0s)")

        response = client.post("/eval", json={"code": "while True: pass"})

        assert response.status_code == 500
        assert response.json() == {"error": "Execution timed out"}

    def test_launch_failure(self, client, orchestrator):
        """Test launch failures map to a short error."""
        orchestrator.result = SandboxLaunchError("Failed to start worker process: ENOENT")

        response = client.post("/eval", json={"code": "pass"})

        assert response.status_code == 500
        assert response.json() == {"error": "Failed to start sandbox"}

    def test_worker_failure_hides_details(self, client, orchestrator):
        """Test failure bodies never carry the staged URL or raw message."""
        orchestrator.result = Outcome.failure(
            WORKER_FAILURES["error"],
            diagnostic={"type": "error", "data": "Could not load script: http://evaluator.test/scripts/x"},
        )

        response = client.post("/eval", json={"code": "pass"})

        assert response.status_code == 500
        assert response.json() == {"error": WORKER_FAILURES["error"]}
        assert staged_id(orchestrator) not in response.text

    def test_store_unavailable(self, client, orchestrator, fake_redis):
        """Test a Redis outage fails the request without running anything."""
        fake_redis.fail = True

        response = client.post("/eval", json={"code": "pass"})

        assert response.status_code == 500
        assert response.json() == {"error": "Script store unavailable"}
        assert orchestrator.urls == []

    def test_production_masks_internal_details(self, fake_redis, orchestrator):
        """Test reported errors mentioning internals are masked in production."""
        orchestrator.result = Outcome.failure("OSError: cannot open /root/.cache")

        with make_client(fake_redis, orchestrator, environment="production") as client:
            response = client.post("/eval", json={"code": "pass"})

        assert response.status_code == 500
        assert response.json() == {"error": "Execution failed"}


class TestScripts:
    """Test suite for GET /scripts/{id}."""

    def test_fetch_staged_script(self, client, orchestrator, fake_redis):
        """Test workers can fetch exactly what was staged."""
        client.post("/eval", json={"code": "print('hi')"})
        script_id = staged_id(orchestrator)

        response = client.get(f"/scripts/{script_id}")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/x-python")
        assert response.text == fake_redis.data[f"scripts:{script_id}"][0]

    def test_unknown_id(self, client):
        """Test unknown and malformed ids are 404 with an empty body."""
        unknown = client.get(f"/scripts/{uuid.uuid4()}")
        malformed = client.get("/scripts/not-a-uuid")

        assert unknown.status_code == 404
        assert unknown.content == b""
        assert malformed.status_code == 404

    def test_expired(self, client, orchestrator, fake_redis):
        """Test staged scripts are gone after the TTL."""
        client.post("/eval", json={"code": "pass"})
        script_id = staged_id(orchestrator)
        fake_redis.advance(30)

        response = client.get(f"/scripts/{script_id}")

        assert response.status_code == 404

    def test_store_unavailable(self, client, fake_redis):
        """Test a Redis outage is a 503 for fetches."""
        fake_redis.fail = True

        response = client.get(f"/scripts/{uuid.uuid4()}")

        assert response.status_code == 503


class TestCors:
    """Test suite for cross-origin access."""

    def test_preflight(self, client):
        """Test preflight requests reflect the caller's origin."""
        response = client.options("/eval", headers={
            "Origin": "https://example.com",
            "Access-Control-Request-Method": "POST",
        })

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "https://example.com"
        assert response.headers["access-control-allow-credentials"] == "true"
        assert "POST" in response.headers["access-control-allow-methods"]

    def test_simple_request(self, client):
        """Test CORS headers on ordinary responses."""
        response = client.get("/up", headers={"Origin": "https://example.com"})

        assert response.headers["access-control-allow-origin"] == "https://example.com"

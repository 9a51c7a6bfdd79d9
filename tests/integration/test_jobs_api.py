"""Integration tests for the ArchGuard HTTP and WebSocket API.

The app runs in-process through ``httpx.ASGITransport`` (start-up events are
not triggered); each test installs a runtime built from the in-process
``FakeGateway``, an in-memory queue and the built-in pattern registry.  Jobs
are driven to completion by calling the orchestrator directly, so archives
are really extracted and analysed.

WebSocket endpoints are exercised with Starlette's ``TestClient``.
"""

from __future__ import annotations

from urllib.parse import quote

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from starlette.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from archguard.api.routes.jobs import WS_CLOSE_NOT_FOUND
from archguard.core.detection_engine import DetectionEngine
from archguard.core.errors import USER_MESSAGES, FailureReason
from archguard.core.job import IngestionJob
from archguard.core.job_queue import InMemoryJobQueue, JobTicket
from archguard.core.orchestrator import Orchestrator
from archguard.core.patterns import PatternRegistry
from archguard.core.progress import ProgressChannel
from archguard.main import app
from archguard.runtime import Runtime
from archguard.workers.pool import WorkerPool

from conftest import FakeGateway

CPF_TEXT = "Cliente: CPF 123.456.789-09\n"


@pytest.fixture
def runtime(tmp_path):
    registry = PatternRegistry.with_builtins()
    gateway = FakeGateway()
    queue = InMemoryJobQueue()
    progress = ProgressChannel()
    orchestrator = Orchestrator(
        gateway=gateway,
        engine=DetectionEngine(registry),
        queue=queue,
        progress=progress,
        work_dir=tmp_path / "work",
    )
    rt = Runtime(
        registry=registry,
        gateway=gateway,
        orchestrator=orchestrator,
        pool=WorkerPool(orchestrator, queue, size=1),
        progress=progress,
    )
    app.state.runtime = rt
    yield rt
    app.state.runtime = None


@pytest_asyncio.fixture
async def client(runtime):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def _submit(client: AsyncClient, archive) -> dict:
    response = await client.post(
        "/v1/jobs", json={"archive_path": str(archive), "declared_size": archive.stat().st_size}
    )
    assert response.status_code == 202, response.text
    return response.json()


async def _run_next(runtime: Runtime) -> IngestionJob:
    queue = runtime.orchestrator.queue
    ticket = await queue.dequeue(timeout=1)
    job = runtime.orchestrator.job_for_ticket(ticket)
    await runtime.orchestrator.run(job)
    await queue.ack(ticket.job_id)
    return job


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class TestHealth:
    async def test_ok(self, client: AsyncClient) -> None:
        response = await client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["scanner"] == "available"
        assert body["workers"] == 1
        assert body["patterns"] == 9

    async def test_degraded_when_scanner_down(self, client: AsyncClient, runtime) -> None:
        runtime.gateway.available = False
        body = (await client.get("/healthz")).json()
        assert body == {"status": "degraded", "scanner": "unavailable", "workers": 1, "patterns": 9}

    async def test_not_ready_without_runtime(self, client: AsyncClient) -> None:
        app.state.runtime = None
        assert (await client.get("/healthz")).status_code == 503
        assert (await client.get("/v1/jobs")).status_code == 503

    async def test_correlation_header(self, client: AsyncClient) -> None:
        response = await client.get("/healthz", headers={"X-Correlation-ID": "abc"})
        assert response.headers["x-correlation-id"] == "abc"


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


class TestJobLifecycle:
    async def test_submit_run_and_fetch_detections(self, client, runtime, make_zip) -> None:
        archive = make_zip({"clientes.txt": CPF_TEXT, "logo.png": b"\x89PNG\x00\x00"})
        created = await _submit(client, archive)
        assert created["status"] == "queued"
        assert created["progress"] == 0

        pending = await client.get(f"/v1/jobs/{created['id']}/detections")
        assert pending.status_code == 409

        await _run_next(runtime)

        status = (await client.get(f"/v1/jobs/{created['id']}")).json()
        assert status["status"] == "completed"
        assert status["progress"] == 100
        assert status["detection_count"] == 1
        assert status["skipped_binary"] == ["logo.png"]

        body = (await client.get(f"/v1/jobs/{created['id']}/detections")).json()
        (detection,) = body["detections"]
        assert detection["pattern_name"] == "CPF"
        assert detection["matched_value"] == "123.456.789-09"
        assert detection["source_file"] == "clientes.txt"
        assert detection["validated"] is True
        assert body["risk"]["overall"] == detection["risk_level"]
        assert sum(body["risk"]["counts"].values()) == 1
        assert body["files_scanned"] == 1

    async def test_infected_archive_fails_with_category(self, client, runtime, make_zip) -> None:
        runtime.gateway.threats = ("Eicar-Test-Signature",)
        created = await _submit(client, make_zip({"a.txt": CPF_TEXT}))
        await _run_next(runtime)

        status = (await client.get(f"/v1/jobs/{created['id']}")).json()
        assert status["status"] == "failed"
        assert status["failure_reason"] == "infected"
        assert status["failure_stage"] == "scanning"
        assert status["message"] == USER_MESSAGES[FailureReason.INFECTED]
        assert status["threat_names"] == ["Eicar-Test-Signature"]
        assert (await client.get(f"/v1/jobs/{created['id']}/detections")).status_code == 409

    async def test_engine_unavailable_rejects_submission(self, client, runtime, make_zip) -> None:
        runtime.gateway.available = False
        archive = make_zip({"a.txt": "x"})
        response = await client.post(
            "/v1/jobs", json={"archive_path": str(archive), "declared_size": archive.stat().st_size}
        )
        assert response.status_code == 503
        assert response.json()["detail"] == USER_MESSAGES[FailureReason.ENGINE_UNAVAILABLE]
        assert runtime.orchestrator.jobs() == []

    async def test_negative_size_rejected(self, client) -> None:
        response = await client.post("/v1/jobs", json={"archive_path": "/x.zip", "declared_size": -1})
        assert response.status_code == 422

    async def test_unknown_job(self, client) -> None:
        assert (await client.get("/v1/jobs/nope")).status_code == 404
        assert (await client.get("/v1/jobs/nope/detections")).status_code == 404
        assert (await client.delete("/v1/jobs/nope")).status_code == 404

    async def test_list_newest_first(self, client, make_zip) -> None:
        first = await _submit(client, make_zip({"a.txt": "x"}, name="a.zip"))
        second = await _submit(client, make_zip({"b.txt": "y"}, name="b.zip"))
        ids = [j["id"] for j in (await client.get("/v1/jobs")).json()]
        assert ids == [second["id"], first["id"]]


class TestCancellation:
    async def test_cancel_queued_job(self, client, runtime, make_zip) -> None:
        created = await _submit(client, make_zip({"a.txt": CPF_TEXT}))

        response = await client.delete(f"/v1/jobs/{created['id']}")
        assert response.status_code == 202
        assert response.json() == {"id": created["id"], "cancel_requested": True, "status": "queued"}

        await _run_next(runtime)
        status = (await client.get(f"/v1/jobs/{created['id']}")).json()
        assert status["status"] == "failed"
        assert status["failure_reason"] == "cancelled"

    async def test_cancel_terminal_job_conflicts(self, client, runtime, make_zip) -> None:
        created = await _submit(client, make_zip({"a.txt": "x"}))
        await _run_next(runtime)
        assert (await client.delete(f"/v1/jobs/{created['id']}")).status_code == 409


# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------


class TestPatterns:
    async def test_list_in_registration_order(self, client) -> None:
        body = (await client.get("/v1/patterns")).json()
        assert body[0]["name"] == "CPF"
        assert len(body) == 10
        card = next(p for p in body if p["name"] == "Cartão de Crédito")
        assert card["enabled"] is False
        assert card["builtin"] is True

    async def test_create_custom_pattern(self, client) -> None:
        response = await client.post(
            "/v1/patterns", json={"name": "Matricula", "pattern": r"MAT-\d{6}", "severity": "high"}
        )
        assert response.status_code == 201
        body = response.json()
        assert body["builtin"] is False
        assert body["category"] == "custom"
        assert body["severity"] == "high"

    async def test_duplicate_name_conflicts(self, client) -> None:
        response = await client.post("/v1/patterns", json={"name": "CPF", "pattern": r"\d+"})
        assert response.status_code == 409

    async def test_invalid_regex(self, client) -> None:
        response = await client.post("/v1/patterns", json={"name": "Broken", "pattern": "("})
        assert response.status_code == 422

    async def test_toggle_and_delete(self, client) -> None:
        await client.post("/v1/patterns", json={"name": "Matricula", "pattern": r"MAT-\d{6}"})

        toggled = await client.patch("/v1/patterns/CPF", json={"enabled": False})
        assert toggled.status_code == 200
        assert toggled.json()["enabled"] is False

        assert (await client.patch("/v1/patterns/Nope", json={"enabled": True})).status_code == 404
        assert (await client.delete("/v1/patterns/CPF")).status_code == 409
        assert (await client.delete("/v1/patterns/Matricula")).status_code == 204
        assert (await client.delete("/v1/patterns/Matricula")).status_code == 404

    async def test_every_builtin_can_be_toggled_by_name(self, client) -> None:
        names = [p["name"] for p in (await client.get("/v1/patterns")).json()]
        assert "PIS/PASEP" in names
        for name in names:
            response = await client.patch(f"/v1/patterns/{quote(name, safe='')}", json={"enabled": False})
            assert response.status_code == 200, name
            assert response.json()["name"] == name
            assert response.json()["enabled"] is False

        body = (await client.get("/v1/patterns")).json()
        assert all(not p["enabled"] for p in body)

    async def test_builtin_with_slash_cannot_be_deleted(self, client) -> None:
        assert (await client.delete("/v1/patterns/PIS%2FPASEP")).status_code == 409

    async def test_preview(self, client) -> None:
        response = await client.post("/v1/patterns/preview", json={"pattern": r"\d{3}", "text": "ab 123 cd 456"})
        assert response.json() == {
            "count": 2,
            "matches": [{"match": "123", "index": 3}, {"match": "456", "index": 10}],
        }
        bad = await client.post("/v1/patterns/preview", json={"pattern": "[", "text": "x"})
        assert bad.status_code == 422

    async def test_pattern_changes_apply_to_next_job(self, client, runtime, make_zip) -> None:
        await client.post("/v1/patterns", json={"name": "Matricula", "pattern": r"MAT-\d{6}"})
        await client.patch("/v1/patterns/CPF", json={"enabled": False})

        created = await _submit(client, make_zip({"a.txt": "CPF 123.456.789-09 mat-123456"}))
        await _run_next(runtime)

        body = (await client.get(f"/v1/jobs/{created['id']}/detections")).json()
        assert [(d["pattern_name"], d["matched_value"]) for d in body["detections"]] == [
            ("Matricula", "mat-123456")
        ]


# ---------------------------------------------------------------------------
# Progress WebSocket
# ---------------------------------------------------------------------------


def _queued_job(runtime: Runtime) -> IngestionJob:
    return runtime.orchestrator.job_for_ticket(
        JobTicket(job_id="job-ws", archive_path="/srv/uploads/a.zip", declared_size=1)
    )


class TestProgressWebSocket:
    def test_unknown_job_closes_with_not_found(self, runtime) -> None:
        with pytest.raises(WebSocketDisconnect) as excinfo:
            with TestClient(app).websocket_connect("/v1/jobs/missing/progress"):
                pass
        assert excinfo.value.code == WS_CLOSE_NOT_FOUND

    def test_terminal_job_sends_snapshot_and_closes(self, runtime) -> None:
        job = _queued_job(runtime)
        job.fail(FailureReason.INFECTED, "Malware detected")

        with TestClient(app).websocket_connect(f"/v1/jobs/{job.id}/progress") as ws:
            snapshot = ws.receive_json()
            assert snapshot["stage"] == "failed"
            assert snapshot["message"] == USER_MESSAGES[FailureReason.INFECTED]
            with pytest.raises(WebSocketDisconnect):
                ws.receive_json()

    def test_streams_until_completed(self, runtime) -> None:
        job = _queued_job(runtime)

        with TestClient(app).websocket_connect(f"/v1/jobs/{job.id}/progress") as ws:
            assert ws.receive_json()["stage"] == "queued"
            runtime.progress.publish(job.id, "scanning", 10)
            runtime.progress.publish("other-job", "scanning", 10)
            runtime.progress.publish(job.id, "completed", 100)

            assert [ws.receive_json()["stage"], ws.receive_json()["stage"]] == ["scanning", "completed"]
            with pytest.raises(WebSocketDisconnect):
                ws.receive_json()

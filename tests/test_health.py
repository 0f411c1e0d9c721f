import pytest

from marketpay.core import runtime_state


@pytest.mark.anyio("asyncio")
async def test_healthcheck(client):
    response = await client.get("/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["db_status"] == "ok"
    assert payload["migrations_status"] == "up_to_date"
    assert payload["stripe"] == {"api_key_configured": True}
    assert isinstance(payload["scheduler_config_enabled"], bool)
    assert payload["scheduler_running"] is False
    assert payload["scheduler_lock"]["present"] is False
    assert payload["cache"].keys() >= {"hits", "misses", "size"}


@pytest.mark.anyio("asyncio")
async def test_health_reports_job_runs(client):
    runtime_state.record_job_run("sync-processing-payments")

    payload = (await client.get("/health")).json()

    assert "sync-processing-payments" in payload["scheduler_last_runs"]


@pytest.mark.anyio("asyncio")
async def test_health_degrades_on_db_failure(monkeypatch, client):
    class BrokenEngine:
        def connect(self):  # pragma: no cover - simple stub
            raise RuntimeError("DB down")

    monkeypatch.setattr("marketpay.routers.health.get_engine", lambda: BrokenEngine())

    response = await client.get("/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "degraded"
    assert payload["db_status"] == "error"
    assert payload["migrations_status"] == "unknown"
    assert payload["db_ok"] is False
    assert payload["scheduler_lock"] == {"status": "unknown", "owner": None}

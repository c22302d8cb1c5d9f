from httpx import AsyncClient

from taskledger.v1.infra.jobs.service import JobService


async def test_health_check_success(async_client: AsyncClient):
    """Test health check endpoint returns correct format."""
    response = await async_client.get("/v1/healthz")

    assert response.status_code == 200

    data = response.json()
    assert data["ok"] is True
    assert "data" in data

    health_data = data["data"]
    assert health_data["ok"] is True
    assert health_data["version"] == "1.0.0"
    assert health_data["environment"] == "development"
    assert health_data["database"]["connected"] is True


async def test_health_check_response_structure(async_client: AsyncClient):
    """Test health check response envelope structure."""
    response = await async_client.get("/v1/healthz")

    data = response.json()

    # Check response envelope structure
    required_keys = ["ok", "data", "message", "request_id"]
    for key in required_keys:
        assert key in data

    # Check that request ID is present in headers
    assert "X-Request-ID" in response.headers


async def test_health_check_reports_worker_activity(
    async_client: AsyncClient, test_settings, db_session
):
    job_service = JobService(test_settings)
    await job_service.enqueue(db_session, "t")
    await job_service.enqueue(db_session, "t")
    await job_service.claim_next(db_session, "worker-1")

    response = await async_client.get("/v1/healthz")

    worker = response.json()["data"]["worker"]
    assert worker["active_workers"] == 1
    assert worker["queue_depth"] == 2
    assert worker["expired_leases_count"] == 0
    assert worker["last_heartbeat_age_seconds"] is not None

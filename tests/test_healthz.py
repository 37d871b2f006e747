async def test_health_check_success(async_client):
    """Test health check endpoint returns correct format."""
    response = await async_client.get("/v1/healthz")

    assert response.status_code == 200

    data = response.json()
    assert data["ok"] is True

    health_data = data["data"]
    assert health_data["ok"] is True
    assert health_data["version"] == "1.0.0"
    assert health_data["environment"] == "development"
    assert health_data["database"]["connected"] is True


async def test_health_check_reports_queue(async_client, auth_headers):
    for account in ("acc1", "acc2"):
        response = await async_client.post(
            "/v1/jobs",
            json={"job_type": "platform_sync", "params": {"account": account}},
            headers=auth_headers,
        )
        assert response.status_code == 200

    response = await async_client.get("/v1/healthz")
    queue = response.json()["data"]["queue"]

    assert queue["queue_depth"] == 2
    assert queue["ready_jobs"] == 2
    assert queue["active_workers"] == 0
    assert queue["stuck_jobs_count"] == 0
    assert queue["last_activity_age_seconds"] is None


async def test_health_check_response_structure(async_client):
    """Test health check response envelope structure."""
    response = await async_client.get("/v1/healthz", headers={"X-Request-ID": "req-1"})

    data = response.json()

    # Check response envelope structure
    for key in ["ok", "data", "message", "request_id", "timestamp"]:
        assert key in data

    # Upstream request IDs are echoed back
    assert response.headers["X-Request-ID"] == "req-1"

"""Tests for system endpoints."""

import pytest


@pytest.mark.asyncio
async def test_config_is_sanitized(client):
    response = await client.get("/api/system/config")

    assert response.status_code == 200
    data = response.json()
    assert data["chains"]["targets"] == ["polygon", "arbitrum", "optimism"]
    assert data["chains"]["requiredConfirmations"] == {
        "polygon": 12,
        "arbitrum": 20,
        "optimism": 10,
    }
    assert data["relay"]["maxAttempts"] == 3
    assert "secret" not in response.text.lower()
    assert "database" not in response.text.lower()


@pytest.mark.asyncio
async def test_chain_health_reports_backends(client):
    response = await client.get("/api/system/chains/health")

    assert response.status_code == 200
    data = response.json()
    assert set(data["chains"]) == {"polygon", "arbitrum", "optimism"}
    assert data["chains"]["arbitrum"]["fail_submissions"] is True
    assert data["activeJobs"] == 0

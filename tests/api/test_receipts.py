"""Tests for receipt anchoring and lookup."""

import pytest

from tests.conftest import content_hash_for


def _body(label: str, subject: str = "thread-9", **overrides):
    body = {
        "type": "message",
        "subjectId": subject,
        "contentHash": content_hash_for(label),
        "proofBlob": {"root": "0x01"},
    }
    body.update(overrides)
    return body


@pytest.mark.asyncio
async def test_anchor_assigns_increasing_sequence(client, admin_headers, admin):
    first = await client.post("/api/receipts", json=_body("a"), headers=admin_headers)
    second = await client.post("/api/receipts", json=_body("b"), headers=admin_headers)
    other = await client.post("/api/receipts", json=_body("c", subject="other"), headers=admin_headers)

    assert first.status_code == 201
    assert first.json()["immutableSeq"] == 1
    assert second.json()["immutableSeq"] == 2
    assert other.json()["immutableSeq"] == 1
    assert first.json()["createdBy"] == admin.id


@pytest.mark.asyncio
async def test_anchor_accepts_snake_case(client, admin_headers):
    body = {
        "type": "money",
        "subject_id": "invoice-1",
        "content_hash": content_hash_for("snake"),
        "proof_blob": {},
    }
    response = await client.post("/api/receipts", json=body, headers=admin_headers)

    assert response.status_code == 201
    assert response.json()["subjectId"] == "invoice-1"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"contentHash": "0x1234"},
        {"contentHash": "ab" * 32},
        {"type": "email"},
        {"subjectId": ""},
    ],
)
async def test_anchor_validation(client, admin_headers, overrides):
    response = await client.post("/api/receipts", json=_body("x", **overrides), headers=admin_headers)
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_anchor_requires_admin(client, viewer_headers):
    response = await client.post("/api/receipts", json=_body("v"), headers=viewer_headers)
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_lookup_by_hash_or_id(client, admin_headers):
    created = (await client.post("/api/receipts", json=_body("lookup"), headers=admin_headers)).json()

    by_hash = await client.get(f"/api/receipts/{created['contentHash'].upper().replace('0X', '0x')}")
    by_id = await client.get(f"/api/receipts/{created['id']}")

    assert by_hash.status_code == 200
    assert by_hash.json()["receipt"]["id"] == created["id"]
    assert by_hash.json()["crossChainStatus"] is None
    assert by_id.json()["receipt"]["contentHash"] == created["contentHash"]


@pytest.mark.asyncio
async def test_lookup_includes_relay_state(client, coordinator, admin_headers):
    created = (await client.post("/api/receipts", json=_body("relayed"), headers=admin_headers)).json()
    await client.post(
        "/api/bridge/relay",
        json={"receiptId": created["id"], "targetChains": ["optimism"]},
        headers=admin_headers,
    )
    await coordinator.drain()

    response = await client.get(f"/api/receipts/{created['contentHash']}")

    status = response.json()["crossChainStatus"]
    assert status["overallStatus"] == "complete"
    assert status["chains"]["optimism"]["confirmations"] == 10


@pytest.mark.asyncio
async def test_lookup_unknown(client):
    response = await client.get(f"/api/receipts/{content_hash_for('missing')}")
    assert response.status_code == 404

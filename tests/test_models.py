"""Tests for ORM models, receipt anchoring and operator tooling."""

import pytest
from sqlalchemy.exc import IntegrityError

from anchor_relay.models import Receipt
from anchor_relay.models.bridge_job import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    BridgeJob,
    sources_for,
)
from anchor_relay.schemas.receipt import ReceiptCreate
from anchor_relay.scripts.tokens import get_or_create_operator
from anchor_relay.services.receipts import (
    ReceiptSequenceConflict,
    anchor_receipt,
    find_receipt,
)
from tests.conftest import content_hash_for


def test_status_sets_partition_job_statuses():
    assert TERMINAL_STATUSES == {"confirmed", "failed", "timeout", "cancelled"}
    assert ACTIVE_STATUSES == {"pending", "submitting", "pending-confirmation"}


@pytest.mark.parametrize(
    ("target", "sources"),
    [
        ("submitting", {"pending", "submitting"}),
        ("pending-confirmation", {"submitting", "pending-confirmation"}),
        ("confirmed", {"pending-confirmation"}),
        ("timeout", {"pending-confirmation"}),
        ("cancelled", {"pending", "submitting", "pending-confirmation"}),
        ("pending", set()),
    ],
)
def test_allowed_sources(target, sources):
    assert sources_for(target) == sources


def test_is_terminal():
    assert BridgeJob(status="timeout").is_terminal
    assert not BridgeJob(status="pending-confirmation").is_terminal


def test_receipt_sequence_is_unique_per_subject(db_session, make_receipt, admin):
    existing = make_receipt(subject_id="dup")
    db_session.add(
        Receipt(
            type="message",
            subject_id="dup",
            content_hash=content_hash_for("dup-2"),
            proof_blob={},
            immutable_seq=existing.immutable_seq,
            created_by=admin.id,
        )
    )
    with pytest.raises(IntegrityError):
        db_session.commit()
    db_session.rollback()


def test_anchor_receipt_numbers_per_subject(db_session, admin):
    data = ReceiptCreate(type="money", subject_id="ledger", content_hash=content_hash_for("m1"))

    first = anchor_receipt(db_session, admin, data)
    second = anchor_receipt(db_session, admin, data)

    assert (first.immutable_seq, second.immutable_seq) == (1, 2)
    # Same content anchored twice resolves to the earliest receipt
    assert find_receipt(db_session, data.content_hash).id == first.id
    assert find_receipt(db_session, second.id).id == second.id
    assert find_receipt(db_session, "unknown") is None


def test_anchor_receipt_sequence_race(db_session, admin, mocker):
    data = ReceiptCreate(type="message", subject_id="race", content_hash=content_hash_for("r"))
    anchor_receipt(db_session, admin, data)
    mocker.patch(
        "anchor_relay.repositories.receipt_repo.ReceiptRepository.last_seq", return_value=0
    )

    with pytest.raises(ReceiptSequenceConflict):
        anchor_receipt(db_session, admin, data)


def test_get_or_create_operator(db_session):
    created = get_or_create_operator(db_session, "0x" + "C" * 40, "viewer", "Ops")
    promoted = get_or_create_operator(db_session, "0x" + "c" * 40, "admin")

    assert promoted.id == created.id
    assert promoted.role == "admin"
    assert promoted.display_name == "Ops"
    with pytest.raises(ValueError):
        get_or_create_operator(db_session, "0x" + "d" * 40, "root")

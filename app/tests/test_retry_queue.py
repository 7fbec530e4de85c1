from datetime import datetime, timedelta, timezone

import pytest

from app.core.errors import NotFound, ValidationError
from app.core.shipment_states import LedgerState, ShipmentStatus
from app.models.enums import PendingUpdateStatus
from app.services.shipment_projection import as_utc

S = ShipmentStatus


@pytest.fixture
def claimed(flows, services, db):
    """A claimed shipment with its VERIFIED -> PAID update queued."""
    shipment = flows.drive_to(S.CLAIMED, "S1")
    item = services.queue.list(db, shipment_id="S1")[0]
    assert item.status == PendingUpdateStatus.pending.value
    return shipment, item


def test_three_timeouts_fail_the_item_and_retry_resets_it(claimed, services, db, ledger):
    shipment, item = claimed
    t0 = datetime.now(timezone.utc)
    ledger.stall()

    services.queue.process_once(db, now=t0)
    db.refresh(item)
    assert (item.status, item.attempt_count) == (PendingUpdateStatus.pending.value, 1)
    assert as_utc(item.next_attempt_at) == t0 + timedelta(seconds=15)
    assert item.tx_hash is not None

    # not due yet
    assert services.queue.process_once(db, now=t0 + timedelta(seconds=5)) == []

    services.queue.process_once(db, now=t0 + timedelta(hours=1))
    db.refresh(item)
    assert (item.status, item.attempt_count) == (PendingUpdateStatus.pending.value, 2)

    services.queue.process_once(db, now=t0 + timedelta(hours=2))
    db.refresh(item)
    assert (item.status, item.attempt_count) == (PendingUpdateStatus.failed.value, 3)
    assert item.last_error
    assert item.next_attempt_at is None

    # failed items are left alone by the worker
    assert services.queue.process_once(db, now=t0 + timedelta(hours=3)) == []

    item = services.queue.retry(db, item.id, actor_participant_id="A1")
    assert item.status == PendingUpdateStatus.pending.value
    assert item.attempt_count == 0
    assert item.last_error is None
    assert item.tx_hash is None

    ledger.resume()
    services.queue.process_once(db, now=t0 + timedelta(hours=4))
    db.refresh(item)
    assert item.status == PendingUpdateStatus.completed.value
    assert ledger.get_shipment(shipment.chain_id_hex).state == LedgerState.PAID


def test_landed_submission_is_picked_up_on_the_next_pass(claimed, services, db, ledger):
    shipment, item = claimed
    t0 = datetime.now(timezone.utc)
    ledger.stall()
    services.queue.process_once(db, now=t0)
    ledger.resume()

    services.queue.process_once(db, now=t0 + timedelta(minutes=1))
    db.refresh(item)
    assert item.status == PendingUpdateStatus.completed.value
    # the first submission was not repeated
    assert len(ledger.calls("updateShipmentState")) == 4


def test_ledger_rejection_fails_at_once(claimed, services, db, ledger):
    shipment, item = claimed
    ledger.revert_next("signer is not an authorised oracle")

    services.queue.process_once(db)
    db.refresh(item)
    assert item.status == PendingUpdateStatus.failed.value
    assert item.attempt_count == 1
    assert "authorised oracle" in item.last_error
    assert services.shipments.get(db, "S1").status == S.CLAIMED.value


def test_unreachable_node_backs_off(claimed, services, db, ledger):
    shipment, item = claimed
    ledger.offline = True

    services.queue.process_once(db)
    db.refresh(item)
    assert item.status == PendingUpdateStatus.pending.value
    assert item.attempt_count == 1
    assert item.next_attempt_at is not None


def test_retry_and_dismiss_guards(claimed, services, db):
    shipment, item = claimed
    item_id = item.id
    with pytest.raises(ValidationError):
        services.queue.retry(db, item_id, actor_participant_id="A1")

    services.queue.dismiss(db, item_id, actor_participant_id="A1")
    assert services.queue.list(db, shipment_id="S1") == []
    with pytest.raises(NotFound):
        services.queue.dismiss(db, item_id, actor_participant_id="A1")


def test_list_filters_by_status(claimed, services, db):
    assert len(services.queue.list(db, status=PendingUpdateStatus.pending)) == 1
    assert services.queue.list(db, status=PendingUpdateStatus.failed) == []


def test_attempt_cut_short_is_reclaimed_after_the_lease(claimed, services, db, ledger):
    shipment, item = claimed
    t0 = datetime.now(timezone.utc)
    # the worker died between marking the item and settling it
    item.status = PendingUpdateStatus.processing.value
    item.processing_started_at = t0
    db.commit()

    assert services.queue.process_once(db, now=t0 + timedelta(seconds=30)) == []
    with pytest.raises(ValidationError):
        services.queue.retry(db, item.id, actor_participant_id="A1")
    with pytest.raises(ValidationError):
        services.queue.dismiss(db, item.id, actor_participant_id="A1")

    [reclaimed] = services.queue.process_once(db, now=t0 + timedelta(seconds=301))
    assert reclaimed.id == item.id
    db.refresh(item)
    assert item.status == PendingUpdateStatus.completed.value
    assert item.processing_started_at is None
    assert ledger.get_shipment(shipment.chain_id_hex).state == LedgerState.PAID


def test_operator_can_retry_a_stalled_item(claimed, services, db, ledger):
    shipment, item = claimed
    item.status = PendingUpdateStatus.processing.value
    item.processing_started_at = datetime.now(timezone.utc) - timedelta(hours=1)
    db.commit()

    item = services.queue.retry(db, item.id, actor_participant_id="A1")
    assert item.status == PendingUpdateStatus.pending.value
    assert item.processing_started_at is None

    services.queue.process_once(db)
    db.refresh(item)
    assert item.status == PendingUpdateStatus.completed.value


def test_unexpected_error_fails_the_item(claimed, services, db, ledger, monkeypatch):
    shipment, item = claimed
    submitted = len(ledger.calls("updateShipmentState"))

    def signer_down(*args, **kwargs):
        raise RuntimeError("signer backend returned 500")

    monkeypatch.setattr(services.attestation, "state_update", signer_down)
    [done] = services.queue.process_once(db)
    db.refresh(item)
    assert item.status == PendingUpdateStatus.failed.value
    assert item.attempt_count == 1
    assert "RuntimeError" in item.last_error
    assert item.processing_started_at is None
    assert len(ledger.calls("updateShipmentState")) == submitted

    # the operator can act on it
    assert services.queue.retry(db, item.id, actor_participant_id="A1").status == PendingUpdateStatus.pending.value


def test_completed_target_is_reopened_by_a_new_obligation(claimed, services, db, ledger):
    shipment, item = claimed
    services.queue.process_once(db)
    db.refresh(item)
    assert item.status == PendingUpdateStatus.completed.value

    again = services.queue.enqueue(
        db, shipment=shipment, current_state=LedgerState.VERIFIED, target_state=LedgerState.PAID
    )
    db.commit()
    assert again.id == item.id
    assert (again.status, again.attempt_count, again.tx_hash) == (PendingUpdateStatus.pending.value, 0, None)

    # the ledger already holds the target, so no new submission is needed
    submitted = len(ledger.calls("updateShipmentState"))
    services.queue.process_once(db)
    db.refresh(again)
    assert again.status == PendingUpdateStatus.completed.value
    assert len(ledger.calls("updateShipmentState")) == submitted


def test_failed_target_is_left_for_the_operator(claimed, services, db, ledger):
    shipment, item = claimed
    ledger.revert_next("signer is not an authorised oracle")
    services.queue.process_once(db)

    again = services.queue.enqueue(
        db, shipment=shipment, current_state=LedgerState.VERIFIED, target_state=LedgerState.PAID
    )
    db.commit()
    assert again.id == item.id
    assert again.status == PendingUpdateStatus.failed.value

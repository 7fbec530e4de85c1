import pytest

from app.core.errors import NetworkTimeout, ProjectionConflict, RejectionReason, ValidationError
from app.core.shipment_states import LedgerState, ShipmentStatus
from app.models.enums import EscrowStatus, LedgerTxStatus, PendingUpdateStatus
from app.models.escrow import EscrowRecord
from app.models.ledger_transaction import LedgerTransaction
from app.services.shipment_projection import snapshot
from app.tests.flows import ASK

S = ShipmentStatus


def statuses(shipment):
    return [e.status for e in shipment.timeline]


def test_offer_nominate_and_fund_reach_ready_for_pickup(flows, services, db, ledger):
    flows.create("S1")
    flows.offer("S1")
    assert services.shipments.get(db, "S1").status == S.OFFER_MADE.value

    flows.assign("S1", carrier="T1")
    shipment = services.shipments.get(db, "S1")
    assert shipment.status == S.AWAITING_PAYMENT.value
    assert shipment.transporter_ref == flows.people["T1"].wallet_address

    flows.fund("S1")
    shipment = services.shipments.get(db, "S1")
    escrow = db.get(EscrowRecord, shipment.chain_id_hex)
    assert escrow.status == EscrowStatus.deposited.value
    assert escrow.amount_units == services.escrow.expected_amount(shipment)
    assert shipment.status == S.READY_FOR_PICKUP.value
    assert statuses(shipment) == [
        S.PENDING.value, S.OFFER_MADE.value, S.AWAITING_PAYMENT.value, S.READY_FOR_PICKUP.value,
    ]
    assert not any(e.tentative for e in shipment.timeline)
    assert ledger.get_shipment(shipment.chain_id_hex).state == LedgerState.ASSIGNED


def test_create_is_tentative_until_the_receipt_is_in(services, db, people, ledger):
    ledger.stall()
    shipment = services.shipments.create_shipment(
        db, principal=people["F1"], ask_price=ASK, metadata_hash="ipfs://m", shipment_id="S1"
    )
    assert shipment.status == S.PENDING.value
    assert shipment.timeline[0].tentative is True
    assert shipment.pending_tx is not None

    assert services.tracker.sweep(db) == 0
    ledger.resume()
    services.tracker.sweep(db)

    shipment = services.shipments.get(db, "S1")
    assert shipment.timeline[0].tentative is False
    assert shipment.pending_tx is None
    assert shipment.ledger_seq > 0


def test_single_nomination_does_not_assign(flows, services, db, ledger):
    flows.create("S1")
    flows.offer("S1")
    before = len(ledger.submitted)

    services.shipments.nominate_carrier(db, principal=flows.people["F1"], shipment_id="S1", carrier_id="T1")
    services.shipments.nominate_carrier(db, principal=flows.people["I1"], shipment_id="S1", carrier_id="T2")

    shipment = services.shipments.get(db, "S1")
    assert shipment.status == S.OFFER_MADE.value
    assert shipment.farmer_nominee == "T1"
    assert shipment.industry_nominee == "T2"
    assert len(ledger.submitted) == before

    services.shipments.nominate_carrier(db, principal=flows.people["F1"], shipment_id="S1", carrier_id="T2")
    assert services.shipments.get(db, "S1").status == S.AWAITING_PAYMENT.value
    assert ledger.calls("assignTransporter")


def test_carrier_must_be_kyc_verified_transporter(flows, services, db):
    flows.create("S1")
    flows.offer("S1")
    with pytest.raises(ValidationError) as e:
        services.shipments.nominate_carrier(db, principal=flows.people["F1"], shipment_id="S1", carrier_id="O1")
    assert e.value.reason == RejectionReason.PRECONDITION_NOT_MET


def test_other_carrier_cannot_start_transit(flows, services, db, ledger):
    flows.create("S1")
    flows.offer("S1")
    flows.assign("S1", carrier="T2")
    flows.fund("S1")

    shipment = services.shipments.get(db, "S1")
    before = snapshot(shipment)
    submitted = len(ledger.submitted)

    with pytest.raises(ValidationError) as e:
        services.shipments.transition(db, principal=flows.people["T1"], shipment_id="S1", target=S.IN_TRANSIT)
    assert e.value.reason == RejectionReason.WRONG_ACTOR

    db.expire_all()
    assert snapshot(services.shipments.get(db, "S1")) == before
    assert len(ledger.submitted) == submitted


def test_edge_outside_the_graph_is_wrong_state(flows, services, db):
    flows.create("S1")
    with pytest.raises(ValidationError) as e:
        services.shipments.transition(db, principal=flows.people["T1"], shipment_id="S1", target=S.IN_TRANSIT)
    assert e.value.reason == RejectionReason.WRONG_STATE


def test_wrong_role_is_wrong_actor(flows, services, db):
    flows.create("S1")
    with pytest.raises(ValidationError) as e:
        services.shipments.transition(db, principal=flows.people["F1"], shipment_id="S1", target=S.OFFER_MADE)
    assert e.value.reason == RejectionReason.WRONG_ACTOR


def test_unconfirmed_write_blocks_the_next_step(services, db, people, ledger):
    ledger.stall()
    services.shipments.create_shipment(db, principal=people["F1"], ask_price=ASK, metadata_hash="ipfs://m", shipment_id="S1")

    with pytest.raises(ValidationError) as e:
        services.shipments.make_offer(db, principal=people["I1"], shipment_id="S1")
    assert e.value.reason == RejectionReason.PRECONDITION_NOT_MET


def test_duplicate_shipment_id_is_refused(flows, services, db):
    flows.create("S1")
    with pytest.raises(ValidationError):
        services.shipments.create_shipment(
            db, principal=flows.people["F1"], ask_price=ASK, metadata_hash="ipfs://m", shipment_id="S1"
        )


def test_ready_for_pickup_needs_a_funded_escrow(flows, services, db):
    flows.drive_to(S.AWAITING_PAYMENT, "S1")
    with pytest.raises(ValidationError) as e:
        services.shipments.transition(db, principal=flows.people["I1"], shipment_id="S1", target=S.READY_FOR_PICKUP)
    assert e.value.reason == RejectionReason.PRECONDITION_NOT_MET


def test_reverted_transition_is_compensated(flows, services, db, ledger):
    flows.drive_to(S.READY_FOR_PICKUP, "S1")
    ledger.revert_next("attestor nonce replay")

    services.shipments.transition(db, principal=flows.people["T1"], shipment_id="S1", target=S.IN_TRANSIT)
    shipment = services.shipments.get(db, "S1")
    assert shipment.status == S.IN_TRANSIT.value
    tx_hash = shipment.pending_tx

    flows.sweep()
    shipment = services.shipments.get(db, "S1")
    assert shipment.status == S.READY_FOR_PICKUP.value
    assert shipment.pending_tx is None
    assert statuses(shipment)[-2:] == [S.IN_TRANSIT.value, S.READY_FOR_PICKUP.value]
    assert shipment.timeline[-1].details["compensates"] == tx_hash

    tx = db.get(LedgerTransaction, tx_hash)
    assert tx.status == LedgerTxStatus.failed.value
    assert "nonce replay" in tx.error


def test_reverted_create_ends_cancelled(services, db, people, ledger):
    ledger.revert_next("out of gas")
    services.shipments.create_shipment(db, principal=people["F1"], ask_price=ASK, metadata_hash="ipfs://m", shipment_id="S1")
    services.tracker.sweep(db)

    shipment = services.shipments.get(db, "S1")
    assert statuses(shipment) == [S.PENDING.value, S.CANCELLED.value]


def test_main_line_to_claimed(flows, services, db, ledger):
    shipment = flows.drive_to(S.CLAIMED, "S1")
    assert shipment.status == S.CLAIMED.value

    escrow = db.get(EscrowRecord, shipment.chain_id_hex)
    assert escrow.status == EscrowStatus.released.value

    # the PAID ledger state is the attestor's to write
    items = services.queue.list(db, shipment_id="S1")
    assert [(i.target_state, i.status) for i in items] == [(int(LedgerState.PAID), PendingUpdateStatus.pending.value)]

    services.queue.process_once(db)
    assert services.queue.list(db, shipment_id="S1")[0].status == PendingUpdateStatus.completed.value
    assert ledger.get_shipment(shipment.chain_id_hex).state == LedgerState.PAID
    assert services.shipments.get(db, "S1").status == S.CLAIMED.value


def test_claimed_is_terminal(flows, services, db):
    flows.drive_to(S.CLAIMED, "S1")
    for target in (S.CANCELLED, S.DISPUTED, S.VERIFIED):
        with pytest.raises(ValidationError):
            services.shipments.transition(
                db, principal=flows.people["F1"], shipment_id="S1", target=target, evidence_hash="ipfs://e"
            )


def test_ledger_disagreement_resyncs_instead_of_signing(flows, services, db, ledger):
    shipment = flows.drive_to(S.READY_FOR_PICKUP, "S1")
    ledger.force_state(shipment.chain_id_hex, LedgerState.DELIVERED)
    submitted = len(ledger.submitted)

    with pytest.raises(ProjectionConflict):
        services.shipments.transition(db, principal=flows.people["T1"], shipment_id="S1", target=S.IN_TRANSIT)

    assert len(ledger.submitted) == submitted
    shipment = services.shipments.get(db, "S1")
    assert shipment.status == S.DELIVERED.value
    assert shipment.timeline[-1].details["source"] == "resync"


def test_cancel_before_funding_uses_an_attestor_update(flows, services, db, ledger):
    shipment = flows.drive_to(S.OFFER_MADE, "S1")
    services.shipments.transition(db, principal=flows.people["F1"], shipment_id="S1", target=S.CANCELLED, note="no truck")
    flows.sweep()

    shipment = services.shipments.get(db, "S1")
    assert shipment.status == S.CANCELLED.value
    assert shipment.timeline[-1].details["note"] == "no truck"
    assert ledger.get_shipment(shipment.chain_id_hex).state == LedgerState.CANCELLED
    assert ledger.calls("updateShipmentState")


def test_cancel_with_live_escrow_goes_through_the_payer(flows, services, db, ledger):
    shipment = flows.drive_to(S.READY_FOR_PICKUP, "S1")

    with pytest.raises(ValidationError) as e:
        services.shipments.transition(db, principal=flows.people["F1"], shipment_id="S1", target=S.CANCELLED)
    assert e.value.reason == RejectionReason.WRONG_ACTOR

    services.shipments.transition(db, principal=flows.people["I1"], shipment_id="S1", target=S.CANCELLED)
    flows.sweep()

    escrow = db.get(EscrowRecord, shipment.chain_id_hex)
    assert escrow.status == EscrowStatus.refunded.value
    assert ledger.calls("cancelByPayer")

    items = services.queue.list(db, shipment_id="S1")
    assert [i.target_state for i in items] == [int(LedgerState.CANCELLED)]
    services.queue.process_once(db)
    assert ledger.get_shipment(shipment.chain_id_hex).state == LedgerState.CANCELLED
    assert services.queue.list(db, shipment_id="S1")[0].status == PendingUpdateStatus.completed.value
    assert services.shipments.get(db, "S1").status == S.CANCELLED.value


def test_list_filters_by_participant_and_status(flows, services, db):
    flows.create("S1")
    flows.create("S2")
    flows.offer("S2")

    mine = services.shipments.list_shipments(db, participant_id="I1")
    assert [s.id for s in mine] == ["S2"]
    pending = services.shipments.list_shipments(db, status=S.PENDING)
    assert [s.id for s in pending] == ["S1"]


def test_payer_cancel_survives_an_unreachable_node_while_settling(flows, services, db, ledger, monkeypatch):
    shipment = flows.drive_to(S.READY_FOR_PICKUP, "S1")
    services.shipments.transition(db, principal=flows.people["I1"], shipment_id="S1", target=S.CANCELLED)
    cancel_tx = services.shipments.get(db, "S1").pending_tx

    def unreachable(shipment_id):
        raise NetworkTimeout("ledger node unreachable")

    monkeypatch.setattr(ledger, "get_shipment", unreachable)
    flows.sweep()
    monkeypatch.undo()

    assert db.get(LedgerTransaction, cancel_tx).status == LedgerTxStatus.confirmed.value
    shipment = services.shipments.get(db, "S1")
    assert shipment.pending_tx is None
    assert (shipment.timeline[-1].status, shipment.timeline[-1].tentative) == (S.CANCELLED.value, False)

    [item] = services.queue.list(db, shipment_id="S1")
    assert item.target_state == int(LedgerState.CANCELLED)
    services.queue.process_once(db)
    assert ledger.get_shipment(shipment.chain_id_hex).state == LedgerState.CANCELLED


def test_shipment_id_longer_than_a_ledger_id_is_refused(flows, services, db, ledger):
    batch = "FARM-COOP-2026-10-TOMATO-LOT-07"  # 31 bytes
    flows.create(batch)
    submitted = len(ledger.submitted)

    with pytest.raises(ValidationError) as e:
        services.shipments.create_shipment(
            db, principal=flows.people["F1"], ask_price=ASK, metadata_hash="ipfs://meta-2", shipment_id=batch + "B",
        )
    assert e.value.reason == RejectionReason.PRECONDITION_NOT_MET
    assert "at most 31" in e.value.message
    assert len(ledger.submitted) == submitted

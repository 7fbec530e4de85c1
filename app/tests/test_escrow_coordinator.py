from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest

from app.core.errors import NotFound, RejectionReason, ValidationError
from app.core.shipment_states import ShipmentStatus
from app.models.enums import EscrowStatus
from app.models.escrow import EscrowRecord
from app.services.escrow_coordinator import Splits
from app.tests.flows import ASK_UNITS, SPLITS, TOKEN

S = ShipmentStatus


def deposit(services, db, people, **kw):
    args = dict(principal=people["I1"], shipment_id="S1", amount=ASK_UNITS, splits=SPLITS)
    args.update(kw)
    return services.escrow.deposit(db, **args)


def test_full_split_is_accepted_and_overflow_rejected_before_submission(flows, services, db, ledger):
    flows.drive_to(S.AWAITING_PAYMENT, "S1")

    submitted = len(ledger.submitted)
    with pytest.raises(ValidationError) as e:
        deposit(services, db, flows.people, splits=Splits(8000, 1500, 600))
    assert e.value.reason == RejectionReason.PRECONDITION_NOT_MET
    assert len(ledger.submitted) == submitted

    outcome = deposit(services, db, flows.people)
    assert outcome.stage == "approval_pending"
    flows.sweep()
    flows.sweep()

    shipment = services.shipments.get(db, "S1")
    escrow = services.escrow.get_escrow(db, "S1")
    assert escrow.status == EscrowStatus.deposited.value
    assert (escrow.farmer_bps, escrow.transporter_bps, escrow.platform_bps) == (8000, 1500, 500)
    assert escrow.payer == flows.people["I1"].wallet_address
    assert shipment.status == S.READY_FOR_PICKUP.value


def test_existing_allowance_skips_the_approval(flows, services, db, ledger):
    flows.drive_to(S.AWAITING_PAYMENT, "S1")
    ledger.set_allowance(token=TOKEN, owner=flows.people["I1"].wallet_address, amount=ASK_UNITS)

    outcome = deposit(services, db, flows.people)
    assert outcome.stage == "deposit_submitted"
    assert ledger.calls("approve") == []

    flows.sweep()
    assert services.shipments.get(db, "S1").status == S.READY_FOR_PICKUP.value


def test_second_deposit_while_first_is_in_flight(flows, services, db, ledger):
    flows.drive_to(S.AWAITING_PAYMENT, "S1")
    ledger.stall()
    deposit(services, db, flows.people)

    with pytest.raises(ValidationError) as e:
        deposit(services, db, flows.people)
    assert e.value.reason == RejectionReason.PRECONDITION_NOT_MET
    assert len(ledger.calls("approve")) == 1


def test_deposit_after_funding_is_wrong_state(flows, services, db):
    flows.drive_to(S.READY_FOR_PICKUP, "S1")
    with pytest.raises(ValidationError) as e:
        deposit(services, db, flows.people)
    assert e.value.reason == RejectionReason.WRONG_STATE


@pytest.mark.parametrize(
    "kw",
    [
        {"amount": ASK_UNITS - 1},
        {"token": "0x" + "00" * 18 + "dead"},
        {"transporter": "0x" + "00" * 18 + "beef"},
    ],
)
def test_deposit_terms_must_match_the_shipment(flows, services, db, ledger, kw):
    flows.drive_to(S.AWAITING_PAYMENT, "S1")
    submitted = len(ledger.submitted)
    with pytest.raises(ValidationError) as e:
        deposit(services, db, flows.people, **kw)
    assert e.value.reason == RejectionReason.PRECONDITION_NOT_MET
    assert len(ledger.submitted) == submitted


def test_only_the_buyer_funds(flows, services, db):
    flows.drive_to(S.AWAITING_PAYMENT, "S1")
    with pytest.raises(ValidationError) as e:
        deposit(services, db, flows.people, principal=flows.people["F1"])
    assert e.value.reason == RejectionReason.WRONG_ACTOR


def test_release_twice_is_refused(flows, services, db, ledger):
    shipment = flows.drive_to(S.CLAIMED, "S1")
    submitted = len(ledger.submitted)

    with pytest.raises(ValidationError) as e:
        services.escrow.release(
            db, sender=flows.people["F1"].wallet_address, shipment=shipment, actor_participant_id="F1"
        )
    assert "already released" in e.value.message
    assert len(ledger.submitted) == submitted


def test_payer_cancel_outside_the_window(flows, services, db, ledger):
    flows.drive_to(S.READY_FOR_PICKUP, "S1")
    services.escrow._clock = lambda: datetime.now(timezone.utc) + timedelta(seconds=3601)
    submitted = len(ledger.submitted)

    with pytest.raises(ValidationError) as e:
        services.shipments.transition(db, principal=flows.people["I1"], shipment_id="S1", target=S.CANCELLED)
    assert "window" in e.value.message
    assert len(ledger.submitted) == submitted
    assert services.shipments.get(db, "S1").status == S.READY_FOR_PICKUP.value


def test_resolver_holds_then_refunds(flows, services, db):
    shipment = flows.drive_to(S.READY_FOR_PICKUP, "S1")

    with pytest.raises(ValidationError) as e:
        services.escrow.hold(db, principal=flows.people["F1"], shipment_id="S1")
    assert e.value.reason == RejectionReason.WRONG_ACTOR

    services.escrow.hold(db, principal=flows.people["R1"], shipment_id="S1")
    flows.sweep()
    assert db.get(EscrowRecord, shipment.chain_id_hex).status == EscrowStatus.held.value

    # a held escrow no longer counts for the payer's cancel path
    with pytest.raises(ValidationError):
        services.shipments.transition(db, principal=flows.people["I1"], shipment_id="S1", target=S.CANCELLED)

    services.escrow.refund(db, principal=flows.people["R1"], shipment_id="S1")
    flows.sweep()
    assert db.get(EscrowRecord, shipment.chain_id_hex).status == EscrowStatus.refunded.value


def test_no_escrow_is_not_found(flows, services, db):
    flows.create("S1")
    with pytest.raises(NotFound):
        services.escrow.get_escrow(db, "S1")


def test_ask_price_must_fit_token_decimals(services):
    with pytest.raises(ValidationError):
        services.escrow.expected_amount(SimpleNamespace(ask_price=Decimal("0.0000001")))
    assert services.escrow.expected_amount(SimpleNamespace(ask_price=Decimal("12.5"))) == ASK_UNITS

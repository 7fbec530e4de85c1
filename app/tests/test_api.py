import time

from eth_account import Account
from eth_account.messages import encode_defunct

from app.core.security import login_message
from app.core.shipment_states import ShipmentStatus
from app.tests.flows import KEYS

S = ShipmentStatus


def test_health(client):
    r = client.get("/api/v1/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"
    assert r.headers.get("X-Request-ID")


def test_ledger_health_reports_degraded_when_unreachable(client, ledger):
    assert client.get("/api/v1/health/ledger").json()["chainId"] == 31337
    ledger.offline = True
    assert client.get("/api/v1/health/ledger").json()["status"] == "degraded"


def test_wallet_login_round_trip(client, people):
    challenge = client.get("/api/v1/auth/challenge/F1").json()
    assert challenge["message"] == login_message("F1", challenge["issuedAt"])

    signed = Account.sign_message(encode_defunct(text=challenge["message"]), private_key=KEYS["F1"][0])
    r = client.post(
        "/api/v1/auth/login",
        json={"participantId": "F1", "issuedAt": challenge["issuedAt"], "signature": "0x" + bytes(signed.signature).hex()},
    )
    assert r.status_code == 200
    token = r.json()["access_token"]

    me = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"}).json()
    assert me["participant_id"] == "F1"
    assert me["role"] == "FARMER"
    assert me["wallet"] == people["F1"].wallet_address


def test_login_with_someone_elses_key_is_refused(client, people):
    issued_at = int(time.time())
    signed = Account.sign_message(encode_defunct(text=login_message("F1", issued_at)), private_key=KEYS["T1"][0])
    r = client.post(
        "/api/v1/auth/login",
        json={"participantId": "F1", "issuedAt": issued_at, "signature": "0x" + bytes(signed.signature).hex()},
    )
    assert r.status_code == 401


def test_requests_need_a_token(client):
    assert client.get("/api/v1/shipments").status_code in (401, 403)


def test_create_shipment(client, auth):
    r = client.post(
        "/api/v1/shipments",
        json={"shipmentId": "API-1", "askPrice": "12.5", "metadataHash": "ipfs://meta"},
        headers=auth("F1"),
    )
    assert r.status_code == 201
    body = r.json()
    assert body["shipmentId"] == "API-1"
    assert body["status"] == S.PENDING.value
    assert body["pendingTx"]
    assert body["timeline"][0]["tentative"] is True


def test_wrong_carrier_maps_to_403(client, auth, flows):
    flows.drive_to(S.READY_FOR_PICKUP, "API-1")
    r = client.post("/api/v1/shipments/API-1/transition", json={"target": "In-Transit"}, headers=auth("T2"))
    assert r.status_code == 403
    body = r.json()
    assert body["error"] == "ValidationError"
    assert body["reason"] == "WrongActor"
    assert "request_id" in body


def test_wrong_state_maps_to_409(client, auth, flows):
    flows.drive_to(S.OFFER_MADE, "API-1")
    r = client.post("/api/v1/shipments/API-1/transition", json={"target": "Delivered"}, headers=auth("T1"))
    assert r.status_code == 409
    assert r.json()["reason"] == "WrongState"


def test_unknown_shipment_is_404(client, auth):
    r = client.get("/api/v1/shipments/NOPE", headers=auth("F1"))
    assert r.status_code == 404
    assert r.json()["error"] == "NotFound"


def test_unreachable_ledger_maps_to_504(client, auth, ledger):
    ledger.offline = True
    r = client.post(
        "/api/v1/shipments",
        json={"shipmentId": "API-1", "askPrice": "1", "metadataHash": "ipfs://meta"},
        headers=auth("F1"),
    )
    assert r.status_code == 504
    assert r.json()["error"] == "NetworkTimeout"


def test_deposit_returns_the_stage(client, auth, flows):
    flows.drive_to(S.AWAITING_PAYMENT, "API-1")
    r = client.post("/api/v1/escrow/API-1/deposit", json={"amount": "12500000"}, headers=auth("I1"))
    assert r.status_code == 202
    assert r.json()["stage"] == "approval_pending"

    flows.sweep()
    flows.sweep()
    escrow = client.get("/api/v1/escrow/API-1", headers=auth("I1")).json()
    assert escrow["status"] == "Deposited"
    assert escrow["amount"] == "12500000"
    shipment = client.get("/api/v1/shipments/API-1", headers=auth("I1")).json()
    assert shipment["status"] == S.READY_FOR_PICKUP.value


def test_state_update_queue_is_for_operators(client, auth, flows):
    flows.drive_to(S.CLAIMED, "API-1")
    assert client.get("/api/v1/oracle/state-updates", headers=auth("F1")).status_code == 403

    r = client.get("/api/v1/oracle/state-updates", headers=auth("O1"))
    assert r.status_code == 200
    [item] = r.json()
    assert (item["currentState"], item["targetState"], item["status"]) == ("VERIFIED", "PAID", "pending")

    processed = client.post("/api/v1/oracle/state-updates/process", headers=auth("A1")).json()
    assert [i["status"] for i in processed] == ["completed"]


def test_weighment_endpoint(client, auth, flows):
    flows.drive_to(S.IN_TRANSIT, "API-1")
    r = client.post(
        "/api/v1/oracle/weighments",
        json={"shipmentId": "API-1", "weightKg": 1500, "weighHash": "ipfs://wb"},
        headers=auth("O1"),
    )
    assert r.status_code == 202
    assert r.json()["txHash"].startswith("0x")


def test_participant_registration_is_admin_only(client, auth):
    body = {
        "participantId": "T3",
        "role": "TRANSPORTER",
        "displayName": "Hill Road Carriers",
        "walletAddress": Account.from_key("0x" + "99" * 32).address,
    }
    assert client.post("/api/v1/participants", json=body, headers=auth("F1")).status_code == 403

    r = client.post("/api/v1/participants", json=body, headers=auth("A1"))
    assert r.status_code == 201
    assert r.json()["kycVerified"] is False

    again = client.post("/api/v1/participants", json=body, headers=auth("A1"))
    assert again.status_code == 409


def test_audit_history_for_auditors(client, auth, flows):
    flows.drive_to(S.OFFER_MADE, "API-1")
    assert client.get("/api/v1/audit/shipment/API-1", headers=auth("F1")).status_code == 403

    r = client.get("/api/v1/audit/shipment/API-1", headers=auth("A1"))
    assert r.status_code == 200
    actions = [rec["action"] for rec in r.json()["records"]]
    assert "SHIPMENT_CREATED" in actions
    assert "OFFER_MADE" in actions


def test_weighment_proposal_endpoints(client, auth, flows):
    flows.drive_to(S.IN_TRANSIT, "API-1")
    r = client.post(
        "/api/v1/oracle/weighment-proposals",
        json={"shipmentId": "API-1", "weightKg": 1480},
        headers=auth("T1"),
    )
    assert r.status_code == 202
    proposal = r.json()
    assert (proposal["status"], proposal["confirmed"]) == ("pending", False)

    flows.sweep()
    listed = client.get("/api/v1/oracle/weighment-proposals?status=pending", headers=auth("O1")).json()
    assert [p["id"] for p in listed] == [proposal["id"]]
    assert listed[0]["confirmed"] is True

    r = client.post(
        f"/api/v1/oracle/weighment-proposals/{proposal['id']}/approve",
        json={"weighHash": "ipfs://wb"},
        headers=auth("O1"),
    )
    assert r.status_code == 202
    assert r.json()["status"] == "approved"
    assert r.json()["weighmentTx"].startswith("0x")

    again = client.post(
        f"/api/v1/oracle/weighment-proposals/{proposal['id']}/reject",
        json={"reason": "late"},
        headers=auth("O1"),
    )
    assert again.status_code == 409

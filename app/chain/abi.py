# app/chain/abi.py
"""
Minimal ABIs for the contract surface the coordinator consumes.
"""
from __future__ import annotations

from typing import Any, Dict, List


def _fn(name: str, inputs: List[Dict[str, Any]], outputs: List[Dict[str, Any]] | None = None,
        mutability: str = "nonpayable") -> Dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "inputs": inputs,
        "outputs": outputs or [],
        "stateMutability": mutability,
    }


def _ev(name: str, inputs: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {"type": "event", "name": name, "anonymous": False, "inputs": inputs}


def _arg(name: str, typ: str, indexed: bool | None = None, **extra: Any) -> Dict[str, Any]:
    out: Dict[str, Any] = {"name": name, "type": typ, **extra}
    if indexed is not None:
        out["indexed"] = indexed
    return out


def _tuple(name: str, components: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {"name": name, "type": "tuple", "components": components}


_SIGNED_TAIL = [_arg("timestamp", "uint256"), _arg("nonce", "uint256"), _arg("signature", "bytes")]

SHIPMENT_TOKEN_ABI: List[Dict[str, Any]] = [
    _fn("createShipment", [_arg("_shipmentId", "bytes32"), _arg("_metaDataHash", "string")]),
    _fn("assignTransporter", [_arg("_shipmentId", "bytes32"), _arg("_transporter", "address")]),
    _fn("setIndustry", [_arg("_shipmentId", "bytes32"), _arg("_industry", "address")]),
    _fn("updateShipmentState", [_tuple("input", [
        _arg("shipmentId", "bytes32"), _arg("newState", "uint8"), *_SIGNED_TAIL,
    ])]),
    # carrier-side reading, attested later through attachWeighment
    _fn("proposeWeighment", [_tuple("input", [
        _arg("shipmentId", "bytes32"), _arg("weight", "uint256"), _arg("proposer", "address"),
    ])]),
    _fn("attachWeighment", [_tuple("input", [
        _arg("shipmentId", "bytes32"), _arg("weighKg", "uint256"), _arg("weighHash", "string"), *_SIGNED_TAIL,
    ])]),
    _fn("attachProof", [_tuple("input", [
        _arg("shipmentId", "bytes32"), _arg("proofType", "uint8"), _arg("proofHash", "string"), *_SIGNED_TAIL,
    ])]),
    _fn("getShipment", [_arg("_shipmentId", "bytes32")], [_tuple("", [
        _arg("shipmentId", "bytes32"),
        _arg("tokenId", "uint256"),
        _arg("metaDataHash", "string"),
        _arg("state", "uint8"),
        _arg("transporter", "address"),
        _arg("farmer", "address"),
        _arg("industry", "address"),
        _arg("proofHash", "string[]"),
        _arg("createdAt", "uint256"),
        _arg("updatedAt", "uint256"),
    ])], mutability="view"),
    _ev("ShipmentCreated", [
        _arg("shipmentId", "bytes32", True), _arg("creator", "address", True),
    ]),
    _ev("ShipmentStateChanged", [
        _arg("shipmentId", "bytes32", True), _arg("newState", "uint8", False), _arg("timestamp", "uint256", False),
    ]),
    _ev("TransporterAssigned", [
        _arg("shipmentId", "bytes32", True), _arg("transporter", "address", True),
        _arg("assignedBy", "address", True), _arg("timestamp", "uint256", False),
    ]),
]

ESCROW_PAYMENT_ABI: List[Dict[str, Any]] = [
    _fn("depositPayment", [
        _arg("_shipmentId", "bytes32"), _arg("_token", "address"), _arg("_amount", "uint256"),
        _arg("_farmer", "address"), _arg("_transporter", "address"),
        _arg("_farmerBps", "uint16"), _arg("_transporterBps", "uint16"), _arg("_platformBps", "uint16"),
    ]),
    _fn("holdPayment", [_arg("_shipmentId", "bytes32")]),
    _fn("releasePayment", [_arg("_shipmentId", "bytes32")]),
    _fn("refundPayment", [_arg("_shipmentId", "bytes32")]),
    _fn("cancelByPayer", [_arg("_shipmentId", "bytes32")]),
    _fn("cancellationPeriod", [], [_arg("", "uint256")], mutability="view"),
    _fn("getEscrow", [_arg("_shipmentId", "bytes32")], [_tuple("", [
        _arg("token", "address"),
        _arg("amount", "uint256"),
        _arg("payer", "address"),
        _arg("farmer", "address"),
        _arg("transporter", "address"),
        _arg("farmerBps", "uint16"),
        _arg("transporterBps", "uint16"),
        _arg("platformBps", "uint16"),
        _arg("status", "uint8"),
        _arg("createdAt", "uint256"),
        _arg("updatedAt", "uint256"),
    ])], mutability="view"),
    _ev("PaymentDeposited", [
        _arg("shipmentId", "bytes32", True), _arg("payer", "address", True), _arg("token", "address", True),
        _arg("amount", "uint256", False), _arg("farmer", "address", False), _arg("transporter", "address", False),
        _arg("farmerBps", "uint16", False), _arg("transporterBps", "uint16", False),
        _arg("platformBps", "uint16", False), _arg("timestamp", "uint256", False),
    ]),
    _ev("PaymentHeld", [_arg("shipmentId", "bytes32", True), _arg("timestamp", "uint256", False)]),
    _ev("PaymentReleased", [
        _arg("shipmentId", "bytes32", True), _arg("farmerAmount", "uint256", False),
        _arg("transporterAmount", "uint256", False), _arg("platformAmount", "uint256", False),
        _arg("timestamp", "uint256", False),
    ]),
    _ev("PaymentRefunded", [
        _arg("shipmentId", "bytes32", True), _arg("amount", "uint256", False), _arg("timestamp", "uint256", False),
    ]),
    _ev("PaymentCancelled", [
        _arg("shipmentId", "bytes32", True), _arg("payer", "address", True),
        _arg("amount", "uint256", False), _arg("timestamp", "uint256", False),
    ]),
]

DISPUTE_MANAGER_ABI: List[Dict[str, Any]] = [
    _fn("raiseDispute", [_arg("_shipmentId", "bytes32"), _arg("_evidenceHash", "string")], [_arg("", "uint256")]),
    _fn("addEvidence", [
        _arg("_disputeId", "uint256"), _arg("_evidenceHash", "string"),
        _arg("_oracleSignature", "bytes"), _arg("_oracleSignedHash", "bytes32"),
    ], [_arg("", "bool")]),
    _fn("resolveDispute", [
        _arg("_disputeId", "uint256"), _arg("_resolution", "uint8"), _arg("_resolutionNote", "string"),
    ], [_arg("", "bool")]),
    _ev("DisputeRaised", [
        _arg("disputeId", "uint256", True), _arg("shipmentId", "bytes32", True), _arg("raisedBy", "address", True),
    ]),
    _ev("EvidenceAdded", [
        _arg("disputeId", "uint256", True), _arg("evidenceHash", "string", False),
        _arg("submittedBy", "address", True),
    ]),
    _ev("DisputeResolved", [
        _arg("disputeId", "uint256", True), _arg("resolution", "uint8", False), _arg("resolvedBy", "address", True),
    ]),
]

REGISTRATION_ABI: List[Dict[str, Any]] = [
    _fn("kycAttestation", [_tuple("params", [
        _arg("participant", "address"), _arg("role", "uint8"), _arg("metaDataHash", "string"), *_SIGNED_TAIL,
    ])]),
    _fn("isKycVerified", [_arg("_account", "address")], [_arg("", "bool")], mutability="view"),
    _ev("KycStatusUpdated", [
        _arg("account", "address", True), _arg("verified", "bool", False), _arg("timestamp", "uint256", False),
    ]),
]

ERC20_ABI: List[Dict[str, Any]] = [
    _fn("allowance", [_arg("owner", "address"), _arg("spender", "address")], [_arg("", "uint256")], mutability="view"),
    _fn("approve", [_arg("spender", "address"), _arg("amount", "uint256")], [_arg("", "bool")]),
    _ev("Approval", [
        _arg("owner", "address", True), _arg("spender", "address", True), _arg("value", "uint256", False),
    ]),
]

# Events the projector subscribes to, per contract
PROJECTED_EVENTS: Dict[str, List[str]] = {
    "shipment_token": ["ShipmentCreated", "ShipmentStateChanged", "TransporterAssigned"],
    "escrow": ["PaymentDeposited", "PaymentHeld", "PaymentReleased", "PaymentRefunded", "PaymentCancelled"],
    "dispute_manager": ["DisputeRaised", "EvidenceAdded", "DisputeResolved"],
}

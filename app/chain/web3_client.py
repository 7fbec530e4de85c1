# app/chain/web3_client.py
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests
from eth_account import Account
from eth_utils import to_bytes
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound, Web3RPCError
from web3.logs import DISCARD

from app.chain.abi import (
    DISPUTE_MANAGER_ABI,
    ERC20_ABI,
    ESCROW_PAYMENT_ABI,
    PROJECTED_EVENTS,
    REGISTRATION_ABI,
    SHIPMENT_TOKEN_ABI,
)
from app.chain.client import (
    LedgerClient,
    LedgerEvent,
    OnChainEscrow,
    OnChainShipment,
    TxReceipt,
    normalize_address,
)
from app.core.config import Settings
from app.core.errors import LedgerRejected, NetworkTimeout

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def _b32(value: str) -> bytes:
    raw = to_bytes(hexstr=value)
    if len(raw) != 32:
        raise ValueError(f"Expected 32-byte hex value, got {len(raw)} bytes")
    return raw


def _plain(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


class Web3LedgerClient(LedgerClient):
    """
    web3.py implementation.

    Senders whose key is held locally (e.g. the attestor) are signed with
    eth_account; any other sender must be an account the node manages.
    """

    def __init__(self, settings: Settings, *, signing_keys: Iterable[str] = ()):
        self._settings = settings
        self.w3 = Web3(Web3.HTTPProvider(settings.rpc_url, request_kwargs={"timeout": 10}))
        self._chain_id = settings.chain_id
        self._accounts = {}
        for key in signing_keys:
            acct = Account.from_key(key)
            self._accounts[acct.address.lower()] = acct

        self.shipment_token = self._contract(settings.shipment_token_address, SHIPMENT_TOKEN_ABI)
        self.escrow = self._contract(settings.escrow_payment_address, ESCROW_PAYMENT_ABI)
        self.dispute_manager = self._contract(settings.dispute_manager_address, DISPUTE_MANAGER_ABI)
        self.registration = self._contract(settings.registration_address, REGISTRATION_ABI)
        self._block_ts: Dict[int, int] = {}

    def _contract(self, address: Optional[str], abi):
        if not address:
            return None
        return self.w3.eth.contract(address=normalize_address(address), abi=abi)

    @staticmethod
    def _require(contract, name: str):
        if contract is None:
            raise LedgerRejected(f"{name} contract address is not configured")
        return contract

    @property
    def chain_id(self) -> int:
        return self._chain_id

    @property
    def escrow_address(self) -> str:
        return self._require(self.escrow, "EscrowPayment").address

    # ─────────────────────────────────────────────
    # INTERNAL HELPERS
    # ─────────────────────────────────────────────

    def _call_node(self, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        except ContractLogicError as exc:
            raise LedgerRejected(f"execution reverted: {exc}") from exc
        except Web3RPCError as exc:
            raise LedgerRejected(f"node rejected transaction: {exc}") from exc
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as exc:
            raise NetworkTimeout(f"ledger node unreachable: {exc}") from exc

    def _send(self, sender: str, call) -> str:
        sender = normalize_address(sender)
        acct = self._accounts.get(sender.lower())

        def _submit():
            if acct is None:
                return call.transact({"from": sender})
            tx = call.build_transaction({
                "from": acct.address,
                "nonce": self.w3.eth.get_transaction_count(acct.address, "pending"),
                "chainId": self._chain_id,
            })
            signed = acct.sign_transaction(tx)
            return self.w3.eth.send_raw_transaction(signed.raw_transaction)

        tx_hash = self.w3.to_hex(self._call_node(_submit))
        logger.info("[ledger] submitted %s from %s tx=%s", call.fn_name, sender, tx_hash)
        return tx_hash

    def _block_timestamp(self, block_number: int) -> int:
        if block_number not in self._block_ts:
            block = self._call_node(lambda: self.w3.eth.get_block(block_number))
            self._block_ts[block_number] = int(block["timestamp"])
        return self._block_ts[block_number]

    def _to_event(self, raw) -> LedgerEvent:
        block_number = int(raw["blockNumber"])
        return LedgerEvent(
            name=raw["event"],
            args={k: _plain(v) for k, v in dict(raw["args"]).items()},
            tx_hash=self.w3.to_hex(raw["transactionHash"]),
            log_index=int(raw["logIndex"]),
            block_number=block_number,
            block_timestamp=self._block_timestamp(block_number),
        )

    def _projected(self):
        return [
            (self.shipment_token, PROJECTED_EVENTS["shipment_token"]),
            (self.escrow, PROJECTED_EVENTS["escrow"]),
            (self.dispute_manager, PROJECTED_EVENTS["dispute_manager"]),
        ]

    def _receipt(self, raw) -> TxReceipt:
        events: List[LedgerEvent] = []
        for contract, names in self._projected():
            if contract is None:
                continue
            for name in names:
                for ev in contract.events[name]().process_receipt(raw, errors=DISCARD):
                    events.append(self._to_event(ev))
        events.sort(key=lambda e: e.log_index)
        return TxReceipt(
            tx_hash=self.w3.to_hex(raw["transactionHash"]),
            succeeded=int(raw["status"]) == 1,
            block_number=int(raw["blockNumber"]),
            events=events,
        )

    # ─────────────────────────────────────────────
    # ShipmentToken
    # ─────────────────────────────────────────────

    def create_shipment(self, *, sender, shipment_id, metadata_hash):
        c = self._require(self.shipment_token, "ShipmentToken")
        return self._send(sender, c.functions.createShipment(_b32(shipment_id), metadata_hash))

    def set_industry(self, *, sender, shipment_id, industry):
        c = self._require(self.shipment_token, "ShipmentToken")
        return self._send(sender, c.functions.setIndustry(_b32(shipment_id), normalize_address(industry)))

    def assign_transporter(self, *, sender, shipment_id, transporter):
        c = self._require(self.shipment_token, "ShipmentToken")
        return self._send(sender, c.functions.assignTransporter(_b32(shipment_id), normalize_address(transporter)))

    def update_shipment_state(self, *, sender, shipment_id, new_state, timestamp, nonce, signature):
        c = self._require(self.shipment_token, "ShipmentToken")
        payload = (_b32(shipment_id), int(new_state), int(timestamp), int(nonce), to_bytes(hexstr=signature))
        return self._send(sender, c.functions.updateShipmentState(payload))

    def propose_weighment(self, *, sender, shipment_id, weight_kg):
        c = self._require(self.shipment_token, "ShipmentToken")
        payload = (_b32(shipment_id), int(weight_kg), normalize_address(sender))
        return self._send(sender, c.functions.proposeWeighment(payload))

    def attach_weighment(self, *, sender, shipment_id, weigh_kg, weigh_hash, timestamp, nonce, signature):
        c = self._require(self.shipment_token, "ShipmentToken")
        payload = (_b32(shipment_id), int(weigh_kg), weigh_hash, int(timestamp), int(nonce), to_bytes(hexstr=signature))
        return self._send(sender, c.functions.attachWeighment(payload))

    def attach_proof(self, *, sender, shipment_id, proof_type, proof_hash, timestamp, nonce, signature):
        c = self._require(self.shipment_token, "ShipmentToken")
        payload = (_b32(shipment_id), int(proof_type), proof_hash, int(timestamp), int(nonce), to_bytes(hexstr=signature))
        return self._send(sender, c.functions.attachProof(payload))

    def get_shipment(self, shipment_id):
        c = self._require(self.shipment_token, "ShipmentToken")
        try:
            raw = self._call_node(lambda: c.functions.getShipment(_b32(shipment_id)).call())
        except LedgerRejected:
            # getShipment reverts for unknown ids
            return None
        return OnChainShipment(
            shipment_id=_plain(raw[0]),
            state=int(raw[3]),
            transporter=raw[4],
            farmer=raw[5],
            industry=raw[6],
            metadata_hash=raw[2],
            updated_at=int(raw[9]),
        )

    # ─────────────────────────────────────────────
    # EscrowPayment / ERC20
    # ─────────────────────────────────────────────

    def allowance(self, *, token, owner, spender):
        erc20 = self.w3.eth.contract(address=normalize_address(token), abi=ERC20_ABI)
        return int(self._call_node(
            lambda: erc20.functions.allowance(normalize_address(owner), normalize_address(spender)).call()
        ))

    def approve(self, *, sender, token, spender, amount):
        erc20 = self.w3.eth.contract(address=normalize_address(token), abi=ERC20_ABI)
        return self._send(sender, erc20.functions.approve(normalize_address(spender), int(amount)))

    def deposit_payment(self, *, sender, shipment_id, token, amount, farmer, transporter,
                        farmer_bps, transporter_bps, platform_bps):
        c = self._require(self.escrow, "EscrowPayment")
        return self._send(sender, c.functions.depositPayment(
            _b32(shipment_id),
            normalize_address(token),
            int(amount),
            normalize_address(farmer),
            normalize_address(transporter),
            int(farmer_bps),
            int(transporter_bps),
            int(platform_bps),
        ))

    def hold_payment(self, *, sender, shipment_id):
        c = self._require(self.escrow, "EscrowPayment")
        return self._send(sender, c.functions.holdPayment(_b32(shipment_id)))

    def release_payment(self, *, sender, shipment_id):
        c = self._require(self.escrow, "EscrowPayment")
        return self._send(sender, c.functions.releasePayment(_b32(shipment_id)))

    def refund_payment(self, *, sender, shipment_id):
        c = self._require(self.escrow, "EscrowPayment")
        return self._send(sender, c.functions.refundPayment(_b32(shipment_id)))

    def cancel_by_payer(self, *, sender, shipment_id):
        c = self._require(self.escrow, "EscrowPayment")
        return self._send(sender, c.functions.cancelByPayer(_b32(shipment_id)))

    def get_escrow(self, shipment_id):
        c = self._require(self.escrow, "EscrowPayment")
        raw = self._call_node(lambda: c.functions.getEscrow(_b32(shipment_id)).call())
        if int(raw[8]) == 0 or raw[2] == ZERO_ADDRESS:
            return None
        return OnChainEscrow(
            token=raw[0],
            amount=int(raw[1]),
            payer=raw[2],
            farmer=raw[3],
            transporter=raw[4],
            farmer_bps=int(raw[5]),
            transporter_bps=int(raw[6]),
            platform_bps=int(raw[7]),
            status=int(raw[8]),
            created_at=int(raw[9]),
            updated_at=int(raw[10]),
        )

    # ─────────────────────────────────────────────
    # DisputeManager / Registration
    # ─────────────────────────────────────────────

    def raise_dispute(self, *, sender, shipment_id, evidence_hash):
        c = self._require(self.dispute_manager, "DisputeManager")
        return self._send(sender, c.functions.raiseDispute(_b32(shipment_id), evidence_hash))

    def add_evidence(self, *, sender, dispute_id, evidence_hash, oracle_signature, oracle_signed_hash):
        c = self._require(self.dispute_manager, "DisputeManager")
        return self._send(sender, c.functions.addEvidence(
            int(dispute_id), evidence_hash, to_bytes(hexstr=oracle_signature), _b32(oracle_signed_hash)
        ))

    def resolve_dispute(self, *, sender, dispute_id, resolution, note):
        c = self._require(self.dispute_manager, "DisputeManager")
        return self._send(sender, c.functions.resolveDispute(int(dispute_id), int(resolution), note))

    def kyc_attestation(self, *, sender, participant, role, metadata_hash, timestamp, nonce, signature):
        c = self._require(self.registration, "Registration")
        payload = (
            normalize_address(participant), int(role), metadata_hash,
            int(timestamp), int(nonce), to_bytes(hexstr=signature),
        )
        return self._send(sender, c.functions.kycAttestation(payload))

    # ─────────────────────────────────────────────
    # Blocks / receipts / events
    # ─────────────────────────────────────────────

    def block_number(self) -> int:
        return int(self._call_node(lambda: self.w3.eth.block_number))

    def get_receipt(self, tx_hash):
        try:
            raw = self._call_node(lambda: self.w3.eth.get_transaction_receipt(tx_hash))
        except TransactionNotFound:
            return None
        return self._receipt(raw)

    def wait_for_receipt(self, tx_hash, timeout):
        try:
            raw = self._call_node(
                lambda: self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout, poll_latency=1.0)
            )
        except TimeExhausted as exc:
            raise NetworkTimeout(f"no receipt for {tx_hash} after {timeout}s", tx_hash=tx_hash) from exc
        return self._receipt(raw)

    def get_events(self, from_block, to_block):
        out: List[LedgerEvent] = []
        for contract, names in self._projected():
            if contract is None:
                continue
            for name in names:
                logs = self._call_node(
                    lambda: contract.events[name]().get_logs(from_block=from_block, to_block=to_block)
                )
                out.extend(self._to_event(raw) for raw in logs)
        out.sort(key=lambda e: e.sequence)
        return out

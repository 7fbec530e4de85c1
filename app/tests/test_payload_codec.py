import pytest
from eth_account import Account

from app.core.errors import RejectionReason, SignatureError, ValidationError
from app.services import payload_codec
from app.services.attestation_service import AttestationService
from app.services.nonces import CounterNonceSource, RandomNonceSource, nonce_source_for
from app.services.payload_codec import AttestationPayload, PayloadKind, canonical_shipment_id
from app.services.signers import LocalKeySigner, recover_signer

ORACLE_KEY = "0x" + "55" * 32
OTHER_KEY = "0x" + "99" * 32
SID = canonical_shipment_id("SHP-1")
NOW = 1_700_000_000


class FixedNonces:
    def __init__(self, *values):
        self.values = list(values)

    def next(self, signer):
        return self.values.pop(0)


def make_service(signer=None, nonces=None, clock=lambda: NOW, skew=300):
    return AttestationService(
        chain_id=31337,
        signer=signer or LocalKeySigner(ORACLE_KEY),
        nonce_source=nonces or RandomNonceSource(),
        max_skew_seconds=skew,
        clock=clock,
    )


def test_canonical_id_pads_short_ids():
    cid = canonical_shipment_id("SHP-1")
    assert cid.startswith("0x")
    assert len(cid) == 66
    assert bytes.fromhex(cid[2:]).rstrip(b"\x00") == b"SHP-1"


def test_canonical_id_passes_canonical_hex_through_lowercased():
    raw = "0x" + "AB" * 32
    assert canonical_shipment_id(raw) == raw.lower()


def test_canonical_id_holds_up_to_31_bytes():
    assert bytes.fromhex(canonical_shipment_id("X" * 31)[2:]) == b"X" * 31 + b"\x00"


@pytest.mark.parametrize("long_id", ["X" * 32, "\u00e9" * 16])
def test_canonical_id_refuses_ids_that_do_not_fit(long_id):
    with pytest.raises(ValueError, match="at most 31"):
        canonical_shipment_id(long_id)


def test_canonical_id_rejects_empty():
    with pytest.raises(ValueError):
        canonical_shipment_id("")


def test_state_update_hash_is_deterministic():
    kw = dict(chain_id=31337, shipment_id=SID, new_state=2, timestamp=NOW, nonce=7)
    assert payload_codec.state_update_hash(**kw) == payload_codec.state_update_hash(**kw)
    assert len(payload_codec.state_update_hash(**kw)) == 32


@pytest.mark.parametrize(
    "field,value",
    [("chain_id", 1), ("new_state", 3), ("timestamp", NOW + 1), ("nonce", 8), ("shipment_id", canonical_shipment_id("SHP-2"))],
)
def test_state_update_hash_changes_with_every_field(field, value):
    base = dict(chain_id=31337, shipment_id=SID, new_state=2, timestamp=NOW, nonce=7)
    changed = dict(base, **{field: value})
    assert payload_codec.state_update_hash(**base) != payload_codec.state_update_hash(**changed)


def test_weighment_hash_binds_weight_and_document():
    base = dict(chain_id=31337, shipment_id=SID, weigh_kg=1200, weigh_hash="ipfs://w1", timestamp=NOW, nonce=1)
    h = payload_codec.weighment_hash(**base)
    assert h != payload_codec.weighment_hash(**dict(base, weigh_kg=1201))
    assert h != payload_codec.weighment_hash(**dict(base, weigh_hash="ipfs://w2"))


def test_out_of_range_fields_are_rejected():
    with pytest.raises(ValueError):
        payload_codec.state_update_hash(chain_id=31337, shipment_id=SID, new_state=256, timestamp=NOW, nonce=1)
    with pytest.raises(ValueError):
        payload_codec.state_update_hash(chain_id=31337, shipment_id=SID, new_state=1, timestamp=-1, nonce=1)


def test_payload_digest_matches_the_typed_hash():
    payload = AttestationPayload.build(
        PayloadKind.PROOF, chain_id=31337, subject=SID, timestamp=NOW, nonce=3, proof_type=1, proof_hash="ipfs://p",
    )
    expected = payload_codec.proof_hash(
        chain_id=31337, shipment_id=SID, proof_type=1, proof_hash="ipfs://p", timestamp=NOW, nonce=3
    )
    assert payload.digest() == expected
    assert payload.digest_hex() == "0x" + expected.hex()


def test_payload_build_rejects_wrong_fields():
    with pytest.raises(ValueError):
        AttestationPayload.build(PayloadKind.STATE_UPDATE, chain_id=1, subject=SID, timestamp=NOW, nonce=1, weigh_kg=5)


def test_signed_attestation_recovers_to_attestor():
    svc = make_service()
    signed = svc.state_update(SID, 2)

    assert signed.signer == Account.from_key(ORACLE_KEY).address
    assert recover_signer(bytes.fromhex(signed.digest[2:]), signed.signature) == signed.signer
    assert signed.payload.timestamp == NOW


def test_signature_from_another_key_is_refused():
    class Impostor:
        address = Account.from_key(ORACLE_KEY).address

        def __init__(self):
            self._real = LocalKeySigner(OTHER_KEY)

        def sign(self, digest):
            return self._real.sign(digest)

    svc = make_service(signer=Impostor())
    with pytest.raises(SignatureError):
        svc.state_update(SID, 2)


def test_timestamp_outside_skew_is_refused():
    svc = make_service(skew=300)
    with pytest.raises(ValidationError) as e:
        svc.weighment(SID, 1000, "ipfs://w", timestamp=NOW - 301)
    assert e.value.reason == RejectionReason.PRECONDITION_NOT_MET

    assert svc.weighment(SID, 1000, "ipfs://w", timestamp=NOW - 300).payload.timestamp == NOW - 300


def test_nonce_is_never_reused_for_the_same_subject():
    svc = make_service(nonces=FixedNonces(5, 5, 6))
    first = svc.state_update(SID, 2)
    second = svc.state_update(SID, 3)
    assert first.payload.nonce == 5
    assert second.payload.nonce == 6


def test_counter_nonces_increase_per_signer():
    src = CounterNonceSource()
    a = [src.next("0xA") for _ in range(3)]
    assert a == sorted(a)
    assert len(set(a)) == 3


def test_nonce_strategy_lookup():
    assert isinstance(nonce_source_for("random"), RandomNonceSource)
    assert isinstance(nonce_source_for("counter"), CounterNonceSource)
    with pytest.raises(ValueError):
        nonce_source_for("sequential")

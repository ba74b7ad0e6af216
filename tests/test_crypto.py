import base64

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from gatelink.crypto import DeviceIdentity, SignedAssertion, canonical_string, verify_assertion
from gatelink.errors import CryptoError


def test_signed_assertion_verifies_against_exported_key():
    ident = DeviceIdentity.create()
    a = ident.sign_assertion("abc123", 1000)

    assert a.device_id == ident.device_id
    assert a.public_key == ident.export_public_key()
    assert a.nonce == "abc123"
    assert a.signed_at == 1000  # server ts echoed, not a local clock
    assert verify_assertion(a, "abc123", 1000, ident.device_id)


@pytest.mark.parametrize("nonce,issued_at,device_id", [
    ("abc124", 1000, None),
    ("abc123", 1001, None),
    ("abc123", 1000, "device_0000000000000000"),
])
def test_altering_any_signed_field_invalidates_signature(nonce, issued_at, device_id):
    ident = DeviceIdentity.create()
    a = ident.sign_assertion("abc123", 1000)
    assert not verify_assertion(a, nonce, issued_at, device_id or ident.device_id)


def test_exported_public_key_has_no_armor():
    pub = DeviceIdentity.create().export_public_key()
    assert "-----" not in pub
    assert "\n" not in pub
    key = serialization.load_der_public_key(base64.b64decode(pub))
    assert isinstance(key, ec.EllipticCurvePublicKey)
    assert key.curve.name == "secp256r1"


def test_each_instance_is_a_fresh_identity():
    a, b = DeviceIdentity.create(), DeviceIdentity.create()
    assert a.device_id != b.device_id
    assert a.export_public_key() != b.export_public_key()
    assert a.device_id.startswith("device_")
    assert len(a.device_id) == len("device_") + 16


def test_same_instance_signs_with_same_identity():
    ident = DeviceIdentity.create()
    first = ident.sign_assertion("n1", 1)
    second = ident.sign_assertion("n2", 2)
    assert first.device_id == second.device_id
    assert first.public_key == second.public_key


def test_canonical_string_layout():
    assert canonical_string("abc123", 1000, "device_ab") == "abc123:1000:device_ab"


def test_signing_failure_is_crypto_error():
    broken = DeviceIdentity("device_broken", private_key=None)
    with pytest.raises(CryptoError):
        broken.sign_assertion("abc123", 1000)


def test_unencodable_nonce_is_crypto_error():
    with pytest.raises(CryptoError):
        DeviceIdentity.create().sign_assertion("\ud800", 1000)


def test_wire_form_round_trips():
    a = DeviceIdentity.create().sign_assertion("abc123", 1000)
    wire = a.to_wire()
    assert set(wire) == {"id", "publicKey", "signature", "signedAt", "nonce"}
    assert SignedAssertion.from_wire(wire) == a


def test_garbage_public_key_is_crypto_error():
    a = DeviceIdentity.create().sign_assertion("abc123", 1000)
    bad = SignedAssertion(a.device_id, "bm90IGEga2V5", a.signature, a.signed_at, a.nonce)
    with pytest.raises(CryptoError):
        verify_assertion(bad)

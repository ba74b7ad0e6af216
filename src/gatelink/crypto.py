"""
gatelink.crypto
设备身份：ECDSA P-256 密钥对 + 随机 device id，对服务器下发的 challenge 进行签名。

注意：密钥只在一次连接尝试内有效，不做持久化。
"""
from __future__ import annotations

import base64
import binascii
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

from .errors import CryptoError


DEVICE_ID_PREFIX = "device_"
DEVICE_ID_BYTES = 8  # 64 bits


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(text: str) -> bytes:
    return base64.b64decode(text.encode("ascii"), validate=True)


def canonical_string(nonce: str, issued_at: int, device_id: str) -> str:
    """被签名的字节串，服务器用同样的三元组重建它来验签。"""
    return f"{nonce}:{issued_at}:{device_id}"


@dataclass(frozen=True)
class SignedAssertion:
    device_id: str
    public_key: str
    signature: str
    signed_at: int
    nonce: str

    def to_wire(self) -> Dict[str, Any]:
        return {
            "id": self.device_id,
            "publicKey": self.public_key,
            "signature": self.signature,
            "signedAt": self.signed_at,
            "nonce": self.nonce,
        }

    @staticmethod
    def from_wire(device: Dict[str, Any]) -> "SignedAssertion":
        try:
            return SignedAssertion(
                device_id=device["id"],
                public_key=device["publicKey"],
                signature=device["signature"],
                signed_at=device["signedAt"],
                nonce=device["nonce"],
            )
        except (KeyError, TypeError) as exc:
            raise ValueError(f"bad device assertion: {exc}") from exc


class DeviceIdentity:
    """
    一次连接尝试独占的设备身份。
    - 同一个实例的所有签名都使用同一个 device_id / 私钥；
    - 新实例 = 新身份。
    """

    def __init__(self, device_id: str, private_key: ec.EllipticCurvePrivateKey):
        self._device_id = device_id
        self._private_key = private_key
        self._public_key_b64: Optional[str] = None

    @classmethod
    def create(cls) -> "DeviceIdentity":
        device_id = DEVICE_ID_PREFIX + os.urandom(DEVICE_ID_BYTES).hex()
        try:
            priv = ec.generate_private_key(ec.SECP256R1())
        except (ValueError, UnsupportedAlgorithm) as exc:
            raise CryptoError(f"key generation failed: {exc}") from exc
        return cls(device_id, priv)

    @property
    def device_id(self) -> str:
        return self._device_id

    def export_public_key(self) -> str:
        """SubjectPublicKeyInfo DER 的 base64，即去掉 PEM 头尾和换行后的内容。"""
        if self._public_key_b64 is None:
            der = self._private_key.public_key().public_bytes(
                encoding=serialization.Encoding.DER,
                format=serialization.PublicFormat.SubjectPublicKeyInfo,
            )
            self._public_key_b64 = b64encode(der)
        return self._public_key_b64

    def sign_assertion(self, nonce: str, issued_at: int) -> SignedAssertion:
        # nonce / issued_at 必须原样使用服务器下发的值
        try:
            tbs = canonical_string(nonce, issued_at, self._device_id).encode("utf-8")
            sig = self._private_key.sign(tbs, ec.ECDSA(hashes.SHA256()))
        except (AttributeError, TypeError, UnicodeEncodeError, ValueError, UnsupportedAlgorithm) as exc:
            raise CryptoError(f"signing failed: {exc}") from exc
        return SignedAssertion(
            device_id=self._device_id,
            public_key=self.export_public_key(),
            signature=b64encode(sig),
            signed_at=issued_at,
            nonce=nonce,
        )


def load_public_key(public_key_b64: str) -> ec.EllipticCurvePublicKey:
    try:
        key = serialization.load_der_public_key(b64decode(public_key_b64))
    except (ValueError, binascii.Error, UnsupportedAlgorithm) as exc:
        raise CryptoError(f"bad public key: {exc}") from exc
    if not isinstance(key, ec.EllipticCurvePublicKey):
        raise CryptoError("public key is not an EC key")
    return key


def verify_assertion(
    assertion: SignedAssertion,
    nonce: Optional[str] = None,
    issued_at: Optional[int] = None,
    device_id: Optional[str] = None,
) -> bool:
    """
    服务器侧验签。nonce / issued_at / device_id 给出时以它们为准重建签名串，
    否则使用 assertion 自带的字段。
    """
    nonce = assertion.nonce if nonce is None else nonce
    issued_at = assertion.signed_at if issued_at is None else issued_at
    device_id = assertion.device_id if device_id is None else device_id

    pub = load_public_key(assertion.public_key)
    try:
        tbs = canonical_string(nonce, issued_at, device_id).encode("utf-8")
        pub.verify(b64decode(assertion.signature), tbs, ec.ECDSA(hashes.SHA256()))
    except (InvalidSignature, binascii.Error, ValueError):
        return False
    return True

"""
gatelink.errors
握手失败的分类：每个异常携带一个 ErrorKind，状态机据此生成带标签的失败结果。
"""
from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    TRANSPORT = "transport"
    DECODE = "decode"
    CRYPTO = "crypto"
    PROTOCOL = "protocol"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class GatelinkError(Exception):
    kind = ErrorKind.PROTOCOL

    def __init__(self, message: str = "", code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class TransportError(GatelinkError):
    """connect / send / close failure, or the peer went away."""
    kind = ErrorKind.TRANSPORT


class DecodeError(GatelinkError):
    kind = ErrorKind.DECODE


class CryptoError(GatelinkError):
    """key generation or signing failed; never retried."""
    kind = ErrorKind.CRYPTO


class ProtocolError(GatelinkError):
    """server said ok=false, or a success payload that cannot be used."""
    kind = ErrorKind.PROTOCOL


class HandshakeTimeoutError(GatelinkError):
    kind = ErrorKind.TIMEOUT


class HandshakeCancelledError(GatelinkError):
    kind = ErrorKind.CANCELLED


_BY_KIND = {
    ErrorKind.TRANSPORT: TransportError,
    ErrorKind.DECODE: DecodeError,
    ErrorKind.CRYPTO: CryptoError,
    ErrorKind.PROTOCOL: ProtocolError,
    ErrorKind.TIMEOUT: HandshakeTimeoutError,
    ErrorKind.CANCELLED: HandshakeCancelledError,
}


def error_for(kind: ErrorKind, message: str, code: Optional[str] = None) -> GatelinkError:
    return _BY_KIND[kind](message, code=code)

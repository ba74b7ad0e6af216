"""
gatelink.handshake
握手状态机：AWAITING_CHALLENGE -> AWAITING_RESPONSE -> SUCCEEDED | FAILED。

状态机不接触传输层：feed() 接收一个输入事件，返回需要执行的副作用（发送帧 / 完成）。
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Union

from .config import ConnectOptions
from .crypto import DeviceIdentity
from .errors import CryptoError, ErrorKind, GatelinkError, ProtocolError, error_for
from .protocol import (
    ChallengeReceived,
    Decoded,
    Malformed,
    Response,
    connect_request,
    describe_error,
    parse_hello_ok,
)

log = logging.getLogger(__name__)


class Phase(str, Enum):
    AWAITING_CHALLENGE = "awaiting_challenge"
    AWAITING_RESPONSE = "awaiting_response"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (Phase.SUCCEEDED, Phase.FAILED)


@dataclass(frozen=True)
class HandshakeResult:
    success: bool
    protocol_version: Optional[int] = None
    device_token: Optional[str] = None
    policy: Optional[Dict[str, Any]] = None
    error_kind: Optional[ErrorKind] = None
    error_detail: Optional[str] = None
    error_code: Optional[str] = None
    failed_in: Optional[Phase] = None

    @staticmethod
    def succeeded(protocol_version: int, device_token: str, policy=None) -> "HandshakeResult":
        return HandshakeResult(
            success=True,
            protocol_version=protocol_version,
            device_token=device_token,
            policy=policy,
        )

    @staticmethod
    def failed(kind: ErrorKind, detail: str, code: Optional[str] = None, phase: Optional[Phase] = None) -> "HandshakeResult":
        return HandshakeResult(success=False, error_kind=kind, error_detail=detail, error_code=code, failed_in=phase)

    def raise_for_failure(self) -> None:
        if not self.success:
            raise error_for(self.error_kind or ErrorKind.PROTOCOL, self.error_detail or "", code=self.error_code)


# -- machine inputs (besides decoded frames) ---------------------------------

@dataclass(frozen=True)
class TimedOut:
    after: float


@dataclass(frozen=True)
class TransportClosed:
    reason: str = "connection closed"


@dataclass(frozen=True)
class TransportFailed:
    error: str


@dataclass(frozen=True)
class Cancelled:
    reason: str = "cancelled"


Input = Union[Decoded, TimedOut, TransportClosed, TransportFailed, Cancelled]


# -- effects -----------------------------------------------------------------

@dataclass(frozen=True)
class Send:
    message: Any  # a protocol.Request


@dataclass(frozen=True)
class Complete:
    result: HandshakeResult


Effect = Union[Send, Complete]


@dataclass(frozen=True)
class HandshakeState:
    phase: Phase = Phase.AWAITING_CHALLENGE
    pending_id: Optional[str] = None
    result: Optional[HandshakeResult] = None


class RequestIds:
    """每次连接尝试独立的 correlation id 生成器。"""

    def __init__(self, prefix: str = "req_"):
        self.prefix = prefix
        self._issued: Set[str] = set()

    def __call__(self) -> str:
        while True:
            rid = self.prefix + os.urandom(6).hex()
            if rid not in self._issued:
                self._issued.add(rid)
                return rid


class HandshakeMachine:
    def __init__(
        self,
        identity: DeviceIdentity,
        options: ConnectOptions,
        new_request_id: Optional[Callable[[], str]] = None,
    ):
        self.identity = identity
        self.options = options
        self.new_request_id = new_request_id or RequestIds()
        self.state = HandshakeState()
        self.challenge: Optional[ChallengeReceived] = None
        self.requests_sent = 0
        self.last_decode_error: Optional[str] = None

    @property
    def phase(self) -> Phase:
        return self.state.phase

    @property
    def result(self) -> Optional[HandshakeResult]:
        return self.state.result

    def feed(self, event: Input) -> List[Effect]:
        if self.state.phase.terminal:
            log.debug("ignoring %s after terminal phase %s", type(event).__name__, self.state.phase.value)
            return []

        if isinstance(event, ChallengeReceived):
            return self._on_challenge(event)
        if isinstance(event, Response):
            return self._on_response(event)
        if isinstance(event, Malformed):
            self.last_decode_error = str(event.error)
            log.warning("malformed frame ignored: %s", event.error)
            return []
        if isinstance(event, TimedOut):
            detail = f"no {'challenge' if self.phase is Phase.AWAITING_CHALLENGE else 'response'} within {event.after:g}s"
            if self.last_decode_error:
                detail += f" (last decode error: {self.last_decode_error})"
            return self._fail(ErrorKind.TIMEOUT, detail)
        if isinstance(event, TransportClosed):
            return self._fail(ErrorKind.TRANSPORT, event.reason)
        if isinstance(event, TransportFailed):
            return self._fail(ErrorKind.TRANSPORT, event.error)
        if isinstance(event, Cancelled):
            return self._fail(ErrorKind.CANCELLED, event.reason)

        # other events / requests / unknown frames are outside the handshake
        log.debug("ignoring %s in phase %s", type(event).__name__, self.phase.value)
        return []

    def _on_challenge(self, ch: ChallengeReceived) -> List[Effect]:
        if self.phase is not Phase.AWAITING_CHALLENGE:
            log.debug("duplicate challenge ignored (nonce=%s)", ch.nonce)
            return []

        self.challenge = ch
        try:
            assertion = self.identity.sign_assertion(ch.nonce, ch.issued_at)
        except CryptoError as exc:
            return self._fail(ErrorKind.CRYPTO, str(exc))

        request_id = self.new_request_id()
        request = connect_request(request_id, self.options, assertion)
        self.requests_sent += 1
        self.state = replace(self.state, phase=Phase.AWAITING_RESPONSE, pending_id=request_id)
        log.info("challenge received, connect request %s sent", request_id)
        return [Send(request)]

    def _on_response(self, res: Response) -> List[Effect]:
        if self.phase is not Phase.AWAITING_RESPONSE or res.id != self.state.pending_id:
            log.debug("foreign response %s ignored", res.id)
            return []

        if not res.ok:
            code, detail = describe_error(res.error)
            return self._fail(ErrorKind.PROTOCOL, detail, code=code)

        try:
            hello = parse_hello_ok(res.payload)
            if not self.options.accepts_protocol(hello.protocol):
                raise ProtocolError(
                    f"server selected protocol {hello.protocol}, "
                    f"outside [{self.options.min_protocol}, {self.options.max_protocol}]"
                )
        except GatelinkError as exc:
            return self._fail(exc.kind, str(exc), code=exc.code)

        result = HandshakeResult.succeeded(hello.protocol, hello.device_token, hello.policy)
        self.state = replace(self.state, phase=Phase.SUCCEEDED, result=result)
        log.info("handshake succeeded, protocol %d", hello.protocol)
        return [Complete(result)]

    def _fail(self, kind: ErrorKind, detail: str, code: Optional[str] = None) -> List[Effect]:
        result = HandshakeResult.failed(kind, detail, code=code, phase=self.phase)
        self.state = replace(self.state, phase=Phase.FAILED, result=result)
        log.info("handshake failed in %s: %s %s", result.failed_in.value, kind.value, detail)
        return [Complete(result)]

"""
gatelink.harness
一次完整的握手尝试：传输层收到的帧 -> 解码 -> 状态机 -> 副作用回写到传输层。

harness 独占 transport 与超时定时器；无论以何种方式结束都会释放二者。
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import List, Optional

from .config import HANDSHAKE_TIMEOUT, ConnectOptions
from .crypto import DeviceIdentity
from .errors import CryptoError, ErrorKind, TransportError
from .handshake import (
    Cancelled,
    Complete,
    HandshakeMachine,
    HandshakeResult,
    Input,
    Phase,
    RequestIds,
    Send,
    TimedOut,
    TransportClosed,
    TransportFailed,
)
from .protocol import decode, encode
from .transport import Frame, Transport, WebSocketTransport

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttemptOutcome:
    result: HandshakeResult
    elapsed_ms: float
    challenge_received: bool
    device_id: Optional[str] = None
    transport_opened: bool = False

    @property
    def stage(self) -> str:
        """ok / unreachable / no_challenge / rejected：调用方据此给出诊断，无需翻日志。"""
        if self.result.success:
            return "ok"
        if not self.transport_opened and self.result.error_kind is ErrorKind.TRANSPORT:
            return "unreachable"
        if not self.challenge_received:
            return "no_challenge"
        return "rejected"


class HandshakeAttempt:
    def __init__(self, transport: Transport, machine: HandshakeMachine, timeout: float = HANDSHAKE_TIMEOUT):
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self.transport = transport
        self.machine = machine
        self.timeout = timeout
        self._done: Optional[asyncio.Future] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._sends: List[asyncio.Future] = []
        self._cancel_reason: Optional[str] = None
        self._opened = False

    @property
    def timer_active(self) -> bool:
        return self._timer is not None

    def cancel(self, reason: str = "cancelled") -> None:
        """外部取消：强制进入 FAILED(cancelled)。run() 之前调用则根本不打开连接。"""
        if self._done is None:
            self._cancel_reason = reason
            return
        self._apply(Cancelled(reason))

    async def run(self) -> AttemptOutcome:
        if self._done is not None:
            raise RuntimeError("handshake attempt already started")
        loop = asyncio.get_running_loop()
        self._done = loop.create_future()
        start = time.monotonic()

        self.transport.on_message(self._on_frame)
        self.transport.on_error(self._on_error)
        self.transport.on_close(self._on_close)
        try:
            if self._cancel_reason is not None:
                self._apply(Cancelled(self._cancel_reason))
            else:
                try:
                    await self.transport.open()
                except TransportError as exc:
                    self._apply(TransportFailed(str(exc)))
                else:
                    self._opened = True
                    if not self._done.done():
                        self._timer = loop.call_later(self.timeout, self._on_timeout)
            result = await self._done
        finally:
            self._cancel_timer()
            await self._release()

        return AttemptOutcome(
            result=result,
            elapsed_ms=(time.monotonic() - start) * 1000,
            challenge_received=self.machine.challenge is not None,
            device_id=self.machine.identity.device_id,
            transport_opened=self._opened,
        )

    def _apply(self, event: Input) -> None:
        if self._done is None or self._done.done():
            return
        for effect in self.machine.feed(event):
            if isinstance(effect, Send):
                self._sends.append(asyncio.ensure_future(self._send(effect.message)))
            elif isinstance(effect, Complete):
                self._cancel_timer()
                self._done.set_result(effect.result)

    async def _send(self, message) -> None:
        try:
            await self.transport.send(encode(message))
        except TransportError as exc:
            self._apply(TransportFailed(str(exc)))

    def _on_frame(self, frame: Frame) -> None:
        self._apply(decode(frame))

    def _on_error(self, error: Exception) -> None:
        self._apply(TransportFailed(str(error)))

    def _on_close(self, reason: str) -> None:
        self._apply(TransportClosed(reason))

    def _on_timeout(self) -> None:
        self._timer = None
        self._apply(TimedOut(self.timeout))

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def _release(self) -> None:
        pending = [f for f in self._sends if not f.done()]
        for f in pending:
            f.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if self.transport.closed:
            return
        try:
            await self.transport.close()
        except TransportError as exc:
            log.warning("transport close failed after handshake: %s", exc)


async def connect_once(
    options: ConnectOptions,
    url: str,
    timeout: float = HANDSHAKE_TIMEOUT,
    transport: Optional[Transport] = None,
) -> AttemptOutcome:
    """直连与 SSH 隧道两种用法共用：每次调用构造全新的身份、状态机与 id 生成器。"""
    try:
        identity = DeviceIdentity.create()
    except CryptoError as exc:
        result = HandshakeResult.failed(ErrorKind.CRYPTO, str(exc), phase=Phase.AWAITING_CHALLENGE)
        return AttemptOutcome(result=result, elapsed_ms=0.0, challenge_received=False)

    machine = HandshakeMachine(identity, options, RequestIds())
    attempt = HandshakeAttempt(transport or WebSocketTransport(url), machine, timeout=timeout)
    return await attempt.run()

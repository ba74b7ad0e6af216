"""
gatelink.transport
传输层接口（可靠、有序的消息通道）及其 WebSocket 实现；另附 TCP 可达性探测。
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional, Union

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .config import PROBE_TIMEOUT
from .errors import TransportError

log = logging.getLogger(__name__)

Frame = Union[str, bytes]


class Transport(ABC):
    """
    open / send / close 为协程；收到的帧、错误、关闭通过回调按到达顺序投递。
    closed 为 True 之后不会再投递任何回调。
    """

    def __init__(self) -> None:
        self._message_handler: Optional[Callable[[Frame], None]] = None
        self._error_handler: Optional[Callable[[Exception], None]] = None
        self._close_handler: Optional[Callable[[str], None]] = None
        self._closed = False

    def on_message(self, handler: Callable[[Frame], None]) -> None:
        self._message_handler = handler

    def on_error(self, handler: Callable[[Exception], None]) -> None:
        self._error_handler = handler

    def on_close(self, handler: Callable[[str], None]) -> None:
        self._close_handler = handler

    @property
    def closed(self) -> bool:
        return self._closed

    def _emit_message(self, frame: Frame) -> None:
        if self._closed or self._message_handler is None:
            return
        try:
            self._message_handler(frame)
        except Exception as exc:
            log.exception("message handler failed")
            self._emit_error(TransportError(f"message handler failed: {exc}"))

    def _emit_error(self, error: Exception) -> None:
        if self._error_handler is not None:
            self._error_handler(error)

    def _emit_close(self, reason: str) -> None:
        if self._close_handler is not None:
            self._close_handler(reason)

    @abstractmethod
    async def open(self) -> None:
        ...

    @abstractmethod
    async def send(self, frame: str) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class WebSocketTransport(Transport):
    def __init__(self, url: str, open_timeout: float = 10.0):
        super().__init__()
        self.url = url
        self.open_timeout = open_timeout
        self._ws = None
        self._reader: Optional[asyncio.Task] = None

    async def open(self) -> None:
        try:
            self._ws = await websockets.connect(self.url, open_timeout=self.open_timeout)
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            self._closed = True
            raise TransportError(f"cannot open {self.url}: {exc}") from exc
        log.debug("websocket open: %s", self.url)
        self._reader = asyncio.ensure_future(self._read_loop())

    async def _read_loop(self) -> None:
        reason = "connection closed"
        try:
            async for message in self._ws:
                self._emit_message(message)
        except ConnectionClosed as exc:
            reason = f"connection closed: {exc}"
        except (OSError, WebSocketException) as exc:
            if not self._closed:
                self._closed = True
                self._emit_error(TransportError(f"websocket error: {exc}"))
            return
        if not self._closed:
            self._closed = True
            if self._ws.close_code is not None:
                reason = f"connection closed (code {self._ws.close_code}) {self._ws.close_reason or ''}".strip()
            self._emit_close(reason)

    async def send(self, frame: str) -> None:
        if self._ws is None or self._closed:
            raise TransportError("transport is not open")
        try:
            await self._ws.send(frame)
        except (OSError, WebSocketException) as exc:
            raise TransportError(f"send failed: {exc}") from exc

    async def close(self) -> None:
        if self._closed and self._reader is None:
            return
        self._closed = True
        if self._ws is not None:
            try:
                await self._ws.close()
            except (OSError, WebSocketException) as exc:
                raise TransportError(f"close failed: {exc}") from exc
            finally:
                if self._reader is not None:
                    self._reader.cancel()
                    await asyncio.gather(self._reader, return_exceptions=True)
                    self._reader = None


@dataclass
class ProbeResult:
    ok: bool
    elapsed_ms: float
    error: Optional[str] = None


async def probe_tcp(host: str, port: int, timeout: float = PROBE_TIMEOUT) -> ProbeResult:
    """只检测 TCP 端口是否可达，不发送任何数据。"""
    start = time.monotonic()
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    except asyncio.TimeoutError:
        return ProbeResult(False, (time.monotonic() - start) * 1000, f"timed out after {timeout:g}s")
    except OSError as exc:
        return ProbeResult(False, (time.monotonic() - start) * 1000, str(exc) or type(exc).__name__)
    elapsed = (time.monotonic() - start) * 1000
    writer.close()
    with contextlib.suppress(OSError):
        await writer.wait_closed()
    return ProbeResult(True, elapsed)

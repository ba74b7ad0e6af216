"""
gatelink.config
连接参数：客户端描述、协议版本范围、凭据与网关地址。由调用方构造后按值传入 harness。
"""
from __future__ import annotations

import os
import platform as _platform
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

DEFAULT_PORT = 18789
PROTOCOL_VERSION = 3
HANDSHAKE_TIMEOUT = 15.0
PROBE_TIMEOUT = 5.0
TOKEN_ENV = "GATELINK_TOKEN"


def default_platform() -> str:
    name = _platform.system().lower()
    return {"darwin": "macos"}.get(name, name or "unknown")


@dataclass
class ClientDescriptor:
    id: str = "cli"
    version: str = "1.0.0"
    platform: str = field(default_factory=default_platform)
    mode: str = "cli"

    def to_wire(self) -> Dict[str, str]:
        return {"id": self.id, "version": self.version, "platform": self.platform, "mode": self.mode}


@dataclass
class ConnectOptions:
    token: str
    client: ClientDescriptor = field(default_factory=ClientDescriptor)
    role: str = "operator"
    scopes: List[str] = field(default_factory=lambda: ["operator.read", "operator.write"])
    caps: List[str] = field(default_factory=list)
    commands: List[str] = field(default_factory=list)
    permissions: Dict[str, Any] = field(default_factory=dict)
    locale: str = "zh-CN"
    user_agent: Optional[str] = None
    min_protocol: int = PROTOCOL_VERSION
    max_protocol: int = PROTOCOL_VERSION

    def __post_init__(self) -> None:
        if self.min_protocol > self.max_protocol:
            raise ValueError(
                f"minProtocol {self.min_protocol} > maxProtocol {self.max_protocol}"
            )
        if self.user_agent is None:
            self.user_agent = f"{self.client.id}/{self.client.version}"

    def accepts_protocol(self, version: int) -> bool:
        return self.min_protocol <= version <= self.max_protocol


@dataclass
class GatewayEndpoint:
    host: str = "127.0.0.1"
    port: int = DEFAULT_PORT
    tls: bool = False

    @property
    def url(self) -> str:
        scheme = "wss" if self.tls else "ws"
        return f"{scheme}://{self.host}:{self.port}"


def token_from_env(environ=None) -> Optional[str]:
    environ = os.environ if environ is None else environ
    token = environ.get(TOKEN_ENV, "").strip()
    return token or None

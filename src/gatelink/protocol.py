"""
gatelink.protocol
网关协议的帧编解码：event / req / res 三种 JSON 帧。

decode() 永不抛出：非法输入返回 Malformed，由调用方决定是否致命。
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from .config import ConnectOptions
from .crypto import SignedAssertion
from .errors import DecodeError, ProtocolError

# Frame types
FT_EVENT = "event"
FT_REQUEST = "req"
FT_RESPONSE = "res"

CHALLENGE_EVENT = "connect.challenge"
METHOD_CONNECT = "connect"
HELLO_OK = "hello-ok"


class _Absent:
    """字段在帧中不存在（区别于显式的 null）。"""
    __slots__ = ()

    def __repr__(self) -> str:
        return "ABSENT"

    def __bool__(self) -> bool:
        return False


ABSENT = _Absent()


def _extras(obj: Mapping[str, Any], known: Tuple[str, ...]) -> Dict[str, Any]:
    return {k: v for k, v in obj.items() if k not in known}


@dataclass
class Event:
    name: str
    payload: Any = ABSENT
    extras: Dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> Dict[str, Any]:
        obj: Dict[str, Any] = {"type": FT_EVENT, "event": self.name}
        if self.payload is not ABSENT:
            obj["payload"] = self.payload
        obj.update(self.extras)
        return obj


@dataclass
class ChallengeReceived:
    nonce: str
    issued_at: int
    payload: Dict[str, Any] = field(default_factory=dict)
    extras: Dict[str, Any] = field(default_factory=dict)

    name = CHALLENGE_EVENT

    def to_wire(self) -> Dict[str, Any]:
        payload = dict(self.payload)
        payload["nonce"] = self.nonce
        payload["ts"] = self.issued_at
        obj: Dict[str, Any] = {"type": FT_EVENT, "event": CHALLENGE_EVENT, "payload": payload}
        obj.update(self.extras)
        return obj


@dataclass
class Request:
    id: str
    method: str
    params: Any = ABSENT
    extras: Dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> Dict[str, Any]:
        obj: Dict[str, Any] = {"type": FT_REQUEST, "id": self.id, "method": self.method}
        if self.params is not ABSENT:
            obj["params"] = self.params
        obj.update(self.extras)
        return obj


@dataclass
class Response:
    id: str
    ok: bool
    payload: Any = ABSENT
    error: Any = ABSENT
    extras: Dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> Dict[str, Any]:
        obj: Dict[str, Any] = {"type": FT_RESPONSE, "id": self.id, "ok": self.ok}
        if self.payload is not ABSENT:
            obj["payload"] = self.payload
        if self.error is not ABSENT:
            obj["error"] = self.error
        obj.update(self.extras)
        return obj


@dataclass
class Unrecognized:
    """结构合法但 type 未知的帧，原样透传。"""
    raw: Dict[str, Any]

    def to_wire(self) -> Dict[str, Any]:
        return dict(self.raw)


@dataclass
class Malformed:
    raw: Union[str, bytes]
    error: DecodeError


Message = Union[Event, ChallengeReceived, Request, Response, Unrecognized]
Decoded = Union[Event, ChallengeReceived, Request, Response, Unrecognized, Malformed]


def _require_str(obj: Mapping[str, Any], key: str, what: str) -> str:
    value = obj.get(key)
    if not isinstance(value, str):
        raise DecodeError(f"{what}: '{key}' must be a string")
    return value


def _decode_event(obj: Dict[str, Any]) -> Union[Event, ChallengeReceived]:
    name = _require_str(obj, "event", "event frame")
    payload = obj.get("payload", ABSENT)
    extras = _extras(obj, ("type", "event", "payload"))
    if name != CHALLENGE_EVENT:
        return Event(name=name, payload=payload, extras=extras)

    if not isinstance(payload, dict):
        raise DecodeError("challenge payload must be an object")
    nonce = payload.get("nonce")
    ts = payload.get("ts")
    if not isinstance(nonce, str) or not nonce:
        raise DecodeError("challenge nonce must be a non-empty string")
    try:
        nonce.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise DecodeError(f"challenge nonce is not valid unicode: {exc}") from exc
    if not isinstance(ts, int) or isinstance(ts, bool):
        raise DecodeError("challenge ts must be an integer (ms)")
    return ChallengeReceived(nonce=nonce, issued_at=ts, payload=payload, extras=extras)


def _decode_request(obj: Dict[str, Any]) -> Request:
    req_id = _require_str(obj, "id", "request frame")
    method = _require_str(obj, "method", "request frame")
    params = obj.get("params", ABSENT)
    if params is not ABSENT and params is not None and not isinstance(params, dict):
        raise DecodeError("request params must be an object")
    return Request(id=req_id, method=method, params=params, extras=_extras(obj, ("type", "id", "method", "params")))


def _decode_response(obj: Dict[str, Any]) -> Response:
    res_id = _require_str(obj, "id", "response frame")
    ok = obj.get("ok")
    if not isinstance(ok, bool):
        raise DecodeError("response frame: 'ok' must be a boolean")
    return Response(
        id=res_id,
        ok=ok,
        payload=obj.get("payload", ABSENT),
        error=obj.get("error", ABSENT),
        extras=_extras(obj, ("type", "id", "ok", "payload", "error")),
    )


def _decode(raw: Union[str, bytes]) -> Message:
    if isinstance(raw, (bytes, bytearray)):
        try:
            text = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecodeError(f"frame is not utf-8: {exc}") from exc
    else:
        text = raw
    try:
        obj = json.loads(text)
    except (TypeError, ValueError, RecursionError) as exc:
        raise DecodeError(f"invalid json: {exc}") from exc
    if not isinstance(obj, dict):
        raise DecodeError("frame is not a JSON object")

    ftype = obj.get("type")
    if ftype == FT_EVENT:
        return _decode_event(obj)
    if ftype == FT_RESPONSE:
        return _decode_response(obj)
    if ftype == FT_REQUEST:
        return _decode_request(obj)
    return Unrecognized(raw=obj)


def decode(raw: Union[str, bytes]) -> Decoded:
    try:
        return _decode(raw)
    except DecodeError as exc:
        return Malformed(raw=raw, error=exc)


def encode(message: Union[Message, Mapping[str, Any]]) -> str:
    if isinstance(message, Malformed):
        raise ValueError("cannot encode a malformed frame")
    obj = dict(message) if isinstance(message, Mapping) else message.to_wire()
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def challenge_event(nonce: str, issued_at: int) -> ChallengeReceived:
    return ChallengeReceived(nonce=nonce, issued_at=issued_at, payload={"nonce": nonce, "ts": issued_at})


def connect_params(options: ConnectOptions, assertion: SignedAssertion) -> Dict[str, Any]:
    return {
        "minProtocol": options.min_protocol,
        "maxProtocol": options.max_protocol,
        "client": options.client.to_wire(),
        "role": options.role,
        "scopes": list(options.scopes),
        "caps": list(options.caps),
        "commands": list(options.commands),
        "permissions": dict(options.permissions),
        "auth": {"token": options.token},
        "locale": options.locale,
        "userAgent": options.user_agent,
        "device": assertion.to_wire(),
    }


def connect_request(request_id: str, options: ConnectOptions, assertion: SignedAssertion) -> Request:
    return Request(id=request_id, method=METHOD_CONNECT, params=connect_params(options, assertion))


@dataclass(frozen=True)
class HelloOk:
    protocol: int
    device_token: str
    policy: Optional[Dict[str, Any]] = None


def parse_protocol_version(value: Any) -> int:
    if isinstance(value, bool):
        raise ProtocolError(f"bad protocol version {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError as exc:
            raise ProtocolError(f"bad protocol version {value!r}") from exc
    raise ProtocolError(f"bad protocol version {value!r}")


def parse_hello_ok(payload: Any) -> HelloOk:
    if not isinstance(payload, dict):
        raise ProtocolError("success response without payload")
    if payload.get("type") != HELLO_OK:
        raise ProtocolError(f"unexpected payload type {payload.get('type')!r}")

    protocol = parse_protocol_version(payload.get("protocol"))
    auth = payload.get("auth")
    token = auth.get("deviceToken") if isinstance(auth, dict) else None
    if not isinstance(token, str) or not token:
        raise ProtocolError("hello-ok without device token")

    policy = payload.get("policy")
    if policy is not None and not isinstance(policy, dict):
        raise ProtocolError("hello-ok policy must be an object")
    return HelloOk(protocol=protocol, device_token=token, policy=policy)


def describe_error(error: Any) -> Tuple[Optional[str], str]:
    """ok=false 时的 (code, detail)，尽量保留服务器原文。"""
    if isinstance(error, dict):
        code = error.get("code") if isinstance(error.get("code"), str) else None
        message = error.get("message") if isinstance(error.get("message"), str) else None
        return code, message or code or "unknown error"
    if isinstance(error, str) and error:
        return None, error
    return None, "unknown error"

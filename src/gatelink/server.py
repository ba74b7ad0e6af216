"""
gatelink.server
演示网关：下发 connect.challenge，校验 connect 请求中的 token 与设备签名，返回 hello-ok。
仅用于本地联调与端到端测试。
"""
from __future__ import annotations

import argparse
import asyncio
import hmac
import os
import time
from typing import Optional, Tuple

import websockets
from websockets.exceptions import ConnectionClosed

from .config import DEFAULT_PORT, PROTOCOL_VERSION
from .crypto import SignedAssertion, b64encode, verify_assertion
from .errors import CryptoError
from .protocol import (
    HELLO_OK,
    METHOD_CONNECT,
    ChallengeReceived,
    Request,
    Response,
    challenge_event,
    decode,
    encode,
)


def new_challenge() -> ChallengeReceived:
    nonce = b64encode(os.urandom(16))
    return challenge_event(nonce, int(time.time() * 1000))


def negotiate(client_min: int, client_max: int, server_min: int, server_max: int) -> Optional[int]:
    lo, hi = max(client_min, server_min), min(client_max, server_max)
    return hi if lo <= hi else None


def _reject(request_id: str, code: str, message: str) -> Response:
    return Response(id=request_id, ok=False, error={"code": code, "message": message})


def answer_connect(
    request: Request,
    challenge: ChallengeReceived,
    token: str,
    supported: Tuple[int, int] = (PROTOCOL_VERSION, PROTOCOL_VERSION),
) -> Response:
    params = request.params or {}

    auth = params.get("auth")
    presented = auth.get("token") if isinstance(auth, dict) else None
    if not isinstance(presented, str) or not hmac.compare_digest(presented.encode(), token.encode()):
        return _reject(request.id, "AUTH_INVALID", "invalid token")

    client_min, client_max = params.get("minProtocol"), params.get("maxProtocol")
    if not isinstance(client_min, int) or not isinstance(client_max, int):
        return _reject(request.id, "INVALID_REQUEST", "minProtocol/maxProtocol required")
    version = negotiate(client_min, client_max, *supported)
    if version is None:
        return _reject(request.id, "PROTOCOL_MISMATCH", f"supported protocols {supported[0]}..{supported[1]}")

    device = params.get("device")
    if not isinstance(device, dict):
        return _reject(request.id, "DEVICE_REQUIRED", "device identity required")
    try:
        assertion = SignedAssertion.from_wire(device)
    except ValueError as exc:
        return _reject(request.id, "DEVICE_INVALID", str(exc))

    if assertion.nonce != challenge.nonce or assertion.signed_at != challenge.issued_at:
        return _reject(request.id, "CHALLENGE_MISMATCH", "assertion does not answer this challenge")
    try:
        valid = verify_assertion(assertion, challenge.nonce, challenge.issued_at)
    except CryptoError as exc:
        return _reject(request.id, "DEVICE_INVALID", str(exc))
    if not valid:
        return _reject(request.id, "SIGNATURE_INVALID", "device signature check failed")

    return Response(
        id=request.id,
        ok=True,
        payload={
            "type": HELLO_OK,
            "protocol": str(version),
            "auth": {"deviceToken": os.urandom(24).hex()},
            "policy": {"deviceId": assertion.device_id},
        },
    )


class DemoGateway:
    def __init__(self, token: str, supported: Tuple[int, int] = (PROTOCOL_VERSION, PROTOCOL_VERSION)):
        self.token = token
        self.supported = supported

    async def handle(self, ws) -> None:
        challenge = new_challenge()
        answered = False
        try:
            await ws.send(encode(challenge))
            async for raw in ws:
                msg = decode(raw)
                if answered or not isinstance(msg, Request) or msg.method != METHOD_CONNECT:
                    continue
                answered = True
                res = answer_connect(msg, challenge, self.token, self.supported)
                await ws.send(encode(res))
                if res.ok:
                    print(f"[server] hello-ok -> {res.payload['policy']['deviceId']}")
                else:
                    print(f"[server] rejected: {res.error['code']}")
                    await ws.close()
        except ConnectionClosed:
            # client went away
            return


async def serve(host: str, port: int, token: str) -> None:
    gw = DemoGateway(token)
    async with websockets.serve(gw.handle, host, port):
        print(f"[server] listening on ws://{host}:{port}")
        await asyncio.Future()


def main() -> None:
    ap = argparse.ArgumentParser(prog="gatelink-gateway")
    ap.add_argument("--host", default="127.0.0.1")
    ap.add_argument("--port", type=int, default=DEFAULT_PORT)
    ap.add_argument("--token", required=True, help="bearer token clients must present")
    args = ap.parse_args()

    asyncio.run(serve(args.host, args.port, args.token))


if __name__ == "__main__":
    main()

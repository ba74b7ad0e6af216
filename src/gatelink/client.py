"""
gatelink.client
连接测试客户端：TCP 可达性 -> WebSocket -> 协议握手，输出阶段结果并可保存 JSON 报告。
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Optional

from .config import (
    DEFAULT_PORT,
    HANDSHAKE_TIMEOUT,
    PROBE_TIMEOUT,
    TOKEN_ENV,
    ClientDescriptor,
    ConnectOptions,
    GatewayEndpoint,
    default_platform,
    token_from_env,
)
from .harness import AttemptOutcome, connect_once
from .report import FAIL, PASS, SKIP, STAGE_HANDSHAKE, STAGE_TCP, STAGE_WEBSOCKET, Report, StageResult
from .transport import probe_tcp


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="gatelink-connect")
    ap.add_argument("--host", default="127.0.0.1")
    ap.add_argument("--port", type=int, default=DEFAULT_PORT)
    ap.add_argument("--tls", action="store_true", help="use wss://")
    ap.add_argument("--token", default=None, help=f"bearer token (default: ${TOKEN_ENV})")
    ap.add_argument("--client-id", default="cli")
    ap.add_argument("--client-version", default="1.0.0")
    ap.add_argument("--platform", default=default_platform())
    ap.add_argument("--mode", default="cli")
    ap.add_argument("--role", default="operator")
    ap.add_argument("--scope", dest="scopes", action="append", default=None,
                    help="requested scope, repeatable (default: operator.read, operator.write)")
    ap.add_argument("--locale", default="zh-CN")
    ap.add_argument("--min-protocol", type=int, default=3)
    ap.add_argument("--max-protocol", type=int, default=3)
    ap.add_argument("--timeout", type=float, default=HANDSHAKE_TIMEOUT, help="handshake timeout, seconds")
    ap.add_argument("--probe-timeout", type=float, default=PROBE_TIMEOUT)
    ap.add_argument("--tunnel", action="store_true",
                    help="gateway reached through a local SSH forward (implies --host localhost)")
    ap.add_argument("--ssh-host", default=None, help="remote host, only used for the tunnel hint")
    ap.add_argument("--ssh-user", default="root")
    ap.add_argument("--report", default=None, help="write a JSON report to this path")
    ap.add_argument("-v", "--verbose", action="store_true")
    return ap


def options_from_args(args: argparse.Namespace, token: str) -> ConnectOptions:
    client = ClientDescriptor(
        id=args.client_id,
        version=args.client_version,
        platform=args.platform,
        mode=args.mode,
    )
    kwargs = {}
    if args.scopes:
        kwargs["scopes"] = args.scopes
    return ConnectOptions(
        token=token,
        client=client,
        role=args.role,
        locale=args.locale,
        min_protocol=args.min_protocol,
        max_protocol=args.max_protocol,
        **kwargs,
    )


def tunnel_hint(endpoint: GatewayEndpoint, ssh_user: str, ssh_host: Optional[str]) -> str:
    target = f"{ssh_user}@{ssh_host}" if ssh_host else f"{ssh_user}@<gateway-host>"
    return f"ssh -N -L {endpoint.port}:127.0.0.1:{endpoint.port} {target}"


def handshake_stages(report: Report, outcome: AttemptOutcome) -> None:
    result = outcome.result
    if outcome.transport_opened:
        report.add(StageResult(STAGE_WEBSOCKET, PASS, outcome.elapsed_ms, "websocket open"))
    else:
        report.add(StageResult(STAGE_WEBSOCKET, FAIL, outcome.elapsed_ms, result.error_detail or "",
                               {"error": result.error_detail}))
        report.add(StageResult(STAGE_HANDSHAKE, SKIP, 0.0, "websocket not open"))
        return

    if result.success:
        token = result.device_token or ""
        report.add(StageResult(
            STAGE_HANDSHAKE, PASS, outcome.elapsed_ms,
            f"hello-ok, protocol {result.protocol_version}",
            {
                "deviceId": outcome.device_id,
                "protocolVersion": result.protocol_version,
                "deviceTokenPreview": token[:30] + "...",
                "policy": result.policy,
            },
        ))
    else:
        report.add(StageResult(
            STAGE_HANDSHAKE, FAIL, outcome.elapsed_ms,
            f"{outcome.stage}: {result.error_kind.value}: {result.error_detail}",
            {
                "stage": outcome.stage,
                "kind": result.error_kind.value,
                "code": result.error_code,
                "phase": result.failed_in.value if result.failed_in else None,
            },
        ))


async def run(args: argparse.Namespace, token: str) -> int:
    endpoint = GatewayEndpoint(host="localhost" if args.tunnel else args.host, port=args.port, tls=args.tls)
    options = options_from_args(args, token)
    report = Report(endpoint.host, endpoint.port)

    print(f"[client] target {endpoint.url}" + (" (ssh tunnel)" if args.tunnel else ""))

    probe = await probe_tcp(endpoint.host, endpoint.port, timeout=args.probe_timeout)
    if not probe.ok:
        report.add(StageResult(STAGE_TCP, FAIL, probe.elapsed_ms, f"tcp connect failed: {probe.error}",
                               {"error": probe.error}))
        report.add(StageResult(STAGE_WEBSOCKET, SKIP, 0.0, "port unreachable"))
        report.add(StageResult(STAGE_HANDSHAKE, SKIP, 0.0, "port unreachable"))
        if args.tunnel:
            print("[client] tunnel is not up, start it first:")
            print(f"[client]   {tunnel_hint(endpoint, args.ssh_user, args.ssh_host)}")
    else:
        report.add(StageResult(STAGE_TCP, PASS, probe.elapsed_ms, f"tcp connect to {endpoint.host}:{endpoint.port}"))
        outcome = await connect_once(options, endpoint.url, timeout=args.timeout)
        report.device = {"id": outcome.device_id}
        handshake_stages(report, outcome)

    report.print_summary()
    if args.report:
        report.write(args.report)
        print(f"[client] report written: {args.report}")
    return 0 if report.ok else 1


def main(argv=None) -> None:
    ap = build_parser()
    args = ap.parse_args(argv)
    token = args.token or token_from_env()
    if not token:
        ap.error(f"a bearer token is required (--token or ${TOKEN_ENV})")
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    try:
        options_from_args(args, token)
    except ValueError as exc:
        ap.error(str(exc))
    sys.exit(asyncio.run(run(args, token)))


if __name__ == "__main__":
    main()

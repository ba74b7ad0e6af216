"""
gatelink.report
连接测试的阶段结果：控制台输出 + JSON 报告。
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

PASS = "PASS"
FAIL = "FAIL"
SKIP = "SKIP"

STAGE_TCP = "tcp"
STAGE_WEBSOCKET = "websocket"
STAGE_HANDSHAKE = "handshake"

_ICONS = {PASS: "+", FAIL: "x", SKIP: "-"}

_SUGGESTIONS = {
    STAGE_TCP: [
        "check that the gateway port is open in the server firewall",
        "check that the gateway process is running",
        "if the gateway binds loopback only, use --tunnel with an SSH forward",
    ],
    STAGE_WEBSOCKET: [
        "the port answers but the WebSocket upgrade failed",
        "check the gateway logs for the rejected upgrade",
    ],
    STAGE_HANDSHAKE: [
        "the bearer token may be invalid or expired",
        "the gateway may require device pairing approval",
        "check the gateway auth mode",
    ],
}


@dataclass
class StageResult:
    name: str
    status: str
    duration_ms: float
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "durationMs": round(self.duration_ms, 2),
            "message": self.message,
            "details": self.details,
        }


class Report:
    def __init__(self, host: str, port: int, device: Optional[Dict[str, Any]] = None):
        self.host = host
        self.port = port
        self.device = device or {}
        self.results: List[StageResult] = []

    def add(self, result: StageResult) -> StageResult:
        self.results.append(result)
        print(f"[{_ICONS.get(result.status, '?')}] {result.name}: {result.status} ({result.duration_ms:.2f}ms)")
        if result.message:
            print(f"    {result.message}")
        return result

    def status_of(self, name: str) -> Optional[str]:
        for r in self.results:
            if r.name == name:
                return r.status
        return None

    @property
    def ok(self) -> bool:
        return bool(self.results) and all(r.status != FAIL for r in self.results)

    def summary(self) -> Dict[str, int]:
        return {
            "total": len(self.results),
            "passed": sum(1 for r in self.results if r.status == PASS),
            "failed": sum(1 for r in self.results if r.status == FAIL),
            "skipped": sum(1 for r in self.results if r.status == SKIP),
        }

    def first_failure(self) -> Optional[StageResult]:
        for r in self.results:
            if r.status == FAIL:
                return r
        return None

    def suggestions(self) -> List[str]:
        failed = self.first_failure()
        if failed is None:
            return []
        return list(_SUGGESTIONS.get(failed.name, []))

    def print_summary(self) -> None:
        s = self.summary()
        print(f"[report] total={s['total']} passed={s['passed']} failed={s['failed']} skipped={s['skipped']}")
        for r in self.results:
            if r.status == FAIL:
                print(f"[report] {r.name} failed: {r.message}")
        for line in self.suggestions():
            print(f"[report]   - {line}")

    def to_json(self) -> Dict[str, Any]:
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "target": {"host": self.host, "port": self.port},
            "device": self.device,
            "summary": self.summary(),
            "results": [r.to_json() for r in self.results],
        }

    def write(self, path: str) -> None:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_json(), f, indent=2, ensure_ascii=False)

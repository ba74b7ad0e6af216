import asyncio
import json

import pytest

from gatelink.config import ConnectOptions
from gatelink.crypto import DeviceIdentity
from gatelink.errors import CryptoError, ErrorKind, TransportError
from gatelink.handshake import HandshakeMachine, Phase, RequestIds
from gatelink.harness import HandshakeAttempt
from gatelink.transport import Transport

CHALLENGE = {"type": "event", "event": "connect.challenge", "payload": {"nonce": "abc123", "ts": 1000}}


class FakeTransport(Transport):
    """In-memory transport: frames queued on open, replies computed per sent request."""

    def __init__(self, on_open=(), reply=None, fail_open=False):
        super().__init__()
        self.on_open_frames = list(on_open)
        self.reply = reply
        self.fail_open = fail_open
        self.sent = []
        self.open_calls = 0
        self.close_calls = 0

    async def open(self):
        self.open_calls += 1
        if self.fail_open:
            self._closed = True
            raise TransportError("connection refused")
        loop = asyncio.get_running_loop()
        for frame in self.on_open_frames:
            loop.call_soon(self.deliver, frame)

    async def send(self, frame):
        if self._closed:
            raise TransportError("transport is not open")
        self.sent.append(json.loads(frame))
        if self.reply is not None:
            asyncio.get_running_loop().call_soon(self.reply, self, self.sent[-1])

    async def close(self):
        self.close_calls += 1
        self._closed = True

    def deliver(self, frame):
        self._emit_message(frame if isinstance(frame, str) else json.dumps(frame))

    def drop(self, reason="peer closed"):
        self._closed = True
        self._emit_close(reason)


def make_attempt(transport, timeout=1.0):
    machine = HandshakeMachine(DeviceIdentity.create(), ConnectOptions(token="secret"), RequestIds())
    return HandshakeAttempt(transport, machine, timeout=timeout)


def respond(payload=None, ok=True, error=None):
    def reply(transport, req):
        frame = {"type": "res", "id": req["id"], "ok": ok}
        if payload is not None:
            frame["payload"] = payload
        if error is not None:
            frame["error"] = error
        transport.deliver(frame)
    return reply


HELLO_OK = {"type": "hello-ok", "protocol": "3", "auth": {"deviceToken": "tok-xyz"}}


def test_scenario_a_success():
    t = FakeTransport(on_open=[CHALLENGE], reply=respond(HELLO_OK))
    attempt = make_attempt(t)
    outcome = asyncio.run(attempt.run())

    assert outcome.result.success
    assert outcome.result.device_token == "tok-xyz"
    assert outcome.result.protocol_version == 3
    assert outcome.stage == "ok"
    assert outcome.transport_opened
    assert outcome.elapsed_ms >= 0
    assert attempt.machine.phase is Phase.SUCCEEDED
    assert not attempt.timer_active
    assert t.close_calls == 1
    assert len(t.sent) == 1
    device = t.sent[0]["params"]["device"]
    assert device["signedAt"] == 1000 and device["nonce"] == "abc123"


def test_scenario_b_server_rejects():
    t = FakeTransport(on_open=[CHALLENGE], reply=respond(ok=False, error={"code": "AUTH_INVALID"}))
    outcome = asyncio.run(make_attempt(t).run())

    r = outcome.result
    assert not r.success
    assert r.error_kind is ErrorKind.PROTOCOL
    assert r.error_code == "AUTH_INVALID"
    assert outcome.stage == "rejected"
    assert t.close_calls == 1


def test_scenario_c_no_challenge_times_out():
    t = FakeTransport()
    attempt = make_attempt(t, timeout=0.05)
    outcome = asyncio.run(attempt.run())

    r = outcome.result
    assert r.error_kind is ErrorKind.TIMEOUT
    assert r.failed_in is Phase.AWAITING_CHALLENGE
    assert outcome.stage == "no_challenge"
    assert not outcome.challenge_received
    assert t.sent == []
    assert t.close_calls == 1


def test_scenario_d_close_while_awaiting_response():
    t = FakeTransport(on_open=[CHALLENGE], reply=lambda transport, req: transport.drop())
    attempt = make_attempt(t)
    outcome = asyncio.run(attempt.run())

    r = outcome.result
    assert r.error_kind is ErrorKind.TRANSPORT
    assert r.failed_in is Phase.AWAITING_RESPONSE
    assert not attempt.timer_active
    assert t.closed
    assert t.close_calls == 0


def test_duplicate_challenge_and_foreign_response():
    def reply(transport, req):
        transport.deliver(CHALLENGE)
        transport.deliver({"type": "res", "id": "someone-else", "ok": False, "error": {"code": "X"}})
        transport.deliver("{broken")
        respond(HELLO_OK)(transport, req)

    t = FakeTransport(on_open=[CHALLENGE, CHALLENGE], reply=reply)
    outcome = asyncio.run(make_attempt(t).run())

    assert outcome.result.success
    assert len(t.sent) == 1


def test_timer_is_inert_after_response():
    async def scenario():
        t = FakeTransport(on_open=[CHALLENGE], reply=respond(HELLO_OK))
        attempt = make_attempt(t, timeout=0.05)
        outcome = await attempt.run()
        await asyncio.sleep(0.1)
        return attempt, outcome

    attempt, outcome = asyncio.run(scenario())
    assert outcome.result.success
    assert attempt.machine.result is outcome.result
    assert attempt.machine.phase is Phase.SUCCEEDED


def test_unencodable_nonce_is_ignored_until_timeout():
    raw = '{"type":"event","event":"connect.challenge","payload":{"nonce":"\\ud800","ts":1000}}'
    t = FakeTransport(on_open=[raw])
    outcome = asyncio.run(make_attempt(t, timeout=0.05).run())

    r = outcome.result
    assert r.error_kind is ErrorKind.TIMEOUT
    assert "last decode error" in r.error_detail and "nonce" in r.error_detail
    assert outcome.stage == "no_challenge"
    assert t.sent == []
    assert t.close_calls == 1


class _BrokenIdentity:
    device_id = "device_broken"

    def sign_assertion(self, nonce, issued_at):
        raise CryptoError("signing failed: no key")


def test_signing_failure_after_challenge_is_rejected_stage():
    t = FakeTransport(on_open=[CHALLENGE])
    machine = HandshakeMachine(_BrokenIdentity(), ConnectOptions(token="secret"), RequestIds())
    outcome = asyncio.run(HandshakeAttempt(t, machine, timeout=1.0).run())

    assert outcome.result.error_kind is ErrorKind.CRYPTO
    assert outcome.challenge_received
    assert outcome.stage == "rejected"
    assert t.sent == []
    assert t.close_calls == 1


def test_handler_exception_becomes_transport_error():
    def boom(frame):
        raise RuntimeError("boom")

    errors = []
    t = FakeTransport()
    t.on_message(boom)
    t.on_error(errors.append)
    t.deliver(CHALLENGE)

    assert len(errors) == 1
    assert isinstance(errors[0], TransportError)
    assert "boom" in str(errors[0])


def test_open_failure_is_transport_failure():
    t = FakeTransport(fail_open=True)
    outcome = asyncio.run(make_attempt(t).run())

    assert outcome.result.error_kind is ErrorKind.TRANSPORT
    assert "connection refused" in outcome.result.error_detail
    assert not outcome.transport_opened
    assert outcome.stage == "unreachable"
    assert t.close_calls == 0


def test_cancel_while_waiting():
    async def scenario():
        t = FakeTransport()
        attempt = make_attempt(t, timeout=5.0)
        task = asyncio.ensure_future(attempt.run())
        await asyncio.sleep(0.01)
        attempt.cancel()
        return t, attempt, await task

    t, attempt, outcome = asyncio.run(scenario())
    assert outcome.result.error_kind is ErrorKind.CANCELLED
    assert not attempt.timer_active
    assert t.close_calls == 1


def test_cancel_before_run_never_opens():
    t = FakeTransport(on_open=[CHALLENGE])
    attempt = make_attempt(t)
    attempt.cancel("shutting down")
    outcome = asyncio.run(attempt.run())

    assert outcome.result.error_kind is ErrorKind.CANCELLED
    assert outcome.result.error_detail == "shutting down"
    assert t.open_calls == 0


def test_task_cancellation_still_closes_transport():
    async def scenario():
        t = FakeTransport()
        attempt = make_attempt(t, timeout=5.0)
        task = asyncio.ensure_future(attempt.run())
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return t, attempt

    t, attempt = asyncio.run(scenario())
    assert t.close_calls == 1
    assert not attempt.timer_active


def test_attempt_runs_once():
    async def scenario():
        attempt = make_attempt(FakeTransport(on_open=[CHALLENGE], reply=respond(HELLO_OK)))
        await attempt.run()
        with pytest.raises(RuntimeError):
            await attempt.run()

    asyncio.run(scenario())

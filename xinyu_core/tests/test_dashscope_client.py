import asyncio
import json
import time

import httpx
import pytest

from xinyu_core.config.store import ChatPreferences
from xinyu_core.domain.exceptions import (
    AuthenticationError,
    InvalidRequest,
    MalformedStreamError,
    RateLimitError,
    ServerError,
    TransportError,
)
from xinyu_core.domain.history import HistoryLedger
from xinyu_core.domain.models import RequestEnvelope, Turn
from xinyu_core.providers.dashscope_client import StreamingRequestCoordinator


class SettingsStub:
    dashscope_api_key = "sk-test-0123456789"
    dashscope_app_url = "https://dashscope.example.com/api/v1/apps/app-id/completion"
    http_timeout = 5.0
    stream_deadline = 30.0
    max_consecutive_malformed_lines = None


class LineStream(httpx.AsyncByteStream):
    """按行吐出 SSE 数据的假响应体，记录读取与关闭情况。"""

    def __init__(self, lines, error=None):
        self._lines = list(lines)
        self._error = error
        self.sent = 0
        self.closed = False

    async def __aiter__(self):
        for line in self._lines:
            self.sent += 1
            yield (line + "\n").encode("utf-8")
        if self._error is not None:
            raise self._error

    async def aclose(self):
        self.closed = True


def frames(*texts, done=True):
    lines = [f"data: {json.dumps({'output': {'text': t}}, ensure_ascii=False)}" for t in texts]
    if done:
        lines.append("data: [DONE]")
    return lines


def make_transport(status=200, lines=(), error=None, captured=None):
    body = LineStream(lines, error=error)

    def handler(request: httpx.Request) -> httpx.Response:
        if captured is not None:
            captured["request"] = request
        return httpx.Response(status, stream=body)

    return httpx.MockTransport(handler), body


async def drain(stream):
    out = []
    async for fragment in stream:
        out.append(fragment)
    return out


def test_stream_once_request_shape_and_fragments():
    captured = {}
    transport, body = make_transport(lines=frames("你", "好"), captured=captured)
    coord = StreamingRequestCoordinator(SettingsStub(), transport=transport)
    stream = coord.open("hi", ChatPreferences(system_prompt="sys"), use_history=False)

    assert asyncio.run(drain(stream)) == ["你", "好"]
    assert stream.completed
    assert stream.text == "你好"
    assert body.closed

    request = captured["request"]
    assert request.method == "POST"
    assert str(request.url) == SettingsStub.dashscope_app_url
    assert request.headers["Authorization"] == "Bearer sk-test-0123456789"
    assert request.headers["Content-Type"] == "application/json"
    assert request.headers["X-DashScope-SSE"] == "enable"
    payload = json.loads(request.content)
    assert payload["input"]["messages"] == [
        {"role": "system", "content": "sys"},
        {"role": "user", "content": "hi"},
    ]
    assert payload["parameters"] == {
        "incremental_output": True,
        "temperature": 0.7,
        "top_p": 0.8,
        "top_k": 50,
        "max_tokens": 2000,
    }


def test_history_request_roundtrip_and_commit():
    captured = {}
    transport, _ = make_transport(lines=frames("慢慢来", "。"), captured=captured)
    coord = StreamingRequestCoordinator(SettingsStub(), transport=transport)
    ledger = HistoryLedger(10)
    ledger.append("user", "我睡不着")
    ledger.append("assistant", "发生什么了？")
    prefs = ChatPreferences(system_prompt="sys", temperature=0.2, top_k=10)

    stream = coord.open("在想工作的事", prefs, use_history=True, ledger=ledger)
    # 用户消息在发起网络请求前已写入历史
    assert ledger.snapshot()[-1] == Turn(role="user", content="在想工作的事")
    assert "request" not in captured

    asyncio.run(drain(stream))
    sent = RequestEnvelope.from_payload(json.loads(captured["request"].content))
    assert sent == stream.envelope
    assert [(t.role, t.content) for t in sent.messages] == [
        ("system", "sys"),
        ("user", "我睡不着"),
        ("assistant", "发生什么了？"),
        ("user", "在想工作的事"),
    ]
    assert sent.parameters.temperature == 0.2
    assert sent.parameters.top_k == 10
    assert ledger.snapshot()[-1] == Turn(role="assistant", content="慢慢来。")


def test_existing_system_turn_not_duplicated():
    transport, _ = make_transport(lines=frames("ok"))
    coord = StreamingRequestCoordinator(SettingsStub(), transport=transport)
    ledger = HistoryLedger(10)
    ledger.append("system", "custom")
    env = coord.build_envelope("hi", ChatPreferences(system_prompt="sys"), use_history=True, ledger=ledger)
    assert [t.role for t in env.messages] == ["system", "user"]
    assert env.messages[0].content == "custom"


def test_zero_capacity_still_sends_user_turn():
    coord = StreamingRequestCoordinator(SettingsStub())
    ledger = HistoryLedger(0)
    env = coord.build_envelope("hi", ChatPreferences(system_prompt="sys"), use_history=True, ledger=ledger)
    assert [(t.role, t.content) for t in env.messages] == [("system", "sys"), ("user", "hi")]
    assert ledger.snapshot() == ()


def test_empty_response_does_not_commit():
    transport, _ = make_transport(lines=["data: [DONE]"])
    coord = StreamingRequestCoordinator(SettingsStub(), transport=transport)
    ledger = HistoryLedger(10)
    stream = coord.open("hi", ChatPreferences(), use_history=True, ledger=ledger)
    assert asyncio.run(drain(stream)) == []
    assert stream.completed
    assert [t.role for t in ledger.snapshot()] == ["user"]


@pytest.mark.parametrize(
    "status,exc_type",
    [(401, AuthenticationError), (429, RateLimitError), (500, ServerError), (503, ServerError), (404, ServerError)],
)
def test_status_classification_before_body(status, exc_type):
    transport, body = make_transport(status=status, lines=frames("never"))
    coord = StreamingRequestCoordinator(SettingsStub(), transport=transport)
    ledger = HistoryLedger(10)
    stream = coord.open("hi", ChatPreferences(), use_history=True, ledger=ledger)
    with pytest.raises(exc_type) as exc:
        asyncio.run(drain(stream))
    assert exc.value.http_status == status
    assert stream.text == ""
    assert body.sent == 0
    assert body.closed
    # 用户消息不回滚，也没有助手回复
    assert [t.role for t in ledger.snapshot()] == ["user"]


def test_server_error_exposes_status_code():
    transport, _ = make_transport(status=503)
    coord = StreamingRequestCoordinator(SettingsStub(), transport=transport)
    with pytest.raises(ServerError) as exc:
        asyncio.run(drain(coord.open("hi", ChatPreferences(), use_history=False)))
    assert exc.value.status_code == 503


def test_connect_failure_is_transport_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    coord = StreamingRequestCoordinator(SettingsStub(), transport=httpx.MockTransport(handler))
    with pytest.raises(TransportError) as exc:
        asyncio.run(drain(coord.open("hi", ChatPreferences(), use_history=False)))
    assert exc.value.code == "NETWORK_ERROR"
    assert isinstance(exc.value.__cause__, httpx.ConnectError)


def test_mid_stream_disconnect_keeps_delivered_fragments():
    transport, body = make_transport(lines=frames("a", "b", done=False), error=httpx.ReadError("connection lost"))
    coord = StreamingRequestCoordinator(SettingsStub(), transport=transport)
    ledger = HistoryLedger(10)
    stream = coord.open("hi", ChatPreferences(), use_history=True, ledger=ledger)
    received = []

    async def consume():
        async for fragment in stream:
            received.append(fragment)

    with pytest.raises(TransportError):
        asyncio.run(consume())
    assert received == ["a", "b"]
    assert body.closed
    assert [t.role for t in ledger.snapshot()] == ["user"]


def test_stream_without_done_is_truncated():
    transport, _ = make_transport(lines=frames("a", done=False))
    coord = StreamingRequestCoordinator(SettingsStub(), transport=transport)
    ledger = HistoryLedger(10)
    stream = coord.open("hi", ChatPreferences(), use_history=True, ledger=ledger)
    with pytest.raises(TransportError) as exc:
        asyncio.run(drain(stream))
    assert exc.value.code == "STREAM_TRUNCATED"
    assert stream.text == "a"
    assert not stream.completed
    assert len(ledger) == 1


class ShortDeadline(SettingsStub):
    http_timeout = 30.0
    stream_deadline = 0.3


def test_deadline_bounds_silent_body():
    class StallingStream(LineStream):
        async def __aiter__(self):
            yield b'data: {"output":{"text":"first"}}\n'
            await asyncio.sleep(5)
            yield b"data: [DONE]\n"

    body = StallingStream([])
    transport = httpx.MockTransport(lambda request: httpx.Response(200, stream=body))
    coord = StreamingRequestCoordinator(ShortDeadline(), transport=transport)
    ledger = HistoryLedger(10)
    stream = coord.open("hi", ChatPreferences(), use_history=True, ledger=ledger)

    started = time.monotonic()
    with pytest.raises(TransportError) as exc:
        asyncio.run(drain(stream))
    assert time.monotonic() - started < 2
    assert exc.value.code == "DEADLINE_EXCEEDED"
    assert stream.text == "first"
    assert body.closed
    assert [t.role for t in ledger.snapshot()] == ["user"]


def test_deadline_bounds_response_headers():
    async def handler(request):
        await asyncio.sleep(5)
        return httpx.Response(200, content=b"data: [DONE]\n")

    coord = StreamingRequestCoordinator(ShortDeadline(), transport=httpx.MockTransport(handler))
    started = time.monotonic()
    with pytest.raises(TransportError) as exc:
        asyncio.run(drain(coord.open("hi", ChatPreferences(), use_history=False)))
    assert time.monotonic() - started < 2
    assert exc.value.code == "DEADLINE_EXCEEDED"


def test_malformed_limit_escalates():
    class StrictSettings(SettingsStub):
        max_consecutive_malformed_lines = 2

    transport, _ = make_transport(lines=["data: {bad", "data: {worse", *frames("late")])
    coord = StreamingRequestCoordinator(StrictSettings(), transport=transport)
    with pytest.raises(MalformedStreamError):
        asyncio.run(drain(coord.open("hi", ChatPreferences(), use_history=False)))


def test_cancel_after_first_fragment_releases_connection():
    transport, body = make_transport(lines=frames("one", "two", "three"))
    coord = StreamingRequestCoordinator(SettingsStub(), transport=transport)
    ledger = HistoryLedger(10)
    stream = coord.open("hi", ChatPreferences(), use_history=True, ledger=ledger)

    async def consume_one():
        async with stream:
            async for fragment in stream:
                return fragment

    assert asyncio.run(consume_one()) == "one"
    assert body.closed
    assert stream.closed
    assert not stream.completed
    assert ledger.snapshot() == (Turn(role="user", content="hi"),)


def test_task_cancellation_releases_connection():
    gate = {}

    class SlowStream(LineStream):
        async def __aiter__(self):
            yield b'data: {"output":{"text":"first"}}\n'
            gate["waiting"].set()
            await asyncio.sleep(60)
            yield b"data: [DONE]\n"

    body = SlowStream([])
    transport = httpx.MockTransport(lambda request: httpx.Response(200, stream=body))
    coord = StreamingRequestCoordinator(SettingsStub(), transport=transport)
    ledger = HistoryLedger(10)
    stream = coord.open("hi", ChatPreferences(), use_history=True, ledger=ledger)

    async def main():
        gate["waiting"] = asyncio.Event()
        task = asyncio.create_task(drain(stream))
        await gate["waiting"].wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(main())
    assert body.closed
    assert [t.role for t in ledger.snapshot()] == ["user"]


def test_missing_api_key_has_no_side_effects():
    class NoKey(SettingsStub):
        dashscope_api_key = None

    coord = StreamingRequestCoordinator(NoKey())
    ledger = HistoryLedger(10)
    with pytest.raises(InvalidRequest) as exc:
        coord.open("hi", ChatPreferences(), use_history=True, ledger=ledger)
    assert exc.value.code == "MISSING_API_KEY"
    assert len(ledger) == 0


def test_unencodable_message_is_invalid_request():
    coord = StreamingRequestCoordinator(SettingsStub())
    ledger = HistoryLedger(10)
    with pytest.raises(InvalidRequest):
        coord.open("bad \ud800 surrogate", ChatPreferences(), use_history=True, ledger=ledger)
    with pytest.raises(InvalidRequest):
        coord.open(None, ChatPreferences(), use_history=True, ledger=ledger)
    assert len(ledger) == 0

"""DashScope 流式请求协调器。

本模块负责一次完整的请求/响应周期：

1. 根据 ConfigStore 快照与 HistoryLedger 构造 RequestEnvelope。
2. 序列化为 DashScope 应用 completion 接口的 JSON 请求体，
   以 X-DashScope-SSE: enable 发起一次流式 POST。
3. 在读取任何响应体之前按状态码分类错误（401/429/其他非 2xx）。
4. 把响应行交给 SSEDecoder，逐个片段交给调用方。
5. 正常结束且内容非空时，把助手回复写回历史。

调用方拿到的是 FragmentStream：构造请求时立即完成（用户消息在此时写入历史），
网络连接在第一次迭代时才建立；提前关闭或取消会释放连接，且不会写入助手回复。
"""

import asyncio
import inspect
import json
import logging
import time
from typing import Any, AsyncGenerator, AsyncIterator, Awaitable, Dict, List, Optional, TypeVar
from uuid import uuid4

import httpx

from xinyu_core.config.settings import Settings, settings as default_settings
from xinyu_core.config.store import ChatPreferences
from xinyu_core.domain.exceptions import (
    AuthenticationError,
    InvalidRequest,
    RateLimitError,
    ServerError,
    TransportError,
)
from xinyu_core.domain.history import HistoryLedger
from xinyu_core.domain.models import RequestEnvelope, Turn
from xinyu_core.infrastructure.logging.logger import logger
from xinyu_core.providers.sse import SSEDecoder


T = TypeVar("T")


async def _next_line(lines: AsyncIterator[str]) -> Optional[str]:
    """读取下一行，流结束时返回 None。"""

    try:
        return await lines.__anext__()
    except StopAsyncIteration:
        return None


class FragmentStream:
    """惰性、可取消的片段序列。

    用法::

        async with client.stream_with_history("你好") as stream:
            async for fragment in stream:
                print(fragment, end="")

    - text: 目前已交付给调用方的累计文本。
    - completed: 是否收到结束标记并正常结束。
    - envelope: 本次请求使用的不可变请求信封。
    """

    def __init__(self, producer: AsyncGenerator[str, None], envelope: RequestEnvelope, trace_id: str):
        self._producer = producer
        self.envelope = envelope
        self.trace_id = trace_id
        self._parts: List[str] = []
        self._closed = False
        self.completed = False

    @property
    def text(self) -> str:
        return "".join(self._parts)

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "FragmentStream":
        return self

    async def __anext__(self) -> str:
        if self._closed:
            raise StopAsyncIteration
        try:
            fragment = await self._producer.__anext__()
        except StopAsyncIteration:
            self._closed = True
            self.completed = True
            raise
        except BaseException:
            self._closed = True
            raise
        self._parts.append(fragment)
        return fragment

    async def aclose(self) -> None:
        """放弃剩余内容并释放底层连接，可重复调用。"""

        self._closed = True
        await self._producer.aclose()

    async def __aenter__(self) -> "FragmentStream":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def collect(self) -> str:
        """消费完整个流并返回全部文本。"""

        async for _ in self:
            pass
        return self.text


class StreamingRequestCoordinator:
    """单次流式请求的协调器。

    - transport: 可选的 httpx 传输层，测试时注入 httpx.MockTransport。
    """

    name = "dashscope"

    def __init__(self, cfg: Settings = default_settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._settings = cfg
        self._transport = transport

    # ---- 请求构造 ----

    def build_envelope(
        self,
        user_message: str,
        preferences: ChatPreferences,
        use_history: bool,
        ledger: Optional[HistoryLedger] = None,
    ) -> RequestEnvelope:
        """构造请求信封。

        use_history 为 True 时先把用户消息写入 ledger，再以
        [system（若历史中没有）] + 历史快照 作为 messages；
        否则 messages 固定为 [system, user]，完全不读写 ledger。
        """

        # 先校验再写历史，保证 InvalidRequest 不留下半截副作用
        self._check_message(user_message)
        self._check_message(preferences.system_prompt)
        system_turn = Turn(role="system", content=preferences.system_prompt)
        if not use_history:
            messages = (system_turn, Turn(role="user", content=user_message))
        else:
            if ledger is None:
                raise InvalidRequest(code="MISSING_HISTORY", message="use_history requires a HistoryLedger")
            history = ledger.append_and_snapshot("user", user_message)
            if not history or history[-1] != Turn(role="user", content=user_message):
                # 容量为 0 时用户消息会被立即淘汰，请求里仍需带上本轮消息
                history = history + (Turn(role="user", content=user_message),)
            if any(t.role == "system" for t in history):
                messages = history
            else:
                messages = (system_turn,) + history
        return RequestEnvelope(messages=messages, parameters=preferences.generation_parameters())

    def open(
        self,
        user_message: str,
        preferences: ChatPreferences,
        use_history: bool,
        ledger: Optional[HistoryLedger] = None,
    ) -> FragmentStream:
        """构造请求并返回 FragmentStream，网络连接在首次迭代时建立。

        参数错误、凭证缺失在这里直接抛出 InvalidRequest，不产生任何副作用。
        """

        if not getattr(self._settings, "dashscope_api_key", None):
            raise InvalidRequest(code="MISSING_API_KEY", message="DASHSCOPE_API_KEY not set")
        envelope = self.build_envelope(user_message, preferences, use_history, ledger)
        body = self.encode(envelope)
        trace_id = f"tr-{uuid4().hex}"
        commit_to = ledger if use_history else None
        producer = self._produce(body, envelope, commit_to, trace_id)
        return FragmentStream(producer, envelope, trace_id)

    @staticmethod
    def encode(envelope: RequestEnvelope) -> bytes:
        """把信封序列化为 UTF-8 JSON 请求体。"""

        try:
            return json.dumps(envelope.to_payload(), ensure_ascii=False, allow_nan=False).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise InvalidRequest(code="JSON_ENCODING_ERROR", message=str(e))

    # ---- 网络与解码 ----

    async def _produce(
        self,
        body: bytes,
        envelope: RequestEnvelope,
        ledger: Optional[HistoryLedger],
        trace_id: str,
    ) -> AsyncGenerator[str, None]:
        log_ctx: Dict[str, Any] = {"trace_id": trace_id, "use_history": ledger is not None}
        decoder = SSEDecoder(max_consecutive_malformed=self._settings.max_consecutive_malformed_lines)
        loop = asyncio.get_running_loop()
        start_time = time.time()
        deadline = loop.time() + self._settings.stream_deadline
        self._log(logging.INFO, "Stream request issued", log_ctx, messages=len(envelope.messages))
        try:
            async with httpx.AsyncClient(
                timeout=self._settings.http_timeout,
                transport=self._transport,
                trust_env=False,
            ) as client:
                request = client.build_request(
                    "POST",
                    self._settings.dashscope_app_url,
                    content=body,
                    headers=self._headers(),
                )
                # 等待响应头与每一行数据都受同一个截止时间约束
                resp = await self._before_deadline(client.send(request, stream=True), deadline)
                lines = resp.aiter_lines()
                try:
                    self._raise_for_status(resp, log_ctx)
                    while True:
                        line = await self._before_deadline(_next_line(lines), deadline)
                        if line is None:
                            break
                        fragment = decoder.feed(line)
                        if fragment is not None:
                            yield fragment
                        if decoder.done:
                            break
                finally:
                    await lines.aclose()
                    await resp.aclose()
            if not decoder.done:
                raise TransportError(code="STREAM_TRUNCATED", message="stream ended before completion signal")
        except (httpx.HTTPError, httpx.StreamError) as e:
            self._log(logging.ERROR, "Stream transport failure", log_ctx, error=type(e).__name__)
            raise TransportError(code="NETWORK_ERROR", message=str(e) or type(e).__name__) from e
        except TransportError as e:
            self._log(logging.ERROR, "Stream aborted", log_ctx, code=e.code, fragments=decoder.fragment_count)
            raise
        except (GeneratorExit, asyncio.CancelledError):
            # 调用方放弃或任务被取消：连接已随上下文退出释放，不写入助手回复
            self._log(logging.INFO, "Stream cancelled", log_ctx, fragments=decoder.fragment_count)
            raise

        committed = False
        if ledger is not None and decoder.text:
            ledger.append("assistant", decoder.text)
            committed = True
        self._log(
            logging.INFO,
            "Stream completed",
            log_ctx,
            fragments=decoder.fragment_count,
            chars=len(decoder.text),
            skipped=decoder.skipped,
            committed=committed,
            elapsed=round(time.time() - start_time, 3),
        )

    async def _before_deadline(self, awaitable: Awaitable[T], deadline: float) -> T:
        """等待 awaitable，超过请求截止时间则取消并抛出 DEADLINE_EXCEEDED。"""

        remaining = deadline - asyncio.get_running_loop().time()
        try:
            if remaining <= 0:
                raise asyncio.TimeoutError
            return await asyncio.wait_for(awaitable, remaining)
        except asyncio.TimeoutError:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise TransportError(
                code="DEADLINE_EXCEEDED",
                message=f"stream exceeded {self._settings.stream_deadline:.0f}s deadline",
            ) from None

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._settings.dashscope_api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
            "X-DashScope-SSE": "enable",
        }

    def _raise_for_status(self, resp: httpx.Response, log_ctx: Dict[str, Any]) -> None:
        """只看状态码分类错误，不读取响应体。"""

        status = resp.status_code
        if 200 <= status < 300:
            return
        self._log(logging.WARNING, "Stream request rejected", log_ctx, http_status=status)
        if status == 401:
            raise AuthenticationError(code="AUTH_ERROR", message="DashScope authentication failed", http_status=401)
        if status == 429:
            raise RateLimitError(code="RATE_LIMIT", message="DashScope rate limit", http_status=429)
        raise ServerError(code="SERVER_ERROR", message=f"DashScope server error {status}", http_status=status)

    @staticmethod
    def _check_message(user_message: Any) -> None:
        if not isinstance(user_message, str):
            raise InvalidRequest(code="INVALID_MESSAGE", message="user message must be a string")
        try:
            user_message.encode("utf-8")
        except UnicodeEncodeError as e:
            raise InvalidRequest(code="INVALID_MESSAGE", message=str(e))

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})

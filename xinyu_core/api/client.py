"""流式聊天客户端门面。

ChatStreamingClient 是 UI / 会话层唯一需要依赖的入口：

- stream_with_history: 带上下文的对话，用户消息与助手回复都会进入历史。
- stream_once: 一次性请求，只发送 system prompt 与本次消息，不读写历史。
- clear_history: 清空对话历史。

客户端持有唯一的 HistoryLedger，并订阅 ConfigStore 的变更，
max_history_length 修改后立即作用到历史容量；采样参数等修改从下一次请求开始生效。
"""

from typing import Any, Optional, Tuple

import httpx

from xinyu_core.config.settings import Settings, settings as default_settings
from xinyu_core.config.store import ConfigStore
from xinyu_core.domain.history import HistoryLedger
from xinyu_core.domain.models import Turn
from xinyu_core.providers.dashscope_client import FragmentStream, StreamingRequestCoordinator


CONNECTION_PROBE_MESSAGE = "测试连接"


class ChatStreamingClient:
    def __init__(
        self,
        config: Optional[ConfigStore] = None,
        cfg: Settings = default_settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        coordinator: Optional[StreamingRequestCoordinator] = None,
    ):
        self._config = config if config is not None else ConfigStore()
        self._ledger = HistoryLedger(self._config.max_history_length)
        self._coordinator = coordinator or StreamingRequestCoordinator(cfg, transport=transport)
        self._unsubscribe = self._config.subscribe(self._on_config_changed)

    @property
    def config(self) -> ConfigStore:
        return self._config

    @property
    def history(self) -> Tuple[Turn, ...]:
        return self._ledger.snapshot()

    def stream_with_history(self, user_message: str) -> FragmentStream:
        """发起带历史的流式对话。

        调用时立即把用户消息写入历史并构造请求，返回的流在迭代时才连接服务端；
        正常结束且回复非空时，助手回复写入历史。
        """

        return self._coordinator.open(
            user_message,
            self._config.snapshot(),
            use_history=True,
            ledger=self._ledger,
        )

    def stream_once(self, user_message: str) -> FragmentStream:
        """发起不涉及历史的一次性流式请求。"""

        return self._coordinator.open(user_message, self._config.snapshot(), use_history=False)

    def clear_history(self) -> None:
        self._ledger.clear()

    async def complete_once(self, user_message: str) -> str:
        """一次性请求并返回完整回复文本（如生成会话标题/摘要）。"""

        async with self.stream_once(user_message) as stream:
            return await stream.collect()

    async def test_connection(self) -> bool:
        """发送一条探测消息，收到任意片段即视为连接成功。"""

        async with self.stream_with_history(CONNECTION_PROBE_MESSAGE) as stream:
            async for _ in stream:
                return True
        return False

    def close(self) -> None:
        """停止接收配置变更通知。"""

        self._unsubscribe()

    def _on_config_changed(self, key: str, value: Any) -> None:
        if key == "max_history_length":
            self._ledger.set_capacity(value)

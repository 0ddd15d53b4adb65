"""对外 API 服务模块。

提供进程级默认客户端与简化的函数接口，供 UI / 会话层直接调用。
"""

import threading
from typing import Optional

from xinyu_core.api.client import ChatStreamingClient
from xinyu_core.config.settings import settings
from xinyu_core.config.store import ConfigStore
from xinyu_core.infrastructure.storage.json_store import JsonPreferenceStore
from xinyu_core.providers.dashscope_client import FragmentStream


_client: Optional[ChatStreamingClient] = None
_client_lock = threading.Lock()


def get_default_client() -> ChatStreamingClient:
    """获取默认的 ChatStreamingClient 实例（单例）。

    配置持久化在 settings.storage_root 下的 preferences.json。
    """
    global _client
    with _client_lock:
        if _client is None:
            config = ConfigStore(JsonPreferenceStore(settings.preferences_path))
            _client = ChatStreamingClient(config=config, cfg=settings)
        return _client


def set_default_client(client: Optional[ChatStreamingClient]) -> None:
    """替换默认客户端（测试或自定义装配时使用），传 None 表示重置。"""
    global _client
    with _client_lock:
        if _client is not None and _client is not client:
            _client.close()
        _client = client


def reset_default_client() -> None:
    """丢弃默认客户端，下次 get_default_client() 时按当前 settings 重新创建。"""
    set_default_client(None)


def stream_with_history(user_message: str) -> FragmentStream:
    """带历史的流式对话。

    Args:
        user_message: 用户输入内容

    Returns:
        FragmentStream，迭代得到助手回复片段

    Raises:
        InvalidRequest / AuthenticationError / RateLimitError / ServerError / TransportError
    """
    return get_default_client().stream_with_history(user_message)


def stream_once(user_message: str) -> FragmentStream:
    """不读写历史的一次性流式请求。"""
    return get_default_client().stream_once(user_message)


def clear_history() -> None:
    get_default_client().clear_history()

"""Xinyu Core 顶层包。

该包提供心语情绪助手的流式对话客户端，
包括配置加载、对话历史、SSE 解码、流式请求协调与持久化存储等能力。
"""

from xinyu_core.api.client import ChatStreamingClient
from xinyu_core.config.store import ConfigStore

__all__ = ["ChatStreamingClient", "ConfigStore"]

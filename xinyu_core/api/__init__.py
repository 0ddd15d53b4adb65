"""对外接口层：ChatStreamingClient 门面与进程级默认客户端。"""

from xinyu_core.api.client import ChatStreamingClient

__all__ = ["ChatStreamingClient"]

"""服务端集成层。

该包下的模块负责：
- SSE 行解码 (sse)。
- DashScope 流式请求协调与可取消的片段序列 (dashscope_client)。
"""

from xinyu_core.providers.dashscope_client import FragmentStream, StreamingRequestCoordinator
from xinyu_core.providers.sse import SSEDecoder

__all__ = ["FragmentStream", "SSEDecoder", "StreamingRequestCoordinator"]

"""SSE 行解码器。

把传输层已经按行切好的文本流转换为内容片段：

1. 不以 "data:" 开头的行（id:/event:/注释/空行）直接忽略。
2. data 内容包含结束标记 "[DONE]" 时结束，后续行不再处理。
3. 其余 data 内容按 JSON 解析，取 output.text 作为一个片段；
   解析失败或字段缺失的行静默跳过，不会中断整个流。
4. 服务端在最后一帧给出 output.finish_reason == "stop" 时，输出该帧文本后同样结束。

每个请求使用一个新的 SSEDecoder 实例，累计文本用于流结束后写入历史。
"""

import json
from typing import Iterable, Iterator, List, Optional

from xinyu_core.domain.exceptions import MalformedStreamError


DATA_PREFIX = "data:"
DONE_TOKEN = "[DONE]"


class SSEDecoder:
    def __init__(
        self,
        done_token: str = DONE_TOKEN,
        max_consecutive_malformed: Optional[int] = None,
    ):
        self._done_token = done_token
        self._max_malformed = max_consecutive_malformed
        self._parts: List[str] = []
        self._malformed_run = 0
        self.done = False
        self.skipped = 0

    @property
    def text(self) -> str:
        """目前为止累计的全部文本。"""

        return "".join(self._parts)

    @property
    def fragment_count(self) -> int:
        return len(self._parts)

    def feed(self, line: str) -> Optional[str]:
        """处理一行，返回解析出的片段；没有片段时返回 None。

        结束后再喂入的行一律忽略。
        """

        if self.done or not line.startswith(DATA_PREFIX):
            return None
        data_str = line[len(DATA_PREFIX):]
        if self._done_token in data_str:
            self.done = True
            return None
        try:
            payload = json.loads(data_str)
        except json.JSONDecodeError:
            self._skip(data_str)
            return None
        output = payload.get("output") if isinstance(payload, dict) else None
        text = output.get("text") if isinstance(output, dict) else None
        if not isinstance(text, str):
            self._skip(data_str)
            return None
        self._malformed_run = 0
        if output.get("finish_reason") == "stop":
            self.done = True
        if not text:
            return None
        self._parts.append(text)
        return text

    def decode(self, lines: Iterable[str]) -> Iterator[str]:
        """逐行解码，遇到结束标记后停止消费剩余的行。"""

        for line in lines:
            fragment = self.feed(line)
            if fragment is not None:
                yield fragment
            if self.done:
                return

    def _skip(self, data_str: str) -> None:
        self.skipped += 1
        self._malformed_run += 1
        if self._max_malformed is not None and self._malformed_run >= self._max_malformed:
            raise MalformedStreamError(
                code="MALFORMED_STREAM",
                message=f"{self._malformed_run} consecutive unparsable data lines",
                last_line=data_str[:200],
            )

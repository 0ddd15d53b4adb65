"""统一的对话与请求数据模型。

本模块定义流式客户端内部共享的标准数据结构：

- Turn: 一条带角色的对话消息（system/user/assistant），创建后不可变。
- GenerationParameters: 一次请求使用的采样参数。
- RequestEnvelope: 发给服务端的完整请求，每次调用新建，构造后不再修改。

RequestEnvelope 负责在内部模型与服务端 JSON 请求体之间做双向转换。
"""

from dataclasses import dataclass
from typing import Any, Dict, Literal, Tuple, get_args


# 消息角色类型（与服务端 messages[].role 字段对应）
Role = Literal["system", "user", "assistant"]
ROLES: Tuple[str, ...] = get_args(Role)


@dataclass(frozen=True)
class Turn:
    """一条对话消息。"""

    role: Role
    content: str

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"Unknown role: {self.role!r}")

    def to_payload(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class GenerationParameters:
    """采样参数，字段名与服务端 parameters 对象一一对应。"""

    temperature: float = 0.7
    top_p: float = 0.8
    top_k: int = 50
    max_tokens: int = 2000
    incremental_output: bool = True

    def to_payload(self) -> Dict[str, Any]:
        return {
            "incremental_output": self.incremental_output,
            "temperature": self.temperature,
            "top_p": self.top_p,
            "top_k": self.top_k,
            "max_tokens": self.max_tokens,
        }


@dataclass(frozen=True)
class RequestEnvelope:
    """一次完整的流式请求。

    - messages: 有序的对话消息，第一条通常是 system。
    - parameters: 本次请求的采样参数快照，配置之后的修改不会影响已构造的信封。
    """

    messages: Tuple[Turn, ...]
    parameters: GenerationParameters

    def to_payload(self) -> Dict[str, Any]:
        """转换为服务端请求体 JSON（dict 形式）。"""

        return {
            "input": {"messages": [m.to_payload() for m in self.messages]},
            "parameters": self.parameters.to_payload(),
        }

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "RequestEnvelope":
        """从请求体 JSON 还原信封，主要用于调试与测试。"""

        raw_messages = (data.get("input") or {}).get("messages") or []
        params = data.get("parameters") or {}
        defaults = GenerationParameters()
        return cls(
            messages=tuple(Turn(role=m["role"], content=m["content"]) for m in raw_messages),
            parameters=GenerationParameters(
                temperature=params.get("temperature", defaults.temperature),
                top_p=params.get("top_p", defaults.top_p),
                top_k=params.get("top_k", defaults.top_k),
                max_tokens=params.get("max_tokens", defaults.max_tokens),
                incremental_output=params.get("incremental_output", defaults.incremental_output),
            ),
        )

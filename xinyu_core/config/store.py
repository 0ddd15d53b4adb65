"""用户可调的对话参数存储。

ConfigStore 保存历史长度、采样参数与 system prompt 等可变配置：

- 每个配置项在首次读取且尚未设置时，把默认值写入持久化后端（首次运行默认值语义）。
- 写入前统一经过 ChatPreferences 模型校验，非法值抛出 ValidationError。
- 读写与网络请求相互独立，修改只影响之后构造的请求。

ConfigStore 通过构造参数显式传入客户端，而不是隐藏在全局单例里。
"""

import threading
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from xinyu_core.domain.exceptions import ValidationError
from xinyu_core.domain.models import GenerationParameters
from xinyu_core.domain.preferences import PreferenceBackend
from xinyu_core.infrastructure.storage.json_store import InMemoryPreferenceStore
from xinyu_core.prompts import load_system_prompt


class ChatPreferences(BaseModel):
    """对话参数模型，字段名即持久化键名。"""

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_history_length: int = Field(default=10, ge=0, description="保留的最近消息条数")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0, allow_inf_nan=False)
    top_p: float = Field(default=0.8, gt=0.0, le=1.0, allow_inf_nan=False)
    top_k: int = Field(default=50, ge=0)
    max_tokens: int = Field(default=2000, ge=1)
    system_prompt: str = Field(default_factory=load_system_prompt)
    incremental_output: bool = Field(default=True, description="是否增量输出")

    def generation_parameters(self) -> GenerationParameters:
        return GenerationParameters(
            temperature=self.temperature,
            top_p=self.top_p,
            top_k=self.top_k,
            max_tokens=self.max_tokens,
            incremental_output=self.incremental_output,
        )


PREFERENCE_KEYS = tuple(ChatPreferences.model_fields)

ChangeListener = Callable[[str, Any], None]

_MISSING = object()


class ConfigStore:
    def __init__(self, backend: Optional[PreferenceBackend] = None):
        self._backend: PreferenceBackend = backend if backend is not None else InMemoryPreferenceStore()
        self._defaults = ChatPreferences()
        self._listeners: List[ChangeListener] = []
        self._lock = threading.RLock()

    # ---- 通用读写 ----

    def get(self, key: str) -> Any:
        self._check_key(key)
        with self._lock:
            raw = self._backend.get(key, _MISSING)
            if raw is _MISSING:
                value = getattr(self._defaults, key)
                self._backend.set(key, value)
                return value
        try:
            return self._validate(key, raw)
        except ValidationError:
            # 持久化的值已不合法（手工改过文件等），回退到默认值
            return getattr(self._defaults, key)

    def set(self, key: str, value: Any) -> None:
        self._check_key(key)
        value = self._validate(key, value)
        with self._lock:
            # 回调在锁内按写入顺序执行，监听方看到的最后一次通知即当前存储值
            self._backend.set(key, value)
            for listener in list(self._listeners):
                listener(key, value)

    def reset(self, key: Optional[str] = None) -> None:
        """把一个（或全部）配置项恢复为默认值。"""

        keys = [key] if key is not None else list(PREFERENCE_KEYS)
        for k in keys:
            self.set(k, getattr(self._defaults, k))

    def snapshot(self) -> ChatPreferences:
        """读取全部配置项，返回不可变的 ChatPreferences。"""

        values: Dict[str, Any] = {key: self.get(key) for key in PREFERENCE_KEYS}
        return ChatPreferences(**values)

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """注册变更回调，返回取消注册的函数。

        回调在持锁状态下同步执行，不应在其中做耗时操作。
        """

        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    # ---- 具名属性 ----

    @property
    def max_history_length(self) -> int:
        return self.get("max_history_length")

    @max_history_length.setter
    def max_history_length(self, value: int) -> None:
        self.set("max_history_length", value)

    @property
    def temperature(self) -> float:
        return self.get("temperature")

    @temperature.setter
    def temperature(self, value: float) -> None:
        self.set("temperature", value)

    @property
    def top_p(self) -> float:
        return self.get("top_p")

    @top_p.setter
    def top_p(self, value: float) -> None:
        self.set("top_p", value)

    @property
    def top_k(self) -> int:
        return self.get("top_k")

    @top_k.setter
    def top_k(self, value: int) -> None:
        self.set("top_k", value)

    @property
    def max_tokens(self) -> int:
        return self.get("max_tokens")

    @max_tokens.setter
    def max_tokens(self, value: int) -> None:
        self.set("max_tokens", value)

    @property
    def system_prompt(self) -> str:
        return self.get("system_prompt")

    @system_prompt.setter
    def system_prompt(self, value: str) -> None:
        self.set("system_prompt", value)

    @property
    def incremental_output(self) -> bool:
        return self.get("incremental_output")

    @incremental_output.setter
    def incremental_output(self, value: bool) -> None:
        self.set("incremental_output", value)

    # ---- 内部 ----

    @staticmethod
    def _check_key(key: str) -> None:
        if key not in PREFERENCE_KEYS:
            raise ValidationError(code="UNKNOWN_CONFIG_KEY", message=f"Unknown config key: {key!r}")

    @staticmethod
    def _validate(key: str, value: Any) -> Any:
        try:
            validated = ChatPreferences.model_validate({key: value})
        except PydanticValidationError as e:
            raise ValidationError(
                code="INVALID_CONFIG",
                message=f"Invalid value for {key}: {value!r}",
                key=key,
                errors=e.errors(include_url=False),
            )
        return getattr(validated, key)

from typing import Any, Iterable, Protocol


class PreferenceBackend(Protocol):
    """键值偏好存储协议，ConfigStore 通过它读写持久化的配置项。

    get 在键不存在时返回 default；set 需要在返回前完成持久化。
    """

    def get(self, key: str, default: Any = None) -> Any:
        ...

    def set(self, key: str, value: Any) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def keys(self) -> Iterable[str]:
        ...

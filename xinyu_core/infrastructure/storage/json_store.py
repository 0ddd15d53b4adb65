import json
import os
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List
from uuid import uuid4

from xinyu_core.config.settings import settings
from xinyu_core.domain.exceptions import BusinessError
from xinyu_core.domain.preferences import PreferenceBackend


class JsonPreferenceStore(PreferenceBackend):
    """以单个 JSON 文件持久化的偏好存储。

    不在内存中缓存内容：每次 get 都读取文件，set/delete 在锁内完成
    读取-修改-整体重写（先写临时文件再 os.replace）。
    同一进程内指向同一文件的实例共用一把锁，彼此的写入互相可见。
    """

    _locks: Dict[Path, threading.Lock] = {}
    _locks_guard = threading.Lock()

    def __init__(self, path: str | Path | None = None):
        self._path = Path(path or settings.preferences_path).resolve()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with JsonPreferenceStore._locks_guard:
            self._lock = JsonPreferenceStore._locks.setdefault(self._path, threading.Lock())
        # 提前暴露损坏的文件
        with self._lock:
            self._read()

    @property
    def path(self) -> Path:
        return self._path

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._read().get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if key not in data:
                return
            del data[key]
            self._write(data)

    def keys(self) -> Iterable[str]:
        with self._lock:
            return list(self._read())

    def _read(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except Exception as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e))
        if not isinstance(data, dict):
            raise BusinessError(code="STORE_READ_ERROR", message=f"{self._path} is not a JSON object")
        return data

    def _write(self, data: Dict[str, Any]) -> None:
        tmp_path = self._path.parent / f"{self._path.stem}.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except Exception as e:
            tmp_path.unlink(missing_ok=True)
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))


class InMemoryPreferenceStore(PreferenceBackend):
    """仅存在于内存中的偏好存储，用于测试或临时会话。"""

    def __init__(self, initial: Dict[str, Any] | None = None):
        self._data: Dict[str, Any] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._data)

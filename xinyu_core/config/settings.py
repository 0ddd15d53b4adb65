"""配置管理模块。

部署相关的静态配置（服务端地址、凭证、超时、存储与日志目录），
支持从 .env、config.yaml 以及环境变量加载。

用户可调的对话参数（历史长度、采样参数、system prompt）不在这里，
见 xinyu_core.config.store.ConfigStore。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_APP_URL = (
    "https://dashscope.aliyuncs.com/api/v1/apps/717d5ce4c24342379459d3c7d4815ae8/completion"
)


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("XINYU_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
        Path(__file__).resolve().parents[1] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- 服务端 ----
    dashscope_api_key: Optional[str] = Field(default=None, description="DashScope API 密钥")
    dashscope_app_url: str = Field(
        default=DEFAULT_APP_URL,
        description="DashScope 应用 completion 端点",
    )

    # ---- 超时 ----
    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 连接/读写超时时间（秒）")
    stream_deadline: float = Field(
        default=120.0,
        ge=1.0,
        description="单次流式请求的总截止时间（秒），从发起请求开始计算",
    )

    # ---- SSE 解析 ----
    max_consecutive_malformed_lines: Optional[int] = Field(
        default=None,
        ge=1,
        description="连续无法解析的 data 行上限，为空表示不限制",
    )

    # ---- 存储与日志 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("dashscope_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )

    @property
    def preferences_path(self) -> Path:
        return Path(self.storage_root) / "preferences.json"


settings = Settings()

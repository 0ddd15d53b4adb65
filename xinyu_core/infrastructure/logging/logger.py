import json
import logging
import os
from pathlib import Path
from datetime import datetime, timezone
from typing import Optional

from xinyu_core.config.settings import settings


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        if settings.log_redact_content:
            msg = (msg or "")[:64]
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "name": record.name,
            "msg": msg,
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            payload.update(extra)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class LazyFileHandler(logging.FileHandler):
    """首条日志写入时才创建目录并打开文件，导入本模块不会产生任何文件。"""

    def __init__(self, filename: Path):
        super().__init__(filename, encoding="utf-8", delay=True)

    def _open(self):
        os.makedirs(os.path.dirname(self.baseFilename), exist_ok=True)
        return super()._open()


def setup_logger(log_dir: Optional[str | Path] = None) -> logging.Logger:
    """配置 xinyu_core 日志器。

    log_dir 为空时使用 settings.log_dir；重复调用时不重复挂 handler，
    显式传入 log_dir 则替换原有的文件 handler。
    """
    logger = logging.getLogger("xinyu_core")
    logger.setLevel(logging.INFO)
    existing = [h for h in logger.handlers if isinstance(h, LazyFileHandler)]
    if existing and log_dir is None:
        return logger
    for h in existing:
        logger.removeHandler(h)
        h.close()
    fh = LazyFileHandler(Path(log_dir or settings.log_dir) / "xinyu.log")
    fh.setLevel(logging.INFO)
    fh.setFormatter(JsonFormatter())
    logger.addHandler(fh)
    return logger


logger = setup_logger()

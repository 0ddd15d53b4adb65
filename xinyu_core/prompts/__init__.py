"""系统提示词加载工具。

按语言(locale) 从 prompts/<locale> 目录读取默认的 system prompt 文本，
作为 ConfigStore 中 system_prompt 的首次运行默认值。
"""

from pathlib import Path


PROMPTS_DIR = Path(__file__).resolve().parent


def load_system_prompt(locale: str = "zh") -> str:
    """加载情绪管理助手的默认系统提示词，去掉首尾空白。"""

    fname = PROMPTS_DIR / locale / "emotion_assistant_system.md"
    return fname.read_text(encoding="utf-8").strip()

"""领域层模型与协议。

包含：
- models: Turn / GenerationParameters / RequestEnvelope 模型。
- history: 有界、线程安全的对话历史账本 HistoryLedger。
- preferences: 偏好配置持久化后端 PreferenceBackend 协议。
- exceptions: 业务异常类型定义。
"""

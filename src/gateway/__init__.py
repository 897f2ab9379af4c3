"""
Gateway 模块 - OpenAI 兼容网关

目录结构:
- state.py: 进程级状态 (TTL 存储、上游客户端、会话编排、清扫任务)
- endpoints/: API 端点定义 (chat completions、models、health)
"""

__version__ = "1.0.0"

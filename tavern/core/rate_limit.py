"""
tavern.core.rate_limit
~~~~~~~~~~~~~~~~~~~~~~

写接口（聊天、掷骰、信令）的 HTTP 限流配置。
"""
from slowapi import Limiter
from slowapi.util import get_remote_address

from tavern.core.config import settings

# 基于客户端 IP 地址进行限流；测试环境通过 RATE_LIMIT_ENABLED=false 关闭
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="memory://",
    enabled=settings.RATE_LIMIT_ENABLED,
)

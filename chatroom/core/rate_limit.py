"""
chatroom.core.rate_limit
~~~~~~~~~~~~~~~~~~~~~~~~

HTTP 接口限流配置。
"""
from slowapi import Limiter
from slowapi.util import get_remote_address

# --------- HTTP 接口限流器 ---------
# 基于客户端 IP 地址进行限流
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="memory://",
)

"""
chatroom.core.security
~~~~~~~~~~~~~~~~~~~~~~

登录凭证校验 —— 基于 PyJWT 验证主站签发的 HS256 token。

token 中携带用户身份以及房间归属（``reading_id``），后续调用账务系统时
需要的 ``client_id`` / ``advisor_id`` 也从这里取得。
"""
from __future__ import annotations

from typing import Literal

import jwt
from pydantic import BaseModel, ConfigDict, ValidationError

from chatroom.core.logging import get_logger

logger = get_logger(__name__)

JWT_ALGORITHM = "HS256"

UserType = Literal["client", "advisor"]


class TokenClaims(BaseModel):
    """已校验 token 的声明。未知字段原样保留。"""

    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    sub: str
    reading_id: str
    user_type: UserType
    user_name: str

    client_id: str = ""
    advisor_id: str = ""
    rate_per_minute: float | None = None
    client_avatar: str | None = None
    advisor_avatar: str | None = None
    client_balance: float | None = None
    auto_refill_enabled: bool | None = None


class ClaimsVerifier:
    """JWT 凭证校验器。

    Attributes:
        issuer: 期望的签发方（``iss``）。
    """

    def __init__(self, secret: str, issuer: str) -> None:
        self._secret = secret
        self.issuer = issuer

    def verify(self, token: str) -> TokenClaims | None:
        """校验 token 并返回声明；签名、过期、签发方或必填字段不合法时返回 ``None``。"""
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[JWT_ALGORITHM],
                issuer=self.issuer,
            )
            return TokenClaims.model_validate(payload)
        except jwt.PyJWTError as e:
            logger.warning("token 校验失败: %s", e)
        except ValidationError as e:
            logger.warning("token 缺少必填字段: %s", e.errors())
        return None

"""
簽章憑證

兩種 token 共用同一個 secret，以 "type" claim 區分：

- participant token（"participant"）：建立 / 加入場次時在此簽發，綁定參與者 id 與場次 id；
  提交分數、標記 ready 與離開都只認此 token
- user token（"access"）：由帳號服務簽發，create_user_token() 供工具與測試使用
"""
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional
from uuid import UUID

import jwt

from core.exceptions import AuthenticationError
from database import get_settings

PARTICIPANT_TOKEN = "participant"
USER_TOKEN = "access"


@dataclass(frozen=True)
class Identity:
    """由請求 token 解析出的呼叫者身分（兩者皆可能不存在）"""
    user_id: Optional[UUID] = None
    participant_id: Optional[UUID] = None
    # participant token 所屬的場次
    session_id: Optional[UUID] = None

    @property
    def is_anonymous(self) -> bool:
        return self.user_id is None and self.participant_id is None


def _sign(payload: Dict[str, Any], ttl_seconds: int, token_type: str) -> str:
    settings = get_settings()
    now = int(time.time())
    data = {
        **payload,
        "iat": now,
        "exp": now + ttl_seconds,
        "type": token_type,
    }
    return jwt.encode(data, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Dict[str, Any]:
    """
    驗證簽章與有效期限

    異常：
        AuthenticationError: token 無效、過期或格式錯誤
    """
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token has expired")
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid token")


def create_participant_token(participant_id: UUID, session_id: UUID, display_name: str) -> str:
    ttl = get_settings().participant_token_ttl_minutes * 60
    return _sign(
        {
            "participantId": str(participant_id),
            "sessionId": str(session_id),
            "displayName": display_name,
        },
        ttl,
        PARTICIPANT_TOKEN
    )


def create_user_token(user_id: UUID, ttl_minutes: Optional[int] = None) -> str:
    ttl = (ttl_minutes or get_settings().user_token_ttl_minutes) * 60
    return _sign({"sub": str(user_id)}, ttl, USER_TOKEN)


def verify_participant_token(token: str) -> Dict[str, UUID]:
    """
    返回：
        {"participant_id": UUID, "session_id": UUID}
    """
    payload = decode_token(token)
    if payload.get("type") != PARTICIPANT_TOKEN:
        raise AuthenticationError("Invalid participant token")
    try:
        return {
            "participant_id": UUID(payload["participantId"]),
            "session_id": UUID(payload["sessionId"]),
        }
    except (KeyError, ValueError, TypeError):
        raise AuthenticationError("Invalid participant token")


def verify_user_token(token: str) -> UUID:
    payload = decode_token(token)
    if payload.get("type") != USER_TOKEN:
        raise AuthenticationError("Invalid access token")
    try:
        return UUID(payload["sub"])
    except (KeyError, ValueError, TypeError):
        raise AuthenticationError("Invalid access token")

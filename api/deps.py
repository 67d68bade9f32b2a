"""
API 共用 dependencies

1. 從請求憑證解析身分
   - Authorization: Bearer <user token>
   - X-Participant-Token header，或 participantToken cookie
2. 把業務異常轉換成 HTTP 錯誤
"""
from typing import Optional
from uuid import UUID
import logging

from fastapi import Cookie, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from database import get_db
from models import User
from core.security import Identity, verify_participant_token, verify_user_token
from core.exceptions import (
    TastingException,
    TastingValidationError,
    AuthenticationError,
    AuthorizationError,
    NotFoundError,
    ConflictError,
    CapacityError,
)

logger = logging.getLogger(__name__)

PARTICIPANT_COOKIE = "participantToken"

# 依序比對，第一個符合的生效
STATUS_BY_CATEGORY = (
    (TastingValidationError, 422),
    (AuthenticationError, 401),
    (AuthorizationError, 403),
    (NotFoundError, 404),
    (ConflictError, 409),
    (CapacityError, 409),
)


def http_error(exc: TastingException) -> HTTPException:
    """把業務異常對應到客戶端看到的 HTTPException"""
    for category, status_code in STATUS_BY_CATEGORY:
        if isinstance(exc, category):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Invalid authorization header")
    return token.strip()


def resolve_user_id(db: Session, token: str) -> UUID:
    """
    驗證使用者 token 並確認帳號存在

    異常：
        AuthenticationError
    """
    user_id = verify_user_token(token)
    if not db.query(User.id).filter(User.id == user_id).first():
        raise AuthenticationError("Unknown user")
    return user_id


def get_identity(
    authorization: Optional[str] = Header(None),
    x_participant_token: Optional[str] = Header(None),
    participant_cookie: Optional[str] = Cookie(None, alias=PARTICIPANT_COOKIE),
    db: Session = Depends(get_db),
) -> Identity:
    """
    解析呼叫者身分

    沒有憑證時回傳匿名 Identity；
    有憑證但無效或過期時回 401
    """
    try:
        user_id = None
        token = _bearer(authorization)
        if token:
            user_id = resolve_user_id(db, token)

        participant_id = session_id = None
        participant_token = x_participant_token or participant_cookie
        if participant_token:
            claims = verify_participant_token(participant_token)
            participant_id = claims["participant_id"]
            session_id = claims["session_id"]

        return Identity(user_id=user_id, participant_id=participant_id, session_id=session_id)

    except AuthenticationError as e:
        raise HTTPException(status_code=401, detail=str(e))


def require_user(identity: Identity = Depends(get_identity)) -> Identity:
    if identity.user_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return identity


def require_participant(identity: Identity = Depends(get_identity)) -> Identity:
    if identity.participant_id is None:
        raise HTTPException(status_code=401, detail="Participant token required")
    return identity

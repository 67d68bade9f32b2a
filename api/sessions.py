"""
品飲場次 API 端點

職責：
1. 建立 / 列出 / 查詢場次
2. 透過邀請碼加入
3. 主持人狀態轉換（start、advance、pause、resume、reveal、end）
4. 開始品飲前編輯酒款
"""
from typing import List, Optional
from uuid import UUID
import logging

from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy.orm import Session

from database import get_db, get_settings
from schemas import (
    SessionCreate,
    SessionCreateResponse,
    SessionDetail,
    SessionListItem,
    JoinRequest,
    JoinResponse,
    AdvanceRequest,
    AdvanceResponse,
    RevealResponse,
    WhiskeyUpdate,
    WhiskeyView,
    MessageResponse,
)
from core.session_manager import SessionManager
from core.participant_manager import ParticipantManager
from core.broadcaster import Broadcaster, get_broadcaster
from core.security import Identity
from core.exceptions import TastingException
from services import serializers
from api.deps import get_identity, require_user, http_error, PARTICIPANT_COOKIE

router = APIRouter(prefix="/api/sessions", tags=["sessions"])
logger = logging.getLogger(__name__)


def set_participant_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key=PARTICIPANT_COOKIE,
        value=token,
        httponly=True,
        samesite="lax",
        max_age=get_settings().participant_token_ttl_minutes * 60,
    )


@router.post("", response_model=SessionCreateResponse, status_code=201)
def create_session(
    data: SessionCreate,
    response: Response,
    identity: Identity = Depends(require_user),
    db: Session = Depends(get_db)
):
    """
    建立品飲場次（僅限註冊用戶）

    呼叫者成為主持人，並取得一個已標記 ready 的參與者座位及其 participant token。
    """
    try:
        session, host = SessionManager.create_session(db, identity.user_id, data)
        token = ParticipantManager.issue_token(host)
        set_participant_cookie(response, token)

        return SessionCreateResponse(
            id=session.id,
            invite_code=session.invite_code,
            participant_id=host.id,
            participant_token=token,
        )

    except TastingException as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to create session: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("", response_model=List[SessionListItem])
def list_my_sessions(identity: Identity = Depends(require_user), db: Session = Depends(get_db)):
    """呼叫者主持的場次，依建立時間新到舊"""
    try:
        sessions = SessionManager.list_moderated_sessions(db, identity.user_id)
        return [serializers.session_list_item(s) for s in sessions]

    except Exception as e:
        logger.error(f"Failed to list sessions: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/join", response_model=JoinResponse, status_code=201)
def join_session(
    data: JoinRequest,
    response: Response,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster)
):
    """
    透過邀請碼加入場次（訪客亦可）

    狀態碼：
    - 201: 新座位
    - 200: 已入座的註冊用戶取回原座位
    """
    try:
        session, participant, token, created = ParticipantManager.join(
            db, broadcaster, data.invite_code, data.display_name, identity.user_id
        )
        if not created:
            response.status_code = 200
        set_participant_cookie(response, token)

        return JoinResponse(
            session_id=session.id,
            participant_id=participant.id,
            participant_token=token,
            is_moderator=participant.user_id is not None and participant.user_id == session.moderator_id,
            session=serializers.session_summary(session),
        )

    except TastingException as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to join session: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/{session_id}", response_model=SessionDetail)
def get_session(
    session_id: UUID,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db)
):
    """
    場次詳情

    注意：揭曉前酒款身分會被隱藏，主持人除外。
    """
    try:
        return SessionManager.get_session_detail(db, session_id, identity)

    except TastingException as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to get session {session_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


# ============ 主持人狀態轉換 ============

@router.post("/{session_id}/start", response_model=MessageResponse)
def start_session(
    session_id: UUID,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster)
):
    try:
        SessionManager.start(db, broadcaster, session_id, identity)
        return MessageResponse(message="Session started")

    except TastingException as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to start session {session_id}: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{session_id}/advance", response_model=AdvanceResponse)
def advance_session(
    session_id: UUID,
    data: Optional[AdvanceRequest] = None,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster)
):
    """
    進入下一階段，或依 phase / whiskeyIndex 跳轉

    空 body 時依序前進一步：
    pour -> nosing -> tasting-neat -> tasting-water -> scoring -> palate-reset
    之後進入下一支酒的 pour。
    """
    try:
        data = data or AdvanceRequest()
        session = SessionManager.advance(
            db, broadcaster, session_id, identity,
            phase=data.phase, whiskey_index=data.whiskey_index
        )
        return AdvanceResponse(phase=session.current_phase, whiskey_index=session.current_whiskey_index)

    except TastingException as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to advance session {session_id}: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{session_id}/pause", response_model=MessageResponse)
def pause_session(
    session_id: UUID,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster)
):
    try:
        SessionManager.pause(db, broadcaster, session_id, identity)
        return MessageResponse(message="Session paused")

    except TastingException as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to pause session {session_id}: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{session_id}/resume", response_model=MessageResponse)
def resume_session(
    session_id: UUID,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster)
):
    try:
        SessionManager.resume(db, broadcaster, session_id, identity)
        return MessageResponse(message="Session resumed")

    except TastingException as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to resume session {session_id}: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{session_id}/reveal", response_model=RevealResponse)
def reveal_session(
    session_id: UUID,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster)
):
    """公開所有酒款身分與所有評分（不可逆）"""
    try:
        return SessionManager.reveal(db, broadcaster, session_id, identity)

    except TastingException as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to reveal session {session_id}: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/{session_id}/end", response_model=MessageResponse)
def end_session(
    session_id: UUID,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster)
):
    try:
        SessionManager.end(db, broadcaster, session_id, identity)
        return MessageResponse(message="Session ended")

    except TastingException as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to end session {session_id}: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


# ============ 酒款 ============

@router.put("/{session_id}/whiskeys/{whiskey_id}", response_model=WhiskeyView)
def update_whiskey(
    session_id: UUID,
    whiskey_id: UUID,
    data: WhiskeyUpdate,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db)
):
    """主持人編輯酒款，僅限場次開始前"""
    try:
        whiskey = SessionManager.update_whiskey(db, session_id, whiskey_id, identity, data)
        return serializers.whiskey_view(whiskey, reveal=True)

    except TastingException as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to update whiskey {whiskey_id}: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")

"""
Score API Endpoints

職責：
1. 鎖定分數（participant token）
2. 揭曉後的 session 結果
3. 自己的分數、公開設定與可分享分數
"""
from typing import List
from uuid import UUID
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from database import get_db
from schemas import (
    ScoreSubmit,
    ScoreSubmitResponse,
    ScoreView,
    SessionResults,
    VisibilityUpdate,
    VisibilityResponse,
    ShareableScore,
)
from core.score_manager import ScoreManager
from core.broadcaster import Broadcaster, get_broadcaster
from core.security import Identity
from core.exceptions import TastingException
from api.deps import require_participant, require_user, http_error

router = APIRouter(prefix="/api/scores", tags=["scores"])
logger = logging.getLogger(__name__)


@router.post("", response_model=ScoreSubmitResponse, status_code=201)
def submit_score(
    data: ScoreSubmit,
    identity: Identity = Depends(require_participant),
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster)
):
    """
    鎖定一支酒款的分數

    前置條件（依此順序檢查）：
    - nose / palate / finish / overall 為 1..10 的整數
    - 每個筆記欄位都在長度限制內
    - 呼叫者是該 session 的參與者
    - 酒款屬於該 session
    - 這支酒尚未評分
    - session 狀態為 active

    分數一旦鎖定就不能修改
    """
    try:
        score = ScoreManager.submit(db, broadcaster, identity, data)
        return ScoreSubmitResponse(id=score.id, total_score=score.total_score, locked_at=score.locked_at)

    except TastingException as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to submit score: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/session/{session_id}", response_model=SessionResults)
def get_session_results(session_id: UUID, db: Session = Depends(get_db)):
    """排名結果，揭曉前回 403"""
    try:
        return ScoreManager.get_session_results(db, session_id)

    except TastingException as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to get results for session {session_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/my-scores/{session_id}", response_model=List[ScoreView])
def get_my_scores(
    session_id: UUID,
    identity: Identity = Depends(require_participant),
    db: Session = Depends(get_db)
):
    try:
        return ScoreManager.get_my_scores(db, identity, session_id)

    except TastingException as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to get own scores for session {session_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/shareable", response_model=List[ShareableScore])
def get_shareable_scores(identity: Identity = Depends(require_user), db: Session = Depends(get_db)):
    """呼叫者在已結束 session 中的分數"""
    try:
        return ScoreManager.get_shareable_scores(db, identity.user_id)

    except TastingException as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to get shareable scores: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.patch("/{score_id}/visibility", response_model=VisibilityResponse)
def update_visibility(
    score_id: UUID,
    data: VisibilityUpdate,
    identity: Identity = Depends(require_user),
    db: Session = Depends(get_db)
):
    """只有擁有者可以設定，且必須在揭曉之後"""
    try:
        score = ScoreManager.toggle_visibility(db, identity.user_id, score_id, data.is_public)
        return VisibilityResponse(id=score.id, is_public=score.is_public)

    except TastingException as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to update visibility of score {score_id}: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")

"""
Participant API Endpoints

所有端點都只作用在呼叫者自己的座位（由 participant token 識別）
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy.orm import Session

from database import get_db
from schemas import ParticipantStatusUpdate, ParticipantDetail, MessageResponse
from core.participant_manager import ParticipantManager
from core.broadcaster import Broadcaster, get_broadcaster
from core.security import Identity
from core.exceptions import TastingException
from services import serializers
from api.deps import require_participant, http_error, PARTICIPANT_COOKIE

router = APIRouter(prefix="/api/participants", tags=["participants"])
logger = logging.getLogger(__name__)


@router.post("/ready", response_model=ParticipantDetail)
def mark_ready(
    identity: Identity = Depends(require_participant),
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster)
):
    try:
        participant = ParticipantManager.mark_ready(db, broadcaster, identity)
        return serializers.participant_detail(participant)

    except TastingException as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to mark participant ready: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.patch("/status", response_model=ParticipantDetail)
def update_status(
    data: ParticipantStatusUpdate,
    identity: Identity = Depends(require_participant),
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster)
):
    """個人進度：waiting / tasting / completed"""
    try:
        participant = ParticipantManager.update_status(db, broadcaster, identity, data.status)
        return serializers.participant_detail(participant)

    except TastingException as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to update participant status: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.delete("/leave", response_model=MessageResponse)
def leave_session(
    response: Response,
    identity: Identity = Depends(require_participant),
    db: Session = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster)
):
    """
    離開 session

    座位與其分數會被刪除，並清除 cookie
    """
    try:
        ParticipantManager.leave(db, broadcaster, identity)
        response.delete_cookie(PARTICIPANT_COOKIE)
        return MessageResponse(message="Left session successfully")

    except TastingException as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to leave session: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/me", response_model=ParticipantDetail)
def get_me(identity: Identity = Depends(require_participant), db: Session = Depends(get_db)):
    try:
        participant = ParticipantManager.get_participant(db, identity)
        return serializers.participant_detail(participant)

    except TastingException as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to get participant: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")

"""
WebSocket 端點

連線方式 /ws?token=<participant 或 user token>：
- participant token：加入 session:<sessionId>（座位綁定帳號時另加入 user:<userId>），
  並廣播 participant:connected
- user token：加入 user:<userId>；主持人之後可送出
  {"type": "join:session", "sessionId": "..."} 追蹤場次房間

客戶端訊息：
- {"type": "ping"}                           -> {"type": "pong"}
- {"type": "join:session", "sessionId"}      -> {"type": "joined", "sessionId"}
- {"type": "advance:phase", "sessionId"?, "phase"?, "whiskeyIndex"?}
      僅限主持人，規則同 POST /api/sessions/{id}/advance
- {"type": "participant:ready"}              僅限參與者
- {"type": "score:submit", "whiskeyId", "nose", ...}
      僅限參與者，規則同 POST /api/scores
      -> {"type": "score:submitted", "id", "totalScore", "lockedAt"}
- {"type": "participant:typing"}             轉發給房間內其他連線

成功的操作透過一般場次事件廣播。
被拒絕的操作回覆 {"type": "error", "message": "..."}，連線保持開啟。

注意：資料庫操作在 thread pool 中執行，每次查詢使用獨立的短生命週期 Session，
event loop 與廣播分派器不會等待查詢。
"""
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID
import json
import logging

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError
from sqlalchemy.orm import Session

from database import get_db_context
from models import Participant
from schemas import ScoreSubmit, ScoreSubmitResponse
from core.broadcaster import Broadcaster, get_broadcaster, publish_safely
from core.events import Event, session_room, user_room
from core.security import Identity, PARTICIPANT_TOKEN, decode_token, verify_participant_token
from core.session_manager import SessionManager
from core.participant_manager import ParticipantManager
from core.score_manager import ScoreManager
from core.exceptions import AuthenticationError, TastingException, TastingValidationError
from api.deps import resolve_user_id

router = APIRouter(tags=["websocket"])
logger = logging.getLogger(__name__)

# 憑證被拒時的關閉碼
UNAUTHORIZED = 4001


def authenticate_socket(db: Session, token: Optional[str]) -> Tuple[Identity, List[str]]:
    """
    將 socket token 解析為身分與要加入的房間

    返回：
        (Identity, 房間列表)

    異常：
        AuthenticationError: token 缺失、無效或座位不存在
    """
    if not token:
        raise AuthenticationError("Authentication required")

    claims = decode_token(token)
    if claims.get("type") == PARTICIPANT_TOKEN:
        ids = verify_participant_token(token)
        participant = db.query(Participant).filter(Participant.id == ids["participant_id"]).first()
        if not participant or participant.session_id != ids["session_id"]:
            raise AuthenticationError("Participant not found")

        rooms = [session_room(participant.session_id)]
        if participant.user_id is not None:
            rooms.append(user_room(participant.user_id))
        identity = Identity(
            user_id=participant.user_id,
            participant_id=participant.id,
            session_id=participant.session_id,
        )
        return identity, rooms

    user_id = resolve_user_id(db, token)
    return Identity(user_id=user_id), [user_room(user_id)]


def _authenticate(token: Optional[str]) -> Tuple[Identity, List[str]]:
    with get_db_context() as db:
        return authenticate_socket(db, token)


def _parse_session_id(raw, default: Optional[UUID] = None) -> UUID:
    """明確指定的 sessionId，否則使用預設值"""
    if raw is None and default is not None:
        return default
    try:
        return UUID(str(raw))
    except ValueError:
        raise TastingValidationError("Invalid sessionId", field="sessionId")


# ============ 阻塞操作（thread pool） ============

def _check_can_follow(session_id: UUID, identity: Identity) -> None:
    with get_db_context() as db:
        session = SessionManager.get_session_by_id(db, session_id)
        SessionManager.require_moderator(db, session, identity, "join this session room")


def _advance(broadcaster: Broadcaster, session_id: UUID, identity: Identity, message: Dict[str, Any]) -> None:
    with get_db_context() as db:
        SessionManager.advance(
            db, broadcaster, session_id, identity,
            message.get("phase"), message.get("whiskeyIndex")
        )


def _mark_ready(broadcaster: Broadcaster, identity: Identity) -> None:
    with get_db_context() as db:
        ParticipantManager.mark_ready(db, broadcaster, identity)


def _submit_score(broadcaster: Broadcaster, identity: Identity, data: ScoreSubmit) -> Dict[str, Any]:
    with get_db_context() as db:
        score = ScoreManager.submit(db, broadcaster, identity, data)
        response = ScoreSubmitResponse(id=score.id, total_score=score.total_score, locked_at=score.locked_at)
        return response.model_dump(by_alias=True, mode="json")


# ============ 訊息處理器 ============

async def _handle_join_session(broadcaster, websocket, identity, message) -> None:
    session_id = _parse_session_id(message.get("sessionId"))
    await run_in_threadpool(_check_can_follow, session_id, identity)
    broadcaster.join(websocket, session_room(session_id))
    await broadcaster.send_personal_message({"type": "joined", "sessionId": str(session_id)}, websocket)


async def _handle_advance(broadcaster, websocket, identity, message) -> None:
    # 預設為呼叫者座位所屬場次
    session_id = _parse_session_id(message.get("sessionId"), identity.session_id)
    await run_in_threadpool(_advance, broadcaster, session_id, identity, message)


async def _handle_ready(broadcaster, websocket, identity, message) -> None:
    await run_in_threadpool(_mark_ready, broadcaster, identity)


async def _handle_score_submit(broadcaster, websocket, identity, message) -> None:
    if identity.participant_id is None:
        raise AuthenticationError("Participant token required")

    body = {key: value for key, value in message.items() if key != "type"}
    body.setdefault("sessionId", str(identity.session_id))
    try:
        data = ScoreSubmit.model_validate(body)
    except ValidationError:
        raise TastingValidationError("Invalid score payload")

    result = await run_in_threadpool(_submit_score, broadcaster, identity, data)
    await broadcaster.send_personal_message({"type": "score:submitted", **result}, websocket)


async def _handle_typing(broadcaster, websocket, identity, message) -> None:
    if identity.participant_id is None:
        raise AuthenticationError("Participant token required")
    publish_safely(
        broadcaster, session_room(identity.session_id), Event.PARTICIPANT_TYPING,
        {"participantId": str(identity.participant_id)},
        exclude=websocket,
    )


async def _handle_ping(broadcaster, websocket, identity, message) -> None:
    await broadcaster.send_personal_message({"type": "pong"}, websocket)


MESSAGE_HANDLERS = {
    "ping": _handle_ping,
    "join:session": _handle_join_session,
    "advance:phase": _handle_advance,
    "participant:ready": _handle_ready,
    "score:submit": _handle_score_submit,
    "participant:typing": _handle_typing,
}


@router.websocket("/ws")
async def tasting_websocket(
    websocket: WebSocket,
    token: Optional[str] = Query(None),
    broadcaster: Broadcaster = Depends(get_broadcaster)
):
    try:
        identity, rooms = await run_in_threadpool(_authenticate, token)
    except AuthenticationError as e:
        logger.info(f"Rejected socket connection: {e}")
        await websocket.close(code=UNAUTHORIZED, reason=str(e))
        return

    await broadcaster.connect(websocket, rooms)
    connected_session = identity.session_id if identity.participant_id else None

    if connected_session is not None:
        publish_safely(broadcaster, session_room(connected_session), Event.PARTICIPANT_CONNECTED, {
            "participantId": str(identity.participant_id),
        })

    try:
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                await broadcaster.send_personal_message({"type": "error", "message": "Invalid JSON"}, websocket)
                continue

            if not isinstance(message, dict):
                await broadcaster.send_personal_message({"type": "error", "message": "Invalid message"}, websocket)
                continue

            message_type = message.get("type")
            handler = MESSAGE_HANDLERS.get(message_type)
            if handler is None:
                await broadcaster.send_personal_message(
                    {"type": "error", "message": f"Unknown message type: {message_type}"},
                    websocket
                )
                continue

            try:
                await handler(broadcaster, websocket, identity, message)
            except TastingException as e:
                logger.info(f"Socket {message_type} rejected: {e}")
                await broadcaster.send_personal_message({"type": "error", "message": str(e)}, websocket)

    except WebSocketDisconnect:
        logger.info(f"Socket disconnected from {', '.join(rooms)}")
    except Exception as e:
        logger.error(f"WebSocket error: {e}", exc_info=True)
    finally:
        broadcaster.disconnect(websocket)
        if connected_session is not None:
            publish_safely(broadcaster, session_room(connected_session), Event.PARTICIPANT_DISCONNECTED, {
                "participantId": str(identity.participant_id),
            })

"""
Participant Manager：品飲者的入場與在場狀態

職責：
1. 透過邀請碼加入（名額、座位重用、簽發 token）
2. ready 標記與個人狀態
3. 離開場次（分數隨參與者一併刪除）

注意：身分只來自 participant token，請求 body 不會指定參與者。
"""
from typing import Optional, Tuple
from uuid import UUID
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import TastingSession, Participant, EventLog, SessionStatus, ParticipantStatus
from core.locks import session_mutex, with_session_lock
from core.events import Event, session_room
from core.broadcaster import Broadcaster, publish_safely
from core.security import Identity, create_participant_token
from core.exceptions import (
    SessionNotFound,
    SessionEnded,
    SessionFull,
    ParticipantNotFound,
    AuthenticationError,
    TastingValidationError,
)
from services.naming_service import normalize_invite_code
from database import transactional

logger = logging.getLogger(__name__)


class ParticipantManager:
    """參與者生命週期管理器"""

    @staticmethod
    def find_session_by_code(db: Session, invite_code: str) -> TastingSession:
        code = normalize_invite_code(invite_code)
        session = db.query(TastingSession).filter(TastingSession.invite_code == code).first()
        if not session:
            raise SessionNotFound(code)
        return session

    @staticmethod
    @transactional
    def _admit(
        db: Session,
        session_id: UUID,
        display_name: str,
        user_id: Optional[UUID]
    ) -> Tuple[Participant, bool]:
        """
        讓品飲者加入已鎖定的場次

        流程：
        1. 拒絕已結束的場次
        2. 已入座的註冊用戶 -> 重用座位
        3. 名額檢查計入所有座位（主持人永不被拒）
        4. 建立參與者並記錄 PARTICIPANT_JOINED

        返回：
            (Participant, created)
        """
        session = with_session_lock(session_id, db).first()
        if not session:
            raise SessionNotFound(session_id)
        if session.status == SessionStatus.COMPLETED:
            raise SessionEnded()

        if user_id is not None:
            existing = db.query(Participant).filter(
                Participant.session_id == session_id,
                Participant.user_id == user_id
            ).first()
            if existing:
                logger.info(f"User {user_id} rejoined session {session_id} as {existing.id}")
                return existing, False

        is_moderator = user_id is not None and user_id == session.moderator_id
        if session.max_participants is not None and not is_moderator:
            seated = db.query(Participant).filter(Participant.session_id == session_id).count()
            if seated >= session.max_participants:
                raise SessionFull()

        participant = Participant(
            session_id=session_id,
            user_id=user_id,
            display_name=display_name,
            is_ready=is_moderator,
        )
        db.add(participant)
        db.flush()

        db.add(EventLog(
            session_id=session_id,
            event_type="PARTICIPANT_JOINED",
            data={"participantId": str(participant.id), "displayName": display_name}
        ))
        db.flush()

        logger.info(f"Participant {participant.id} ({display_name}) joined session {session_id}")
        return participant, True

    @staticmethod
    def join(
        db: Session,
        broadcaster: Broadcaster,
        invite_code: str,
        display_name: str,
        user_id: Optional[UUID] = None
    ) -> Tuple[TastingSession, Participant, str, bool]:
        """
        透過邀請碼加入場次

        返回：
            (TastingSession, Participant, participant token, created)

        異常：
            TastingValidationError: 顯示名稱空白
            SessionNotFound: 邀請碼不存在
            SessionEnded: 場次已結束
            SessionFull: 名額已滿
        """
        display_name = (display_name or "").strip()
        if not display_name:
            raise TastingValidationError("Display name is required", field="displayName")

        session = ParticipantManager.find_session_by_code(db, invite_code)

        with session_mutex(session.id):
            try:
                participant, created = ParticipantManager._admit(db, session.id, display_name, user_id)
            except IntegrityError:
                # 同一帳號的並發加入已搶到唯一座位
                existing = None
                if user_id is not None:
                    existing = db.query(Participant).filter(
                        Participant.session_id == session.id,
                        Participant.user_id == user_id
                    ).first()
                if existing is None:
                    raise
                participant, created = existing, False

            if created:
                publish_safely(broadcaster, session_room(session.id), Event.PARTICIPANT_JOINED, {
                    "id": str(participant.id),
                    "displayName": participant.display_name,
                    "status": participant.status.value,
                    "isReady": participant.is_ready,
                })

        db.refresh(session)
        token = create_participant_token(participant.id, session.id, participant.display_name)
        return session, participant, token, created

    @staticmethod
    def issue_token(participant: Participant) -> str:
        return create_participant_token(participant.id, participant.session_id, participant.display_name)

    @staticmethod
    def get_participant(db: Session, identity: Identity) -> Participant:
        """
        呼叫者自己的參與者資料列

        異常：
            AuthenticationError: 沒有 participant token
            ParticipantNotFound: token 指向已移除的座位
        """
        if identity.participant_id is None:
            raise AuthenticationError("Participant token required")

        participant = db.query(Participant).filter(
            Participant.id == identity.participant_id
        ).first()
        if not participant:
            raise ParticipantNotFound(identity.participant_id)
        return participant

    @staticmethod
    @transactional
    def _set_ready(db: Session, participant_id: UUID) -> Participant:
        participant = db.query(Participant).filter(
            Participant.id == participant_id
        ).with_for_update().first()
        if not participant:
            raise ParticipantNotFound(participant_id)
        participant.is_ready = True
        db.flush()
        return participant

    @staticmethod
    def mark_ready(db: Session, broadcaster: Broadcaster, identity: Identity) -> Participant:
        """將呼叫者標記為 ready（冪等）並廣播"""
        participant = ParticipantManager.get_participant(db, identity)

        with session_mutex(participant.session_id):
            participant = ParticipantManager._set_ready(db, participant.id)
            publish_safely(broadcaster, session_room(participant.session_id), Event.PARTICIPANT_READY, {
                "participantId": str(participant.id),
                "displayName": participant.display_name,
            })
        return participant

    @staticmethod
    @transactional
    def _set_status(db: Session, participant_id: UUID, status: ParticipantStatus) -> Participant:
        participant = db.query(Participant).filter(
            Participant.id == participant_id
        ).with_for_update().first()
        if not participant:
            raise ParticipantNotFound(participant_id)
        participant.status = status
        db.flush()
        return participant

    @staticmethod
    def update_status(
        db: Session,
        broadcaster: Broadcaster,
        identity: Identity,
        status: ParticipantStatus
    ) -> Participant:
        """呼叫者的個人進度標記（waiting / tasting / completed）"""
        participant = ParticipantManager.get_participant(db, identity)

        with session_mutex(participant.session_id):
            participant = ParticipantManager._set_status(db, participant.id, ParticipantStatus(status))
            publish_safely(broadcaster, session_room(participant.session_id), Event.PARTICIPANT_STATUS, {
                "participantId": str(participant.id),
                "status": participant.status.value,
            })
        return participant

    @staticmethod
    @transactional
    def _remove(db: Session, participant_id: UUID) -> Tuple[UUID, str]:
        participant = db.query(Participant).filter(Participant.id == participant_id).first()
        if not participant:
            raise ParticipantNotFound(participant_id)

        session_id, display_name = participant.session_id, participant.display_name
        db.add(EventLog(
            session_id=session_id,
            event_type="PARTICIPANT_LEFT",
            data={"participantId": str(participant_id), "displayName": display_name}
        ))
        # 分數隨參與者 cascade 刪除
        db.delete(participant)
        db.flush()
        return session_id, display_name

    @staticmethod
    def leave(db: Session, broadcaster: Broadcaster, identity: Identity) -> None:
        """
        將呼叫者移出場次

        注意：座位與其鎖定的所有分數都會刪除，之後 participant token 失效。
        """
        participant = ParticipantManager.get_participant(db, identity)
        participant_id, session_id = participant.id, participant.session_id

        with session_mutex(session_id):
            _, display_name = ParticipantManager._remove(db, participant_id)
            publish_safely(broadcaster, session_room(session_id), Event.PARTICIPANT_LEFT, {
                "participantId": str(participant_id),
                "displayName": display_name,
            })

        logger.info(f"Participant {participant_id} left session {session_id}")

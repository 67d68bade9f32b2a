"""
Session Manager：品飲場次的完整生命週期

職責：
1. 建立場次（酒款 + 主持人座位）
2. 主持人狀態轉換：start / advance / pause / resume / reveal / end
3. 查詢：場次詳情、主持的場次
4. 開始品飲前編輯酒款

每個修改操作都遵循相同結構：

    with session_mutex(session_id):      # 行程內序列化
        @transactional step              # 鎖定資料列、驗證、寫入、commit
        publish_safely(...)              # commit 後依序廣播

狀態 / 階段 / index 的寫入交由 SessionStateMachine 處理。
"""
from datetime import datetime, timezone
from typing import List, Optional, Tuple
from uuid import UUID
import logging

from pydantic.alias_generators import to_camel
from sqlalchemy.orm import Session

from models import (
    TastingSession,
    Whiskey,
    Participant,
    Score,
    User,
    EventLog,
    SessionStatus,
    WhiskeyTheme,
)
from schemas import (
    SessionCreate,
    SessionDetail,
    WhiskeyUpdate,
    RevealResponse,
)
from core.state_machine import SessionStateMachine
from core.locks import session_mutex
from core.events import Event, session_room
from core.broadcaster import Broadcaster, publish_safely
from core.security import Identity
from core.exceptions import (
    SessionNotFound,
    WhiskeyNotFound,
    NotModerator,
    SessionAlreadyStarted,
    TastingValidationError,
    AuthenticationError,
)
from services.naming_service import generate_invite_code
from services import serializers
from database import transactional, get_settings

logger = logging.getLogger(__name__)

# 更新時可省略但不可設為 null 的酒款欄位
REQUIRED_WHISKEY_FIELDS = ("name", "distillery", "proof", "pour_size")


class SessionManager:
    """品飲場次生命週期管理器"""

    # ============ 建立 ============

    @staticmethod
    def validate_new_session(data: SessionCreate) -> None:
        """
        schema 無法表達的業務檢查

        異常：
            TastingValidationError
        """
        max_whiskeys = get_settings().max_whiskeys_per_session

        if not data.whiskeys:
            raise TastingValidationError("At least one whiskey is required", field="whiskeys")
        if len(data.whiskeys) > max_whiskeys:
            raise TastingValidationError(f"Maximum {max_whiskeys} whiskeys allowed", field="whiskeys")
        if data.theme == WhiskeyTheme.CUSTOM and not (data.custom_theme or "").strip():
            raise TastingValidationError("Custom theme name is required", field="customTheme")
        if data.proof_min is not None and data.proof_max is not None and data.proof_min > data.proof_max:
            raise TastingValidationError("proofMin cannot be greater than proofMax", field="proofMin")

    @staticmethod
    @transactional
    def create_session(db: Session, moderator_id: UUID, data: SessionCreate) -> Tuple[TastingSession, Participant]:
        """
        建立場次、酒款與主持人座位

        流程：
        1. 驗證輸入
        2. 產生唯一邀請碼
        3. 建立場次（waiting，或依要求為 draft）
        4. 依提交順序建立編號 1..N 的酒款
        5. 建立主持人參與者（預設 ready）
        6. 記錄 SESSION_CREATED

        返回：
            (TastingSession, 主持人 Participant)
        """
        SessionManager.validate_new_session(data)

        moderator = db.query(User).filter(User.id == moderator_id).first()
        if not moderator:
            raise AuthenticationError("Unknown user")

        code = generate_invite_code()
        while db.query(TastingSession).filter(TastingSession.invite_code == code).first():
            logger.warning(f"Invite code collision detected, regenerating: {code}")
            code = generate_invite_code()

        session = TastingSession(
            name=data.name,
            theme=data.theme,
            custom_theme=data.custom_theme,
            proof_min=data.proof_min,
            proof_max=data.proof_max,
            scheduled_at=data.scheduled_at or datetime.now(timezone.utc),
            status=SessionStatus.DRAFT if data.draft else SessionStatus.WAITING,
            moderator_id=moderator_id,
            invite_code=code,
            max_participants=data.max_participants,
        )
        db.add(session)
        db.flush()

        for number, item in enumerate(data.whiskeys, start=1):
            db.add(Whiskey(
                session_id=session.id,
                display_number=number,
                name=item.name,
                distillery=item.distillery,
                age=item.age,
                proof=item.proof,
                price=item.price,
                mashbill=item.mashbill,
                region=item.region,
                pour_size=item.pour_size,
            ))

        host = Participant(
            session_id=session.id,
            user_id=moderator_id,
            display_name=data.host_name,
            is_ready=True,
        )
        db.add(host)

        db.add(EventLog(
            session_id=session.id,
            event_type="SESSION_CREATED",
            data={"inviteCode": code, "whiskeyCount": len(data.whiskeys)}
        ))
        db.flush()

        logger.info(f"Created session {session.id} with code {code} ({len(data.whiskeys)} whiskeys)")
        return session, host

    # ============ 權限 ============

    @staticmethod
    def is_moderator(db: Session, session: TastingSession, identity: Identity) -> bool:
        """
        以帳號辨識主持人：直接使用 user token，
        或透過綁定主持人帳號的參與者座位。
        """
        if identity.user_id is not None and identity.user_id == session.moderator_id:
            return True

        if identity.participant_id is not None:
            participant = db.query(Participant).filter(
                Participant.id == identity.participant_id,
                Participant.session_id == session.id
            ).first()
            return participant is not None and participant.user_id == session.moderator_id

        return False

    @staticmethod
    def require_moderator(db: Session, session: TastingSession, identity: Identity, action: str) -> None:
        """
        異常：
            AuthenticationError: 完全沒有憑證
            NotModerator: 有憑證但不是主持人
        """
        if identity.is_anonymous:
            raise AuthenticationError("Authentication required")
        if not SessionManager.is_moderator(db, session, identity):
            raise NotModerator(action)

    @staticmethod
    def get_session_by_id(db: Session, session_id: UUID) -> TastingSession:
        session = db.query(TastingSession).filter(TastingSession.id == session_id).first()
        if not session:
            raise SessionNotFound(session_id)
        return session

    # ============ 狀態轉換 ============

    @staticmethod
    @transactional
    def _apply_transition(
        db: Session,
        session_id: UUID,
        identity: Identity,
        operation: str,
        action: str
    ) -> TastingSession:
        session = SessionStateMachine.load_locked(db, session_id)
        SessionManager.require_moderator(db, session, identity, action)
        return SessionStateMachine.transition(db, session, operation)

    @staticmethod
    def _moderator_transition(
        db: Session,
        broadcaster: Broadcaster,
        session_id: UUID,
        identity: Identity,
        operation: str,
        action: str,
        event: Event
    ) -> TastingSession:
        with session_mutex(session_id):
            session = SessionManager._apply_transition(db, session_id, identity, operation, action)
            publish_safely(broadcaster, session_room(session_id), event, {"sessionId": str(session_id)})
        return session

    @staticmethod
    def start(db: Session, broadcaster: Broadcaster, session_id: UUID, identity: Identity) -> TastingSession:
        """draft/waiting -> active，階段 pour，酒款 0"""
        return SessionManager._moderator_transition(
            db, broadcaster, session_id, identity,
            "start", "start the session", Event.SESSION_STARTED
        )

    @staticmethod
    def pause(db: Session, broadcaster: Broadcaster, session_id: UUID, identity: Identity) -> TastingSession:
        return SessionManager._moderator_transition(
            db, broadcaster, session_id, identity,
            "pause", "pause the session", Event.SESSION_PAUSED
        )

    @staticmethod
    def resume(db: Session, broadcaster: Broadcaster, session_id: UUID, identity: Identity) -> TastingSession:
        return SessionManager._moderator_transition(
            db, broadcaster, session_id, identity,
            "resume", "resume the session", Event.SESSION_RESUMED
        )

    @staticmethod
    def end(db: Session, broadcaster: Broadcaster, session_id: UUID, identity: Identity) -> TastingSession:
        """終止狀態：completed 的場次不能再有任何變更"""
        return SessionManager._moderator_transition(
            db, broadcaster, session_id, identity,
            "end", "end the session", Event.SESSION_ENDED
        )

    @staticmethod
    @transactional
    def _apply_advance(
        db: Session,
        session_id: UUID,
        identity: Identity,
        phase: Optional[str],
        whiskey_index: Optional[int]
    ) -> TastingSession:
        session = SessionStateMachine.load_locked(db, session_id)
        SessionManager.require_moderator(db, session, identity, "advance the session")
        return SessionStateMachine.advance(db, session, phase=phase, whiskey_index=whiskey_index)

    @staticmethod
    def advance(
        db: Session,
        broadcaster: Broadcaster,
        session_id: UUID,
        identity: Identity,
        phase: Optional[str] = None,
        whiskey_index: Optional[int] = None
    ) -> TastingSession:
        """
        推進品飲進度（或跳轉）

        注意：伺服器不會自動推進，客戶端的階段計時器僅供參考，由主持人決定何時前進。
        """
        with session_mutex(session_id):
            session = SessionManager._apply_advance(db, session_id, identity, phase, whiskey_index)
            publish_safely(broadcaster, session_room(session_id), Event.SESSION_ADVANCED, {
                "sessionId": str(session_id),
                "phase": session.current_phase.value,
                "whiskeyIndex": session.current_whiskey_index,
            })
        return session

    @staticmethod
    def reveal(db: Session, broadcaster: Broadcaster, session_id: UUID, identity: Identity) -> RevealResponse:
        """
        active/paused -> reveal，然後廣播酒款身分與所有分數

        注意：不可逆，揭曉後場次只能結束。
        """
        with session_mutex(session_id):
            SessionManager._apply_transition(db, session_id, identity, "reveal", "reveal results")

            whiskeys = db.query(Whiskey).filter(
                Whiskey.session_id == session_id
            ).order_by(Whiskey.display_number).all()
            scores = db.query(Score).filter(Score.session_id == session_id).all()
            names = {
                p.id: p.display_name
                for p in db.query(Participant).filter(Participant.session_id == session_id).all()
            }

            response = RevealResponse(
                whiskeys=[serializers.whiskey_view(w, reveal=True) for w in whiskeys],
                scores=serializers.score_views(scores, names),
            )
            payload = response.model_dump(by_alias=True, mode="json")
            publish_safely(broadcaster, session_room(session_id), Event.SESSION_REVEAL, {
                "sessionId": str(session_id),
                "whiskeys": payload["whiskeys"],
                "scores": payload["scores"],
            })
        return response

    # ============ 酒款 ============

    @staticmethod
    def validate_whiskey_update(data: WhiskeyUpdate) -> None:
        """
        拒絕將必要酒款欄位明確設為 null

        異常：
            TastingValidationError
        """
        changes = data.model_dump(exclude_unset=True)
        for field in REQUIRED_WHISKEY_FIELDS:
            if field in changes and changes[field] is None:
                wire_field = to_camel(field)
                raise TastingValidationError(f"{wire_field} cannot be null", field=wire_field)

    @staticmethod
    @transactional
    def _apply_whiskey_update(
        db: Session,
        session_id: UUID,
        whiskey_id: UUID,
        identity: Identity,
        data: WhiskeyUpdate
    ) -> Whiskey:
        session = SessionStateMachine.load_locked(db, session_id)
        SessionManager.require_moderator(db, session, identity, "edit whiskeys")
        if session.status not in (SessionStatus.DRAFT, SessionStatus.WAITING):
            raise SessionAlreadyStarted("Whiskeys cannot be changed once the tasting has started")

        whiskey = db.query(Whiskey).filter(
            Whiskey.id == whiskey_id,
            Whiskey.session_id == session_id
        ).first()
        if not whiskey:
            raise WhiskeyNotFound(whiskey_id)

        changes = data.model_dump(exclude_unset=True)
        for field, value in changes.items():
            setattr(whiskey, field, value)

        db.add(EventLog(
            session_id=session_id,
            event_type="WHISKEY_UPDATED",
            data={"whiskeyId": str(whiskey_id), "fields": sorted(changes)}
        ))
        db.flush()
        return whiskey

    @staticmethod
    def update_whiskey(
        db: Session,
        session_id: UUID,
        whiskey_id: UUID,
        identity: Identity,
        data: WhiskeyUpdate
    ) -> Whiskey:
        """主持人編輯酒款，僅限場次為 draft 或 waiting"""
        SessionManager.validate_whiskey_update(data)
        with session_mutex(session_id):
            return SessionManager._apply_whiskey_update(db, session_id, whiskey_id, identity, data)

    # ============ 查詢 ============

    @staticmethod
    def get_session_detail(db: Session, session_id: UUID, identity: Identity) -> SessionDetail:
        """
        呼叫者視角的場次

        注意：只有揭曉後或主持人才會看到酒款身分。
        """
        session = SessionManager.get_session_by_id(db, session_id)
        is_moderator = SessionManager.is_moderator(db, session, identity)
        show_identity = session.is_revealed or is_moderator

        current_participant_id = None
        if identity.participant_id is not None and identity.session_id == session.id:
            current_participant_id = identity.participant_id

        return SessionDetail(
            id=session.id,
            name=session.name,
            theme=session.theme,
            custom_theme=session.custom_theme,
            proof_min=session.proof_min,
            proof_max=session.proof_max,
            scheduled_at=session.scheduled_at,
            status=session.status,
            current_phase=session.current_phase,
            current_whiskey_index=session.current_whiskey_index,
            moderator_id=session.moderator_id,
            invite_code=session.invite_code,
            max_participants=session.max_participants,
            created_at=session.created_at,
            updated_at=session.updated_at,
            is_moderator=is_moderator,
            current_participant_id=current_participant_id,
            whiskeys=[serializers.whiskey_view(w, reveal=show_identity) for w in session.whiskeys],
            participants=[serializers.participant_view(p) for p in session.participants],
        )

    @staticmethod
    def list_moderated_sessions(db: Session, user_id: UUID) -> List[TastingSession]:
        return db.query(TastingSession).filter(
            TastingSession.moderator_id == user_id
        ).order_by(TastingSession.created_at.desc()).all()

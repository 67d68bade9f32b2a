"""
場次狀態機

唯一可以寫入 TastingSession.status、current_phase 與 current_whiskey_index 的程式碼。
呼叫者只能透過具名操作（start / pause / resume / reveal / end）或 advance()，
沒有通用的「更新場次」路徑。

狀態轉換：

    draft ─┐
           ├─ start ──> active <── resume ── paused
    waiting┘            │  │ └──── pause ────> │
                        │  └─ reveal ─> reveal <┘ (also from paused)
                        └──── end ───> completed <── end (reveal, paused)

completed 為終止狀態。

active 中的階段循環（每支酒一圈）：

    pour -> nosing -> tasting-neat -> tasting-water -> scoring -> palate-reset
      ^                                                              │
      └──────────────── next whiskey (index + 1) ────────────────────┘

最後一支酒的 palate-reset 之後，index 等於酒款數（品飲結束），單步前進會被拒絕。

注意：這裡的方法不 commit，在呼叫者的 @transactional 函數中執行，
狀態變更與其 EventLog 一起寫入。
"""
from typing import Dict, FrozenSet, Optional, Tuple
from uuid import UUID
import logging

from sqlalchemy.orm import Session

from models import TastingSession, Whiskey, SessionStatus, TastingPhase, EventLog
from core.locks import with_session_lock
from core.exceptions import (
    SessionNotFound,
    InvalidStateTransition,
    SessionNotActive,
    FlightFinished,
    TastingValidationError,
)

logger = logging.getLogger(__name__)


class SessionStateMachine:
    """經過驗證的場次狀態與階段轉換"""

    # 操作 -> (允許的來源狀態, 目標狀態)
    OPERATIONS: Dict[str, Tuple[FrozenSet[SessionStatus], SessionStatus]] = {
        "start": (frozenset({SessionStatus.DRAFT, SessionStatus.WAITING}), SessionStatus.ACTIVE),
        "pause": (frozenset({SessionStatus.ACTIVE}), SessionStatus.PAUSED),
        "resume": (frozenset({SessionStatus.PAUSED}), SessionStatus.ACTIVE),
        "reveal": (frozenset({SessionStatus.ACTIVE, SessionStatus.PAUSED}), SessionStatus.REVEAL),
        "end": (
            frozenset({SessionStatus.ACTIVE, SessionStatus.PAUSED, SessionStatus.REVEAL}),
            SessionStatus.COMPLETED
        ),
    }

    # 操作被拒絕時客戶端顯示的訊息
    REJECTIONS = {
        "start": "Session has already started",
        "pause": "Session is not active",
        "resume": "Session is not paused",
        "reveal": "Session must be active or paused to reveal",
        "end": "Session has not started yet",
    }

    PHASE_CYCLE = (
        TastingPhase.POUR,
        TastingPhase.NOSING,
        TastingPhase.TASTING_NEAT,
        TastingPhase.TASTING_WATER,
        TastingPhase.SCORING,
        TastingPhase.PALATE_RESET,
    )

    @classmethod
    def can_apply(cls, operation: str, status: SessionStatus) -> bool:
        sources, _ = cls.OPERATIONS[operation]
        return status in sources

    @classmethod
    def validate(cls, operation: str, status: SessionStatus) -> SessionStatus:
        """
        依目前狀態檢查操作

        返回：
            目標狀態

        異常：
            InvalidStateTransition: 目前狀態不允許此操作
        """
        if operation not in cls.OPERATIONS:
            raise ValueError(f"Unknown session operation: {operation}")

        if status == SessionStatus.COMPLETED:
            raise InvalidStateTransition("Session has ended")

        if not cls.can_apply(operation, status):
            raise InvalidStateTransition(cls.REJECTIONS[operation])

        _, target = cls.OPERATIONS[operation]
        return target

    @staticmethod
    def load_locked(db: Session, session_id: UUID) -> TastingSession:
        session = with_session_lock(session_id, db).first()
        if not session:
            raise SessionNotFound(session_id)
        return session

    @classmethod
    def transition(cls, db: Session, session: TastingSession, operation: str) -> TastingSession:
        """
        對已鎖定的場次資料列執行具名狀態轉換

        流程：
        1. 依目前狀態驗證操作
        2. 更新狀態（start 同時重置階段與酒款 index）
        3. 記錄 SESSION_STATE_CHANGED

        異常：
            InvalidStateTransition
        """
        old_status = session.status
        new_status = cls.validate(operation, old_status)

        session.status = new_status
        if operation == "start":
            session.current_phase = TastingPhase.POUR
            session.current_whiskey_index = 0

        db.add(EventLog(
            session_id=session.id,
            event_type="SESSION_STATE_CHANGED",
            data={
                "operation": operation,
                "from": old_status.value,
                "to": new_status.value,
            }
        ))
        db.flush()

        logger.info(f"Session {session.id}: {old_status.value} -> {new_status.value} ({operation})")
        return session

    @classmethod
    def next_position(
        cls,
        phase: TastingPhase,
        whiskey_index: int,
        whiskey_count: int
    ) -> Tuple[TastingPhase, int]:
        """
        單步前進的下一個位置

        範例（3 支酒）：
            (pour, 0)         -> (nosing, 0)
            (palate-reset, 0) -> (pour, 1)
            (palate-reset, 2) -> (pour, 3)   品飲結束

        異常：
            FlightFinished: 已超過最後一支酒
        """
        if whiskey_index >= whiskey_count:
            raise FlightFinished()

        position = cls.PHASE_CYCLE.index(phase)
        if position + 1 < len(cls.PHASE_CYCLE):
            return cls.PHASE_CYCLE[position + 1], whiskey_index

        return TastingPhase.POUR, whiskey_index + 1

    @classmethod
    def advance(
        cls,
        db: Session,
        session: TastingSession,
        phase: Optional[str] = None,
        whiskey_index: Optional[int] = None
    ) -> TastingSession:
        """
        移動進行中場次的階段 / 酒款 index

        - 無參數：循環中的下一步
        - 只有 phase：跳到目前酒款的該階段
        - 只有 whiskey_index：跳到該酒款，保留目前階段
        - 兩者皆有：跳到指定位置

        異常：
            InvalidStateTransition: 場次已結束
            SessionNotActive: 場次不在進行中（包含暫停）
            TastingValidationError: 未知階段或 index 超出範圍
            FlightFinished: 最後一支酒之後單步前進
        """
        if session.status == SessionStatus.COMPLETED:
            raise InvalidStateTransition("Session has ended")
        if session.status != SessionStatus.ACTIVE:
            raise SessionNotActive()

        whiskey_count = db.query(Whiskey).filter(Whiskey.session_id == session.id).count()

        if phase is None and whiskey_index is None:
            new_phase, new_index = cls.next_position(
                session.current_phase, session.current_whiskey_index, whiskey_count
            )
        else:
            new_phase = cls._parse_phase(phase) if phase is not None else session.current_phase
            if whiskey_index is None:
                new_index = session.current_whiskey_index
                if new_index >= whiskey_count:
                    raise FlightFinished()
            else:
                if isinstance(whiskey_index, bool) or not isinstance(whiskey_index, int) \
                        or not 0 <= whiskey_index < whiskey_count:
                    raise TastingValidationError(
                        f"whiskeyIndex must be between 0 and {whiskey_count - 1}",
                        field="whiskeyIndex"
                    )
                new_index = whiskey_index

        old_phase, old_index = session.current_phase, session.current_whiskey_index
        session.current_phase = new_phase
        session.current_whiskey_index = new_index

        db.add(EventLog(
            session_id=session.id,
            event_type="PHASE_ADVANCED",
            data={
                "from": {"phase": old_phase.value, "whiskeyIndex": old_index},
                "to": {"phase": new_phase.value, "whiskeyIndex": new_index},
            }
        ))
        db.flush()

        logger.info(
            f"Session {session.id} advanced {old_phase.value}#{old_index} "
            f"-> {new_phase.value}#{new_index}"
        )
        return session

    @staticmethod
    def _parse_phase(phase) -> TastingPhase:
        try:
            return TastingPhase(phase)
        except ValueError:
            raise TastingValidationError(f"Unknown phase: {phase}", field="phase")

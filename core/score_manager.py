"""
Score Manager：鎖定分數並控管可見範圍

職責：
1. 提交（鎖定）分數：驗證、只寫入一次、廣播時不含分數
2. 揭曉後的結果：平均、各項平均、排名
3. 呼叫者自己的分數、公開切換、可分享的分數

規則：
- 每個 (participant, whiskey) 只寫入一次分數；unique constraint 是最終防線，
  事先檢查只提供較友善的錯誤路徑
- locked_at 之後只有 is_public 可以變更
- 揭曉前其他人的分數保持隱藏
"""
from datetime import datetime, timezone
from typing import Any, Dict, List
from uuid import UUID
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import (
    TastingSession,
    Whiskey,
    Participant,
    Score,
    EventLog,
    SessionStatus,
)
from schemas import (
    ScoreSubmit,
    SessionResults,
    WhiskeyResult,
    ScoreView,
    ShareableScore,
)
from core.locks import session_mutex, with_session_lock
from core.events import Event, session_room
from core.broadcaster import Broadcaster, publish_safely
from core.security import Identity
from core.exceptions import (
    SessionNotFound,
    SessionNotActive,
    NotSessionParticipant,
    WhiskeyNotFound,
    InvalidSubscore,
    NotesTooLong,
    ScoreAlreadySubmitted,
    ScoreNotFound,
    ResultsNotRevealed,
    NotScoreOwner,
    ScoresNotShareable,
    AuthenticationError,
)
from services.scoring_service import (
    SUBSCORE_FIELDS,
    calculate_total_score,
    is_valid_subscore,
    average,
    category_averages,
    rank_results,
)
from services import serializers
from database import transactional, get_settings

logger = logging.getLogger(__name__)

# (屬性, 訊息中的標籤, 傳輸欄位)
NOTE_FIELDS = (
    ("nose_notes", "Nose notes", "noseNotes"),
    ("palate_notes", "Palate notes", "palateNotes"),
    ("finish_notes", "Finish notes", "finishNotes"),
    ("general_notes", "General notes", "generalNotes"),
    ("identity_guess", "Identity guess", "identityGuess"),
)


class ScoreManager:
    """分數生命週期管理器"""

    # ============ 提交 ============

    @staticmethod
    def validate_submission(data: ScoreSubmit) -> None:
        """
        不需資料庫的輸入檢查

        異常：
            InvalidSubscore: 子分數缺失或不在 1..10
            NotesTooLong: 筆記超過設定上限
        """
        for field in SUBSCORE_FIELDS:
            if not is_valid_subscore(getattr(data, field)):
                raise InvalidSubscore(field)

        limit = get_settings().notes_max_length
        for attr, label, wire_field in NOTE_FIELDS:
            value = getattr(data, attr)
            if value is not None and len(value) > limit:
                raise NotesTooLong(label, wire_field, limit)

    @staticmethod
    def find_existing(db: Session, participant_id: UUID, whiskey_id: UUID):
        return db.query(Score).filter(
            Score.participant_id == participant_id,
            Score.whiskey_id == whiskey_id
        ).first()

    @staticmethod
    @transactional
    def _lock_score(db: Session, participant_id: UUID, token_session_id: UUID, data: ScoreSubmit) -> Score:
        """
        在場次資料列鎖內寫入分數

        流程（順序決定呼叫者看到的錯誤）：
        1. 參與者屬於此場次（token 與 body 一致）
        2. 酒款屬於此場次
        3. (participant, whiskey) 尚無分數
        4. 場次進行中
        5. 寫入、推進參與者自己的酒款 index、記錄 SCORE_LOCKED
        """
        participant = db.query(Participant).filter(Participant.id == participant_id).first()
        if (
            participant is None
            or participant.session_id != data.session_id
            or token_session_id != data.session_id
        ):
            raise NotSessionParticipant()

        session = with_session_lock(data.session_id, db).first()
        if not session:
            raise SessionNotFound(data.session_id)

        whiskey = db.query(Whiskey).filter(
            Whiskey.id == data.whiskey_id,
            Whiskey.session_id == data.session_id
        ).first()
        if not whiskey:
            raise WhiskeyNotFound(data.whiskey_id)

        if ScoreManager.find_existing(db, participant_id, data.whiskey_id):
            raise ScoreAlreadySubmitted()

        if session.status != SessionStatus.ACTIVE:
            raise SessionNotActive()

        score = Score(
            session_id=data.session_id,
            whiskey_id=data.whiskey_id,
            participant_id=participant_id,
            nose=data.nose,
            palate=data.palate,
            finish=data.finish,
            overall=data.overall,
            total_score=calculate_total_score(data.nose, data.palate, data.finish, data.overall),
            nose_notes=data.nose_notes,
            palate_notes=data.palate_notes,
            finish_notes=data.finish_notes,
            general_notes=data.general_notes,
            identity_guess=data.identity_guess,
            locked_at=datetime.now(timezone.utc),
        )
        db.add(score)
        db.flush()

        participant.current_whiskey_index += 1

        db.add(EventLog(
            session_id=data.session_id,
            event_type="SCORE_LOCKED",
            data={
                "scoreId": str(score.id),
                "participantId": str(participant_id),
                "whiskeyId": str(data.whiskey_id),
            }
        ))
        db.flush()

        logger.info(
            f"Score {score.id} locked: participant {participant_id}, "
            f"whiskey #{whiskey.display_number}, total {score.total_score}"
        )
        return score

    @staticmethod
    def submit(db: Session, broadcaster: Broadcaster, identity: Identity, data: ScoreSubmit) -> Score:
        """
        鎖定參與者對單一酒款的分數

        返回：
            已寫入的 Score

        異常：
            InvalidSubscore / NotesTooLong (422)
            NotSessionParticipant (403)
            WhiskeyNotFound (404)
            ScoreAlreadySubmitted / SessionNotActive (409)
        """
        ScoreManager.validate_submission(data)

        if identity.participant_id is None:
            raise AuthenticationError("Participant token required")

        with session_mutex(data.session_id):
            try:
                score = ScoreManager._lock_score(db, identity.participant_id, identity.session_id, data)
            except IntegrityError:
                # 輸給事先檢查看不到的並發寫入
                logger.warning(
                    f"Duplicate score insert rejected by constraint: "
                    f"participant {identity.participant_id}, whiskey {data.whiskey_id}"
                )
                raise ScoreAlreadySubmitted()

            participant_name = db.query(Participant.display_name).filter(
                Participant.id == identity.participant_id
            ).scalar()
            publish_safely(broadcaster, session_room(data.session_id), Event.SCORE_LOCKED, {
                "participantId": str(identity.participant_id),
                "whiskeyId": str(data.whiskey_id),
                "participantName": participant_name or "",
            })

        return score

    # ============ 結果 ============

    @staticmethod
    def get_session_results(db: Session, session_id: UUID) -> SessionResults:
        """
        揭曉後可取得的彙總結果

        每支酒：身分、總分平均、各項平均、所有分數與參與者名稱、dense ranking。

        異常：
            SessionNotFound (404)
            ResultsNotRevealed (403)
        """
        session = db.query(TastingSession).filter(TastingSession.id == session_id).first()
        if not session:
            raise SessionNotFound(session_id)
        if not session.is_revealed:
            raise ResultsNotRevealed()

        participants = db.query(Participant).filter(Participant.session_id == session_id).all()
        names = {p.id: p.display_name for p in participants}

        scores_by_whiskey: Dict[UUID, List[Score]] = {}
        for score in db.query(Score).filter(Score.session_id == session_id).all():
            scores_by_whiskey.setdefault(score.whiskey_id, []).append(score)

        entries: List[Dict[str, Any]] = []
        for whiskey in session.whiskeys:
            scores = scores_by_whiskey.get(whiskey.id, [])
            entries.append({
                "whiskey": serializers.whiskey_view(whiskey, reveal=True).model_dump(by_alias=True),
                "averageScore": average([s.total_score for s in scores]),
                "categoryAverages": category_averages(scores),
                "scores": serializers.score_views(scores, names),
                "ranking": 0,
            })

        return SessionResults(
            session=serializers.session_summary(session),
            results=[WhiskeyResult.model_validate(entry) for entry in rank_results(entries)],
            participant_count=len(participants),
        )

    @staticmethod
    def get_my_scores(db: Session, identity: Identity, session_id: UUID) -> List[ScoreView]:
        """
        呼叫者在單一場次的自己的分數

        注意：永遠允許，品飲者看自己的分數不受盲品限制。
        """
        if identity.participant_id is None:
            raise AuthenticationError("Participant token required")

        participant = db.query(Participant).filter(Participant.id == identity.participant_id).first()
        if participant is None or participant.session_id != session_id:
            raise NotSessionParticipant()

        scores = db.query(Score).filter(
            Score.participant_id == participant.id,
            Score.session_id == session_id
        ).order_by(Score.locked_at).all()
        return [serializers.score_view(s, participant.display_name) for s in scores]

    # ============ 分享 ============

    @staticmethod
    @transactional
    def toggle_visibility(db: Session, user_id: UUID, score_id: UUID, is_public: bool) -> Score:
        """
        公開或隱藏自己的分數

        異常：
            ScoreNotFound (404)
            NotScoreOwner (403): 分數的參與者未綁定此用戶
            ScoresNotShareable (409): 場次尚未揭曉
        """
        score = db.query(Score).filter(Score.id == score_id).with_for_update().first()
        if not score:
            raise ScoreNotFound(score_id)

        if score.participant is None or score.participant.user_id != user_id:
            raise NotScoreOwner()

        if not score.session.is_revealed:
            raise ScoresNotShareable()

        score.is_public = bool(is_public)
        db.flush()

        logger.info(f"Score {score_id} visibility set to {'public' if score.is_public else 'private'}")
        return score

    @staticmethod
    def get_shareable_scores(db: Session, user_id: UUID) -> List[ShareableScore]:
        """用戶在已結束場次中鎖定的分數，含酒款身分"""
        rows = db.query(Score).join(
            Participant, Score.participant_id == Participant.id
        ).join(
            TastingSession, Score.session_id == TastingSession.id
        ).filter(
            Participant.user_id == user_id,
            TastingSession.status == SessionStatus.COMPLETED
        ).order_by(Score.locked_at.desc()).all()

        return [
            ShareableScore(
                id=score.id,
                whiskey=serializers.whiskey_view(score.whiskey, reveal=True),
                session=serializers.session_summary(score.session),
                scores={
                    "nose": score.nose,
                    "palate": score.palate,
                    "finish": score.finish,
                    "overall": score.overall,
                    "total": score.total_score,
                },
                notes={
                    "nose": score.nose_notes,
                    "palate": score.palate_notes,
                    "finish": score.finish_notes,
                    "general": score.general_notes,
                },
                is_public=score.is_public,
                locked_at=score.locked_at,
            )
            for score in rows
        ]

"""
序列化服務：ORM 資料列 -> 回應 schema

純函數。是否顯示酒款身分由呼叫者決定（揭曉控管在各 manager 中），這裡只依旗標處理。
"""
from typing import Dict, Iterable, List, Optional

from models import TastingSession, Whiskey, Participant, Score
from schemas import (
    WhiskeyView,
    ParticipantView,
    ParticipantDetail,
    ScoreView,
    SessionSummary,
    SessionListItem,
)

IDENTITY_FIELDS = ("name", "distillery", "age", "proof", "price", "mashbill", "region")


def whiskey_view(whiskey: Whiskey, reveal: bool) -> WhiskeyView:
    data = {
        "id": whiskey.id,
        "display_number": whiskey.display_number,
        "pour_size": whiskey.pour_size,
    }
    if reveal:
        for field in IDENTITY_FIELDS:
            data[field] = getattr(whiskey, field)
    return WhiskeyView(**data)


def participant_view(participant: Participant) -> ParticipantView:
    return ParticipantView(
        id=participant.id,
        display_name=participant.display_name,
        status=participant.status,
        is_ready=participant.is_ready,
        current_whiskey_index=participant.current_whiskey_index,
    )


def participant_detail(participant: Participant) -> ParticipantDetail:
    return ParticipantDetail(
        id=participant.id,
        session_id=participant.session_id,
        user_id=participant.user_id,
        display_name=participant.display_name,
        status=participant.status,
        is_ready=participant.is_ready,
        current_whiskey_index=participant.current_whiskey_index,
        joined_at=participant.joined_at,
    )


def score_view(score: Score, participant_name: Optional[str] = None) -> ScoreView:
    return ScoreView(
        id=score.id,
        session_id=score.session_id,
        whiskey_id=score.whiskey_id,
        participant_id=score.participant_id,
        participant_name=participant_name,
        nose=score.nose,
        palate=score.palate,
        finish=score.finish,
        overall=score.overall,
        total_score=score.total_score,
        nose_notes=score.nose_notes,
        palate_notes=score.palate_notes,
        finish_notes=score.finish_notes,
        general_notes=score.general_notes,
        identity_guess=score.identity_guess,
        is_public=score.is_public,
        locked_at=score.locked_at,
    )


def score_views(scores: Iterable[Score], names: Dict) -> List[ScoreView]:
    """names: participant id -> 顯示名稱"""
    return [score_view(score, names.get(score.participant_id)) for score in scores]


def session_summary(session: TastingSession) -> SessionSummary:
    return SessionSummary(
        id=session.id,
        name=session.name,
        theme=session.theme,
        status=session.status,
    )


def session_list_item(session: TastingSession) -> SessionListItem:
    return SessionListItem(
        id=session.id,
        name=session.name,
        theme=session.theme,
        status=session.status,
        invite_code=session.invite_code,
        scheduled_at=session.scheduled_at,
        created_at=session.created_at,
    )

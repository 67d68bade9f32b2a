"""
Request / response schemas

Python 端使用 snake_case，傳輸的 JSON 使用 camelCase（inviteCode、
displayName ...），輸入時兩種寫法都接受
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, StrictBool
from pydantic.alias_generators import to_camel

from models import SessionStatus, TastingPhase, WhiskeyTheme, PourSize, ParticipantStatus


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MessageResponse(CamelModel):
    message: str


# ============ Whiskey ============

class WhiskeyCreate(CamelModel):
    name: str = Field(..., min_length=1, max_length=200)
    distillery: str = Field(..., min_length=1, max_length=200)
    age: Optional[int] = Field(None, ge=0)
    proof: float = Field(..., gt=0)
    price: Optional[float] = Field(None, ge=0)
    mashbill: Optional[str] = Field(None, max_length=200)
    region: Optional[str] = Field(None, max_length=100)
    pour_size: PourSize = PourSize.HALF_OUNCE


class WhiskeyUpdate(CamelModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    distillery: Optional[str] = Field(None, min_length=1, max_length=200)
    age: Optional[int] = Field(None, ge=0)
    proof: Optional[float] = Field(None, gt=0)
    price: Optional[float] = Field(None, ge=0)
    mashbill: Optional[str] = Field(None, max_length=200)
    region: Optional[str] = Field(None, max_length=100)
    pour_size: Optional[PourSize] = None


class WhiskeyView(CamelModel):
    """揭曉前身分欄位為 None（主持人除外）"""
    id: UUID
    display_number: int
    pour_size: PourSize
    name: Optional[str] = None
    distillery: Optional[str] = None
    age: Optional[int] = None
    proof: Optional[float] = None
    price: Optional[float] = None
    mashbill: Optional[str] = None
    region: Optional[str] = None


# ============ Session ============

class SessionCreate(CamelModel):
    name: str = Field(..., min_length=1, max_length=100)
    host_name: str = Field(..., min_length=1, max_length=100)
    theme: WhiskeyTheme
    custom_theme: Optional[str] = Field(None, max_length=50)
    proof_min: Optional[int] = Field(None, ge=0)
    proof_max: Optional[int] = Field(None, ge=0)
    max_participants: Optional[int] = Field(None, ge=1)
    scheduled_at: Optional[datetime] = None
    draft: bool = False
    whiskeys: List[WhiskeyCreate] = []


class SessionCreateResponse(CamelModel):
    id: UUID
    invite_code: str
    participant_id: UUID
    participant_token: str


class SessionSummary(CamelModel):
    id: UUID
    name: str
    theme: WhiskeyTheme
    status: SessionStatus


class ParticipantView(CamelModel):
    id: UUID
    display_name: str
    status: ParticipantStatus
    is_ready: bool
    current_whiskey_index: int


class SessionDetail(CamelModel):
    id: UUID
    name: str
    theme: WhiskeyTheme
    custom_theme: Optional[str] = None
    proof_min: Optional[int] = None
    proof_max: Optional[int] = None
    scheduled_at: datetime
    status: SessionStatus
    current_phase: TastingPhase
    current_whiskey_index: int
    moderator_id: UUID
    invite_code: str
    max_participants: Optional[int] = None
    created_at: datetime
    updated_at: datetime
    is_moderator: bool = False
    current_participant_id: Optional[UUID] = None
    whiskeys: List[WhiskeyView] = []
    participants: List[ParticipantView] = []


class SessionListItem(CamelModel):
    id: UUID
    name: str
    theme: WhiskeyTheme
    status: SessionStatus
    invite_code: str
    scheduled_at: datetime
    created_at: datetime


class JoinRequest(CamelModel):
    invite_code: str = Field(..., min_length=1, max_length=20)
    display_name: str = Field(..., min_length=1, max_length=100)


class JoinResponse(CamelModel):
    session_id: UUID
    participant_id: UUID
    participant_token: str
    is_moderator: bool
    session: SessionSummary


class AdvanceRequest(CamelModel):
    phase: Optional[TastingPhase] = None
    whiskey_index: Optional[int] = None


class AdvanceResponse(CamelModel):
    phase: TastingPhase
    whiskey_index: int


# ============ Score ============

class ScoreSubmit(CamelModel):
    """
    子分數保留原始值（不做 int 轉型），由 score manager 檢查範圍，
    因此 true、"7"、7.5 都會被拒絕，且每個欄位有自己的錯誤訊息
    （"nose must be an integer between 1 and 10"）
    """
    session_id: UUID
    whiskey_id: UUID
    nose: Any = None
    palate: Any = None
    finish: Any = None
    overall: Any = None
    nose_notes: Optional[str] = None
    palate_notes: Optional[str] = None
    finish_notes: Optional[str] = None
    general_notes: Optional[str] = None
    identity_guess: Optional[str] = None


class ScoreSubmitResponse(CamelModel):
    id: UUID
    total_score: float
    locked_at: datetime


class ScoreView(CamelModel):
    id: UUID
    session_id: UUID
    whiskey_id: UUID
    participant_id: UUID
    participant_name: Optional[str] = None
    nose: int
    palate: int
    finish: int
    overall: int
    total_score: float
    nose_notes: Optional[str] = None
    palate_notes: Optional[str] = None
    finish_notes: Optional[str] = None
    general_notes: Optional[str] = None
    identity_guess: Optional[str] = None
    is_public: bool
    locked_at: datetime


class RevealResponse(CamelModel):
    whiskeys: List[WhiskeyView]
    scores: List[ScoreView]


class CategoryAverages(CamelModel):
    nose: float
    palate: float
    finish: float
    overall: float


class WhiskeyResult(CamelModel):
    whiskey: WhiskeyView
    average_score: float
    category_averages: CategoryAverages
    scores: List[ScoreView]
    ranking: int


class SessionResults(CamelModel):
    session: SessionSummary
    results: List[WhiskeyResult]
    participant_count: int


class VisibilityUpdate(CamelModel):
    is_public: StrictBool


class VisibilityResponse(CamelModel):
    id: UUID
    is_public: bool


class ShareableScore(CamelModel):
    id: UUID
    whiskey: WhiskeyView
    session: SessionSummary
    scores: Dict[str, float]
    notes: Dict[str, Optional[str]]
    is_public: bool
    locked_at: datetime


# ============ Participant ============

class ParticipantStatusUpdate(CamelModel):
    status: ParticipantStatus


class ParticipantDetail(CamelModel):
    id: UUID
    session_id: UUID
    user_id: Optional[UUID] = None
    display_name: str
    status: ParticipantStatus
    is_ready: bool
    current_whiskey_index: int
    joined_at: datetime

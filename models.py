"""
SQLAlchemy models

關聯的 cascade 依照品飲生命週期設計：
session -> whiskeys / participants / scores / event logs，participant -> scores
"""
import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import relationship

from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class SessionStatus(str, enum.Enum):
    DRAFT = "draft"
    WAITING = "waiting"
    ACTIVE = "active"
    PAUSED = "paused"
    REVEAL = "reveal"
    COMPLETED = "completed"


class TastingPhase(str, enum.Enum):
    POUR = "pour"
    NOSING = "nosing"
    TASTING_NEAT = "tasting-neat"
    TASTING_WATER = "tasting-water"
    SCORING = "scoring"
    PALATE_RESET = "palate-reset"


class WhiskeyTheme(str, enum.Enum):
    BOURBON = "bourbon"
    RYE = "rye"
    SCOTCH_SINGLE_MALT = "scotch-single-malt"
    SCOTCH_BLENDED = "scotch-blended"
    IRISH = "irish"
    JAPANESE = "japanese"
    WORLD = "world"
    CUSTOM = "custom"


class PourSize(str, enum.Enum):
    HALF_OUNCE = "0.5oz"
    ONE_OUNCE = "1oz"


class ParticipantStatus(str, enum.Enum):
    WAITING = "waiting"
    TASTING = "tasting"
    COMPLETED = "completed"


# 這些狀態下才公開酒款身分與分數
REVEALED_STATUSES = (SessionStatus.REVEAL, SessionStatus.COMPLETED)


class User(Base):
    """註冊帳號（由認證服務管理，這裡只做關聯）"""
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String(254), nullable=False, unique=True)
    display_name = Column(String(100), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class TastingSession(Base):
    __tablename__ = "sessions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(100), nullable=False)
    theme = Column(Enum(WhiskeyTheme, values_callable=_enum_values, native_enum=False), nullable=False)
    custom_theme = Column(String(50), nullable=True)
    proof_min = Column(Integer, nullable=True)
    proof_max = Column(Integer, nullable=True)
    scheduled_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    status = Column(
        Enum(SessionStatus, values_callable=_enum_values, native_enum=False),
        nullable=False,
        default=SessionStatus.WAITING
    )
    current_phase = Column(
        Enum(TastingPhase, values_callable=_enum_values, native_enum=False),
        nullable=False,
        default=TastingPhase.POUR
    )
    current_whiskey_index = Column(Integer, nullable=False, default=0)
    moderator_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    invite_code = Column(String(6), nullable=False, unique=True, index=True)
    max_participants = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    whiskeys = relationship(
        "Whiskey",
        back_populates="session",
        order_by="Whiskey.display_number",
        cascade="all, delete"
    )
    participants = relationship(
        "Participant",
        back_populates="session",
        order_by="Participant.joined_at",
        cascade="all, delete"
    )
    scores = relationship("Score", back_populates="session", cascade="all, delete")
    events = relationship("EventLog", back_populates="session", cascade="all, delete")

    @property
    def is_revealed(self) -> bool:
        return self.status in REVEALED_STATUSES


class Whiskey(Base):
    __tablename__ = "whiskeys"
    __table_args__ = (
        UniqueConstraint("session_id", "display_number", name="uq_whiskey_display_number"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id = Column(Uuid, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    display_number = Column(Integer, nullable=False)
    name = Column(String(200), nullable=False)
    distillery = Column(String(200), nullable=False)
    age = Column(Integer, nullable=True)
    proof = Column(Float, nullable=False)
    price = Column(Float, nullable=True)
    mashbill = Column(String(200), nullable=True)
    region = Column(String(100), nullable=True)
    pour_size = Column(
        Enum(PourSize, values_callable=_enum_values, native_enum=False),
        nullable=False,
        default=PourSize.HALF_OUNCE
    )

    session = relationship("TastingSession", back_populates="whiskeys")
    scores = relationship("Score", back_populates="whiskey", cascade="all, delete")


class Participant(Base):
    __tablename__ = "participants"
    # 訪客的 user_id 為 NULL 不會衝突，註冊使用者每個 session 只有一個座位
    __table_args__ = (
        UniqueConstraint("session_id", "user_id", name="uq_participant_session_user"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id = Column(Uuid, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=True, index=True)
    display_name = Column(String(100), nullable=False)
    status = Column(
        Enum(ParticipantStatus, values_callable=_enum_values, native_enum=False),
        nullable=False,
        default=ParticipantStatus.WAITING
    )
    is_ready = Column(Boolean, nullable=False, default=False)
    current_whiskey_index = Column(Integer, nullable=False, default=0)
    joined_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    session = relationship("TastingSession", back_populates="participants")
    scores = relationship("Score", back_populates="participant", cascade="all, delete")


class Score(Base):
    __tablename__ = "scores"
    # 防止並發重複提交的最終防線
    __table_args__ = (
        UniqueConstraint("participant_id", "whiskey_id", name="uq_score_participant_whiskey"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id = Column(Uuid, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    whiskey_id = Column(Uuid, ForeignKey("whiskeys.id", ondelete="CASCADE"), nullable=False, index=True)
    participant_id = Column(Uuid, ForeignKey("participants.id", ondelete="CASCADE"), nullable=False, index=True)
    nose = Column(Integer, nullable=False)
    palate = Column(Integer, nullable=False)
    finish = Column(Integer, nullable=False)
    overall = Column(Integer, nullable=False)
    total_score = Column(Float, nullable=False)
    nose_notes = Column(Text, nullable=True)
    palate_notes = Column(Text, nullable=True)
    finish_notes = Column(Text, nullable=True)
    general_notes = Column(Text, nullable=True)
    identity_guess = Column(Text, nullable=True)
    is_public = Column(Boolean, nullable=False, default=False)
    locked_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    session = relationship("TastingSession", back_populates="scores")
    whiskey = relationship("Whiskey", back_populates="scores")
    participant = relationship("Participant", back_populates="scores")


class EventLog(Base):
    """生命週期事件紀錄，與狀態變更寫在同一個 transaction"""
    __tablename__ = "event_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(Uuid, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)
    data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    session = relationship("TastingSession", back_populates="events")

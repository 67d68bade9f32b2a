"""
即時事件契約

事件集合是封閉的：每個名稱對應唯一的 payload model，
build_message() 拒絕對應表以外的事件。客戶端收到的格式：

    {"event": "<name>", "data": {...payload...}}
"""
import enum
from typing import Any, Dict, List, Optional, Type, Union

from pydantic import BaseModel, ConfigDict

from core.exceptions import UnknownEvent


class Event(str, enum.Enum):
    SESSION_STARTED = "session:started"
    SESSION_ADVANCED = "session:advanced"
    SESSION_PAUSED = "session:paused"
    SESSION_RESUMED = "session:resumed"
    SESSION_REVEAL = "session:reveal"
    SESSION_ENDED = "session:ended"
    PARTICIPANT_JOINED = "participant:joined"
    PARTICIPANT_LEFT = "participant:left"
    PARTICIPANT_READY = "participant:ready"
    PARTICIPANT_STATUS = "participant:status"
    PARTICIPANT_CONNECTED = "participant:connected"
    PARTICIPANT_DISCONNECTED = "participant:disconnected"
    PARTICIPANT_TYPING = "participant:typing"
    SCORE_LOCKED = "score:locked"


class EventPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")


class SessionRef(EventPayload):
    sessionId: str


class SessionAdvanced(EventPayload):
    sessionId: str
    phase: str
    whiskeyIndex: int


class SessionRevealed(EventPayload):
    sessionId: str
    whiskeys: List[Dict[str, Any]]
    scores: List[Dict[str, Any]]


class ParticipantJoined(EventPayload):
    id: str
    displayName: str
    status: str
    isReady: bool


class ParticipantRef(EventPayload):
    participantId: str
    displayName: str


class ParticipantStatusChanged(EventPayload):
    participantId: str
    status: str


class ParticipantConnection(EventPayload):
    participantId: Optional[str] = None


class ParticipantTyping(EventPayload):
    participantId: str


class ScoreLocked(EventPayload):
    # 不含分數：其他參與者仍在盲品
    participantId: str
    whiskeyId: str
    participantName: str


EVENT_PAYLOADS: Dict[Event, Type[EventPayload]] = {
    Event.SESSION_STARTED: SessionRef,
    Event.SESSION_ADVANCED: SessionAdvanced,
    Event.SESSION_PAUSED: SessionRef,
    Event.SESSION_RESUMED: SessionRef,
    Event.SESSION_REVEAL: SessionRevealed,
    Event.SESSION_ENDED: SessionRef,
    Event.PARTICIPANT_JOINED: ParticipantJoined,
    Event.PARTICIPANT_LEFT: ParticipantRef,
    Event.PARTICIPANT_READY: ParticipantRef,
    Event.PARTICIPANT_STATUS: ParticipantStatusChanged,
    Event.PARTICIPANT_CONNECTED: ParticipantConnection,
    Event.PARTICIPANT_DISCONNECTED: ParticipantConnection,
    Event.PARTICIPANT_TYPING: ParticipantTyping,
    Event.SCORE_LOCKED: ScoreLocked,
}


def session_room(session_id) -> str:
    return f"session:{session_id}"


def user_room(user_id) -> str:
    return f"user:{user_id}"


def resolve_event(name: Union[str, Event]) -> Event:
    try:
        return Event(name)
    except ValueError:
        raise UnknownEvent(name)


def build_message(name: Union[str, Event], payload: Union[Dict[str, Any], EventPayload]) -> Dict[str, Any]:
    """
    依事件的 model 驗證 payload，並包裝成傳輸格式

    返回：
        {"event": 名稱, "data": payload}

    異常：
        UnknownEvent: 名稱不在事件集合中
        pydantic.ValidationError: payload 與事件 model 不符
    """
    event = resolve_event(name)
    model = EVENT_PAYLOADS[event]
    if isinstance(payload, EventPayload):
        if not isinstance(payload, model):
            raise TypeError(f"{event.value} expects {model.__name__}, got {type(payload).__name__}")
        data = payload
    else:
        data = model.model_validate(payload)
    return {"event": event.value, "data": data.model_dump(mode="json")}

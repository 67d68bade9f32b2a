"""
自定義異常類別

集中管理所有業務邏輯異常，方便 API 層統一處理。
每個具體異常都繼承自一個分類基類，API 層依分類對應 HTTP 狀態碼：

- TastingValidationError -> 422
- AuthenticationError    -> 401
- AuthorizationError     -> 403
- NotFoundError          -> 404
- ConflictError          -> 409
- CapacityError          -> 409
"""


class TastingException(Exception):
    """所有品飲異常的基類"""
    pass


# ============ 分類基類 ============

class TastingValidationError(TastingException):
    """輸入格式錯誤或超出範圍"""

    def __init__(self, message, field=None):
        self.field = field
        super().__init__(message)


class AuthenticationError(TastingException):
    """憑證缺失、無效或過期"""
    pass


class AuthorizationError(TastingException):
    """呼叫者缺少所需角色或成員身分"""
    pass


class NotFoundError(TastingException):
    """資源不存在"""
    pass


class ConflictError(TastingException):
    """請求格式正確，但目前狀態不允許"""
    pass


class CapacityError(TastingException):
    """名額已滿"""
    pass


# ============ Session 相關異常 ============

class SessionNotFound(NotFoundError):
    """場次不存在"""
    def __init__(self, session_id):
        self.session_id = session_id
        super().__init__("Session not found")


class InvalidStateTransition(ConflictError):
    """目前狀態不允許此轉換"""
    pass


class FlightFinished(ConflictError):
    """最後一支酒之後仍要求單步前進"""

    def __init__(self):
        super().__init__("All whiskeys have been tasted")


class SessionNotActive(ConflictError):
    """場次不在進行中"""
    def __init__(self):
        super().__init__("Session is not active")


class SessionEnded(ConflictError):
    """場次已結束"""
    def __init__(self):
        super().__init__("Session has ended")


class SessionAlreadyStarted(ConflictError):
    """場次已開始，酒款不可再編輯"""
    pass


class NotModerator(AuthorizationError):
    """非主持人"""
    def __init__(self, action):
        self.action = action
        super().__init__(f"Only the moderator can {action}")


# ============ Participant 相關異常 ============

class ParticipantNotFound(NotFoundError):
    """參與者不存在"""
    def __init__(self, participant_id):
        self.participant_id = participant_id
        super().__init__("Participant not found")


class SessionFull(CapacityError):
    """場次座位已滿（主持人座位也計入）"""
    def __init__(self):
        super().__init__("Session is full")


class NotSessionParticipant(AuthorizationError):
    """呼叫者不是此場次的參與者"""
    def __init__(self):
        super().__init__("You are not a participant in this session")


# ============ Whiskey 相關異常 ============

class WhiskeyNotFound(NotFoundError):
    """酒款不存在或不屬於此場次"""
    def __init__(self, whiskey_id):
        self.whiskey_id = whiskey_id
        super().__init__("Whiskey not found in this session")


# ============ Score 相關異常 ============

class InvalidSubscore(TastingValidationError):
    """子分數不是 1 到 10 的整數"""
    def __init__(self, field):
        super().__init__(f"{field} must be an integer between 1 and 10", field=field)


class NotesTooLong(TastingValidationError):
    """筆記超過長度上限"""
    def __init__(self, label, field, limit):
        super().__init__(f"{label} must be {limit} characters or less", field=field)


class ScoreAlreadySubmitted(ConflictError):
    """同一參與者已為此酒款鎖定分數"""
    def __init__(self):
        super().__init__("Score already submitted for this whiskey")


class ScoreNotFound(NotFoundError):
    """分數不存在"""
    def __init__(self, score_id):
        self.score_id = score_id
        super().__init__("Score not found")


class ResultsNotRevealed(AuthorizationError):
    """結果尚未揭曉"""
    def __init__(self):
        super().__init__("Scores are not yet revealed")


class NotScoreOwner(AuthorizationError):
    """非分數擁有者"""
    def __init__(self):
        super().__init__("You do not own this score")


class ScoresNotShareable(ConflictError):
    """揭曉前不可分享分數"""
    def __init__(self):
        super().__init__("Scores can only be shared after the reveal phase")


# ============ Realtime 相關異常 ============

class UnknownEvent(TastingException):
    """事件名稱不在已公開的事件集合中"""

    def __init__(self, name):
        self.name = name
        super().__init__(f"Unknown realtime event: {name}")

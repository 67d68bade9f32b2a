"""
並發控制

修改場次時兩層鎖一起使用：

1. session_mutex()：每個 session id 一把行程內鎖。同步端點在 FastAPI 的 thread pool
   中執行，同一場次的兩個請求可能競爭；mutex 將它們序列化，並讓廣播順序等於 commit 順序
2. with_session_lock()：對場次資料列 SELECT ... FOR UPDATE，供多個行程共用的資料庫
   （PostgreSQL）使用，SQLite 會忽略

上鎖順序：先 mutex，再於交易中取得資料列鎖。
"""
import threading
from contextlib import contextmanager
from typing import Dict
from uuid import UUID

from sqlalchemy.orm import Session, Query

from models import TastingSession


class SessionMutexRegistry:
    """
    為每個 session id 發放一把 threading.Lock

    每個項目都有參考計數：checkout() 加一，release() 減一，
    只有在沒有人持有或等待時才移除項目，因此同一場次的呼叫者一定拿到同一把鎖。

    注意：registry 自己的鎖只保護 dict，取得場次鎖時不會持有它。
    """

    def __init__(self):
        # session id -> [lock, 持有或等待中的呼叫者數量]
        self._entries: Dict[UUID, list] = {}
        self._meta_lock = threading.Lock()

    def checkout(self, session_id: UUID) -> threading.Lock:
        with self._meta_lock:
            entry = self._entries.get(session_id)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._entries[session_id] = entry
            entry[1] += 1
            return entry[0]

    def release(self, session_id: UUID) -> None:
        with self._meta_lock:
            entry = self._entries[session_id]
            entry[1] -= 1
            if entry[1] == 0:
                del self._entries[session_id]

    def __len__(self) -> int:
        return len(self._entries)


_registry = SessionMutexRegistry()


@contextmanager
def session_mutex(session_id: UUID):
    """
    在本行程內序列化同一場次的修改

    使用方式：
        with session_mutex(session_id):
            SessionStateMachine.transition(...)
            broadcaster.publish(...)
    """
    lock = _registry.checkout(session_id)
    try:
        with lock:
            yield
    finally:
        _registry.release(session_id)


def with_session_lock(session_id: UUID, db: Session) -> Query:
    """
    鎖定單一 TastingSession 資料列

    返回：
        Query 物件（呼叫 .first() 取得資料列）

    注意：
        - nowait=False 會等待鎖而不是直接失敗
        - 只在交易中有效（commit 或 rollback 會釋放鎖）
    """
    return db.query(TastingSession).filter(
        TastingSession.id == session_id
    ).with_for_update(nowait=False)

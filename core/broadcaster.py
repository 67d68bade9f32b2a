"""
即時廣播

房間是一般字串（見 core.events.session_room / user_room），
加入房間的每個 WebSocket 都會收到發佈到該房間的訊息。

注意：
1. publish() 可以在執行同步端點的 worker thread 中呼叫，它只會排入 event loop
2. 單一 dispatcher task 依 FIFO 處理佇列，客戶端看到的順序等於 publish() 的呼叫順序
   （session mutex 保證此順序等於 commit 順序）
3. 廣播為盡力而為，傳送失敗只記錄 log 並移除失效連線
"""
import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Set, Union

from fastapi import WebSocket

from core.events import Event, EventPayload, build_message

logger = logging.getLogger(__name__)


class Broadcaster:
    """WebSocket 房間註冊表與事件分派器"""

    def __init__(self):
        self.rooms: Dict[str, List[WebSocket]] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._dispatcher: Optional[asyncio.Task] = None

    # ============ 生命週期 ============

    async def start(self) -> None:
        if self._dispatcher is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._dispatcher = self._loop.create_task(self._dispatch())
        logger.info("Broadcast dispatcher started")

    async def stop(self) -> None:
        if self._dispatcher is None:
            return
        self._dispatcher.cancel()
        try:
            await self._dispatcher
        except asyncio.CancelledError:
            pass
        self._dispatcher = None
        self._queue = None
        self._loop = None
        logger.info("Broadcast dispatcher stopped")

    @property
    def running(self) -> bool:
        return self._dispatcher is not None and not self._dispatcher.done()

    async def drain(self) -> None:
        """等待所有已發佈的訊息送達"""
        if self._queue is not None:
            # 先讓尚未執行的 call_soon_threadsafe 放入佇列
            await asyncio.sleep(0)
            await self._queue.join()

    # ============ 連線管理 ============

    async def connect(self, websocket: WebSocket, rooms: List[str]) -> None:
        await websocket.accept()
        for room in rooms:
            self.join(websocket, room)

    def join(self, websocket: WebSocket, room: str) -> None:
        connections = self.rooms.setdefault(room, [])
        if websocket not in connections:
            connections.append(websocket)
            logger.info(f"Socket joined {room}, connections: {len(connections)}")

    def disconnect(self, websocket: WebSocket) -> Set[str]:
        """將 socket 從所有房間移除，返回離開的房間"""
        left = set()
        for room, connections in list(self.rooms.items()):
            if websocket in connections:
                connections.remove(websocket)
                left.add(room)
            if not connections:
                del self.rooms[room]
        return left

    def connection_count(self, room: str) -> int:
        return len(self.rooms.get(room, []))

    async def send_personal_message(self, message: Dict[str, Any], websocket: WebSocket) -> None:
        try:
            await websocket.send_text(json.dumps(message, ensure_ascii=False))
        except Exception as e:
            logger.warning(f"Failed to send personal message: {e}")

    # ============ 發佈 ============

    def publish(
        self,
        room: str,
        event: Union[str, Event],
        payload: Union[Dict[str, Any], EventPayload],
        exclude: Optional[WebSocket] = None
    ) -> bool:
        """
        將事件排入佇列，發送給房間內每個 socket

        參數：
            room: session_room(...) 或 user_room(...)
            event: core.events.Event 之一
            payload: 符合事件的 dict 或 payload model
            exclude: 不接收此事件的 socket（通常是發送者）

        返回：
            True 表示已排入，False 表示被丟棄（dispatcher 未執行）

        異常：
            UnknownEvent / pydantic.ValidationError: 事件格式錯誤，屬於程式錯誤而非傳送失敗
        """
        message = build_message(event, payload)

        if not self.running or self._loop is None or self._loop.is_closed():
            logger.warning(f"Broadcast dispatcher not running, dropped {message['event']} for {room}")
            return False

        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, (room, message, exclude))
        except RuntimeError as e:
            logger.warning(f"Failed to queue {message['event']} for {room}: {e}")
            return False
        return True

    async def _dispatch(self) -> None:
        while True:
            room, message, exclude = await self._queue.get()
            try:
                await self.broadcast_to_room(room, message, exclude)
            except Exception as e:
                logger.error(f"Broadcast of {message.get('event')} to {room} failed: {e}", exc_info=True)
            finally:
                self._queue.task_done()

    async def broadcast_to_room(
        self,
        room: str,
        message: Dict[str, Any],
        exclude: Optional[WebSocket] = None
    ) -> int:
        """立即發送給房間內每個 socket，返回成功送達數"""
        connections = [c for c in self.rooms.get(room, []) if c is not exclude]
        if not connections:
            logger.debug(f"No connections in {room}, skipped {message.get('event')}")
            return 0

        message_text = json.dumps(message, ensure_ascii=False)
        failed_connections = []
        success_count = 0

        for connection in connections:
            try:
                await connection.send_text(message_text)
                success_count += 1
            except Exception as e:
                logger.warning(f"Send to {room} failed: {e}")
                failed_connections.append(connection)

        for failed_connection in failed_connections:
            self.disconnect(failed_connection)

        if failed_connections:
            logger.info(f"Removed {len(failed_connections)} dead connections from {room}")

        return success_count


def publish_safely(
    target: Broadcaster,
    room: str,
    event: Union[str, Event],
    payload: Union[Dict[str, Any], EventPayload],
    exclude: Optional[WebSocket] = None
) -> bool:
    """
    給已完成 commit 的呼叫者使用的 publish()

    注意：永不拋出異常，通知失敗不能讓成功的操作變成錯誤回應。
    """
    try:
        return target.publish(room, event, payload, exclude=exclude)
    except Exception as e:
        logger.error(f"Failed to publish {event} to {room}: {e}", exc_info=True)
        return False


broadcaster = Broadcaster()


def get_broadcaster() -> Broadcaster:
    """FastAPI 依賴：返回行程共用的 broadcaster"""
    return broadcaster

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging

from database import Base, engine, settings
from core.broadcaster import broadcaster
from api import sessions, participants, scores, websocket

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # 啟動：建立資料表，啟動即時事件 dispatcher
    Base.metadata.create_all(bind=engine)
    await broadcaster.start()
    yield
    # 關閉：停止推送佇列中的事件
    await broadcaster.stop()


app = FastAPI(
    title="Whiskey Tasting API",
    description="Backend API for synchronized blind whiskey tastings",
    version="1.0.0",
    lifespan=lifespan
)

# CORS 設定
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 註冊路由
app.include_router(sessions.router)
app.include_router(participants.router)
app.include_router(scores.router)
app.include_router(websocket.router)


@app.get("/")
def root():
    return {"message": "Whiskey Tasting API", "status": "ok"}


@app.get("/health")
def health():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)

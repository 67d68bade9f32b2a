from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from pydantic_settings import BaseSettings
from contextlib import contextmanager
from functools import lru_cache, wraps
from typing import List
import logging

from core.exceptions import TastingException

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    database_url: str = "sqlite:///./whiskey_tasting.db"
    log_level: str = "INFO"
    cors_origins: List[str] = ["http://localhost:5173"]

    # Token：參與者 token 由本服務簽發，使用者 token 由認證服務簽發
    jwt_secret: str = "whiskey-tasting-secret-change-in-production"
    jwt_algorithm: str = "HS256"
    participant_token_ttl_minutes: int = 24 * 60
    user_token_ttl_minutes: int = 15

    max_whiskeys_per_session: int = 6
    notes_max_length: int = 2000

    class Config:
        env_file = ".env"


@lru_cache()
def get_settings():
    return Settings()


settings = get_settings()

# SQLite 需要 check_same_thread=False：FastAPI 會在 thread pool 執行同步端點
engine = create_engine(
    settings.database_url,
    connect_args={"check_same_thread": False} if settings.database_url.startswith("sqlite") else {},
    pool_pre_ping=True
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """
    FastAPI dependency：提供 Database Session

    使用 yield 確保 session 在請求結束後會被關閉
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context():
    """
    請求週期之外使用的短生命週期 Session

    使用方式：
        with get_db_context() as db:
            db.query(TastingSession).all()
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def transactional(func):
    """
    Transaction decorator：成功時 commit，任何異常都 rollback

    使用方式：
        @transactional
        def some_business_logic(db: Session, ...):
            session = TastingSession(...)
            db.add(session)
            # 不需要手動 commit，decorator 會處理

    如果函式內發生異常：
        - 自動 rollback
        - 異常會被重新拋出（讓上層轉換）

    注意：
        - db: Session 必須是第一個參數或 `db` keyword
        - 不要在函式內手動 commit
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        db = None
        if args and isinstance(args[0], Session):
            db = args[0]
        elif 'db' in kwargs:
            db = kwargs['db']

        if db is None:
            raise ValueError(
                f"@transactional requires 'db: Session' as first argument, "
                f"but got args={args}, kwargs={kwargs}"
            )

        try:
            result = func(*args, **kwargs)
            db.commit()
            return result
        except TastingException as e:
            # 業務規則拒絕屬於預期情況，不印 stack trace
            logger.info(f"Transaction rejected in {func.__name__}: {e}")
            db.rollback()
            raise
        except Exception as e:
            logger.error(f"Transaction failed in {func.__name__}: {e}", exc_info=True)
            db.rollback()
            raise

    return wrapper

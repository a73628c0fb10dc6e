# app/db/session.py
from typing import Any, Dict

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from app.core.config import settings


def make_engine(db_uri: str) -> Engine:
    """
    Build an engine whose every checkout / connect is bounded in time.
    SQLite gets a busy timeout instead of a pool (tests, local runs).
    """
    if db_uri.startswith("sqlite"):
        return create_engine(
            db_uri,
            connect_args={
                "check_same_thread": False,
                "timeout": settings.DB_CONNECT_TIMEOUT,
            },
            echo=settings.DB_ECHO,
            future=True,
        )

    connect_args: Dict[str, Any] = {}
    if "pymysql" in db_uri:
        connect_args = {
            "connect_timeout": settings.DB_CONNECT_TIMEOUT,
            "read_timeout": settings.DB_CONNECT_TIMEOUT,
            "write_timeout": settings.DB_CONNECT_TIMEOUT,
        }
    return create_engine(
        db_uri,
        pool_pre_ping=True,
        pool_recycle=280,
        pool_size=10,
        max_overflow=20,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        connect_args=connect_args,
        echo=settings.DB_ECHO,
        future=True,
    )


engine: Engine = make_engine(settings.SQLALCHEMY_DATABASE_URI)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    future=True,
)

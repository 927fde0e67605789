# src/infrastructure/db/session.py

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from sqlalchemy.engine import Engine
from contextlib import contextmanager
import socket

from src import config


# -----------------------------
# Database URL
# -----------------------------
def _reachable(host: str, port: int) -> bool:
    try:
        with socket.create_connection((host, port), timeout=0.5):
            return True
    except OSError:
        return False


def _postgres_url() -> str:
    port = next(
        (port for port in config.DB_PORTS if _reachable(config.DB_HOST, port)),
        config.DB_PORTS[0] if config.DB_PORTS else 5432,
    )
    return (
        f"postgresql+psycopg2://{config.DB_USER}:{config.DB_PASSWORD}"
        f"@{config.DB_HOST}:{port}/{config.DB_NAME}"
    )


DATABASE_URL = config.DATABASE_URL or _postgres_url()


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # Request threads, the sweeper and race tests share one file database.
        return {"connect_args": {"check_same_thread": False, "timeout": 30}}
    return {"pool_pre_ping": True}


# -----------------------------
# Engine
# -----------------------------
engine: Engine = create_engine(
    DATABASE_URL,
    echo=False,
    future=True,
    **_engine_options(DATABASE_URL),
)


# -----------------------------
# Base Class for Models
# -----------------------------
class Base(DeclarativeBase):
    pass


# -----------------------------
# Session Factory
# -----------------------------
# Committed bookings and transactions stay readable after the unit of work;
# repositories refresh explicitly after conditional updates.
SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
)


@contextmanager
def get_db_session():
    """Unit of work for background jobs, scripts and tests."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

import os
from pathlib import Path

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

_ROOT = Path(__file__).resolve().parents[1]
load_dotenv(_ROOT / ".env", override=False)


# DATABASE_URL with Heroku-style postgres:// rewritten; a local SQLite file when unset
def _database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if not url:
        return f"sqlite:///{_ROOT / 'sparrow.db'}"
    if url.startswith("postgres://"):
        return "postgresql+psycopg2://" + url[len("postgres://"):]
    return url


DATABASE_URL = _database_url()

# SQLite connections are shared with the worker threads that write turns
_CONNECT_ARGS = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {"connect_timeout": 5}

engine = create_engine(DATABASE_URL, pool_pre_ping=True, connect_args=_CONNECT_ARGS)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


# Create missing tables; schema migrations are managed outside this service
def init_db() -> None:
    import Sparrow.models  # noqa: F401

    Base.metadata.create_all(bind=engine)


# FastAPI dependency: one session per request
def get_db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()

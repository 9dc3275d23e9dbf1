"""Engine and session factory for the supplier token and claim tables."""

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from dropship.config import get_settings


def make_engine(url: str | None):
    if not url:
        raise RuntimeError("DATABASE_URL is not set. Check your .env file.")
    # webhook handlers run on the threadpool, not the creating thread
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args, pool_pre_ping=True)


engine = make_engine(get_settings().database_url)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
Base = declarative_base()

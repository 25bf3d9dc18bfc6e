"""
tasks/base.py
Synchronous database access for Celery tasks (workers run sync, psycopg2).
"""

from functools import lru_cache

from celery import Task
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from config.settings import settings


def sync_database_url(url: str) -> str:
    """postgresql+asyncpg:// -> postgresql+psycopg2://, sqlite+aiosqlite:// -> sqlite://"""
    return url.replace("+asyncpg", "+psycopg2").replace("+aiosqlite", "")


@lru_cache()
def get_sync_session_factory() -> sessionmaker:
    engine = create_engine(sync_database_url(settings.DATABASE_URL), pool_pre_ping=True)
    return sessionmaker(bind=engine, expire_on_commit=False)


class DatabaseTask(Task):
    """Base class that provides a synchronous DB session for tasks."""
    abstract = True

    def get_session(self) -> Session:
        return get_sync_session_factory()()

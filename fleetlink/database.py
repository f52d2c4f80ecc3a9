import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import settings

logger = logging.getLogger(__name__)


def normalize_database_url(url: str) -> str:
    """Rewrite the postgres:// scheme some hosts hand out; SQLAlchemy only accepts postgresql://."""
    if url.startswith("postgres://"):
        return "postgresql://" + url[len("postgres://"):]
    return url


database_url = normalize_database_url(settings.database_url)

engine = create_engine(
    database_url,
    # SQLite connections are shared with the worker thread and the scheduler
    connect_args={"check_same_thread": False} if database_url.startswith("sqlite") else {},
    pool_pre_ping=True,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables():
    """create_all for local runs and tests; deployed databases go through alembic."""
    from . import models  # noqa: F401

    logger.info(f"Ensuring tables exist on {database_url.split('@')[-1][:40]}")
    Base.metadata.create_all(bind=engine)

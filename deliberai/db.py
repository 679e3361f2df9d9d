from sqlmodel import create_engine, SQLModel, Session
from sqlalchemy.engine import Engine
import logging

from deliberai.core.config import settings

logger = logging.getLogger(__name__)


def build_engine(database_url: str) -> Engine:
    """Create the engine; Postgres gets serverless-friendly pool settings."""
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            echo=False,
            connect_args={"check_same_thread": False},
        )

    return create_engine(
        database_url,
        echo=False,
        pool_size=5,  # Small pool; serverless Postgres has its own pooler
        max_overflow=10,
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=300,  # Pooler drops idle connections
        pool_timeout=30,
        connect_args={"connect_timeout": 10},
    )


engine = build_engine(settings.DATABASE_URL)


def get_session():
    with Session(engine) as session:
        yield session


def create_db_and_tables(bind: Engine | None = None):
    # Import models so their tables are registered on the metadata
    import deliberai.models  # noqa: F401

    SQLModel.metadata.create_all(bind or engine)

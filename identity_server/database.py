"""
Database engine and session for the Identity Server. SQLite for development, any SQLAlchemy URL otherwise.
"""
import logging

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from identity_server.config import DATABASE_URL
from identity_server.models import Base

logger = logging.getLogger(__name__)


def make_engine(url: str) -> Engine:
    # SQLite: in-memory needs StaticPool so all connections share the same DB (for tests)
    # File-based SQLite needs check_same_thread=False for FastAPI
    if url.startswith("sqlite:///:memory:"):
        return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args, pool_pre_ping=True)


engine = make_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind: Engine | None = None) -> None:
    """Create all tables that do not exist yet."""
    Base.metadata.create_all(bind=bind or engine)


def ping(bind: Engine | None = None) -> None:
    """Round trip to the database. Raises on connectivity failure."""
    with (bind or engine).connect() as conn:
        conn.execute(text("SELECT 1"))


def pending_schema_changes(bind: Engine | None = None) -> list[str]:
    """
    Tables and columns declared by the models but missing from the database,
    e.g. ["users", "refresh_tokens.sliding"]. Empty when the schema is current.
    """
    inspector = inspect(bind or engine)
    existing_tables = set(inspector.get_table_names())
    pending = []
    for table in Base.metadata.sorted_tables:
        if table.name not in existing_tables:
            pending.append(table.name)
            continue
        existing_columns = {c["name"] for c in inspector.get_columns(table.name)}
        pending.extend(f"{table.name}.{c.name}" for c in table.columns if c.name not in existing_columns)
    return pending


def get_db():
    """Dependency: yield a DB session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

"""SQLAlchemy database models for the Northstar local store."""
import datetime
from typing import Optional

from sqlalchemy import (Boolean, Column, DateTime, ForeignKey, Integer, String,
                        Text, create_engine, event)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import QueuePool

from northstar_sync.config import config


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


# Create base class for SQLAlchemy models
Base = declarative_base()


class DBIdentity(Base):
    """Mapping between a local id and the id assigned by the remote."""
    __tablename__ = "entity_identities"
    # AUTOINCREMENT keeps sqlite from handing out the id of a purged row again
    __table_args__ = {"sqlite_autoincrement": True}

    local_id = Column(Integer, primary_key=True, autoincrement=True)
    entity_table = Column(String(20), nullable=False, index=True)
    remote_id = Column(String(64), unique=True, nullable=True)

    def __repr__(self) -> str:
        """Return string representation of the identity."""
        return (
            f"<Identity(local_id={self.local_id}, table='{self.entity_table}', "
            f"remote_id={self.remote_id!r})>"
        )


class DBGroup(Base):
    """Database model for a group."""
    __tablename__ = "groups"
    local_id = Column(Integer, ForeignKey("entity_identities.local_id"), primary_key=True)
    name = Column(String(100), nullable=False, index=True)
    color = Column(String(7), nullable=False)
    version = Column(Integer, default=1, nullable=False)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False, index=True)

    identity = relationship("DBIdentity", lazy="joined")
    notes = relationship("DBNote", back_populates="group")

    def __repr__(self) -> str:
        """Return string representation of group."""
        return f"<Group(local_id={self.local_id}, name='{self.name}')>"


class DBNote(Base):
    """Database model for a note."""
    __tablename__ = "notes"
    local_id = Column(Integer, ForeignKey("entity_identities.local_id"), primary_key=True)
    title = Column(String(200), nullable=False, index=True)
    content = Column(Text, nullable=False, default="")
    # Nullable: the remote may clear a note's group
    group_id = Column(Integer, ForeignKey("groups.local_id"), nullable=True, index=True)
    version = Column(Integer, default=1, nullable=False)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, nullable=False, index=True)
    is_deleted = Column(Boolean, default=False, nullable=False, index=True)

    identity = relationship("DBIdentity", lazy="joined")
    group = relationship("DBGroup", back_populates="notes")

    def __repr__(self) -> str:
        """Return string representation of note."""
        return f"<Note(local_id={self.local_id}, title='{self.title}')>"


class DBMutation(Base):
    """Database model for a queued local mutation."""
    __tablename__ = "sync_queue"
    # Queue order is id order; ids must never go backwards after a delete
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    operation = Column(String(10), nullable=False)
    entity_table = Column(String(20), nullable=False)
    local_id = Column(Integer, nullable=False, index=True)
    payload = Column(Text, nullable=False, default="{}")
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    retry_count = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    in_flight = Column(Boolean, default=False, nullable=False)

    def __repr__(self) -> str:
        """Return string representation of the queue entry."""
        return (
            f"<Mutation(id={self.id}, op='{self.operation}', "
            f"table='{self.entity_table}', local_id={self.local_id})>"
        )


class DBHistory(Base):
    """Database model for an entity history snapshot."""
    __tablename__ = "local_history"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_table = Column(String(20), nullable=False)
    local_id = Column(Integer, nullable=False, index=True)
    operation = Column(String(10), nullable=False)
    changed_at = Column(DateTime, default=_utcnow, nullable=False)
    data = Column(Text, nullable=False)

    def __repr__(self) -> str:
        """Return string representation of the history entry."""
        return f"<History(id={self.id}, local_id={self.local_id}, op='{self.operation}')>"


class DBSyncState(Base):
    """The single sync-state row (id is always 1)."""
    __tablename__ = "sync_state"

    id = Column(Integer, primary_key=True)
    # JSON object: table name -> {"updated_at": iso, "seq": int}
    cursors = Column(Text, nullable=False, default="{}")
    consecutive_failures = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    last_error_at = Column(DateTime, nullable=True)
    last_success_at = Column(DateTime, nullable=True)


# Entity table name -> ORM model
DB_MODELS = {
    "groups": DBGroup,
    "notes": DBNote,
}


def init_db(db_url: Optional[str] = None) -> Engine:
    """Initialize the database and create the sync tables.

    Engine settings:
    - WAL (Write-Ahead Logging) mode for atomic writes
    - NORMAL synchronous mode
    - QueuePool for connection reuse with size limits
    - Pool pre-ping to detect stale connections
    - Foreign key enforcement

    Args:
        db_url: SQLAlchemy URL. Defaults to the configured database path.

    Returns:
        The configured engine with all tables created.
    """
    # SQLite is single-writer; keep the pool small
    engine = create_engine(
        db_url or config.get_db_url(),
        poolclass=QueuePool,
        pool_size=5,           # Base pool size (concurrent reads)
        max_overflow=10,       # Allow up to 15 total connections under load
        pool_timeout=30,       # Wait up to 30s for a connection
        pool_recycle=3600,     # Recycle connections after 1 hour
        pool_pre_ping=True,    # Validate connections before use
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    # Apply WAL mode and other PRAGMA settings on every connection
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        # WAL mode: writes go to separate journal, preventing corruption on crash
        cursor.execute("PRAGMA journal_mode=WAL")
        # NORMAL sync: flush WAL to disk at critical moments
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        # Increase cache size for better performance (negative = KB)
        cursor.execute("PRAGMA cache_size=-64000")  # 64MB cache
        cursor.close()

    Base.metadata.create_all(engine)
    return engine


def get_session_factory(engine=None):
    """Get a session factory for the database."""
    if engine is None:
        engine = init_db()
    return sessionmaker(bind=engine, expire_on_commit=False)

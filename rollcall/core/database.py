"""
Database models and async database manager for Rollcall.

This module defines the SQLAlchemy ORM models (User, WebAuthnCredential, AuditEvent) and provides the async engine and session manager. Only SQLite (aiosqlite) and PostgreSQL (asyncpg) are supported.
"""

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy import Column, ForeignKey, LargeBinary, event
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.types import TEXT, Float, Integer, String, Text, TypeDecorator

from rollcall.core.config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()

ROLES = ("student", "teacher", "admin")


class JsonType(TypeDecorator):
    """
    Stores JSON values. Uses native JSONB on PostgreSQL, TEXT on SQLite.
    """
    impl = TEXT
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(JSONB())
        else:
            return dialect.type_descriptor(Text)

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if dialect.name == 'postgresql':
            return value
        return json.dumps(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if dialect.name == 'postgresql':
            return value
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return None
        return value


# --- ORM Models ---

class User(Base):
    """
    A student, teacher or admin of the attendance service.
    `webauthn_current_challenge` is the single pending-challenge slot used by both ceremonies.
    """
    __tablename__ = 'users'

    id = Column(String(64), primary_key=True, index=True)
    role = Column(String(16), nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    matric_number = Column(String(64), unique=True, nullable=True)
    staff_id = Column(String(64), unique=True, nullable=True)
    surname = Column(String(100), nullable=True)
    first_name = Column(String(100), nullable=True)
    middle_name = Column(String(100), nullable=True)
    title = Column(String(32), nullable=True)
    sex = Column(String(16), nullable=True)
    password_hash = Column(String(256), nullable=True)

    webauthn_current_challenge = Column(String(128), nullable=True)
    webauthn_verified_at = Column(Float, nullable=True)
    webauthn_verified_credential = Column(LargeBinary(1023), nullable=True)

    created_at = Column(Float, nullable=False, default=time.time)

    credentials = relationship("WebAuthnCredential", back_populates="user", cascade="all, delete-orphan")
    audit_events = relationship("AuditEvent", back_populates="user", cascade="all, delete-orphan")

    @property
    def display_name(self) -> str:
        parts = [p for p in (self.first_name, self.middle_name, self.surname) if p]
        return " ".join(parts) if parts else self.email

    def profile(self) -> dict:
        return {
            "role": self.role,
            "user_id": self.id,
            "email": self.email,
            "matric_number": self.matric_number,
            "staff_id": self.staff_id,
        }

    def __repr__(self):
        return f"<User {self.email} ({self.role})>"


class WebAuthnCredential(Base):
    __tablename__ = 'webauthn_credentials'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), ForeignKey('users.id', ondelete="CASCADE"), nullable=False, index=True)
    credential_id = Column(LargeBinary(1023), nullable=False, unique=True, index=True)
    public_key = Column(LargeBinary, nullable=False)
    sign_count = Column(Integer, default=0, nullable=False)
    transports = Column(JsonType, nullable=True)
    created_at = Column(Float, nullable=False, default=time.time)
    last_used_at = Column(Float, nullable=False, default=time.time)
    user = relationship("User", back_populates="credentials")

    @property
    def is_usable(self) -> bool:
        return bool(self.credential_id) and bool(self.public_key)


class AuditEvent(Base):
    __tablename__ = 'audit_events'
    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), ForeignKey('users.id', ondelete="CASCADE"), nullable=True, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    timestamp = Column(Float, nullable=False, default=time.time)
    ip_address = Column(String(45), nullable=True)
    details = Column(JsonType, nullable=True)
    user = relationship('User', back_populates='audit_events')


def _set_sqlite_pragma(dbapi_connection, connection_record):
    """Enforces foreign key constraints for SQLite."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class DatabaseManager:
    """
    Manages async database connections and sessions for Rollcall.
    The engine is created on first use, so the manager can be built before settings are final.
    """

    def __init__(self, database_uri: Optional[str] = None):
        self._database_uri = database_uri
        self._engine: Optional[AsyncEngine] = None
        self.AsyncSessionLocal: Optional[async_sessionmaker] = None
        self._initialized = False
        self._init_lock = asyncio.Lock()

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            db_uri = self._database_uri or settings.DEFAULT_DATABASE_URI
            if 'sqlite' in db_uri and 'aiosqlite' not in db_uri:
                db_uri = db_uri.replace('sqlite:///', 'sqlite+aiosqlite:///')
            self._engine = create_async_engine(
                db_uri,
                connect_args={'check_same_thread': False} if 'sqlite' in db_uri else {},
                pool_size=settings.DATABASE_POOL_SIZE,
                max_overflow=settings.DATABASE_MAX_OVERFLOW,
                pool_timeout=settings.DATABASE_POOL_TIMEOUT,
                pool_recycle=settings.DATABASE_POOL_RECYCLE,
                pool_pre_ping=settings.DATABASE_POOL_PRE_PING,
            )
            if self._engine.dialect.name == 'sqlite':
                event.listen(self._engine.sync_engine, "connect", _set_sqlite_pragma)
            self.AsyncSessionLocal = async_sessionmaker(bind=self._engine, class_=AsyncSession,
                                                        expire_on_commit=False)
        return self._engine

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    async def initialize_database(self):
        """
        Creates tables if they don't exist.
        """
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self._initialized = True

    async def reset_database(self):
        """Drops and recreates every table. Meant for tests and local development."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
        self._initialized = True

    async def dispose(self):
        """Closes all pooled connections and forgets the engine."""
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self.AsyncSessionLocal = None
        self._initialized = False
        self._init_lock = asyncio.Lock()

    @asynccontextmanager
    async def get_context_manager_db(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Provides an async database session as a context manager.
        Ensures tables are created if AUTO_CREATE_DATABASE is enabled.
        """
        engine = self.engine
        if settings.AUTO_CREATE_DATABASE and not self._initialized:
            async with self._init_lock:
                if not self._initialized:
                    if engine.dialect.name == 'postgresql':
                        logger.debug("Initializing PostgreSQL schema.")
                    await self.initialize_database()
        async with self.AsyncSessionLocal() as session:
            yield session

    def get_db(self):
        """
        Returns an async context manager for a database session.
        Usage: async with db_manager.get_db() as db:
        """
        return self.get_context_manager_db()

    async def log_audit_event(self, user_id: Optional[str], event_type: str, ip_address: str = None,
                              details: dict = None, db: AsyncSession = None):
        """
        Logs an audit event in the database.
        If db is provided, adds to that session and leaves the commit to the caller;
        otherwise commits in a new session.
        """
        audit_event = AuditEvent(
            user_id=user_id,
            event_type=event_type,
            ip_address=ip_address,
            details=details or {}
        )
        if db:
            db.add(audit_event)
            return audit_event

        async with self.get_db() as session:
            session.add(audit_event)
            await session.commit()
            return audit_event


db_manager = DatabaseManager()

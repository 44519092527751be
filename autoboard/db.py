from __future__ import annotations

import secrets
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.pool import StaticPool

Base = declarative_base()


def new_id() -> str:
    return secrets.token_urlsafe(15)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Project(Base):
    __tablename__ = "projects"

    id = Column(String(32), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    alias = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    scenes = relationship("Scene", back_populates="project", cascade="all, delete-orphan", passive_deletes=True)


class Scene(Base):
    __tablename__ = "scenes"

    id = Column(String(32), primary_key=True, default=new_id)
    project_id = Column(String(32), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    alias = Column(String(255), nullable=True)
    # The user's latest scene description, shared context for every shot critique
    description = Column(Text, nullable=True)
    sort_order = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    project = relationship("Project", back_populates="scenes")
    shots = relationship("Shot", back_populates="scene", cascade="all, delete-orphan", passive_deletes=True)


class Shot(Base):
    __tablename__ = "shots"

    id = Column(String(32), primary_key=True, default=new_id)
    scene_id = Column(String(32), ForeignKey("scenes.id", ondelete="CASCADE"), nullable=False, index=True)
    shot_name = Column(String(255), nullable=False)
    alias = Column(String(255), nullable=True)
    description = Column(Text, nullable=False, default="")
    nano_prompt = Column(Text, nullable=False, default="")
    prompt_version = Column(Integer, nullable=False, default=1)
    sort_order = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    scene = relationship("Scene", back_populates="shots")
    images = relationship("Image", back_populates="shot", cascade="all, delete-orphan", passive_deletes=True)


class Image(Base):
    __tablename__ = "images"
    __table_args__ = (Index("ix_images_shot_version", "shot_id", "version", unique=True),)

    id = Column(String(32), primary_key=True, default=new_id)
    shot_id = Column(String(32), ForeignKey("shots.id", ondelete="CASCADE"), nullable=False, index=True)
    content = Column(LargeBinary, nullable=False)
    mime_type = Column(String(64), nullable=False, default="image/png")
    prompt = Column(Text, nullable=False)
    edit_instruction = Column(Text, nullable=True)
    reference_image_path = Column(String(1024), nullable=True)
    resolution = Column(String(8), nullable=True)
    version = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, nullable=False, default=True)
    analysis_result = Column(Text, nullable=True)  # JSON-encoded critique
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    shot = relationship("Shot", back_populates="images")


@event.listens_for(Engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, _connection_record) -> None:
    # SQLite ignores ON DELETE CASCADE unless foreign keys are switched on per connection
    if dbapi_connection.__class__.__module__.startswith("sqlite3"):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def make_engine(url: str) -> Engine:
    if url in ("sqlite://", "sqlite:///:memory:"):
        # One shared connection, otherwise every session sees its own empty database
        return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url)


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(engine)

"""Runtime-editable program settings."""

from __future__ import annotations

from sqlalchemy import JSON, Column, DateTime, Integer, String, func

from rewards_api.db.base import Base


class ProgramSetting(Base):
    """Key/value row overriding a program default (referral points, limits...)."""

    __tablename__ = "program_settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String, nullable=False, unique=True)
    value = Column(JSON, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

"""
Device Bot Config Model - הגדרות בוט לכל מכשיר

שעות פעילות, מילות מפתח להעברה לנציג ולחזרה לבוט, והודעות קבועות.
נקרא בלבד מתוך צינור עיבוד ההודעות.
"""
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, JSON

from app.db.database import Base


class DeviceBotConfig(Base):
    """Per-device bot configuration"""

    __tablename__ = "device_bot_configs"

    id = Column(Integer, primary_key=True, index=True)
    device_id = Column(String(100), unique=True, index=True, nullable=False)

    # כשהבוט כבוי הצינור לא עושה כלום עבור המכשיר
    bot_enabled = Column(Boolean, default=False, nullable=False, index=True)

    # IANA timezone, למשל "Asia/Jerusalem"
    timezone = Column(String(50), default="UTC", nullable=False)
    # [{"day": 0-6 (0=ראשון), "start": "HH:MM", "end": "HH:MM"}, ...]
    business_hours = Column(JSON, nullable=True)
    off_hours_enabled = Column(Boolean, default=False, nullable=False)
    off_hours_message = Column(Text, nullable=True)

    handoff_keywords = Column(JSON, default=list, nullable=False)
    resume_keywords = Column(JSON, default=list, nullable=False)
    handoff_message = Column(Text, nullable=True)
    resume_message = Column(Text, nullable=True)

    ignore_groups = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

"""
Auto Reply Rule Model - חוקי תשובה אוטומטית לפי מילת מפתח
"""
import enum
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, Index, Enum as SQLEnum

from app.db.database import Base


class MatchType(str, enum.Enum):
    """How a rule's trigger is compared with the message text"""
    EXACT = "exact"
    CONTAINS = "contains"
    STARTS_WITH = "startsWith"
    REGEX = "regex"


class AutoReplyRule(Base):
    """Keyword-triggered reply owned by a device"""

    __tablename__ = "auto_reply_rules"

    id = Column(Integer, primary_key=True, index=True)
    device_id = Column(String(100), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    trigger = Column(String(500), nullable=False)
    match_type = Column(
        SQLEnum(
            MatchType,
            name="match_type",
            values_callable=lambda enum_cls: [member.value for member in enum_cls],
        ),
        default=MatchType.CONTAINS,
        nullable=False,
    )
    # טקסט תבנית - placeholders כמו {phone} מוחלפים לפני שליחה
    response = Column(Text, nullable=False)
    # עדיפות גבוהה נבדקת ראשונה
    priority = Column(Integer, default=0, nullable=False, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    # זמן מינימלי בין תשובות של אותו חוק לאותו שולח
    cooldown_seconds = Column(Integer, default=60, nullable=False)

    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_auto_reply_rules_device_active", "device_id", "is_active"),
    )

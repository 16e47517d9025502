"""
Bot Action Log Model - לוג ביקורת להחלטות הבוט

רישום בלתי-הפיך: שורה אחת לכל החלטה של צינור העיבוד שמוגדרת כנרשמת.
הצינור רק מוסיף שורות, לעולם לא מעדכן או מוחק.
"""
import enum
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, DateTime, Text, Index, JSON, Enum as SQLEnum

from app.db.database import Base


class BotActionType(str, enum.Enum):
    """סוגי פעולות בוט הנרשמות בלוג"""
    AUTO_REPLY = "auto_reply"
    HANDOFF_INITIATED = "handoff_initiated"
    HANDOFF_RESUMED = "handoff_resumed"
    OFF_HOURS_REPLY = "off_hours_reply"
    RATE_LIMITED = "rate_limited"
    RULE_MATCHED = "rule_matched"
    NO_MATCH = "no_match"


class BotActionLog(Base):
    """Append-only audit trail of pipeline decisions"""

    __tablename__ = "bot_action_logs"

    id = Column(Integer, primary_key=True, index=True)
    device_id = Column(String(100), nullable=False, index=True)
    sender_jid = Column(String(100), nullable=False, index=True)
    action_type = Column(
        SQLEnum(
            BotActionType,
            name="bot_action_type",
            values_callable=lambda enum_cls: [member.value for member in enum_cls],
        ),
        nullable=False,
        index=True,
    )
    # ללא FK - חוק יכול להימחק והלוג נשאר
    rule_id = Column(Integer, nullable=True)
    incoming_message = Column(Text, nullable=True)
    response_message = Column(Text, nullable=True)
    # פרטים נוספים: סיבת העברה לנציג, מי החזיר את הבוט וכו'
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc), index=True)

    __table_args__ = (
        Index("ix_bot_action_logs_device_created", "device_id", "created_at"),
    )

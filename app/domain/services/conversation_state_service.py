"""
Conversation State Service - מצב שיחה לכל (מכשיר, שולח)

מצבים:
- IDLE: אין שיחה פעילה, הבוט מגיב לטריגרים
- ACTIVE_BOT: הבוט מנהל את השיחה
- HANDOFF: נציג אנושי מטפל, הבוט מושתק

מבנה מפתח: conv:{device_id}:{sender_jid} → JSON של הרשומה, עם TTL.
שיחה אצל נציג מקבלת TTL ארוך יותר כדי שלא תחזור לבוט בשקט.

כל הפעולות best-effort: שגיאת אחסון נרשמת ללוג ומחזירה ערך כשלון
(None / False / רשימה ריקה) - הצינור מתייחס לזה כ-IDLE ולא קורס.
"""
from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from app.core.kv_store import KeyValueStore
from app.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_HANDOFF_REASON = "unspecified"


class ConversationStatus(str, enum.Enum):
    IDLE = "IDLE"
    ACTIVE_BOT = "ACTIVE_BOT"
    HANDOFF = "HANDOFF"


class ConversationRecord(BaseModel):
    """Stored snapshot; serialised with camelCase keys"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    device_id: str
    sender_jid: str
    state: ConversationStatus
    context: dict[str, Any] = Field(default_factory=dict)
    handoff_reason: Optional[str] = None
    handoff_at: Optional[datetime] = None
    last_activity: datetime
    created_at: datetime

    @property
    def is_handoff(self) -> bool:
        return self.state == ConversationStatus.HANDOFF


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationStateService:
    """Per-(device, sender) state on top of a KeyValueStore"""

    def __init__(
        self,
        store: KeyValueStore,
        *,
        key_prefix: str = "conv:",
        default_ttl_seconds: int = 86400,
        handoff_ttl_seconds: int = 172800,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._key_prefix = key_prefix
        self._default_ttl = default_ttl_seconds
        self._handoff_ttl = handoff_ttl_seconds
        self._now = now

    def key_for(self, device_id: str, sender_jid: str) -> str:
        return f"{self._key_prefix}{device_id}:{sender_jid}"

    def _device_prefix(self, device_id: str) -> str:
        return f"{self._key_prefix}{device_id}:"

    def ttl_for(self, state: ConversationStatus) -> int:
        return self._handoff_ttl if state == ConversationStatus.HANDOFF else self._default_ttl

    def _decode(self, key: str, raw: str) -> Optional[ConversationRecord]:
        try:
            return ConversationRecord.model_validate_json(raw)
        except ValidationError:
            logger.warning("Undecodable conversation state, treating as absent", extra_data={"key": key})
            return None

    async def _write(self, record: ConversationRecord) -> None:
        key = self.key_for(record.device_id, record.sender_jid)
        await self._store.set(
            key,
            record.model_dump_json(by_alias=True),
            self.ttl_for(record.state),
        )
        logger.debug("Conversation state saved", extra_data={"key": key, "state": record.state.value})

    async def get(self, device_id: str, sender_jid: str) -> Optional[ConversationRecord]:
        key = self.key_for(device_id, sender_jid)
        try:
            raw = await self._store.get(key)
        except Exception:
            logger.error("Error getting conversation state", extra_data={"key": key}, exc_info=True)
            return None
        if raw is None:
            return None
        return self._decode(key, raw)

    async def set(
        self,
        device_id: str,
        sender_jid: str,
        state: ConversationStatus,
        context: Optional[dict[str, Any]] = None,
        handoff_reason: Optional[str] = None,
    ) -> bool:
        """כתיבה מלאה של הרשומה - מחליפה את הקיימת (לא מיזוג)"""
        state = ConversationStatus(state)
        now = self._now()
        is_handoff = state == ConversationStatus.HANDOFF
        record = ConversationRecord(
            device_id=device_id,
            sender_jid=sender_jid,
            state=state,
            context=dict(context or {}),
            handoff_reason=(handoff_reason or DEFAULT_HANDOFF_REASON) if is_handoff else None,
            handoff_at=now if is_handoff else None,
            last_activity=now,
            created_at=now,
        )
        try:
            await self._write(record)
            return True
        except Exception:
            logger.error(
                "Error setting conversation state",
                extra_data={"device_id": device_id, "sender_jid": sender_jid, "state": state.value},
                exc_info=True,
            )
            return False

    async def update_context(
        self,
        device_id: str,
        sender_jid: str,
        context_update: dict[str, Any],
    ) -> bool:
        """קריאה-מיזוג-כתיבה של context. שומר על המצב, סיבת ההעברה וזמני יצירה/העברה."""
        current = await self.get(device_id, sender_jid)
        if current is None:
            return False

        updated = current.model_copy(update={
            "context": {**current.context, **context_update},
            "last_activity": self._now(),
        })
        try:
            await self._write(updated)
            return True
        except Exception:
            logger.error(
                "Error updating conversation context",
                extra_data={"device_id": device_id, "sender_jid": sender_jid},
                exc_info=True,
            )
            return False

    async def clear(self, device_id: str, sender_jid: str) -> bool:
        """איפוס מנהלתי - הרשומה נמחקת והשיחה נחשבת IDLE"""
        key = self.key_for(device_id, sender_jid)
        try:
            await self._store.delete(key)
        except Exception:
            logger.error("Error clearing conversation state", extra_data={"key": key}, exc_info=True)
            return False
        logger.info("Conversation state cleared", extra_data={"device_id": device_id, "sender_jid": sender_jid})
        return True

    async def _device_records(self, device_id: str) -> list[ConversationRecord]:
        records = []
        for key in await self._store.keys(self._device_prefix(device_id)):
            raw = await self._store.get(key)
            if raw is None:
                continue  # פג תוקף בין הסריקה לקריאה
            record = self._decode(key, raw)
            # "conv:dev:" הוא גם prefix של מכשיר "dev:2"
            if record is not None and record.device_id == device_id:
                records.append(record)
        return records

    async def list_handoffs(self, device_id: str) -> list[ConversationRecord]:
        try:
            records = await self._device_records(device_id)
        except Exception:
            logger.error("Error listing handoffs", extra_data={"device_id": device_id}, exc_info=True)
            return []
        return [record for record in records if record.is_handoff]

    async def stats(self, device_id: str) -> dict[str, int]:
        counts = {"total": 0, "idle": 0, "active_bot": 0, "handoff": 0}
        try:
            records = await self._device_records(device_id)
        except Exception:
            logger.error("Error getting conversation stats", extra_data={"device_id": device_id}, exc_info=True)
            return counts

        for record in records:
            counts["total"] += 1
            counts[record.state.value.lower()] += 1
        return counts

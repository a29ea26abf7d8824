from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

UNKNOWN_TIME = "unknown"
LOCAL_ROLE = "customer"
REMOTE_ROLE = "admin"


class Sender(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"

    @classmethod
    def from_role(cls, role: object) -> "Sender":
        return cls.LOCAL if role == LOCAL_ROLE else cls.REMOTE


def parse_timestamp(raw: object) -> Optional[datetime]:
    """Parse a server timestamp, returning ``None`` when it is missing or malformed.

    ISO 8601 strings (with or without a trailing ``Z``) and
    ``YYYY-MM-DD HH:MM:SS`` are accepted.
    """

    if not isinstance(raw, str) or not raw.strip():
        return None
    text = raw.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        logger.warning("could not parse message timestamp %r", raw)
        return None


def format_time(value: Optional[datetime]) -> str:
    if value is None:
        return UNKNOWN_TIME
    try:
        if value.tzinfo is not None:
            value = value.astimezone()
        return value.strftime("%H:%M")
    except (OverflowError, ValueError):
        # Offsets at the edges of the datetime range cannot be converted.
        return UNKNOWN_TIME


@dataclass(frozen=True)
class Message:
    """One chat line as shown to the customer."""

    id: str
    text: str
    sender: Sender
    timestamp: Optional[datetime]
    read: bool
    pending: bool = False

    @property
    def display_time(self) -> str:
        return format_time(self.timestamp)

    @property
    def is_remote(self) -> bool:
        return self.sender is Sender.REMOTE

    @classmethod
    def from_wire(cls, payload: Dict[str, Any]) -> "Message":
        """Build a message from a ``new_message`` body or a backlog entry."""

        raw_id = payload.get("id")
        return cls(
            id="" if raw_id is None else str(raw_id),
            text=str(payload.get("content") or ""),
            sender=Sender.from_role(payload.get("sender")),
            timestamp=parse_timestamp(payload.get("timestamp")),
            read=bool(payload.get("read_by_customer")),
        )


def wire_id(message_id: str) -> int | str:
    """Server ids are integers on the wire; placeholders stay strings."""

    if message_id.isascii() and message_id.isdigit():
        return int(message_id)
    return message_id

"""Wire format for like/save mutation events exchanged over Kafka."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, field_validator

# Action names written by earlier producers, which encoded the kind in the verb.
_LEGACY_ACTIONS: dict[str, str] = {
    "like": "add",
    "unlike": "remove",
    "save": "add",
    "unsave": "remove",
}


class EngagementKind(str, Enum):
    """Which edge relation an event mutates."""

    LIKE = "like"
    SAVE = "save"


class EngagementAction(str, Enum):
    ADD = "add"
    REMOVE = "remove"


class EngagementEvent(BaseModel):
    """A single like/save mutation keyed by ``(user_id, quote_id)``."""

    user_id: str = Field(..., min_length=1)
    quote_id: str = Field(..., min_length=1)
    kind: EngagementKind
    action: EngagementAction
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("action", mode="before")
    @classmethod
    def _accept_legacy_action(cls, value: object) -> object:
        if isinstance(value, str):
            return _LEGACY_ACTIONS.get(value, value)
        return value

    @property
    def key(self) -> str:
        return event_key(self.user_id, self.quote_id)

    def encode(self) -> bytes:
        return self.model_dump_json().encode("utf-8")

    @classmethod
    def decode(cls, payload: bytes | str) -> EngagementEvent:
        """Parse a message value, raising ``pydantic.ValidationError`` when malformed."""

        return cls.model_validate_json(payload)


def event_key(user_id: str, quote_id: str) -> str:
    """Partition key shared by every event for one ``(user_id, quote_id)`` pair."""

    return f"{user_id}:{quote_id}"


__all__ = [
    "EngagementAction",
    "EngagementEvent",
    "EngagementKind",
    "event_key",
]

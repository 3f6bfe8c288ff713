"""Queued action model for the offline queue."""

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

LOCATION_EVENT = "location:update"
TAG_EVENT = "tag:attempt"


class ActionKind(str, Enum):
    """
    Delivery class of a queued action.

    location entries are deduplicated and evicted first, tag entries wait
    for an acknowledgment and are never evicted.
    """

    LOCATION = "location"
    TAG = "tag"
    GENERIC = "generic"


DEFAULT_EVENTS: dict[ActionKind, str] = {
    ActionKind.LOCATION: LOCATION_EVENT,
    ActionKind.TAG: TAG_EVENT,
}


class QueuedAction(BaseModel):
    """One buffered outbound action, persisted as JSON."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: ActionKind
    event: str
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    attempts: int = Field(default=0, ge=0)

    def age_seconds(self, now: datetime) -> float:
        created = self.created_at if self.created_at.tzinfo else self.created_at.replace(tzinfo=UTC)
        return (now - created).total_seconds()

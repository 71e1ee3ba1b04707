"""Core domain models used across layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

PERMALINK_TEMPLATE = "https://discord.com/channels/{guild_id}/{channel_id}/{message_id}"


@dataclass(frozen=True, slots=True)
class EmojiKey:
    """Identity of an emoji: unicode name, or name plus custom-emoji id."""

    name: str
    custom_id: int | None = None

    def render(self) -> str:
        if self.custom_id is None:
            return self.name
        return f"<:{self.name}:{self.custom_id}>"


@dataclass(frozen=True, slots=True)
class ReactionCount:
    """One distinct emoji on a message with its aggregate count."""

    emoji: str
    count: int
    custom_id: int | None = None

    @property
    def key(self) -> EmojiKey:
        return EmojiKey(self.emoji, self.custom_id)


@dataclass(slots=True)
class ReactionEvent:
    """Full reaction state of a message, as delivered by the gateway."""

    message_id: int
    guild_id: int
    channel_id: int
    author_id: int
    permalink: str
    timestamp: datetime
    reactions: list[ReactionCount] = field(default_factory=list)

    @property
    def total_reactions(self) -> int:
        return sum(reaction.count for reaction in self.reactions)

    @classmethod
    def from_message_payload(cls, payload: dict[str, Any], guild_id: int) -> ReactionEvent:
        """Build an event from a platform message object."""

        message_id = int(payload["id"])
        channel_id = int(payload["channel_id"])
        reactions = []
        for item in payload.get("reactions") or []:
            emoji = item.get("emoji") or {}
            custom_id = emoji.get("id")
            reactions.append(
                ReactionCount(
                    emoji=emoji.get("name") or "",
                    count=int(item.get("count", 0)),
                    custom_id=int(custom_id) if custom_id else None,
                )
            )
        return cls(
            message_id=message_id,
            guild_id=guild_id,
            channel_id=channel_id,
            author_id=int(payload["author"]["id"]),
            permalink=PERMALINK_TEMPLATE.format(
                guild_id=guild_id, channel_id=channel_id, message_id=message_id
            ),
            timestamp=datetime.fromisoformat(payload["timestamp"]),
            reactions=[reaction for reaction in reactions if reaction.count > 0],
        )


class RecordResult(str, Enum):
    """Outcome of recording a reaction-change event."""

    STORED = "stored"
    DELETED = "deleted"
    SKIPPED_OPTED_OUT = "skipped_opted_out"


@dataclass(slots=True)
class TopMessage:
    """One ranked row returned by a top-messages query."""

    permalink: str
    author_id: int
    total_reactions: int
    reactions: dict[EmojiKey, int]
    message_id: int = 0
    timestamp: datetime | None = None

    def render_reactions(self) -> str:
        return " ".join(f"{key.render()} {count}" for key, count in self.reactions.items())


@dataclass(slots=True)
class ScheduledJob:
    """Represents a persisted recurring report definition."""

    id: str
    cron_expression: str
    interval_hours: float
    channel_id: int
    guild_id: int
    count: int
    next_run: datetime
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    is_forum: bool = False
    thread_title_template: str | None = None


@dataclass(frozen=True, slots=True)
class ChannelFilter:
    """A channel included in or excluded from a scheduled report."""

    channel_id: int
    is_excluded: bool

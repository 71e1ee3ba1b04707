"""Turn ranked messages into bounded-size delivery units."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from reactstats.models import TopMessage

MAX_ITEMS_PER_UNIT = 10
MAX_CONTENT_LENGTH = 2000
MAX_FIELD_VALUE_LENGTH = 1024
MAX_EMBED_CHARS_PER_UNIT = 6000

MAX_PREVIEW_LENGTH = 100
MIN_PREVIEW_LENGTH = 15
PREVIEW_DECREMENT = 20

TOO_MANY_RESULTS = "\n**Too many results for one message!**"
UNAVAILABLE_PREVIEW = "(Message content unavailable)"

_PART_PLACEHOLDER = "/?)"


@dataclass(slots=True)
class DeliveryUnit:
    """One message handed to the delivery collaborator."""

    content: str | None = None
    embeds: list[dict[str, Any]] = field(default_factory=list)


def truncate_preview(preview: str, length: int) -> str:
    if len(preview) > length:
        return preview[:length] + "..."
    return preview


def build_embed(message: TopMessage, rank: int, preview: str) -> dict[str, Any]:
    """Rich item for one ranked message."""

    embed: dict[str, Any] = {
        "title": f"#{rank}",
        "url": message.permalink,
        "description": f"<@{message.author_id}>\n{truncate_preview(preview, MAX_PREVIEW_LENGTH)}",
        "fields": [
            {
                "name": f"{message.total_reactions} reactions",
                "value": _clip(message.render_reactions() or "-", MAX_FIELD_VALUE_LENGTH),
            }
        ],
    }
    if message.timestamp is not None:
        embed["timestamp"] = message.timestamp.isoformat()
    return embed


def paginate_embeds(
    messages: Sequence[TopMessage],
    previews: Mapping[str, str],
    max_items: int = MAX_ITEMS_PER_UNIT,
) -> list[DeliveryUnit]:
    """Grouped-items policy: one rich item per message.

    A unit closes at ``max_items`` items, or early when the next item would push
    its combined embed text past ``MAX_EMBED_CHARS_PER_UNIT``.
    """

    units: list[DeliveryUnit] = []
    current: list[dict[str, Any]] = []
    current_chars = 0
    for rank, message in enumerate(messages, start=1):
        embed = build_embed(message, rank, previews.get(message.permalink, UNAVAILABLE_PREVIEW))
        chars = embed_length(embed)
        if current and current_chars + chars > MAX_EMBED_CHARS_PER_UNIT:
            units.append(DeliveryUnit(embeds=current))
            current, current_chars = [], 0
        current.append(embed)
        current_chars += chars
        if len(current) == max_items:
            units.append(DeliveryUnit(embeds=current))
            current, current_chars = [], 0
    if current:
        units.append(DeliveryUnit(embeds=current))
    return units


def embed_length(embed: Mapping[str, Any]) -> int:
    """Characters the platform counts against the per-message embed total."""

    total = len(embed.get("title", "")) + len(embed.get("description", ""))
    for item in embed.get("fields", []):
        total += len(item["name"]) + len(item["value"])
    return total


def _clip(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    # Cut on a separator so a custom emoji tag is never split.
    return text[: limit - 3].rsplit(" ", 1)[0] + "..."


def format_message(message: TopMessage, rank: int, preview: str, preview_length: int) -> str:
    return (
        f"#{rank}. {message.permalink}\n"
        f"<@{message.author_id}>: `{truncate_preview(preview, preview_length)}`\n"
        f"{message.render_reactions()}\n"
        "\n"
    )


def format_adaptive(messages: Sequence[TopMessage], previews: Mapping[str, str], reserved: int = 0) -> str:
    """Adaptive-text policy: shrink previews until everything fits in one block.

    Falls back to the shortest preview and a truncation notice when even that overflows.
    ``reserved`` characters are kept free for text the caller puts in front.
    """
    preview_length = MAX_PREVIEW_LENGTH
    while preview_length >= MIN_PREVIEW_LENGTH:
        text = _try_format(messages, previews, preview_length, reserved)
        if text is not None:
            return text
        preview_length -= PREVIEW_DECREMENT
    return _try_format(messages, previews, MIN_PREVIEW_LENGTH, reserved, last_attempt=True) or ""


def _try_format(
    messages: Sequence[TopMessage],
    previews: Mapping[str, str],
    preview_length: int,
    reserved: int = 0,
    last_attempt: bool = False,
) -> str | None:
    budget = MAX_CONTENT_LENGTH - reserved - len(TOO_MANY_RESULTS)
    text = ""
    for rank, message in enumerate(messages, start=1):
        item = format_message(message, rank, previews.get(message.permalink, UNAVAILABLE_PREVIEW), preview_length)
        if len(text) + len(item) >= budget:
            if last_attempt:
                return text + TOO_MANY_RESULTS
            return None
        text += item
    return text


def format_multi_part(
    messages: Sequence[TopMessage],
    previews: Mapping[str, str],
    header: str,
) -> list[str]:
    """Multi-part policy: numbered "Part i/N" blocks, each under the size ceiling."""

    # Room for the final part count to be wider than the "?" placeholder.
    limit = MAX_CONTENT_LENGTH - (len(str(max(len(messages), 1))) - 1)
    parts: list[str] = []
    current = _part_header(header, 1)
    in_current = 0
    for rank, message in enumerate(messages, start=1):
        item = format_message(message, rank, previews.get(message.permalink, UNAVAILABLE_PREVIEW), MAX_PREVIEW_LENGTH)
        if in_current and len(current) + len(item) >= limit:
            parts.append(current)
            current = _part_header(header, len(parts) + 1)
            in_current = 0
        current += item
        in_current += 1
    parts.append(current)

    total = len(parts)
    return [part.replace(_PART_PLACEHOLDER, f"/{total})", 1) for part in parts]


def _part_header(header: str, number: int) -> str:
    return f"{header} (Part {number}{_PART_PLACEHOLDER}\n"

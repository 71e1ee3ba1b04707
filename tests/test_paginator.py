import re

from reactstats.models import EmojiKey, TopMessage
from reactstats.paginator import (
    MAX_CONTENT_LENGTH,
    MAX_EMBED_CHARS_PER_UNIT,
    MAX_FIELD_VALUE_LENGTH,
    TOO_MANY_RESULTS,
    UNAVAILABLE_PREVIEW,
    build_embed,
    embed_length,
    format_adaptive,
    format_multi_part,
    paginate_embeds,
    truncate_preview,
)


def _messages(n: int) -> list[TopMessage]:
    return [
        TopMessage(
            permalink=f"https://discord.com/channels/1/2/{i}",
            author_id=1000 + i,
            total_reactions=n - i,
            reactions={EmojiKey("👍"): n - i},
            message_id=i,
        )
        for i in range(n)
    ]


def _custom_emoji_messages(n: int) -> list[TopMessage]:
    reactions = {EmojiKey(f"emoji_{j:02d}".ljust(32, "x"), 10**17 + j): 5 for j in range(20)}
    return [
        TopMessage(
            permalink=f"https://discord.com/channels/1/2/{i}",
            author_id=1000 + i,
            total_reactions=100,
            reactions=dict(reactions),
            message_id=i,
        )
        for i in range(n)
    ]


def _previews(messages: list[TopMessage], text: str) -> dict[str, str]:
    return {message.permalink: text for message in messages}


class TestGroupedItems:
    def test_twenty_five_messages_make_three_groups(self):
        messages = _messages(25)

        units = paginate_embeds(messages, _previews(messages, "hello"))

        assert [len(unit.embeds) for unit in units] == [10, 10, 5]
        assert units[1].embeds[0]["title"] == "#11"

    def test_exact_multiple_has_no_empty_group(self):
        units = paginate_embeds(_messages(10), {})

        assert [len(unit.embeds) for unit in units] == [10]

    def test_no_messages_no_units(self):
        assert paginate_embeds([], {}) == []

    def test_embed_contents(self):
        message = _messages(1)[0]

        embed = build_embed(message, 1, "x" * 150)

        assert embed["url"] == message.permalink
        assert embed["description"] == f"<@{message.author_id}>\n" + "x" * 100 + "..."
        assert embed["fields"][0] == {"name": "1 reactions", "value": "👍 1"}

    def test_missing_preview_uses_placeholder(self):
        units = paginate_embeds(_messages(1), {})

        assert UNAVAILABLE_PREVIEW in units[0].embeds[0]["description"]

    def test_reaction_heavy_field_is_clipped_on_a_separator(self):
        message = _custom_emoji_messages(1)[0]
        assert len(message.render_reactions()) > MAX_FIELD_VALUE_LENGTH

        value = build_embed(message, 1, "hello")["fields"][0]["value"]

        assert len(value) <= MAX_FIELD_VALUE_LENGTH
        assert value.endswith("...")
        assert all(tag.endswith(">") for tag in re.findall(r"<:[^ ]*", value[:-3]))

    def test_group_closes_early_at_embed_size_limit(self):
        messages = _custom_emoji_messages(10)

        units = paginate_embeds(messages, _previews(messages, "p" * 100))

        assert len(units) > 1
        assert len(units[0].embeds) < 10
        for unit in units:
            assert sum(embed_length(embed) for embed in unit.embeds) <= MAX_EMBED_CHARS_PER_UNIT
        titles = [embed["title"] for unit in units for embed in unit.embeds]
        assert titles == [f"#{rank}" for rank in range(1, 11)]


class TestAdaptiveText:
    def test_small_result_uses_full_previews(self):
        messages = _messages(2)

        text = format_adaptive(messages, _previews(messages, "y" * 100))

        assert "y" * 100 in text
        assert TOO_MANY_RESULTS not in text
        assert text.startswith("#1. https://discord.com/channels/1/2/0\n")

    def test_shrinks_previews_to_fit(self):
        messages = _messages(14)

        text = format_adaptive(messages, _previews(messages, "z" * 200))

        assert len(text) < MAX_CONTENT_LENGTH
        assert "z" * 100 not in text
        assert TOO_MANY_RESULTS not in text
        assert "#14." in text

    def test_truncates_with_notice_when_nothing_fits(self):
        messages = _messages(60)

        text = format_adaptive(messages, _previews(messages, "w" * 200))

        assert text.endswith(TOO_MANY_RESULTS)
        assert len(text) <= MAX_CONTENT_LENGTH
        assert "#60." not in text

    def test_reserved_space_is_respected(self):
        messages = _messages(60)

        text = format_adaptive(messages, _previews(messages, "w" * 200), reserved=300)

        assert len(text) + 300 <= MAX_CONTENT_LENGTH

    def test_preview_truncation(self):
        assert truncate_preview("abc", 5) == "abc"
        assert truncate_preview("abcdef", 3) == "abc..."


class TestMultiPart:
    def test_single_part(self):
        messages = _messages(2)

        parts = format_multi_part(messages, _previews(messages, "hi"), "Top 2")

        assert len(parts) == 1
        assert parts[0].startswith("Top 2 (Part 1/1)\n")

    def test_parts_are_numbered_and_bounded(self):
        messages = _messages(40)

        parts = format_multi_part(messages, _previews(messages, "q" * 100), "Report")

        assert len(parts) > 1
        for number, part in enumerate(parts, start=1):
            assert part.startswith(f"Report (Part {number}/{len(parts)})\n")
            assert len(part) <= MAX_CONTENT_LENGTH
            assert "/?)" not in part
        joined = "".join(parts)
        assert all(f"#{rank}. " in joined for rank in range(1, 41))

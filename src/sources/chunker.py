"""Group Slack messages into chunks for embedding.

Two policies apply to disjoint sets of a channel's messages:

- Threads: root + replies become one chunk, whatever their span or length.
- Windows: the remaining messages are cut into consecutive windows bounded by
  a message count AND a time span measured from the window's first message.

Chunk text is a transcript, one line per message:

    "[YYYY-MM-DD HH:MM UTC] Display Name: cleaned text"

Cleaning resolves Slack's inline markup (mentions, channel links, special
directives, links) to plain prose and drops mentions of the indexing bot itself.
"""

import logging
import re
from typing import Callable, List, Optional, Sequence, Set, Tuple

from src.models.documents import SlackChunk, SlackMessage, ts_to_datetime

logger = logging.getLogger(__name__)

DisplayNameResolver = Callable[[Optional[str]], str]

USER_MENTION_RE = re.compile(r"<@([UW][A-Z0-9]+)(?:\|[^>]*)?>")
CHANNEL_LINK_RE = re.compile(r"<#([CG][A-Z0-9]+)(?:\|([^>]*))?>")
SUBTEAM_RE = re.compile(r"<!subteam\^[A-Z0-9]+(?:\|([^>]*))?>")
SPECIAL_RE = re.compile(r"<!(here|channel|everyone)(?:\|[^>]*)?>")
DATE_RE = re.compile(r"<!date\^[^|>]*\|([^>]*)>")
LINK_RE = re.compile(r"<((?:https?|mailto):[^|>]+)(?:\|([^>]*))?>")
WHITESPACE_RE = re.compile(r"[ \t]+")


def _default_resolver(user_id: Optional[str]) -> str:
    return user_id or "unknown"


def partition_messages(messages: Sequence[SlackMessage]) -> Tuple[List[str], List[SlackMessage]]:
    """Split channel history into thread roots and standalone messages.

    Messages carrying a `thread_ts` (roots and broadcast replies) are handled by
    the thread policy; only their root timestamp is kept, in first-seen order.
    Messages with no text are dropped.

    Returns:
        Tuple of (thread root timestamps, non-thread messages in input order).
    """
    roots: List[str] = []
    seen: Set[str] = set()
    non_thread: List[SlackMessage] = []
    for m in messages:
        if not m.text:
            continue
        if m.thread_ts:
            if m.thread_ts not in seen:
                seen.add(m.thread_ts)
                roots.append(m.thread_ts)
            continue
        non_thread.append(m)
    return roots, non_thread


class SlackChunker:
    """Build thread and window chunks from Slack messages.

    Args:
        resolve_display_name: Maps a user id to a display name.
        bot_user_id: The indexing bot's user id; its mentions are removed from text.
    """

    def __init__(
        self,
        resolve_display_name: Optional[DisplayNameResolver] = None,
        bot_user_id: Optional[str] = None,
    ):
        """Initialize the chunker."""
        self.resolve_display_name = resolve_display_name or _default_resolver
        self.bot_user_id = bot_user_id

    # --------- Text helpers ----------
    def clean_text(self, text: str) -> str:
        """Replace Slack markup with readable text.

        Args:
            text: Raw message text from the API.

        Returns:
            Plain text; empty if nothing but markup for the bot remained.
        """
        if not text:
            return ""

        def user_repl(m: re.Match) -> str:
            uid = m.group(1)
            if self.bot_user_id and uid == self.bot_user_id:
                return ""
            return f"@{self.resolve_display_name(uid)}"

        def channel_repl(m: re.Match) -> str:
            return f"#{m.group(2) or m.group(1)}"

        def link_repl(m: re.Match) -> str:
            return m.group(2) or m.group(1)

        out = USER_MENTION_RE.sub(user_repl, text)
        out = CHANNEL_LINK_RE.sub(channel_repl, out)
        out = SUBTEAM_RE.sub(lambda m: m.group(1) or "@group", out)
        out = SPECIAL_RE.sub(lambda m: f"@{m.group(1)}", out)
        out = DATE_RE.sub(lambda m: m.group(1), out)
        out = LINK_RE.sub(link_repl, out)
        out = out.replace("&lt;", "<").replace("&gt;", ">").replace("&amp;", "&")
        lines = [WHITESPACE_RE.sub(" ", line).strip() for line in out.splitlines()]
        return "\n".join(line for line in lines if line)

    def author_name(self, message: SlackMessage) -> str:
        """Display name of a message's author (bots fall back to their username)."""
        if message.user:
            return self.resolve_display_name(message.user)
        return message.username or message.bot_id or "unknown"

    def render_message(self, message: SlackMessage) -> Optional[str]:
        """Render one transcript line, or None if the message has no text after cleaning."""
        text = self.clean_text(message.text)
        if not text:
            return None
        dt = ts_to_datetime(message.ts)
        return f"[{dt.strftime('%Y-%m-%d %H:%M %Z')}] {self.author_name(message)}: {text}"

    def _render(self, messages: Sequence[SlackMessage]) -> List[str]:
        lines = []
        for m in messages:
            line = self.render_message(m)
            if line:
                lines.append(line)
        return lines

    # --------- Policies ----------
    def build_thread_chunk(
        self,
        team_id: str,
        channel_id: str,
        thread_ts: str,
        messages: Sequence[SlackMessage],
        channel_name: Optional[str] = None,
    ) -> Optional[SlackChunk]:
        """Render a whole thread (root + replies) as one chunk.

        Args:
            team_id: Workspace id.
            channel_id: Channel the thread lives in.
            thread_ts: Timestamp of the thread root.
            messages: Thread messages in chronological order.
            channel_name: Human readable channel name.

        Returns:
            The chunk, or None if no message has text after cleaning.
        """
        if not messages:
            return None
        ordered = sorted(messages, key=lambda m: m.ts_float)
        lines = self._render(ordered)
        if not lines:
            logger.debug(f"Skipping empty thread {channel_id}/{thread_ts}")
            return None
        return SlackChunk(
            team_id=team_id,
            channel_id=channel_id,
            channel_name=channel_name,
            is_thread=True,
            thread_ts=thread_ts,
            start_ts=ordered[0].ts,
            end_ts=ordered[-1].ts,
            text="\n".join(lines),
            message_count=len(lines),
        )

    def split_windows(
        self,
        messages: Sequence[SlackMessage],
        max_messages: int,
        max_minutes: float,
    ) -> List[List[SlackMessage]]:
        """Cut chronological messages into windows.

        A message joins the current window unless the window already holds
        `max_messages` messages or the message is more than `max_minutes` after
        the window's first message. A span exactly equal to `max_minutes` stays
        in the window.
        """
        if max_messages < 1:
            raise ValueError("max_messages must be >= 1")
        max_span = float(max_minutes) * 60.0
        windows: List[List[SlackMessage]] = []
        current: List[SlackMessage] = []
        for m in messages:
            if current and (len(current) >= max_messages or m.ts_float - current[0].ts_float > max_span):
                windows.append(current)
                current = []
            current.append(m)
        if current:
            windows.append(current)
        return windows

    def build_windows(
        self,
        team_id: str,
        channel_id: str,
        messages: Sequence[SlackMessage],
        max_messages: int,
        max_minutes: float,
        channel_name: Optional[str] = None,
    ) -> List[SlackChunk]:
        """Build one chunk per window of non-threaded messages.

        Args:
            team_id: Workspace id.
            channel_id: Channel id.
            messages: Non-threaded messages in chronological order.
            max_messages: Maximum messages per window.
            max_minutes: Maximum minutes from a window's first to last message.
            channel_name: Human readable channel name.

        Returns:
            List[SlackChunk]: Window chunks; windows with only empty text are dropped.
        """
        chunks: List[SlackChunk] = []
        for window in self.split_windows(messages, max_messages, max_minutes):
            lines = self._render(window)
            if not lines:
                continue
            chunks.append(
                SlackChunk(
                    team_id=team_id,
                    channel_id=channel_id,
                    channel_name=channel_name,
                    is_thread=False,
                    thread_ts=None,
                    start_ts=window[0].ts,
                    end_ts=window[-1].ts,
                    text="\n".join(lines),
                    message_count=len(lines),
                )
            )
        return chunks

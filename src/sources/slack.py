"""Slack source: channel listing, history and thread collection with retry and metrics.

This module implements the collecting side of the indexer:
- Uses a Slack WebClient with SDK retry handlers for server and connection errors.
- Routes every page request through a `RetryPolicy` that backs off on HTTP 429
  and honors Retry-After.
- Translates Slack errors into the indexer's error types.
- Emits Prometheus metrics for per-call latency/count and per-operation totals.
- Logs operation lifecycle at INFO and per-page details at DEBUG.

The design follows Slack rate limiting guidance:
https://docs.slack.dev/apis/web-api/rate-limits/
"""

import logging
import os
import re
from pathlib import Path
from time import perf_counter
from typing import Any, Callable, Dict, Final, List, Optional

from pydantic import BaseModel, Field
from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError
from slack_sdk.http_retry.builtin_handlers import ConnectionErrorRetryHandler, ServerErrorRetryHandler

from src.metrics.metrics import API_CALLS, API_LATENCY, OP_ITEMS, OP_LATENCY, USER_CACHE_HITS, USER_CACHE_MISSES
from src.models.documents import SlackMessage
from src.models.errors import (
    ConfigurationError,
    RateLimitedError,
    RemoteError,
    RemoteNotFoundError,
    RemoteTransientError,
)
from src.sources.retry import RetryPolicy, rate_limit_signal
from src.utils.persistent_cache import PersistentCache

logger = logging.getLogger(__name__)

CHANNEL_ID_RE = re.compile(r"^[CGD][A-Z0-9]{6,}$")

NOT_FOUND_ERRORS: Final = frozenset(
    {"channel_not_found", "thread_not_found", "message_not_found", "user_not_found", "not_in_channel"}
)
AUTH_ERRORS: Final = frozenset(
    {"not_authed", "invalid_auth", "account_inactive", "token_revoked", "token_expired", "missing_scope"}
)


class SlackConfig(BaseModel):
    """Configuration for the Slack source."""

    id: str = Field(default="slack-main", description="Source ID, used in metric labels and cache paths")
    channel_types: List[str] = Field(
        default_factory=lambda: ["public_channel"],
        description="Conversation types listed by conversations.list",
    )
    history_page_limit: int = Field(default=200, ge=1, le=1000, description="Messages requested per page")
    user_cache_path: Optional[str] = Field(default=None, description="Path to the user cache file")
    user_cache_ttl_seconds: int = Field(default=7 * 24 * 60 * 60, description="TTL for user cache in seconds")
    api_max_attempts: int = Field(default=5, ge=1, description="Attempts per call while rate limited")
    base_backoff_seconds: float = Field(default=5.0, ge=0, description="First backoff wait, doubled per attempt")
    max_backoff_seconds: float = Field(default=60.0, ge=0, description="Upper bound of a single backoff wait")


def is_channel_id(value: str) -> bool:
    """True if `value` looks like a Slack conversation id rather than a name."""
    return bool(CHANNEL_ID_RE.match(value or ""))


def build_web_client(token: Optional[str]) -> WebClient:
    """Create a WebClient; rate limits are left to `RetryPolicy` so they stay visible.

    Raises:
        ConfigurationError: If no bot token is available.
    """
    if not token:
        raise ConfigurationError("Slack bot token is not set (SLACK_BOT_TOKEN)")
    return WebClient(
        token=token,
        retry_handlers=[
            ServerErrorRetryHandler(max_retry_count=2),
            ConnectionErrorRetryHandler(max_retry_count=2),
        ],
    )


class SlackApi:
    """Thin wrapper issuing Slack calls through the retry policy with metrics and error translation.

    Args:
        client: Slack WebClient (or a test double exposing the same methods).
        retry_policy: Policy applied to every call.
        source_id: Label used in metrics.
    """

    def __init__(self, client: WebClient, retry_policy: RetryPolicy, source_id: str = "slack-main"):
        """Initialize the wrapper."""
        self.client = client
        self.retry_policy = retry_policy
        self.source_id = source_id

    def call(self, method: str, func: Callable[..., Any], **kwargs: Any) -> Any:
        """Execute one Slack API call with retries, metrics and error translation.

        Args:
            method: Slack method name for metrics and logs (e.g., "conversations.history").
            func: The WebClient function to call.
            **kwargs: Arguments for the call; None values are dropped.

        Returns:
            The Slack response.

        Raises:
            RateLimitedError: Still rate limited after all attempts.
            RemoteNotFoundError: The requested channel/thread/user is not visible.
            ConfigurationError: Authentication or scope problems.
            RemoteTransientError: Any other failure.
        """
        params = {k: v for k, v in kwargs.items() if v is not None}

        def attempt() -> Any:
            call_start = perf_counter()
            status = "200"
            try:
                resp = func(**params)
                status = str(getattr(resp, "status_code", 200))
                return resp
            except SlackApiError as e:
                status = str(getattr(getattr(e, "response", None), "status_code", "error"))
                raise
            except Exception:
                status = "exception"
                raise
            finally:
                API_CALLS.labels(source="slack", source_id=self.source_id, method=method, status=status).inc()
                API_LATENCY.labels(source="slack", source_id=self.source_id, method=method, status=status).observe(
                    perf_counter() - call_start
                )

        try:
            return self.retry_policy.call(attempt, method)
        except Exception as e:
            raise self.translate_error(method, e) from e

    @staticmethod
    def translate_error(method: str, exc: Exception) -> RemoteError | ConfigurationError:
        """Map an SDK or transport exception to the indexer's error types."""
        status, retry_after, is_rate_limited = rate_limit_signal(exc)
        if is_rate_limited:
            return RateLimitedError(
                f"{method} still rate limited after retries", method=method, status=status, retry_after=retry_after
            )
        error_code = None
        if isinstance(exc, SlackApiError) and exc.response is not None:
            error_code = exc.response.get("error")
        if error_code in NOT_FOUND_ERRORS:
            return RemoteNotFoundError(f"{method}: {error_code}", method=method, status=status)
        if error_code in AUTH_ERRORS:
            return ConfigurationError(f"{method}: Slack rejected the bot token ({error_code})")
        return RemoteTransientError(f"{method}: {error_code or exc}", method=method, status=status)


class SlackUserResolver:
    """Resolve user ids to display names using users.info and a persistent cache.

    Args:
        api: Slack API wrapper.
        cache: Persistent cache of compact user records.
    """

    def __init__(self, api: SlackApi, cache: PersistentCache):
        """Initialize the resolver."""
        self.api = api
        self._cache = cache

    def get_user(self, user_id: str) -> Dict[str, Any]:
        """Return a compact users.info record, from cache when fresh."""
        entry = self._cache.get(user_id)
        if isinstance(entry, dict):
            USER_CACHE_HITS.inc()
            logger.debug(f"user cache HIT for {user_id}")
            return entry

        USER_CACHE_MISSES.inc()
        logger.debug(f"user cache MISS for {user_id}")
        resp = self.api.call("users.info", self.api.client.users_info, user=user_id)
        user = resp.get("user", {}) or {}
        profile = user.get("profile", {}) or {}
        compact = {
            "id": user.get("id", user_id),
            "name": user.get("name"),
            "real_name": user.get("real_name") or profile.get("real_name"),
            "display_name": profile.get("display_name"),
            "is_bot": user.get("is_bot"),
        }
        self._cache.set(user_id, compact)
        return compact

    def display_name(self, user_id: Optional[str]) -> str:
        """Return a human readable name for `user_id`; falls back to the id on errors."""
        if not user_id:
            return "unknown"
        try:
            info = self.get_user(user_id)
        except (RemoteError, ConfigurationError) as e:
            logger.debug(f"Could not resolve user {user_id}: {e}")
            return user_id
        return info.get("display_name") or info.get("real_name") or info.get("name") or user_id


class SlackHistoryCollector:
    """Walk channel listings, channel history and thread replies.

    Every page is requested through `SlackApi.call`, so rate limits are retried
    with backoff and exhausted retries surface as indexer errors.

    Config keys:
        - channel_types: conversation types to list (e.g., public_channel).
        - history_page_limit: page size for history and replies.
        - api_max_attempts, base_backoff_seconds, max_backoff_seconds: retry policy.

    Secrets:
        - bot_token: Slack bot OAuth token (falls back to SLACK_BOT_TOKEN).
    """

    SLACK_API_LIMIT: Final[int] = 200
    """Default messages per API call to Slack"""

    @classmethod
    def create(
        cls,
        config: SlackConfig,
        data_dir: str = "data",
        secrets: Optional[dict] = None,
        client: Optional[WebClient] = None,
    ) -> "SlackHistoryCollector":
        """Create a collector with a WebClient, retry policy and user cache derived from `config`."""
        secrets = dict(secrets or {})
        token = secrets.get("bot_token") or os.getenv("SLACK_BOT_TOKEN")
        web_client = client if client is not None else build_web_client(token)

        policy = RetryPolicy(
            max_attempts=config.api_max_attempts,
            base_backoff_seconds=config.base_backoff_seconds,
            max_backoff_seconds=config.max_backoff_seconds,
        )
        api = SlackApi(web_client, policy, source_id=config.id)

        cache_path = config.user_cache_path or os.path.join(data_dir, "slack", config.id, "slack_users_cache.json")
        cache = PersistentCache(Path(cache_path).expanduser(), ttl_seconds=config.user_cache_ttl_seconds)
        return cls(config=config, api=api, user_resolver=SlackUserResolver(api, cache))

    def __init__(self, config: SlackConfig, api: SlackApi, user_resolver: Optional[SlackUserResolver] = None):
        """Initialize the collector."""
        self.config = config
        self.api = api
        self.client = api.client
        self.source_id = config.id
        self.user_resolver = user_resolver
        self._identity: Optional[Dict[str, Optional[str]]] = None

    def _observe(self, operation: str, started: float, items: int) -> None:
        elapsed = perf_counter() - started
        OP_LATENCY.labels(source="slack", source_id=self.source_id, operation=operation).observe(elapsed)
        OP_ITEMS.labels(source="slack", source_id=self.source_id, operation=operation).observe(items)
        logger.info(f"{operation}: done items={items} elapsed={elapsed:.3f}s")

    def identify(self) -> Dict[str, Optional[str]]:
        """Return the workspace team id and the bot's own user id (auth.test, cached)."""
        if self._identity is None:
            resp = self.api.call("auth.test", self.client.auth_test)
            self._identity = {"team_id": resp.get("team_id"), "user_id": resp.get("user_id")}
        return self._identity

    def list_channels(self) -> List[dict]:
        """List channels the bot is a member of, following conversations.list cursors.

        Returns:
            List[dict]: Raw channel objects with `is_member` set.
        """
        op_start = perf_counter()
        types_str = ",".join(self.config.channel_types)
        logger.debug(f"list_channels: start types={types_str}")
        channels: List[dict] = []
        cursor = None
        while True:
            resp = self.api.call(
                "conversations.list",
                self.client.conversations_list,
                cursor=cursor,
                limit=self.SLACK_API_LIMIT,
                types=types_str,
                exclude_archived=True,
            )
            page = resp.get("channels", []) or []
            channels.extend(page)
            logger.debug(f"list_channels: page channels={len(page)}")
            cursor = (resp.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                break
        members = [c for c in channels if c.get("is_member")]
        self._observe("list_channels", op_start, len(members))
        return members

    def get_channel(self, channel_id: str) -> dict:
        """Fetch channel metadata with conversations.info.

        Raises:
            RemoteNotFoundError: If the channel does not exist or is not visible.
        """
        resp = self.api.call("conversations.info", self.client.conversations_info, channel=channel_id)
        channel = resp.get("channel")
        if not channel:
            raise RemoteNotFoundError(f"Channel {channel_id} not found", method="conversations.info")
        return channel

    def resolve_channel(self, channel: str) -> dict:
        """Resolve a channel id or name (with or without '#') to its channel object.

        Raises:
            RemoteNotFoundError: If no member channel matches.
        """
        if is_channel_id(channel):
            return self.get_channel(channel)
        name = channel.lstrip("#")
        channels = self.list_channels()
        for c in channels:
            if c.get("name") == name:
                return c
        available = ", ".join(sorted(c.get("name", c.get("id", "?")) for c in channels)[:20])
        raise RemoteNotFoundError(f'Channel "{channel}" not found. Available channels: {available}')

    def fetch_history(
        self,
        channel_id: str,
        oldest: Optional[str] = None,
        page_size: Optional[int] = None,
    ) -> List[SlackMessage]:
        """Fetch the complete channel history, oldest message first.

        Slack returns history pages newest-first; pages are concatenated and the
        result reversed so downstream chunking sees chronological order.

        Args:
            channel_id: Slack channel id.
            oldest: Inclusive lower bound timestamp; None fetches from the beginning.
            page_size: Messages per page (defaults to `history_page_limit`).

        Returns:
            List[SlackMessage]: Messages in chronological order.
        """
        op_start = perf_counter()
        limit = page_size or self.config.history_page_limit
        logger.debug(f"fetch_history: start channel={channel_id} oldest={oldest}")
        raw: List[dict] = []
        cursor = None
        while True:
            resp = self.api.call(
                "conversations.history",
                self.client.conversations_history,
                channel=channel_id,
                cursor=cursor,
                limit=limit,
                oldest=oldest,
                inclusive=True if oldest else None,
            )
            page = resp.get("messages", []) or []
            raw.extend(page)
            logger.debug(f"fetch_history: page channel={channel_id} messages={len(page)}")
            cursor = (resp.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                break
        raw.reverse()
        messages = [SlackMessage.from_api(m, channel_id) for m in raw if m.get("ts")]
        self._observe("fetch_history", op_start, len(messages))
        return messages

    def fetch_thread_replies(
        self,
        channel_id: str,
        thread_ts: str,
        page_size: Optional[int] = None,
    ) -> List[SlackMessage]:
        """Fetch a thread (root first, then replies) following conversations.replies cursors.

        Args:
            channel_id: Slack channel id.
            thread_ts: Timestamp of the thread root.
            page_size: Messages per page (defaults to `history_page_limit`).

        Returns:
            List[SlackMessage]: Thread messages in chronological order.
        """
        op_start = perf_counter()
        limit = page_size or self.config.history_page_limit
        raw: List[dict] = []
        cursor = None
        while True:
            resp = self.api.call(
                "conversations.replies",
                self.client.conversations_replies,
                channel=channel_id,
                ts=thread_ts,
                cursor=cursor,
                limit=limit,
            )
            page = resp.get("messages", []) or []
            raw.extend(page)
            cursor = (resp.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                break
        messages = [SlackMessage.from_api(m, channel_id) for m in raw if m.get("ts")]
        self._observe("fetch_thread_replies", op_start, len(messages))
        return messages

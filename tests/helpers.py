"""Shared test doubles for Slack responses, messages and embeddings."""

import hashlib
from typing import Any, Dict, Optional

from langchain_core.embeddings import Embeddings
from slack_sdk.errors import SlackApiError
from slack_sdk.web.slack_response import SlackResponse

from src.models.documents import SlackMessage


class FakeEmbeddings(Embeddings):
    """Deterministic embeddings derived from a hash of the text."""

    def __init__(self, size: int = 8):
        self.size = size
        self.calls = []

    def _vector(self, text: str) -> list[float]:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [(digest[i] / 255.0) + 0.1 for i in range(self.size)]

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [self._vector(t) for t in texts]

    def embed_query(self, text: str) -> list[float]:
        self.calls.append(text)
        return self._vector(text)


def slack_response(data: Dict[str, Any], status: int = 200, headers: Optional[Dict[str, str]] = None) -> SlackResponse:
    return SlackResponse(
        client=None,
        http_verb="POST",
        api_url="https://slack.com/api/test.method",
        req_args={},
        data=data,
        headers=headers or {},
        status_code=status,
    )


def slack_error(error: str, status: int = 200, headers: Optional[Dict[str, str]] = None) -> SlackApiError:
    response = slack_response({"ok": False, "error": error}, status=status, headers=headers)
    return SlackApiError(f"The request to the Slack API failed. (error: {error})", response)


def make_message(ts: Any, text: str = "hello", user: str = "U1", thread_ts: Optional[str] = None) -> SlackMessage:
    return SlackMessage(ts=str(ts), channel="C0123ABCD", text=text, user=user, thread_ts=thread_ts)

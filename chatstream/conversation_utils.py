"""
Request building for the two stream flavours.

NDJSON endpoints keep conversation memory server-side and only need the new
query plus a conversation id. Raw-text endpoints are stateless and receive the
prior turns with every request.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from .models import Message, MessageRole, MessageStatus
from .streaming.models import StreamMode, StreamRequest

NDJSON_CONTENT_TYPE = "application/x-ndjson"
JSON_CONTENT_TYPE = "application/json"


def build_headers(mode: StreamMode) -> dict[str, str]:
    headers = {"Content-Type": JSON_CONTENT_TYPE}
    if mode is StreamMode.NDJSON:
        headers["Accept"] = NDJSON_CONTENT_TYPE
    return headers


def history_for_request(messages: Iterable[Message]) -> list[dict[str, Any]]:
    """
    Prior turns worth echoing back to the server.

    Assistant messages are included only when a session produced them and
    they completed with text. Local greetings and failed or cancelled-empty
    replies never reached the user as a real answer.
    """
    history = []
    for message in messages:
        if message.role is MessageRole.ASSISTANT and (
            message.session_id is None
            or message.status is not MessageStatus.COMPLETE
            or not message.text
        ):
            continue
        history.append(message.to_wire())
    return history


def build_query_request(
    endpoint: str, query: str, conversation_id: str
) -> StreamRequest:
    """``{"query": ..., "sessionId": ...}`` for NDJSON endpoints."""
    return StreamRequest(
        url=endpoint,
        body={"query": query, "sessionId": conversation_id},
        headers=build_headers(StreamMode.NDJSON),
    )


def build_messages_request(
    endpoint: str, messages: Iterable[Message]
) -> StreamRequest:
    """``{"messages": [...]}`` for raw-text endpoints."""
    return StreamRequest(
        url=endpoint,
        body={"messages": history_for_request(messages)},
        headers=build_headers(StreamMode.RAW),
    )

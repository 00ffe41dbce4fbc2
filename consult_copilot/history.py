"""Bounded conversation window sent to the provider."""

from consult_copilot.llm.types import Message


def _drop_unmatched_tool_messages(messages: list[Message]) -> list[Message]:
    """Keep a tool reply only when its id answers the latest assistant tool-call turn."""
    kept: list[Message] = []
    pending_ids: set[str] = set()
    for message in messages:
        if message.role == "tool":
            call_id = (message.tool_call_id or "").strip()
            if call_id and call_id in pending_ids:
                kept.append(message)
                pending_ids.discard(call_id)
            continue

        pending_ids = set()
        if message.role == "assistant" and message.tool_calls:
            pending_ids = {call.id.strip() for call in message.tool_calls if call.id and call.id.strip()}
        kept.append(message)
    return kept


def build_history_window(messages: list[Message], limit: int) -> list[Message]:
    """Return at most ``limit`` trailing messages, never starting mid tool block.

    The cut point rewinds past tool messages so a tool result keeps its
    assistant tool-call message. Tool messages whose ``tool_call_id`` does not
    match a call of the preceding assistant turn are dropped, since providers
    reject orphaned or stale tool results.
    """
    if len(messages) <= limit:
        return _drop_unmatched_tool_messages(messages)

    start = max(len(messages) - limit, 0)
    while start > 0 and messages[start].role == "tool":
        start -= 1
    return _drop_unmatched_tool_messages(messages[start:])

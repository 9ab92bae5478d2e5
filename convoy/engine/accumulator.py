"""Rebuilds display messages from an agent's stream events.

One ConversationAccumulator serves a session. Complete content blocks
become messages immediately; streamed blocks are opened on
``content_block_start``, grown by ``content_block_delta`` events and
closed on ``content_block_stop``. While a block is open its Message is
mutated in place and every delta is re-emitted as a MessageUpdate
against the same message id.

Event shapes handled (``type`` / ``subtype``):

    system/init                  resumable conversation id + model
    system/error                 error message
    system/*                     plain system message
    assistant (message.content)  text | thinking | tool_use blocks
    assistant/content_block_start|delta|stop   streamed blocks
    user (message.content)       tool_result blocks
    result/success               usage + cost, processing finished
    result/error*                error message, processing finished
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from convoy.shared.models.message import Message, MessageType, MessageUpdate

from .errors import describe_parse_error, format_error
from .pricing import PriceTable
from .stream_decoder import StreamEvent

logger = logging.getLogger(__name__)

UNKNOWN_TOOL_NAME = "Unknown"


@dataclass
class ParseResult:
    """One outcome of interpreting a stream event."""
    message: Message | None = None
    update: MessageUpdate | None = None
    # Keys: agent_session_id, is_processing, model
    session_update: dict[str, Any] | None = None
    # Keys: input_tokens, output_tokens, cost, model
    stats: dict[str, Any] | None = None


@dataclass
class OpenBlock:
    """A streamed content block that has not been closed yet."""
    message: Message
    kind: str  # "text" | "thinking" | "tool_use"
    text: str = ""
    last_delta: str | None = None
    last_uuid: str | None = None


@dataclass
class _SessionState:
    open_blocks: dict[int, OpenBlock] = field(default_factory=dict)
    # tool_use_id -> tool name, filled as tool invocations are seen
    tool_names: dict[str, str] = field(default_factory=dict)
    model: str | None = None


class ConversationAccumulator:
    """Turns StreamEvents into Messages plus session/stat side updates."""

    def __init__(self, pricing: PriceTable | None = None) -> None:
        self._pricing = pricing or PriceTable()
        self._sessions: dict[str, _SessionState] = {}

    # ── Public API ──

    def parse(
        self,
        session_id: str,
        event: StreamEvent | dict[str, Any],
        model: str | None = None,
    ) -> list[ParseResult]:
        """Interpret one event. Never raises.

        *model* is the session's configured model, used for pricing when
        neither the result event nor the init event named one.
        """
        if isinstance(event, dict):
            event = StreamEvent.from_record(event)
        try:
            if event.kind == "system":
                return self._handle_system(session_id, event)
            if event.kind == "assistant":
                return self._handle_assistant(session_id, event)
            if event.kind == "user":
                return self._handle_user(session_id, event)
            if event.kind == "result":
                return self._handle_result(session_id, event, model)
            logger.warning(
                "Unknown stream event type %r for session %s",
                event.kind, session_id[:8],
            )
            return []
        except Exception as exc:
            logger.exception(
                "Failed to interpret %s/%s event for session %s",
                event.kind, event.subtype, session_id[:8],
            )
            message, details = describe_parse_error(exc)
            return [ParseResult(message=self._message(
                session_id, MessageType.ERROR, format_error(message, details),
            ))]

    def error_message(self, session_id: str, text: str) -> Message:
        """Build an error message for failures outside the event stream."""
        return self._message(session_id, MessageType.ERROR, text)

    def has_open_blocks(self, session_id: str) -> bool:
        state = self._sessions.get(session_id)
        return bool(state and state.open_blocks)

    def tool_name_for(self, session_id: str, tool_use_id: str) -> str | None:
        state = self._sessions.get(session_id)
        return state.tool_names.get(tool_use_id) if state else None

    def clear_session(self, session_id: str) -> None:
        """Forget open blocks and tool correlations for *session_id*."""
        state = self._sessions.pop(session_id, None)
        if state and state.open_blocks:
            logger.debug(
                "Discarded %d open block(s) for session %s",
                len(state.open_blocks), session_id[:8],
            )

    # ── Event kinds ──

    def _handle_system(self, session_id: str, event: StreamEvent) -> list[ParseResult]:
        data = event.payload
        if event.subtype == "init":
            update: dict[str, Any] = {}
            if data.get("session_id"):
                update["agent_session_id"] = data["session_id"]
            if data.get("model"):
                self._state(session_id).model = data["model"]
                update["model"] = data["model"]
            return [ParseResult(session_update=update)] if update else []
        content = _message_content(data)
        if event.subtype == "error":
            return [ParseResult(message=self._message(
                session_id, MessageType.ERROR, content or "An error occurred",
            ))]
        return [ParseResult(message=self._message(
            session_id, MessageType.SYSTEM, content,
        ))]

    def _handle_assistant(self, session_id: str, event: StreamEvent) -> list[ParseResult]:
        data = event.payload
        body = data.get("message") or {}
        results: list[ParseResult] = []

        content = body.get("content")
        if content:
            blocks = content if isinstance(content, list) else [content]
            for block in blocks:
                message = self._message_for_block(session_id, block)
                if message is not None:
                    results.append(ParseResult(message=message))

        if event.subtype == "content_block_start" and body.get("content_block"):
            results.extend(self._open_block(
                session_id, _block_index(body), body["content_block"],
            ))
        elif event.subtype == "content_block_delta" and body.get("delta"):
            results.extend(self._apply_delta(
                session_id, _block_index(body), body["delta"], data.get("uuid"),
            ))
        elif event.subtype == "content_block_stop":
            state = self._sessions.get(session_id)
            if state is not None:
                state.open_blocks.pop(_block_index(body), None)
        return results

    def _handle_user(self, session_id: str, event: StreamEvent) -> list[ParseResult]:
        body = event.payload.get("message") or {}
        content = body.get("content")
        if not content or isinstance(content, str):
            return []
        results: list[ParseResult] = []
        blocks = content if isinstance(content, list) else [content]
        for block in blocks:
            if not isinstance(block, dict) or block.get("type") != "tool_result":
                continue
            tool_use_id = block.get("tool_use_id") or ""
            tool_name = (
                self.tool_name_for(session_id, tool_use_id) or UNKNOWN_TOOL_NAME
            )
            results.append(ParseResult(message=self._message(
                session_id,
                MessageType.TOOL_RESULT,
                format_tool_result(block.get("content")),
                tool_name=tool_name,
                tool_use_id=tool_use_id,
                is_error=bool(block.get("is_error", False)),
            )))
        return results

    def _handle_result(
        self, session_id: str, event: StreamEvent, model: str | None,
    ) -> list[ParseResult]:
        data = event.payload
        if event.subtype.startswith("error"):
            error = data.get("error")
            text = (
                (error.get("message") if isinstance(error, dict) else error)
                or data.get("result")
                or "An error occurred"
            )
            return [ParseResult(
                message=self._message(session_id, MessageType.ERROR, str(text)),
                session_update={"is_processing": False},
            )]

        result = ParseResult(session_update={"is_processing": False})
        usage = data.get("usage")
        if event.subtype == "success" and isinstance(usage, dict):
            state = self._sessions.get(session_id)
            priced_model = data.get("model") or (state.model if state else None) or model
            input_tokens = int(usage.get("input_tokens") or 0)
            output_tokens = int(usage.get("output_tokens") or 0)
            result.stats = {
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "cost": self._pricing.cost(priced_model, input_tokens, output_tokens),
                "model": priced_model,
            }
        return [result]

    # ── Streamed blocks ──

    def _open_block(
        self, session_id: str, index: int, block: dict[str, Any],
    ) -> list[ParseResult]:
        state = self._state(session_id)
        message = self._message_for_block(session_id, block)
        if message is None:
            state.open_blocks.pop(index, None)
            return []
        state.open_blocks[index] = OpenBlock(
            message=message,
            kind=block.get("type", "text"),
            text=message.content if block.get("type") != "tool_use" else "",
        )
        return [ParseResult(message=message)]

    def _apply_delta(
        self,
        session_id: str,
        index: int,
        delta: dict[str, Any],
        event_uuid: str | None,
    ) -> list[ParseResult]:
        delta_type = delta.get("type")
        if delta_type == "text_delta":
            kind, fragment = "text", delta.get("text") or ""
        elif delta_type == "thinking_delta":
            kind, fragment = "thinking", delta.get("thinking") or ""
        else:
            # input_json_delta and friends: tool input arrives whole
            return []
        if not fragment:
            return []

        state = self._state(session_id)
        results: list[ParseResult] = []
        block = state.open_blocks.get(index)
        if block is None or block.kind != kind:
            # Delta without a start: open a fresh block starting from empty
            message = self._message(
                session_id,
                MessageType.THINKING if kind == "thinking" else MessageType.ASSISTANT,
                "",
            )
            block = OpenBlock(message=message, kind=kind)
            state.open_blocks[index] = block
            results.append(ParseResult(message=message))
        elif fragment == block.last_delta and (
            event_uuid is None or event_uuid == block.last_uuid
        ):
            logger.debug(
                "Skipping repeated delta for session %s block %d",
                session_id[:8], index,
            )
            return results

        block.text += fragment
        block.last_delta = fragment
        block.last_uuid = event_uuid
        block.message.content = block.text
        results.append(ParseResult(
            update=MessageUpdate(id=block.message.id, content=block.text),
        ))
        return results

    # ── Helpers ──

    def _state(self, session_id: str) -> _SessionState:
        state = self._sessions.get(session_id)
        if state is None:
            state = _SessionState()
            self._sessions[session_id] = state
        return state

    def _message_for_block(self, session_id: str, block: Any) -> Message | None:
        if not isinstance(block, dict) or not block.get("type"):
            return None
        block_type = block["type"]
        if block_type == "text":
            return self._message(session_id, MessageType.ASSISTANT, block.get("text") or "")
        if block_type == "thinking":
            return self._message(session_id, MessageType.THINKING, block.get("thinking") or "")
        if block_type == "tool_use":
            tool_input = block.get("input") or {}
            tool_use_id = block.get("id") or ""
            if tool_use_id and block.get("name"):
                self._state(session_id).tool_names[tool_use_id] = block["name"]
            return self._message(
                session_id,
                MessageType.TOOL,
                json.dumps(tool_input, indent=2),
                tool_name=block.get("name") or UNKNOWN_TOOL_NAME,
                raw_input=tool_input,
                tool_use_id=tool_use_id,
            )
        logger.warning("Unknown content block type: %s", block_type)
        return None

    @staticmethod
    def _message(
        session_id: str, type_: MessageType, content: str, **metadata: Any,
    ) -> Message:
        return Message(
            session_id=session_id,
            type=type_,
            content=content,
            metadata=metadata,
        )


def _block_index(body: dict[str, Any]) -> int:
    index = body.get("index")
    return 0 if index is None else int(index)


def _message_content(data: dict[str, Any]) -> str:
    body = data.get("message")
    if isinstance(body, dict):
        return str(body.get("content") or "")
    if isinstance(body, str):
        return body
    return ""


def format_tool_result(content: Any) -> str:
    """Flatten a tool_result payload into display text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict) and item.get("type") == "text":
                parts.append(item.get("text") or "")
            else:
                parts.append(json.dumps(item))
        return "\n".join(parts)
    if isinstance(content, dict):
        if content.get("type") == "text":
            return content.get("text") or ""
        return json.dumps(content, indent=2)
    if content is None:
        return ""
    return str(content)

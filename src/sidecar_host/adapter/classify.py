"""Message classification for backend SDK output

Backend SDKs emit loosely shaped messages: the kind may live in `type`,
`kind` or `event`, text in `text`, `delta` or `content`, and so on. A
classifier is an ordered list of ClassificationRule objects. Each rule probes
the message and either returns a typed Classification or None; the first hit
wins and a message no rule claims is Unclassified.

Default rule order:

| # | Rule             | Matches when                                           |
|---|------------------|--------------------------------------------------------|
| 1 | error            | kind contains "error"                                  |
| 2 | usage            | message has a "usage" field                            |
| 3 | tool_result      | a tool name is present and kind/fields say "result"    |
| 4 | tool_call        | a tool name is present, or kind contains "tool"        |
| 5 | assistant_delta  | text is present and kind contains "delta" or "stream"  |
| 6 | assistant_message| text is present                                        |
"""

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

TYPE_KEYS = ("type", "kind", "event")
TEXT_KEYS = ("text", "delta", "content")
TOOL_NAME_KEYS = ("tool_name", "toolName", "name")
TOOL_USE_ID_KEYS = ("tool_use_id", "toolUseId", "id")
TOOL_OUTPUT_KEYS = ("output", "result")
TOOL_INPUT_KEYS = ("input", "arguments", "args")
IS_ERROR_KEYS = ("is_error", "isError")
ERROR_TEXT_KEYS = ("error", "message")

UNKNOWN_TOOL = "unknown_tool"


def first_present(message: Dict[str, Any], keys: Sequence[str], default: Any = None) -> Any:
    """Value of the first key that is present with a non-empty value"""
    for key in keys:
        value = message.get(key)
        if value is not None and value != "":
            return value
    return default


def message_kind(message: Dict[str, Any]) -> str:
    """Lowercased kind string, empty if the message names none"""
    return str(first_present(message, TYPE_KEYS, "")).lower()


def message_text(message: Dict[str, Any]) -> str:
    for key in TEXT_KEYS:
        value = message.get(key)
        if isinstance(value, str) and value:
            return value
    return ""


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value)
    except (TypeError, ValueError):
        return str(value)


class Classification:
    """Base for classified messages"""

    kind = "unclassified"

    def to_event_payload(self) -> Dict[str, Any]:
        """Event payload: {"type": kind, ...fields}"""
        raise NotImplementedError


@dataclass
class ErrorMessage(Classification):
    message: str
    kind = "error"

    def to_event_payload(self) -> Dict[str, Any]:
        return {"type": self.kind, "message": self.message}


@dataclass
class UsageReport(Classification):
    usage: Any
    kind = "usage"

    def to_event_payload(self) -> Dict[str, Any]:
        return {"type": self.kind, "usage": self.usage}


@dataclass
class ToolResult(Classification):
    tool_name: str
    tool_use_id: Optional[Any]
    output: Any
    is_error: bool = False
    kind = "tool_result"

    def to_event_payload(self) -> Dict[str, Any]:
        return {
            "type": self.kind,
            "tool_name": self.tool_name,
            "tool_use_id": self.tool_use_id,
            "output": self.output,
            "is_error": self.is_error,
        }


@dataclass
class ToolCall(Classification):
    tool_name: str
    tool_use_id: Optional[Any]
    input: Any = field(default_factory=dict)
    parent_tool_use_id: Optional[Any] = None
    kind = "tool_call"

    def to_event_payload(self) -> Dict[str, Any]:
        return {
            "type": self.kind,
            "tool_name": self.tool_name,
            "tool_use_id": self.tool_use_id,
            "parent_tool_use_id": self.parent_tool_use_id,
            "input": self.input,
        }


@dataclass
class AssistantDelta(Classification):
    text: str
    kind = "assistant_delta"

    def to_event_payload(self) -> Dict[str, Any]:
        return {"type": self.kind, "text": self.text}


@dataclass
class AssistantMessage(Classification):
    text: str
    kind = "assistant_message"

    def to_event_payload(self) -> Dict[str, Any]:
        return {"type": self.kind, "text": self.text}


@dataclass
class Unclassified(Classification):
    """No rule matched; the original message is kept"""
    message: Any

    def to_event_payload(self) -> Dict[str, Any]:
        return {"type": self.kind, "raw": self.message}


@dataclass
class ClassificationRule:
    """A named probe; returns a Classification or None"""
    name: str
    match: Callable[[Dict[str, Any]], Optional[Classification]]

    def __call__(self, message: Dict[str, Any]) -> Optional[Classification]:
        return self.match(message)


def _error_rule(message: Dict[str, Any]) -> Optional[Classification]:
    if "error" not in message_kind(message):
        return None
    return ErrorMessage(_as_text(first_present(message, ERROR_TEXT_KEYS)))


def _usage_rule(message: Dict[str, Any]) -> Optional[Classification]:
    if "usage" not in message:
        return None
    return UsageReport(message["usage"])


def _is_result(message: Dict[str, Any]) -> bool:
    return "result" in message_kind(message) or any(key in message for key in TOOL_OUTPUT_KEYS)


def _tool_result_rule(message: Dict[str, Any]) -> Optional[Classification]:
    tool_name = first_present(message, TOOL_NAME_KEYS)
    if tool_name is None or not _is_result(message):
        return None
    output = message["output"] if "output" in message else message.get("result")
    is_error = first_present(message, IS_ERROR_KEYS, False)
    return ToolResult(
        tool_name=str(tool_name),
        tool_use_id=first_present(message, TOOL_USE_ID_KEYS),
        output=output,
        is_error=is_error if isinstance(is_error, bool) else False,
    )


def _tool_call_rule(message: Dict[str, Any]) -> Optional[Classification]:
    tool_name = first_present(message, TOOL_NAME_KEYS)
    if tool_name is None and "tool" not in message_kind(message):
        return None
    return ToolCall(
        tool_name=str(tool_name or UNKNOWN_TOOL),
        tool_use_id=first_present(message, TOOL_USE_ID_KEYS),
        input=first_present(message, TOOL_INPUT_KEYS, {}),
    )


def _assistant_delta_rule(message: Dict[str, Any]) -> Optional[Classification]:
    text = message_text(message)
    kind = message_kind(message)
    if not text or not ("delta" in kind or "stream" in kind):
        return None
    return AssistantDelta(text)


def _assistant_message_rule(message: Dict[str, Any]) -> Optional[Classification]:
    text = message_text(message)
    if not text:
        return None
    return AssistantMessage(text)


DEFAULT_RULES: Tuple[ClassificationRule, ...] = (
    ClassificationRule("error", _error_rule),
    ClassificationRule("usage", _usage_rule),
    ClassificationRule("tool_result", _tool_result_rule),
    ClassificationRule("tool_call", _tool_call_rule),
    ClassificationRule("assistant_delta", _assistant_delta_rule),
    ClassificationRule("assistant_message", _assistant_message_rule),
)


def classify(message: Any, rules: Sequence[ClassificationRule] = DEFAULT_RULES) -> Classification:
    """Classify one backend message; the first matching rule wins

    Non-dict messages are never probed and come back Unclassified.
    """
    if not isinstance(message, dict):
        return Unclassified(message)
    for rule in rules:
        result = rule(message)
        if result is not None:
            return result
    return Unclassified(message)

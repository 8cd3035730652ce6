"""Adapter-side helpers for sidecars that wrap a backend SDK

These live beside the protocol engine, not inside it: a sidecar written in
Python uses them to turn loosely shaped backend messages into protocol
events, to keep expensive backend clients alive across runs, and to forward
a backend's message stream with cancellation.
"""

from sidecar_host.adapter.classify import (
    AssistantDelta,
    AssistantMessage,
    Classification,
    ClassificationRule,
    DEFAULT_RULES,
    ErrorMessage,
    ToolCall,
    ToolResult,
    Unclassified,
    UsageReport,
    classify,
    first_present,
)
from sidecar_host.adapter.clients import ClientRegistry, close_client
from sidecar_host.adapter.drain import drain_messages

__all__ = [
    "AssistantDelta",
    "AssistantMessage",
    "Classification",
    "ClassificationRule",
    "DEFAULT_RULES",
    "ErrorMessage",
    "ToolCall",
    "ToolResult",
    "Unclassified",
    "UsageReport",
    "classify",
    "first_present",
    "ClientRegistry",
    "close_client",
    "drain_messages",
]

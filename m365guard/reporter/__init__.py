"""Outbound reactions: protection events and UI directives."""

from .directives import DirectiveSink, LoggingDirectiveSink, RecordingDirectiveSink, UiDirective
from .events import EventSink, LoggingEventSink, ProtectionEvent, RecordingEventSink, WebhookEventSink

__all__ = [
    "DirectiveSink",
    "EventSink",
    "LoggingDirectiveSink",
    "LoggingEventSink",
    "ProtectionEvent",
    "RecordingDirectiveSink",
    "RecordingEventSink",
    "UiDirective",
    "WebhookEventSink",
]

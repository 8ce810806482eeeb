"""Engine subprocess boundary: launch, stream decoding and typed events."""

from agent_relay.engine.events import ResultEvent, StreamEvent
from agent_relay.engine.launcher import (
    EngineLauncher,
    EngineLaunchError,
    EngineLaunchRequest,
    ResumeMode,
    ResumePlan,
    build_engine_argv,
)
from agent_relay.engine.stream import LineDecoder, StreamEventSource

__all__ = [
    "EngineLaunchError",
    "EngineLaunchRequest",
    "EngineLauncher",
    "LineDecoder",
    "ResultEvent",
    "ResumeMode",
    "ResumePlan",
    "StreamEvent",
    "StreamEventSource",
    "build_engine_argv",
]

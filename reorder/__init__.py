# K-Slack reorder processor.
#
# The engine is plain Python with no Kafka dependency: construct it with the
# reorder:kslack() arguments and a sink, feed it events, and it hands sorted
# batches to the sink.  reorder.main wires it between two Kafka topics.

from reorder.config import (
    ConfigurationError,
    ExtractionError,
    KSlackConfig,
    load_config,
    parse_arguments,
)
from reorder.engine import KSlackEngine
from reorder.scheduler import ManualScheduler, ThreadScheduler
from reorder.state import EngineState, SchedulingStatus, Snapshot

__all__ = [
    "ConfigurationError",
    "EngineState",
    "ExtractionError",
    "KSlackConfig",
    "KSlackEngine",
    "ManualScheduler",
    "SchedulingStatus",
    "Snapshot",
    "ThreadScheduler",
    "load_config",
    "parse_arguments",
]

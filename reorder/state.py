"""Engine scalars and the snapshot taken across redeployments.

A snapshot is exactly the EngineState plus both bucket tiers.  It holds
copies of the bucket lists (not of the events themselves), so later engine
activity never leaks into an already captured snapshot.
"""

from dataclasses import dataclass, field, replace
from enum import Enum


class SchedulingStatus(Enum):
    IDLE = "idle"                                    # timer disabled or not started
    PENDING = "pending"                              # wake-up requested for last_scheduled_timestamp
    RESCHEDULE_ON_ARRIVAL = "reschedule_on_arrival"  # timer found nothing to wait for


@dataclass
class EngineState:
    greatest_timestamp: int = 0
    k: int = 0
    last_sent_timestamp: int = -1
    last_scheduled_timestamp: int = -1
    scheduling: SchedulingStatus = SchedulingStatus.IDLE

    def copy(self) -> "EngineState":
        return replace(self)


@dataclass(frozen=True)
class Snapshot:
    state: EngineState
    active: tuple = field(default_factory=tuple)   # ((timestamp, (events...)), ...)
    expired: tuple = field(default_factory=tuple)

    def to_dict(self) -> dict:
        """JSON-compatible mapping.  Events must be JSON-compatible too."""
        return {
            "greatest_timestamp": self.state.greatest_timestamp,
            "k": self.state.k,
            "last_sent_timestamp": self.state.last_sent_timestamp,
            "last_scheduled_timestamp": self.state.last_scheduled_timestamp,
            "scheduling": self.state.scheduling.value,
            "active": [[ts, list(events)] for ts, events in self.active],
            "expired": [[ts, list(events)] for ts, events in self.expired],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Snapshot":
        for name in ("greatest_timestamp", "k", "last_sent_timestamp",
                     "last_scheduled_timestamp", "active", "expired"):
            if name not in data:
                raise ValueError(f"snapshot: missing required field '{name}'")

        state = EngineState(
            greatest_timestamp=int(data["greatest_timestamp"]),
            k=int(data["k"]),
            last_sent_timestamp=int(data["last_sent_timestamp"]),
            last_scheduled_timestamp=int(data["last_scheduled_timestamp"]),
            scheduling=SchedulingStatus(data.get("scheduling", "idle")),
        )
        return cls(
            state=state,
            active=tuple((int(ts), tuple(events)) for ts, events in data["active"]),
            expired=tuple((int(ts), tuple(events)) for ts, events in data["expired"]),
        )

    @property
    def event_count(self) -> int:
        return sum(len(events) for _, events in self.active + self.expired)

"""K-Slack parameters: validation of the positional arguments and YAML loading.

The reorder processor takes 1-4 arguments.  The first is the timestamp
source; the rest are told apart by type, the way the query-level overloads
are declared:

    (timestamp)
    (timestamp, timeout)
    (timestamp, discard_late_arrival)
    (timestamp, timeout, max_k)
    (timestamp, timeout, discard_late_arrival)
    (timestamp, timeout, max_k, discard_late_arrival)

Anything else fails construction with ConfigurationError; no engine is built.
"""

import inspect
from dataclasses import dataclass
from pathlib import Path

import yaml

LONG_MIN = -(2 ** 63)
LONG_MAX = 2 ** 63 - 1

TIMEOUT_DISABLED = -1

_MAX_ARGUMENTS = 4
_ORDINALS = ("first", "second", "third", "fourth")

_REQUIRED_FIELDS = ("timestamp",)
_KNOWN_FIELDS = ("timestamp", "timeout", "max_k", "discard_late_arrival")


class ConfigurationError(ValueError):
    """Invalid reorder parameters.  Raised before any engine state exists."""


class ExtractionError(ConfigurationError):
    """The timestamp source could not produce an integer for an event."""


# ---------------------------------------------------------------------------
# Timestamp extractors
# ---------------------------------------------------------------------------

def _is_long(value) -> bool:
    # bool is an int subclass; a flag must never pass for a timestamp/timeout
    return isinstance(value, int) and not isinstance(value, bool)


class TimestampExtractor:
    """Base extractor. Subclass and implement extract()."""

    def extract(self, event) -> int:
        raise NotImplementedError

    def _checked(self, value, event) -> int:
        if not _is_long(value):
            raise ExtractionError(
                f"{self!r} returned {type(value).__name__} for event {event!r}, "
                "expected int"
            )
        if not LONG_MIN <= value <= LONG_MAX:
            raise ExtractionError(f"{self!r} returned {value}, outside the 64-bit range")
        return value


class FieldExtractor(TimestampExtractor):
    """Reads an integer field from a mapping event, e.g. a decoded JSON dict."""

    def __init__(self, field: str):
        if not field:
            raise ConfigurationError("timestamp field name must be a non-empty string")
        self.field = field

    def extract(self, event) -> int:
        try:
            value = event[self.field]
        except (KeyError, TypeError, IndexError) as e:
            raise ExtractionError(
                f"event has no timestamp field '{self.field}': {event!r}"
            ) from e
        return self._checked(value, event)

    def __repr__(self):
        return f"FieldExtractor({self.field!r})"


class CallableExtractor(TimestampExtractor):
    """Wraps a plain function.  A declared return type, if any, must be int."""

    def __init__(self, fn):
        declared = _declared_return(fn)
        if declared is not None and declared not in (int, "int"):
            raise ConfigurationError(
                "Return type expected for the timestamp is int, but "
                f"{getattr(fn, '__name__', fn)!r} declares {declared!r}"
            )
        self.fn = fn

    def extract(self, event) -> int:
        try:
            value = self.fn(event)
        except Exception as e:
            raise ExtractionError(f"timestamp extraction failed for {event!r}: {e}") from e
        return self._checked(value, event)

    def __repr__(self):
        return f"CallableExtractor({getattr(self.fn, '__name__', self.fn)!r})"


def _declared_return(fn):
    try:
        annotation = inspect.signature(fn).return_annotation
    except (TypeError, ValueError):
        return None  # builtins and C callables carry no signature
    if annotation is inspect.Signature.empty:
        return None
    return annotation


def as_extractor(source) -> TimestampExtractor:
    """Turn a field name, a function or an extractor into a TimestampExtractor."""
    if isinstance(source, TimestampExtractor):
        return source
    if isinstance(source, str):
        return FieldExtractor(source)
    if callable(source):
        return CallableExtractor(source)
    raise ConfigurationError(
        "Invalid parameter type found for the first argument of reorder:kslack(). "
        f"Required a timestamp field name or extractor, but found {type(source).__name__}"
    )


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class KSlackConfig:
    timestamp: TimestampExtractor
    timeout: int = TIMEOUT_DISABLED
    max_k: int = LONG_MAX
    discard_late_arrival: bool = False

    @property
    def timer_enabled(self) -> bool:
        return self.timeout != TIMEOUT_DISABLED

    @classmethod
    def from_arguments(cls, *args) -> "KSlackConfig":
        return parse_arguments(*args)


def _type_name(value) -> str:
    if isinstance(value, bool):
        return "BOOL"
    if _is_long(value):
        return "LONG"
    return type(value).__name__.upper()


def _wrong_type(position: int, expected: str, value) -> ConfigurationError:
    return ConfigurationError(
        f"Invalid parameter type found for the {_ORDINALS[position]} argument of "
        f"reorder:kslack(). Required {expected}, but found {_type_name(value)}"
    )


def _check_range(name: str, value: int, low: int) -> int:
    if not low <= value <= LONG_MAX:
        raise ConfigurationError(f"{name} must be between {low} and {LONG_MAX}, got {value}")
    return value


def parse_arguments(*args) -> KSlackConfig:
    """Validate reorder:kslack() arguments and return an immutable config."""
    if not args:
        raise ConfigurationError(
            "reorder:kslack() requires at least the timestamp argument"
        )
    if len(args) > _MAX_ARGUMENTS:
        raise ConfigurationError(
            "Maximum four input parameters can be specified for KSlack. "
            "Timestamp field (long), k-slack buffer expiration time-out window (long), "
            "Max_K size (long), and boolean flag to indicate whether the late events "
            f"should get discarded. But found {len(args)} attributes."
        )

    extractor = as_extractor(args[0])
    timeout = TIMEOUT_DISABLED
    max_k = LONG_MAX
    discard = False
    optional = args[1:]

    if len(optional) == 1:
        value = optional[0]
        if isinstance(value, bool):
            discard = value
        elif _is_long(value):
            timeout = value
        else:
            raise _wrong_type(1, "LONG or BOOL", value)

    elif len(optional) == 2:
        if not _is_long(optional[0]):
            raise _wrong_type(1, "LONG", optional[0])
        timeout = optional[0]
        value = optional[1]
        if isinstance(value, bool):
            discard = value
        elif _is_long(value):
            max_k = value
        else:
            raise _wrong_type(2, "LONG or BOOL", value)

    elif len(optional) == 3:
        for position, value in enumerate(optional[:2], start=1):
            if not _is_long(value):
                raise _wrong_type(position, "LONG", value)
        if not isinstance(optional[2], bool):
            raise _wrong_type(3, "BOOL", optional[2])
        timeout, max_k, discard = optional

    if timeout != TIMEOUT_DISABLED:
        _check_range("timeout", timeout, 0)
    _check_range("max_k", max_k, 0)

    return KSlackConfig(
        timestamp=extractor,
        timeout=timeout,
        max_k=max_k,
        discard_late_arrival=discard,
    )


# ---------------------------------------------------------------------------
# YAML
# ---------------------------------------------------------------------------

def config_arguments(definition: dict) -> tuple:
    """Map a {timestamp, timeout, max_k, discard_late_arrival} dict to arguments.

    Only the keys present are passed on, in the positional order above, so a
    file goes through exactly the same validation as direct arguments.
    """
    for name in _REQUIRED_FIELDS:
        if definition.get(name) is None:
            raise ConfigurationError(f"missing required field '{name}'")
    unknown = sorted(set(definition) - set(_KNOWN_FIELDS))
    if unknown:
        raise ConfigurationError(f"unknown field(s): {', '.join(unknown)}")

    args = [definition["timestamp"]]
    if definition.get("timeout") is not None:
        args.append(definition["timeout"])
    if definition.get("max_k") is not None:
        if definition.get("timeout") is None:
            # max_k is only reachable behind a timeout; -1 keeps the timer off
            args.append(TIMEOUT_DISABLED)
        args.append(definition["max_k"])
    if definition.get("discard_late_arrival") is not None:
        args.append(definition["discard_late_arrival"])
    return tuple(args)


def load_config(path: str | Path, **overrides) -> KSlackConfig:
    """Load a YAML file, apply non-None *overrides*, and validate the result."""
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        definition = yaml.safe_load(f) or {}
    if not isinstance(definition, dict):
        raise ConfigurationError(f"{path.name}: expected a mapping at the top level")

    definition = dict(definition.get("kslack", definition))
    definition.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return parse_arguments(*config_arguments(definition))
    except ConfigurationError as e:
        raise ConfigurationError(f"{path.name}: {e}") from e

"""Tests for how the reorder service turns flags and files into a config."""

import argparse
from pathlib import Path

import pytest

from reorder.config import LONG_MAX, ConfigurationError
from reorder.main import build_config

_SHIPPED_CONFIG = Path(__file__).resolve().parent.parent / "conf" / "kslack.yml"


def _args(**overrides):
    values = {
        "config": None,
        "timestamp_field": None,
        "timeout": None,
        "max_k": None,
        "discard_late_arrival": None,
    }
    values.update(overrides)
    return argparse.Namespace(**values)


class TestBuildConfig:
    def test_defaults(self):
        cfg = build_config(_args())
        assert cfg.timestamp.field == "timestamp"
        assert (cfg.timeout, cfg.max_k, cfg.discard_late_arrival) == (-1, LONG_MAX, False)

    def test_max_k_alone_keeps_timer_off(self):
        cfg = build_config(_args(max_k=50))
        assert cfg.max_k == 50
        assert not cfg.timer_enabled

    def test_timeout_and_discard(self):
        cfg = build_config(_args(timestamp_field="eventTime", timeout=100,
                                 discard_late_arrival=True))
        assert cfg.timestamp.field == "eventTime"
        assert cfg.timeout == 100
        assert cfg.discard_late_arrival is True

    def test_flags_override_config_file(self):
        cfg = build_config(_args(config=str(_SHIPPED_CONFIG), timeout=250,
                                 discard_late_arrival=False))
        assert cfg.timeout == 250
        assert cfg.max_k == 60000
        assert cfg.discard_late_arrival is False

    def test_invalid_flag_value(self):
        with pytest.raises(ConfigurationError):
            build_config(_args(timeout=-7))

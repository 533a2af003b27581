"""Tests for monolink.core.device — model classification and typed events."""

import pytest

from monolink.core.device import (
    DeviceDescriptor,
    DeviceKind,
    EncDelta,
    EncKey,
    GridKey,
    Tilt,
    classify_model,
)


class TestClassifyModel:
    def test_arc_with_encoder_count(self):
        assert classify_model("monome arc 2") == (DeviceKind.ARC, 2)

    def test_arc_without_space(self):
        assert classify_model("monome arc4") == (DeviceKind.ARC, 4)

    def test_generic_arc_has_four_encoders(self):
        """Newer arcs identify as plain 'monome arc'."""
        assert classify_model("monome arc") == (DeviceKind.ARC, 4)

    @pytest.mark.parametrize("model", ["monome 128", "monome 64", "monome zero", "one"])
    def test_everything_else_is_grid(self, model):
        assert classify_model(model) == (DeviceKind.GRID, None)


class TestDeviceKind:
    def test_grid_subscriptions(self):
        assert DeviceKind.GRID.subscriptions == {"key": "/grid/key", "tilt": "/tilt"}

    def test_arc_subscriptions(self):
        assert DeviceKind.ARC.subscriptions == {"key": "/enc/key", "delta": "/enc/delta"}


class TestDeviceDescriptor:
    def test_from_announcement_grid(self):
        device = DeviceDescriptor.from_announcement(
            "m1000123", "monome 128", 13001, daemon_host="127.0.0.1", daemon_port=12002
        )
        assert device.kind is DeviceKind.GRID
        assert device.encoders is None
        assert device.size is None
        assert device.device_host == "127.0.0.1"
        assert device.key == ("m1000123", 13001)

    def test_from_announcement_arc(self):
        device = DeviceDescriptor.from_announcement(
            "m0000045", "monome arc 2", 14002, daemon_host="10.0.0.5", daemon_port=12002
        )
        assert device.kind is DeviceKind.ARC
        assert device.encoders == 2
        assert device.daemon_host == "10.0.0.5"
        assert device.device_port == 14002


class TestEvents:
    def test_grid_key(self):
        assert GridKey.from_args(3, 5, 1) == GridKey(x=3, y=5, state=1)

    def test_tilt(self):
        assert Tilt.from_args(0, 120, 130, 128) == Tilt(n=0, x=120, y=130, z=128)

    def test_enc_key(self):
        assert EncKey.from_args(1, 0) == EncKey(n=1, state=0)

    def test_enc_delta_negative(self):
        assert EncDelta.from_args(2, -3) == EncDelta(n=2, delta=-3)

    def test_wrong_arity(self):
        with pytest.raises(ValueError, match="grid key"):
            GridKey.from_args(1, 2)

    def test_wrong_type(self):
        with pytest.raises(ValueError):
            EncDelta.from_args(0, 1.5)

"""
Test program for the traffic obfuscation layer.
Verifies the wire formats of each mode and that every transform round-trips.
"""
import os
import struct
import logging

import pytest

from common.errors import MalformedFrameError
from common.networking.obfuscation import (
    OBFUSCATION_MODES, ObfuscationLayer, ScrambleObfuscator,
    ShadowsocksObfuscator, StealthObfuscator
)

logging.basicConfig(level=logging.DEBUG)
logger = logging.getLogger('obfuscation_test')


@pytest.mark.parametrize("mode", sorted(OBFUSCATION_MODES))
@pytest.mark.parametrize("length", [0, 1, 100, 65536])
def test_round_trip(mode, length):
    layer = ObfuscationLayer(mode)
    layer.enable()
    data = os.urandom(length)

    assert layer.deobfuscate(layer.obfuscate(data)) == data


def test_disabled_layer_is_identity():
    layer = ObfuscationLayer("shadowsocks")
    data = b"plain tunnel bytes"

    assert layer.obfuscate(data) is data
    assert layer.deobfuscate(data) is data


def test_stealth_header_layout():
    frame = StealthObfuscator().obfuscate(b"hello")

    assert frame[:5] == bytes([0x17, 0x03, 0x03, 0x00, 0x05])
    assert frame[5:] == b"hello"


def test_stealth_rejects_short_frame():
    with pytest.raises(MalformedFrameError):
        StealthObfuscator().deobfuscate(b"\x17\x03\x03\x00")


def test_scramble_changes_bytes_and_is_self_inverse():
    scrambler = ScrambleObfuscator()
    data = b"A" * 64

    scrambled = scrambler.obfuscate(data)
    assert scrambled != data
    assert scrambler.obfuscate(scrambled) == data


def test_scramble_key_from_secret_is_deterministic():
    first = ScrambleObfuscator.from_secret(b"shared secret")
    second = ScrambleObfuscator.from_secret(b"shared secret")
    other = ScrambleObfuscator.from_secret(b"other secret")

    assert first.key == second.key
    assert first.key != other.key
    assert len(first.key) == 32


def test_shadowsocks_frame_layout():
    obfuscator = ShadowsocksObfuscator(clock=lambda: 1700000000)
    frame = obfuscator.obfuscate(b"payload")

    padding_len = frame[0]
    assert 1 <= padding_len <= 255
    timestamp = struct.unpack("!Q", frame[1 + padding_len:9 + padding_len])[0]
    assert timestamp == 1700000000
    assert frame[9 + padding_len:] == b"payload"


@pytest.mark.parametrize("frame", [
    b"",
    b"\x01" * 9,
    bytes([200]) + b"\x00" * 20,
    bytes([0]) + b"\x00" * 20,
])
def test_shadowsocks_rejects_malformed_frames(frame):
    with pytest.raises(MalformedFrameError):
        ShadowsocksObfuscator().deobfuscate(frame)


def test_status_map():
    layer = ObfuscationLayer("stealth")
    layer.enable()

    assert layer.status() == {
        "mode": "stealth",
        "enabled": True,
        "tunnel_method": "tls",
        "overhead_bytes": 5,
    }


def test_unknown_mode_is_rejected():
    with pytest.raises(ValueError):
        ObfuscationLayer("rot13")

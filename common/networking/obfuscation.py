"""
Traffic obfuscation for the relay node.
Packet transforms that disguise tunnel traffic from deep-packet-inspection systems.
"""
import time
import struct
import logging
from typing import Dict, Any, Optional

from Crypto.Hash import SHA256
from Crypto.Protocol.KDF import HKDF
from Crypto.Random import get_random_bytes

from common.errors import MalformedFrameError

logger = logging.getLogger("obfuscation")

# Static scramble key used when no shared secret is configured
DEFAULT_SCRAMBLE_KEY = b"RelayNodeObfuscationKey2024SecureRandom"


class Obfuscator:
    """
    Base class for a packet transform.

    ``deobfuscate(obfuscate(data)) == data`` holds for every variant and every
    payload length, including the empty payload.
    """
    mode = ""
    tunnel_method = ""
    overhead_bytes = 0

    def obfuscate(self, data: bytes) -> bytes:
        raise NotImplementedError("Subclasses must implement obfuscate")

    def deobfuscate(self, data: bytes) -> bytes:
        raise NotImplementedError("Subclasses must implement deobfuscate")


class StealthObfuscator(Obfuscator):
    """
    Disguises packets as TLS 1.2 application data records.

    Frame: ``0x17 0x03 0x03 <length, 16-bit big-endian> <payload>``. The length
    field carries the payload length modulo 2**16; receivers strip the header
    without trusting it.
    """
    mode = "stealth"
    tunnel_method = "tls"
    overhead_bytes = 5

    RECORD_TYPE = 0x17
    VERSION = 0x0303
    HEADER = struct.Struct("!BHH")

    def obfuscate(self, data: bytes) -> bytes:
        header = self.HEADER.pack(self.RECORD_TYPE, self.VERSION, len(data) & 0xFFFF)
        return header + data

    def deobfuscate(self, data: bytes) -> bytes:
        if len(data) < self.HEADER.size:
            raise MalformedFrameError(
                f"data too short for TLS header: {len(data)} bytes"
            )
        return data[self.HEADER.size:]


class ScrambleObfuscator(Obfuscator):
    """XORs every byte against a repeating static key; self-inverse"""
    mode = "scramble"
    tunnel_method = "scramble"
    overhead_bytes = 0

    def __init__(self, key: Optional[bytes] = None):
        self.key = key or DEFAULT_SCRAMBLE_KEY
        if not self.key:
            raise ValueError("scramble key must not be empty")

    @classmethod
    def from_secret(cls, secret: bytes, length: int = 32) -> "ScrambleObfuscator":
        """
        Build a scrambler whose key is derived from a shared secret

        Args:
            secret: Secret shared by both tunnel endpoints
            length: Key length in bytes
        """
        key = HKDF(secret, length, b"relay-node-scramble", SHA256)
        return cls(key)

    def _xor(self, data: bytes) -> bytes:
        key = self.key
        key_len = len(key)
        # Repeat the key to cover the payload, then XOR as big integers
        stream = (key * (len(data) // key_len + 1))[:len(data)]
        return (int.from_bytes(data, "big") ^ int.from_bytes(stream, "big")).to_bytes(len(data), "big")

    def obfuscate(self, data: bytes) -> bytes:
        return self._xor(data)

    def deobfuscate(self, data: bytes) -> bytes:
        return self._xor(data)


class ShadowsocksObfuscator(Obfuscator):
    """
    Shadowsocks-style random padding with a timestamp.

    Frame: ``[N][N random bytes][8-byte big-endian unix time][payload]`` with
    1 <= N <= 255.
    """
    mode = "shadowsocks"
    tunnel_method = "shadowsocks"
    # 1 length byte + at least 1 padding byte + 8 timestamp bytes
    overhead_bytes = 10

    MIN_FRAME = 10
    TIMESTAMP = struct.Struct("!Q")

    def __init__(self, clock=time.time):
        self.clock = clock

    @staticmethod
    def _padding_length() -> int:
        n = get_random_bytes(1)[0]
        return n if n != 0 else 1

    def obfuscate(self, data: bytes) -> bytes:
        padding_len = self._padding_length()
        return b"".join([
            bytes([padding_len]),
            get_random_bytes(padding_len),
            self.TIMESTAMP.pack(int(self.clock())),
            data,
        ])

    def deobfuscate(self, data: bytes) -> bytes:
        if len(data) < self.MIN_FRAME:
            raise MalformedFrameError(f"data too short: {len(data)} bytes")

        padding_len = data[0]
        if padding_len == 0:
            raise MalformedFrameError("invalid padding length: 0")

        offset = 1 + padding_len + self.TIMESTAMP.size
        if len(data) < offset:
            raise MalformedFrameError(
                f"invalid padding length: {padding_len} exceeds frame of {len(data)} bytes"
            )

        return data[offset:]


class StunnelObfuscator(Obfuscator):
    """Marker for traffic wrapped by an external TLS tunnel; no byte transform"""
    mode = "stunnel"
    tunnel_method = "stunnel"
    overhead_bytes = 50

    def obfuscate(self, data: bytes) -> bytes:
        return data

    def deobfuscate(self, data: bytes) -> bytes:
        return data


OBFUSCATION_MODES = {
    "stealth": StealthObfuscator,
    "scramble": ScrambleObfuscator,
    "shadowsocks": ShadowsocksObfuscator,
    "stunnel": StunnelObfuscator,
}


class ObfuscationLayer:
    """
    Wraps and unwraps raw tunnel bytes at the transport boundary.

    The transform is chosen once, at construction. While the layer is
    disabled both directions are the identity.
    """

    def __init__(self, mode: str = "stealth", scramble_secret: Optional[bytes] = None):
        """
        Initialize the obfuscation layer

        Args:
            mode: One of ``stealth``, ``scramble``, ``shadowsocks``, ``stunnel``
            scramble_secret: Shared secret for the scramble key (scramble mode only)
        """
        if mode not in OBFUSCATION_MODES:
            raise ValueError(f"unknown obfuscation mode: {mode}")

        if mode == "scramble" and scramble_secret:
            self.obfuscator = ScrambleObfuscator.from_secret(scramble_secret)
        else:
            self.obfuscator = OBFUSCATION_MODES[mode]()

        self.mode = mode
        self.enabled = False

    @property
    def tunnel_method(self) -> str:
        return self.obfuscator.tunnel_method

    def enable(self) -> None:
        logger.info(f"Enabling traffic obfuscation (mode: {self.mode}, method: {self.tunnel_method})")
        self.enabled = True

    def disable(self) -> None:
        logger.info("Disabling traffic obfuscation")
        self.enabled = False

    def obfuscate(self, data: bytes) -> bytes:
        if not self.enabled:
            return data
        return self.obfuscator.obfuscate(data)

    def deobfuscate(self, data: bytes) -> bytes:
        if not self.enabled:
            return data
        return self.obfuscator.deobfuscate(data)

    def status(self) -> Dict[str, Any]:
        """
        Obfuscation status map reported to the gateway

        Returns:
            Dictionary with mode, enabled flag, tunnel method and per-packet overhead
        """
        return {
            "mode": self.mode,
            "enabled": self.enabled,
            "tunnel_method": self.tunnel_method,
            "overhead_bytes": self.obfuscator.overhead_bytes,
        }

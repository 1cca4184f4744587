"""
Networking package for the relay node.
Includes traffic obfuscation and the SOCKS5 relay.
"""

from common.networking.obfuscation import OBFUSCATION_MODES, ObfuscationLayer
from common.networking.socks5 import Socks5Server

__all__ = [
    'OBFUSCATION_MODES',
    'ObfuscationLayer',
    'Socks5Server'
]

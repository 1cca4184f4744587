"""
Platform variants of host-level WebRTC leak protection.
"""
import platform
from typing import Optional

from common.utils.commands import CommandRunner
from node.platform.base import HostPolicy, WebRTCGuard
from node.platform.darwin import DarwinWebRTCGuard
from node.platform.linux import LinuxWebRTCGuard
from node.platform.windows import WindowsWebRTCGuard

WEBRTC_GUARDS = {
    "linux": LinuxWebRTCGuard,
    "darwin": DarwinWebRTCGuard,
    "windows": WindowsWebRTCGuard,
}


def create_webrtc_guard(tunnel_interface: str = "wg0", runner: Optional[CommandRunner] = None,
                        system: Optional[str] = None, **kwargs) -> WebRTCGuard:
    """
    Select the WebRTC guard for a platform

    Args:
        tunnel_interface: Interface STUN traffic stays allowed on
        runner: Command runner for the firewall tool
        system: Platform name (defaults to the running platform)

    Returns:
        WebRTC guard for the platform

    Raises:
        ValueError: If the platform is not supported
    """
    system = (system or platform.system()).lower()
    if system not in WEBRTC_GUARDS:
        raise ValueError(f"unsupported platform: {system}")
    return WEBRTC_GUARDS[system](tunnel_interface, runner, **kwargs)


__all__ = [
    'HostPolicy',
    'WebRTCGuard',
    'LinuxWebRTCGuard',
    'DarwinWebRTCGuard',
    'WindowsWebRTCGuard',
    'create_webrtc_guard'
]

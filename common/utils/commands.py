"""
External command execution for the relay node.
Wraps the tunnel, firewall and routing tools as synchronous calls with a bounded timeout.
"""
import os
import ctypes
import logging
import subprocess
from typing import List, Optional, Sequence

from common.errors import CommandError

logger = logging.getLogger("commands")


class CommandRunner:
    """
    Runs external commands and returns their output.

    Every call is bounded by a timeout so that no control loop can hang on a
    stuck ``wg`` or ``iptables`` invocation.
    """

    def __init__(self, timeout: float = 10.0):
        """
        Initialize the command runner

        Args:
            timeout: Default timeout in seconds for each command
        """
        self.timeout = timeout

    def run(self, args: Sequence[str], input: Optional[str] = None,
            timeout: Optional[float] = None) -> str:
        """
        Run a command and return its standard output

        Args:
            args: Command and arguments
            input: Text passed on standard input (used for key material)
            timeout: Override of the default timeout

        Returns:
            Standard output of the command

        Raises:
            CommandError: If the command is missing, times out or exits non-zero
        """
        args = list(args)
        logger.debug(f"Running: {' '.join(args)}")

        try:
            result = subprocess.run(
                args,
                input=input,
                capture_output=True,
                text=True,
                timeout=timeout or self.timeout
            )
        except FileNotFoundError:
            raise CommandError(args, reason="executable not found")
        except subprocess.TimeoutExpired:
            raise CommandError(args, reason=f"timed out after {timeout or self.timeout}s")

        if result.returncode != 0:
            raise CommandError(args, result.returncode, result.stderr or result.stdout)

        return result.stdout

    def run_shell(self, command: str, timeout: Optional[float] = None) -> str:
        """
        Run a shell command line (post-up / post-down hooks)

        Args:
            command: Shell command line
            timeout: Override of the default timeout

        Returns:
            Standard output of the command
        """
        return self.run(["sh", "-c", command], timeout=timeout)


def has_admin_privileges() -> bool:
    """
    Check if the process is running with administrator/root privileges

    Returns:
        True if running with admin/root privileges, False otherwise
    """
    try:
        if os.name == 'nt':
            return ctypes.windll.shell32.IsUserAnAdmin() != 0
        return os.geteuid() == 0
    except (AttributeError, OSError) as e:
        logger.error(f"Error checking admin privileges: {e}")
        return False


def split_lines(output: str) -> List[str]:
    """Non-empty, stripped lines of a command's output"""
    return [line.strip() for line in output.splitlines() if line.strip()]

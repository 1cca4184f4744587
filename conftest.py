"""
Shared pytest fixtures.

Tests never touch the real firewall or tunnel tool: components receive a
recording command runner instead.
"""
import threading
from typing import List, Optional, Sequence

import pytest

from common.errors import CommandError


class FakeRunner:
    """Records argument vectors, returns canned output and fails on request"""

    def __init__(self):
        self.calls: List[List[str]] = []
        self.inputs: List[Optional[str]] = []
        self._outputs = {}
        self._failures = []
        self._lock = threading.Lock()

    def set_output(self, command: str, output: str) -> None:
        """Return ``output`` for every call whose command line starts with ``command``"""
        self._outputs[command] = output

    def fail_on(self, fragment: str, times: Optional[int] = None) -> None:
        """Fail calls whose command line contains ``fragment`` (``times`` limits how often)"""
        self._failures.append([fragment, times])

    def run(self, args: Sequence[str], input: Optional[str] = None,
            timeout: Optional[float] = None) -> str:
        args = list(args)
        line = " ".join(args)
        with self._lock:
            self.calls.append(args)
            self.inputs.append(input)

            for failure in self._failures:
                fragment, times = failure
                if fragment in line and (times is None or times > 0):
                    if times is not None:
                        failure[1] -= 1
                    raise CommandError(args, 1, "simulated failure")

            matches = [cmd for cmd in self._outputs if line.startswith(cmd)]
            if matches:
                return self._outputs[max(matches, key=len)]
        return ""

    def run_shell(self, command: str, timeout: Optional[float] = None) -> str:
        return self.run(["sh", "-c", command], timeout=timeout)

    @property
    def commands(self) -> List[str]:
        with self._lock:
            return [" ".join(args) for args in self.calls]

    def clear(self) -> None:
        with self._lock:
            self.calls.clear()
            self.inputs.clear()


@pytest.fixture
def runner():
    return FakeRunner()

"""Port allocation for workspace dev servers."""

from __future__ import annotations

import logging
import random
import socket
from collections.abc import Callable

from ..errors import PortExhaustionError

logger = logging.getLogger(__name__)

FALLBACK_PORT_RANGE = (49152, 65535)


def port_is_free(port: int, host: str = "127.0.0.1") -> bool:
    """Best-effort probe: True if ``port`` can be bound on ``host``."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


class PortAllocator:
    """Hands out ports from ``[start, end)``, unique among live holders.

    Not thread-safe on its own; ``WorkspaceManager`` calls it inside its
    repository lock.
    """

    def __init__(
        self,
        start: int,
        end: int,
        *,
        probe: Callable[[int], bool] = port_is_free,
        rng: random.Random | None = None,
    ) -> None:
        if end <= start:
            raise ValueError("end must be greater than start")
        self.start = start
        self.end = end
        self._probe = probe
        self._rng = rng or random.Random()
        self._held: set[int] = set()

    @property
    def held(self) -> frozenset[int]:
        return frozenset(self._held)

    def allocate(self) -> int:
        """Return the first free port in range.

        Raises:
            PortExhaustionError: If every port in range is held or busy.
        """
        for port in range(self.start, self.end):
            if port in self._held:
                continue
            if not self._probe(port):
                continue
            self._held.add(port)
            return port
        raise PortExhaustionError(self.start, self.end)

    def allocate_fallback(self) -> int:
        """Return a randomized high port not currently held.

        The probe is tried but not required to pass: this path exists to
        tolerate probing failures, so the last candidate is taken regardless.
        """
        low, high = FALLBACK_PORT_RANGE
        candidate = self._rng.randint(low, high)
        for _ in range(32):
            candidate = self._rng.randint(low, high)
            if candidate not in self._held and self._probe(candidate):
                break
        while candidate in self._held:
            candidate = self._rng.randint(low, high)
        self._held.add(candidate)
        return candidate

    def allocate_or_fallback(self) -> int:
        try:
            return self.allocate()
        except PortExhaustionError as exc:
            port = self.allocate_fallback()
            logger.warning("%s; using randomized fallback port %d", exc, port)
            return port

    def release(self, port: int) -> None:
        self._held.discard(port)

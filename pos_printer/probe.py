"""
Ordered candidate probing.

Hardware parameters such as USB configurations, interfaces and endpoints,
serial baud rates or Bluetooth service/characteristic pairs are found by
trying a fixed list of candidates until one works. The first success is
remembered and tried first next time.
"""

import logging
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)


class ProbeExhausted(Exception):
    """Raised when every candidate failed."""

    def __init__(self, name: str, attempts: List[Tuple[Any, Exception]]):
        self.name = name
        self.attempts = attempts
        tried = ", ".join(f"{candidate!r}: {error}" for candidate, error in attempts)
        super().__init__(f"No working {name} found (tried {tried or 'nothing'})")


class CandidateProbe:
    """Try candidates in a fixed order and remember the first that succeeds."""

    def __init__(self, name: str, candidates: Iterable, remembered: Optional[Any] = None):
        self.name = name
        self.candidates = list(candidates)
        self.remembered = remembered

    def order(self) -> list:
        """Candidates in the order they will be attempted."""
        if self.remembered is None:
            return list(self.candidates)
        return [self.remembered] + [c for c in self.candidates if c != self.remembered]

    def run(self, operation: Callable[[Any], Any]) -> Tuple[Any, Any]:
        """
        Run a blocking operation against each candidate.

        Returns:
            Tuple of (candidate, result) for the first success

        Raises:
            ProbeExhausted: If all candidates failed
        """
        attempts = []
        for candidate in self.order():
            try:
                result = operation(candidate)
            except Exception as e:
                logger.debug(f"[Probe] {self.name} {candidate!r} failed: {e}")
                attempts.append((candidate, e))
                continue
            self.remembered = candidate
            logger.debug(f"[Probe] {self.name} {candidate!r} accepted")
            return candidate, result
        raise ProbeExhausted(self.name, attempts)

    async def run_async(self, operation: Callable[[Any], Awaitable[Any]]) -> Tuple[Any, Any]:
        """Coroutine variant of run()."""
        attempts = []
        for candidate in self.order():
            try:
                result = await operation(candidate)
            except Exception as e:
                logger.debug(f"[Probe] {self.name} {candidate!r} failed: {e}")
                attempts.append((candidate, e))
                continue
            self.remembered = candidate
            logger.debug(f"[Probe] {self.name} {candidate!r} accepted")
            return candidate, result
        raise ProbeExhausted(self.name, attempts)

"""
Reconnect delay policy: exponential backoff with a ceiling and jitter.
"""

from __future__ import annotations

import random


def exponential_backoff(
    attempt: int,
    base: float = 5.0,
    cap: float = 60.0,
    jitter: float = 0.1,
    rng: random.Random | None = None,
) -> float:
    """
    Delay before retry number ``attempt`` (1-based).

    ``base * 2 ** (attempt - 1)`` clamped to ``cap``, then spread by
    ``+/- jitter`` (a fraction of the delay).
    """
    if attempt < 1:
        attempt = 1
    delay = min(base * (2 ** (attempt - 1)), cap)
    if jitter:
        r = (rng or random).random()
        delay = delay * (1.0 + (r * 2.0 - 1.0) * jitter)
    return max(delay, 0.0)


class ReconnectBackoff:
    """Counts consecutive connection failures and hands out retry delays."""

    def __init__(self, base: float, cap: float, jitter: float = 0.1, rng: random.Random | None = None):
        self.base = base
        self.cap = max(cap, base)
        self.jitter = jitter
        self.attempts = 0
        self._rng = rng

    def next_delay(self) -> float:
        self.attempts += 1
        return exponential_backoff(self.attempts, self.base, self.cap, self.jitter, self._rng)

    def reset(self) -> None:
        self.attempts = 0

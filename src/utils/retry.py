"""Exponential backoff state for reconnect loops."""

from typing import Optional


class ExponentialBackoff:
    """Jitter-free exponential backoff with a saturating attempt counter.

    The delay for attempt ``n`` is ``min(initial_delay_ms * multiplier**n, max_delay_ms)``.
    Once ``attempt_count`` reaches ``max_attempts`` it is clamped back to
    ``max_attempts - 1`` so the delay stays at the cap while retries continue.
    """

    def __init__(
        self,
        initial_delay_ms: int = 1000,
        max_delay_ms: int = 30000,
        multiplier: float = 2.0,
        max_attempts: Optional[int] = 10,
    ):
        if initial_delay_ms <= 0:
            raise ValueError("initial_delay_ms must be positive")
        if max_delay_ms < initial_delay_ms:
            raise ValueError("max_delay_ms must be >= initial_delay_ms")
        if max_attempts is not None and max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        self.initial_delay_ms = initial_delay_ms
        self.max_delay_ms = max_delay_ms
        self.multiplier = multiplier
        self.max_attempts = max_attempts
        self.attempt_count = 0

    def delay_ms(self, attempt: Optional[int] = None) -> int:
        """Delay for ``attempt`` (defaults to the current attempt count)."""
        if attempt is None:
            attempt = self.attempt_count
        # Stop multiplying once past the cap so huge attempts never overflow
        delay = float(self.initial_delay_ms)
        for _ in range(attempt):
            delay *= self.multiplier
            if delay >= self.max_delay_ms:
                return self.max_delay_ms
        return int(min(delay, self.max_delay_ms))

    def advance(self) -> int:
        """Count one reconnect attempt and return the new attempt count."""
        self.attempt_count += 1
        if self.max_attempts is not None and self.attempt_count >= self.max_attempts:
            self.attempt_count = self.max_attempts - 1
        return self.attempt_count

    def next_delay_ms(self) -> int:
        """Return the delay for the current attempt, then advance."""
        delay = self.delay_ms()
        self.advance()
        return delay

    @property
    def saturated(self) -> bool:
        return self.delay_ms() >= self.max_delay_ms

    def reset(self) -> None:
        self.attempt_count = 0

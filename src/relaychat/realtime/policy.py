"""Exponential backoff for dropped realtime channels."""

from dataclasses import dataclass

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY_MS = 1000


def should_retry(attempts: int, max_retries: int) -> bool:
    """Return True while another resubscribe attempt is allowed."""
    return attempts < max_retries


def delay_for(attempts: int, base_delay: int) -> int:
    """Milliseconds to wait before attempt number ``attempts + 1``."""
    return base_delay * 2**attempts


@dataclass(frozen=True)
class ReconnectPolicy:
    """Retry ceiling and base delay shared by every subscription."""

    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS

    def should_retry(self, attempts: int) -> bool:
        return should_retry(attempts, self.max_retries)

    def delay_for(self, attempts: int) -> int:
        return delay_for(attempts, self.base_delay_ms)

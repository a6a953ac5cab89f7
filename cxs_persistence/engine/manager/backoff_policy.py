import math
import re
from typing import Iterator, List

from cxs_exception_model.exception import InvalidConfigurationException
from cxs_persistence.utils.units import parse_time_value

_POLICY_RE = re.compile(r'^\s*(noBackoff|constant|exponential)\s*(?:\((.*)\))?\s*$')


class BackoffPolicy:
    """
    Sequence of delays (in seconds) to wait before retrying rejected bulk actions.

    ``delays()`` returns a fresh iterator each time; its length is the maximum
    number of retries.
    """

    def __init__(self, name: str, delays: List[float]):
        self.name = name
        self._delays = list(delays)

    def delays(self) -> Iterator[float]:
        return iter(self._delays)

    def max_retries(self) -> int:
        return len(self._delays)

    def __repr__(self):
        return f"BackoffPolicy({self.name}, retries={len(self._delays)})"

    @staticmethod
    def no_backoff() -> "BackoffPolicy":
        return BackoffPolicy("noBackoff", [])

    @staticmethod
    def constant(delay: float, max_retries: int) -> "BackoffPolicy":
        return BackoffPolicy("constant", [delay] * max_retries)

    @staticmethod
    def exponential(initial_delay: float = 0.05, max_retries: int = 8) -> "BackoffPolicy":
        """
        Delays grow as ``initial + 10ms * (floor(e^(0.8 * i)) - 1)`` for i = 0..retries-1,
        giving roughly 5.1 s of cumulative wait with the defaults.
        """
        start_ms = initial_delay * 1000.0
        delays = [(start_ms + 10 * (int(math.exp(0.8 * i)) - 1)) / 1000.0 for i in range(max_retries)]
        return BackoffPolicy("exponential", delays)

    @staticmethod
    def parse(text: str) -> "BackoffPolicy":
        """
        Parse ``noBackoff``, ``constant(delay,maxRetries)``, ``exponential`` or
        ``exponential(delay,maxRetries)``. Delays accept time units (``50ms``, ``1s``).
        """
        match = _POLICY_RE.match(text or "")
        if not match:
            raise InvalidConfigurationException("Unknown backoff policy", key="backoffPolicy", value=text)
        name, arguments = match.group(1), match.group(2)

        if name == "noBackoff":
            if arguments:
                raise InvalidConfigurationException("noBackoff takes no arguments", key="backoffPolicy", value=text)
            return BackoffPolicy.no_backoff()

        if arguments is None:
            if name == "constant":
                raise InvalidConfigurationException("constant backoff requires (delay,maxRetries)",
                                                    key="backoffPolicy", value=text)
            return BackoffPolicy.exponential()

        parts = [p.strip() for p in arguments.split(",")]
        if len(parts) != 2 or not parts[0] or not parts[1]:
            raise InvalidConfigurationException("Backoff policy expects (delay,maxRetries)",
                                                key="backoffPolicy", value=text)
        delay = parse_time_value(parts[0], key="backoffPolicy")
        try:
            retries = int(parts[1])
        except ValueError:
            raise InvalidConfigurationException("Backoff retries must be an integer", key="backoffPolicy", value=text)
        if delay < 0 or retries < 0:
            raise InvalidConfigurationException("Backoff arguments must be positive", key="backoffPolicy", value=text)

        if name == "constant":
            return BackoffPolicy.constant(delay, retries)
        return BackoffPolicy.exponential(delay, retries)

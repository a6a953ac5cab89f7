import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class MonthlyIndexScheduler:
    """
    Daily check creating next month's index the day before the month changes, so
    writes after midnight never wait on index creation.

    Attributes:
        create_index (Callable[[datetime], str]): Creates the monthly index covering a date.
        initial_delay (float): Seconds before the first check.
        period (float): Seconds between checks.
        clock (Callable[[], datetime]): Current UTC time.
    """

    def __init__(self, create_index: Callable[[datetime], str], initial_delay: float = 10.0,
                 period: float = 86400.0, clock: Callable[[], datetime] = utc_now):
        self.create_index = create_index
        self.initial_delay = initial_delay
        self.period = period
        self.clock = clock
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="cxs-monthly-index", daemon=True)
        self._thread.start()
        logger.info(f"Monthly index scheduler started (first check in {self.initial_delay}s, "
                    f"then every {self.period}s)")

    def cancel(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        logger.info("Monthly index scheduler cancelled")

    def tick(self) -> Optional[str]:
        """Create next month's index if tomorrow is in another month. Returns the created name."""
        now = self.clock()
        tomorrow = now + timedelta(days=1)
        if tomorrow.month == now.month:
            return None
        index_name = self.create_index(tomorrow)
        logger.info(f"Pre-created monthly index {index_name}")
        return index_name

    def _run(self) -> None:
        delay = self.initial_delay
        while not self._stop_event.wait(delay):
            delay = self.period
            try:
                self.tick()
            except Exception as e:
                # the next tick retries
                logger.error(f"Monthly index check failed: {e}", exc_info=True)

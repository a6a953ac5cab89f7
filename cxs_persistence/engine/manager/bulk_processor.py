"""
BulkProcessor Workflow
======================

    writers ──add(action)──►┌──────────────────────────────────────────┐
                            │ buffer (submission order)                │
                            │  flush when: actions >= bulk_actions     │
                            │              bytes   >= bulk_size        │
                            │              flush_interval elapsed      │
                            │              flush() / close()           │
                            └───────────────────┬──────────────────────┘
                                                │ batch
                                                ▼
                            ┌──────────────────────────────────────────┐
                            │ semaphore(concurrent_requests)           │ ◄── writers block here
                            │  0 → run in the calling thread           │     when every slot is
                            │  n → run on the executor, n in flight    │     taken (backpressure)
                            └───────────────────┬──────────────────────┘
                                                ▼
                            ┌──────────────────────────────────────────┐
                            │ helpers.streaming_bulk (one chunk)       │
                            │  per action: ok ─► succeeded             │
                            │              429 ─► retried after the    │
                            │                     next backoff delay   │
                            │              other ─► failed, reported   │
                            │                       to the listener    │
                            └──────────────────────────────────────────┘

Every submitted action ends up counted exactly once as succeeded or failed. A
failing action never fails the rest of its batch.
"""
import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from itertools import count
from typing import Any, Callable, Dict, List, Optional, Tuple

from elasticsearch import helpers

from cxs_exception_model.exception import BulkProcessorClosedException
from cxs_persistence import metrics
from cxs_persistence.engine.manager.backoff_policy import BackoffPolicy
from cxs_persistence.utils.units import parse_time_value, parse_byte_size

logger = logging.getLogger(__name__)

_ACTION_OVERHEAD_BYTES = 50


@dataclass
class BulkAction:
    """
    One write action. ``body`` is the document for ``index``, the update body
    (``{"doc": ...}`` or ``{"script": ...}``) for ``update`` and unused for ``delete``.
    ``payload`` is opaque to the processor and handed back to the listener.
    """
    op_type: str
    index: str
    doc_id: str
    body: Optional[Dict[str, Any]] = None
    routing: Optional[str] = None
    payload: Any = None

    def to_action(self) -> Dict[str, Any]:
        action: Dict[str, Any] = {"_op_type": self.op_type, "_index": self.index, "_id": self.doc_id}
        if self.routing is not None:
            action["routing"] = self.routing
        if self.op_type == "index":
            action["_source"] = self.body
        elif self.op_type == "update":
            action.update(self.body or {})
        return action

    def size_in_bytes(self) -> int:
        size = len(self.index) + len(self.doc_id) + _ACTION_OVERHEAD_BYTES
        if self.body is not None:
            size += len(json.dumps(self.body, default=str))
        return size


class BulkListener:
    """Callbacks around batch execution. Methods run on the thread executing the batch."""

    def before_bulk(self, execution_id: int, actions: List[BulkAction]) -> None:
        pass

    def after_bulk(self, execution_id: int, actions: List[BulkAction], failures: int) -> None:
        pass

    def on_action_failure(self, action: BulkAction, status: Optional[int], error: Any) -> None:
        pass


class BulkProcessor:
    """
    Batches write actions in front of the search engine.

    Attributes:
        name (str): Processor name, used in logs and metric labels.
        bulk_actions (int): Flush after this many queued actions (-1 disables).
        bulk_size (int): Flush after this many queued bytes (-1 disables).
        flush_interval (float): Seconds between periodic flushes (<= 0 disables).
        concurrent_requests (int): Batches allowed in flight; 0 executes in the caller.
        backoff_policy (BackoffPolicy): Delays before retrying rejected actions.
    """

    def __init__(self, client, name: str = "cxs-bulk", bulk_actions: int = 1000,
                 bulk_size: int = 5 * 1024 * 1024, flush_interval: float = 5.0,
                 concurrent_requests: int = 1, backoff_policy: Optional[BackoffPolicy] = None,
                 listener: Optional[BulkListener] = None, sleep: Callable[[float], None] = time.sleep):
        self.client = client
        self.name = name
        self.bulk_actions = bulk_actions
        self.bulk_size = bulk_size
        self.flush_interval = flush_interval
        self.concurrent_requests = max(0, concurrent_requests)
        self.backoff_policy = backoff_policy or BackoffPolicy.exponential()
        self.listener = listener or BulkListener()
        self._sleep = sleep

        self._lock = threading.Lock()
        self._buffer: List[BulkAction] = []
        self._buffer_bytes = 0
        self._closed = False
        self._execution_ids = count(1)

        self._stats_lock = threading.Lock()
        self._submitted = 0
        self._succeeded = 0
        self._failed = 0

        self._in_flight = 0
        self._in_flight_cond = threading.Condition()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._semaphore: Optional[threading.Semaphore] = None
        if self.concurrent_requests > 0:
            self._executor = ThreadPoolExecutor(max_workers=self.concurrent_requests,
                                                thread_name_prefix=f"{name}-worker")
            self._semaphore = threading.Semaphore(self.concurrent_requests)

        self._stop_event = threading.Event()
        self._flush_thread: Optional[threading.Thread] = None
        if self.flush_interval and self.flush_interval > 0:
            self._flush_thread = threading.Thread(target=self._flush_loop, name=f"{name}-flush", daemon=True)
            self._flush_thread.start()

        logger.info(f"Bulk processor {name} started (actions={bulk_actions}, size={bulk_size}, "
                    f"interval={flush_interval}s, concurrent={self.concurrent_requests}, "
                    f"backoff={self.backoff_policy})")

    @staticmethod
    def from_settings(client, settings, listener: Optional[BulkListener] = None) -> "BulkProcessor":
        """Build a processor from ``BulkProcessorSettings``."""
        return BulkProcessor(
            client,
            name=settings.name,
            bulk_actions=settings.bulk_actions,
            bulk_size=parse_byte_size(settings.bulk_size, key="bulkProcessor.bulkSize"),
            flush_interval=parse_time_value(settings.flush_interval, key="bulkProcessor.flushInterval"),
            concurrent_requests=settings.concurrent_requests,
            backoff_policy=BackoffPolicy.parse(settings.backoff_policy),
            listener=listener,
        )

    def add(self, action: BulkAction) -> None:
        """
        Queue an action. Returns once it is buffered, or once its batch has been
        handed over when the action completes one.

        Raises:
            BulkProcessorClosedException: The processor has been closed.
        """
        with self._lock:
            if self._closed:
                raise BulkProcessorClosedException("Bulk processor is closed", self.name)
            self._buffer.append(action)
            self._buffer_bytes += action.size_in_bytes()
            with self._stats_lock:
                self._submitted += 1
            batch = self._take_if_full()
        metrics.bulk_actions_submitted.labels(processor=self.name).inc()
        if batch:
            self._dispatch(batch)

    def flush(self) -> None:
        """Send everything buffered and wait for every batch in flight to complete."""
        with self._lock:
            batch = self._take()
        if batch:
            self._dispatch(batch)
        with self._in_flight_cond:
            while self._in_flight > 0:
                self._in_flight_cond.wait()

    def close(self) -> None:
        """Flush, drain in-flight batches and reject further submissions."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._stop_event.set()
        if self._flush_thread is not None:
            self._flush_thread.join()
        self.flush()
        if self._executor is not None:
            self._executor.shutdown(wait=True)
        stats = self.stats()
        logger.info(f"Bulk processor {self.name} closed: {stats}")

    def is_closed(self) -> bool:
        return self._closed

    def stats(self) -> Dict[str, int]:
        with self._stats_lock:
            return {"submitted": self._submitted, "succeeded": self._succeeded, "failed": self._failed}

    def pending(self) -> int:
        with self._lock:
            return len(self._buffer)

    def _take_if_full(self) -> List[BulkAction]:
        if 0 < self.bulk_actions <= len(self._buffer):
            return self._take()
        if 0 < self.bulk_size <= self._buffer_bytes:
            return self._take()
        return []

    def _take(self) -> List[BulkAction]:
        """Detach the buffer as a batch already counted in flight. Caller holds ``_lock``."""
        batch, self._buffer = self._buffer, []
        self._buffer_bytes = 0
        if batch:
            with self._in_flight_cond:
                self._in_flight += 1
        return batch

    def _flush_loop(self) -> None:
        while not self._stop_event.wait(self.flush_interval):
            with self._lock:
                batch = self._take()
            if batch:
                logger.debug(f"Bulk processor {self.name}: interval flush of {len(batch)} actions")
                self._dispatch(batch)

    def _dispatch(self, batch: List[BulkAction]) -> None:
        execution_id = next(self._execution_ids)
        metrics.bulk_batches_in_flight.labels(processor=self.name).inc()

        if self._executor is None:
            try:
                self._execute(execution_id, batch)
            finally:
                self._batch_done()
            return

        self._semaphore.acquire()
        try:
            future = self._executor.submit(self._execute, execution_id, batch)
        except RuntimeError:
            self._semaphore.release()
            self._batch_done()
            raise
        future.add_done_callback(lambda _: self._release_slot())

    def _release_slot(self) -> None:
        self._semaphore.release()
        self._batch_done()

    def _batch_done(self) -> None:
        metrics.bulk_batches_in_flight.labels(processor=self.name).dec()
        with self._in_flight_cond:
            self._in_flight -= 1
            self._in_flight_cond.notify_all()

    def _execute(self, execution_id: int, batch: List[BulkAction]) -> None:
        start_time = time.time()
        logger.debug(f"Bulk processor {self.name}: executing batch {execution_id} with {len(batch)} actions")
        self._call_listener("before_bulk", execution_id, batch)
        failures = self._execute_with_backoff(batch)
        elapsed = time.time() - start_time
        metrics.bulk_batch_latency.labels(processor=self.name).observe(elapsed)
        self._call_listener("after_bulk", execution_id, batch, failures)
        if failures:
            logger.warning(f"Bulk processor {self.name}: batch {execution_id} had {failures} failed actions")
        logger.debug(f"Bulk processor {self.name}: batch {execution_id} done in {elapsed:.3f}s")

    def _execute_with_backoff(self, batch: List[BulkAction]) -> int:
        delays = self.backoff_policy.delays()
        pending = batch
        failures = 0
        while pending:
            results = self._send(pending)
            succeeded, rejected, failed = 0, [], []
            for action, (ok, status, error) in zip(pending, results):
                if ok:
                    succeeded += 1
                elif status == 429:
                    rejected.append((action, status, error))
                else:
                    failed.append((action, status, error))

            delay = next(delays, None) if rejected else None
            if delay is None:
                failed.extend(rejected)
                rejected = []

            self._record(succeeded=succeeded, failed=len(failed))
            failures += len(failed)
            for action, status, error in failed:
                self._notify_failure(action, status, error)

            pending = [action for action, _, _ in rejected]
            if pending:
                logger.info(f"Bulk processor {self.name}: {len(pending)} actions rejected, retrying in {delay:.3f}s")
                self._sleep(delay)
        return failures

    def _send(self, actions: List[BulkAction]) -> List[Tuple[bool, Optional[int], Any]]:
        """One result per action, in submission order."""
        results = []
        try:
            for ok, item in helpers.streaming_bulk(
                    self.client,
                    (a.to_action() for a in actions),
                    chunk_size=len(actions),
                    max_chunk_bytes=max(self.bulk_size, 1) * 2 + 1024 * 1024,
                    raise_on_error=False,
                    raise_on_exception=False,
                    max_retries=0,
                    yield_ok=True):
                info = next(iter(item.values())) if item else {}
                results.append((ok, info.get("status"), info.get("error")))
        except Exception as e:
            # not attributable to a single action: every action without a result fails
            logger.error(f"Bulk processor {self.name}: bulk request failed: {e}", exc_info=True)
            results.extend([(False, None, e)] * (len(actions) - len(results)))
        if len(results) < len(actions):
            missing = len(actions) - len(results)
            results.extend([(False, None, "no result returned for action")] * missing)
        return results

    def _call_listener(self, method: str, *args) -> None:
        try:
            getattr(self.listener, method)(*args)
        except Exception as e:
            logger.error(f"Bulk processor {self.name}: listener {method} raised: {e}", exc_info=True)

    def _record(self, succeeded: int, failed: int) -> None:
        with self._stats_lock:
            self._succeeded += succeeded
            self._failed += failed
        if succeeded:
            metrics.bulk_actions_succeeded.labels(processor=self.name).inc(succeeded)
        if failed:
            metrics.bulk_actions_failed.labels(processor=self.name).inc(failed)

    def _notify_failure(self, action: BulkAction, status: Optional[int], error: Any) -> None:
        logger.error(f"Bulk processor {self.name}: {action.op_type} of {action.doc_id} in {action.index} "
                     f"failed (status={status}): {error}")
        self._call_listener("on_action_failure", action, status, error)

"""Bounded-parallel dispatch of re-encryption items.

Each item runs start to finish on one worker of a fixed-size thread
pool, with a fresh engine per item. A failure in one item never reaches
the scheduler or any other item. A fatal outcome (cluster unreachable,
key unavailable) or an operator interrupt cancels the run: items already
running finish to a terminal state, items not yet started are skipped.
"""

import threading
from collections.abc import Callable, Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait

from icecream import ic

from kubeseal_reencrypt.config import DEFAULT_CONCURRENCY
from kubeseal_reencrypt.engine import ReencryptionEngine
from kubeseal_reencrypt.exceptions import ErrorKind
from kubeseal_reencrypt.models import ItemOutcome, ItemState, ReencryptionItem, RunReport
from kubeseal_reencrypt.reporter import Reporter


class ActivityCounter:
    """Thread-safe count of engines currently running, with its peak."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.active = 0
        self.peak = 0
        self.total = 0

    def __enter__(self) -> "ActivityCounter":
        with self._lock:
            self.active += 1
            self.total += 1
            self.peak = max(self.peak, self.active)
        return self

    def __exit__(self, exc_type: type | None, exc_val: BaseException | None, exc_tb: object) -> None:
        with self._lock:
            self.active -= 1


class Scheduler:
    """Fans items out to engines with at most ``concurrency_limit`` running.

    Attributes:
        make_engine: Factory returning an independent engine for one item.
        reporter: Destination of every outcome.
        max_attempts: Attempts per item when it fails on a concurrent modification.
        counter: Instrumentation of active engines.

    """

    def __init__(
        self,
        make_engine: Callable[[], ReencryptionEngine],
        reporter: Reporter,
        *,
        max_attempts: int = 1,
        on_outcome: Callable[[ItemOutcome], None] | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.make_engine = make_engine
        self.reporter = reporter
        self.max_attempts = max_attempts
        self.on_outcome = on_outcome
        self.counter = ActivityCounter()
        self._cancelled = threading.Event()
        self._abort_reason = ""

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self, reason: str = "cancelled by operator") -> None:
        """Stop dispatching; running items still reach a terminal state."""
        if not self._cancelled.is_set():
            self._abort_reason = reason
            self._cancelled.set()

    def run(self, items: Iterable[ReencryptionItem], concurrency_limit: int = DEFAULT_CONCURRENCY) -> RunReport:
        """Process every item and return the finalized report.

        Items are re-indexed in the order given, which is the order the
        reporter emits them in.
        """
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be at least 1")

        work = list(items)
        for index, item in enumerate(work):
            item.index = index

        with ThreadPoolExecutor(max_workers=concurrency_limit, thread_name_prefix="reencrypt") as pool:
            pending: set[Future[ItemOutcome]] = {pool.submit(self._run_item, item) for item in work}
            try:
                while pending:
                    try:
                        done, pending = wait(pending, return_when=FIRST_COMPLETED)
                    except KeyboardInterrupt:
                        self.cancel("interrupted by operator")
                        continue
                    for future in done:
                        self._collect(future.result())
            except BaseException as exc:
                # Queued items must see the cancel before the pool drains them
                self.cancel("interrupted by operator" if isinstance(exc, KeyboardInterrupt) else repr(exc))
                raise

        return self.reporter.finalize(aborted=self.cancelled, fatal_error=self._abort_reason)

    def _collect(self, outcome: ItemOutcome) -> None:
        self.reporter.record(outcome)
        if self.on_outcome is not None:
            self.on_outcome(outcome)

    def _run_item(self, item: ReencryptionItem) -> ItemOutcome:
        """Item boundary: whatever happens, return a terminal outcome."""
        if self._cancelled.is_set():
            item.advance(ItemState.SKIPPED, error=ErrorKind.CANCELLED, message="Run aborted before the item started")
            return self._outcome(item)

        try:
            with self.counter:
                while True:
                    outcome = self.make_engine().process(item, self._cancelled)
                    retry = (
                        outcome.error_kind is ErrorKind.CONCURRENT_MODIFICATION
                        and item.attempts < self.max_attempts
                        and not self._cancelled.is_set()
                    )
                    if not retry:
                        break
                    ic(item.ref, item.attempts)
                    item.restart()
        except Exception as exc:  # noqa: BLE001 - item boundary
            if not item.state.is_terminal:
                item.advance(ItemState.FAILED, error=ErrorKind.UNEXPECTED, message=f"{type(exc).__name__}: {exc}")
            return self._outcome(item)

        # Cancel before this worker can take the next item
        if outcome.is_fatal:
            self.cancel(f"{outcome.error_kind.value}: {outcome.message}")
        return outcome

    @staticmethod
    def _outcome(item: ReencryptionItem) -> ItemOutcome:
        return ItemOutcome(
            ref=item.ref,
            index=item.index,
            state=item.state,
            error_kind=item.last_error,
            message=item.message,
            attempts=item.attempts,
        )

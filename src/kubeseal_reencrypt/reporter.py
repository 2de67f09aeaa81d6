"""Run reporting.

The Reporter is the single point where outcomes from all workers meet.
Outcomes may arrive in any completion order; lines are emitted, and the
report is built, strictly in discovery order.
"""

import logging
import threading
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path

from kubeseal_reencrypt import console
from kubeseal_reencrypt.exceptions import ErrorKind
from kubeseal_reencrypt.models import ItemOutcome, ItemState, RunReport

LOG_FORMAT = "%(asctime)s %(message)s"

_COUNTED_STATES = (ItemState.COMMITTED, ItemState.VERIFIED, ItemState.SKIPPED, ItemState.FAILED)


class Reporter:
    """Collects item outcomes and renders the log taxonomy.

    Attributes:
        lines: Every line emitted so far, in order.

    """

    def __init__(self, *, log_path: Path | None = None, echo: bool = True) -> None:
        self.echo = echo
        self.lines: list[str] = []
        self.started: datetime = datetime.now(timezone.utc)
        self.key_fingerprint = ""
        self.dry_run = False
        self._lock = threading.Lock()
        self._pending: dict[int, ItemOutcome] = {}
        self._outcomes: list[ItemOutcome] = []
        self._next_index = 0
        self._finalized: RunReport | None = None

        self._logger = logging.getLogger(f"kubeseal_reencrypt.report.{id(self)}")
        self._logger.propagate = False
        self._logger.setLevel(logging.INFO)
        self._handler: logging.Handler | None = None
        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            self._handler = logging.FileHandler(log_path, encoding="utf-8")
            self._handler.setFormatter(logging.Formatter(LOG_FORMAT))
            self._logger.addHandler(self._handler)

    def _emit(self, prefix: str, message: str, *, separator: str = ": ") -> None:
        line = f"{prefix}{separator}{message}"
        self.lines.append(line)
        self._logger.info(line)
        if self.echo:
            console.taxonomy(prefix, message, separator)

    def start(self, total: int, *, key_fingerprint: str = "", dry_run: bool = False) -> None:
        """Emit START and reset the clock."""
        self.started = datetime.now(timezone.utc)
        self.key_fingerprint = key_fingerprint
        self.dry_run = dry_run
        mode = " (dry run)" if dry_run else ""
        key = f", certificate {key_fingerprint[:16]}" if key_fingerprint else ""
        self._emit("START", f"re-encrypting {total} SealedSecret(s){key}{mode}")

    def record(self, outcome: ItemOutcome) -> None:
        """Accept an outcome from any worker; flush whatever is now in order."""
        with self._lock:
            self._pending[outcome.index] = outcome
            while self._next_index in self._pending:
                self._flush(self._pending.pop(self._next_index))
                self._next_index += 1

    def _flush(self, outcome: ItemOutcome) -> None:
        ref = str(outcome.ref)
        self._outcomes.append(outcome)
        self._emit("Processing", ref, separator=" ")

        match outcome.state:
            case ItemState.COMMITTED:
                self._emit("SUCCESS", f"Re-encrypted {ref}")
                self._emit(
                    "VERIFIED",
                    f"Ciphertext updated {ref} ({outcome.old_fingerprint[:12]} -> {outcome.new_fingerprint[:12]})",
                )
            case ItemState.VERIFIED:
                self._emit(
                    "VERIFIED",
                    f"Ciphertext updated {ref} ({outcome.old_fingerprint[:12]} -> {outcome.new_fingerprint[:12]}, "
                    "dry run, not applied)",
                )
            case ItemState.SKIPPED if outcome.error_kind is ErrorKind.NO_DECRYPTED_SECRET:
                self._emit("WARNING", f"Decrypted secret not found {ref}: {outcome.message}")
            case ItemState.SKIPPED:
                kind = outcome.error_kind.value if outcome.error_kind else "Skipped"
                self._emit("WARNING", f"Skipped {ref} ({kind}): {outcome.message}")
            case _:
                kind = outcome.error_kind.value if outcome.error_kind else ErrorKind.UNEXPECTED.value
                self._emit("ERROR", f"Failed to apply {ref} [{kind}]: {outcome.message}")

    def finalize(self, *, aborted: bool = False, fatal_error: str = "") -> RunReport:
        """Emit END and return the finished report.

        Calling it again returns the same report.
        """
        with self._lock:
            if self._finalized is not None:
                return self._finalized
            for index in sorted(self._pending):
                self._flush(self._pending.pop(index))

            counts = Counter(o.state for o in self._outcomes)
            summary = ", ".join(f"{state.value}={counts.get(state, 0)}" for state in _COUNTED_STATES)
            if aborted:
                summary += f", aborted: {fatal_error or 'cancelled'}"
            self._emit("END", summary)

            self._finalized = RunReport(
                started=self.started,
                ended=datetime.now(timezone.utc),
                counts=dict(counts),
                outcomes=tuple(self._outcomes),
                aborted=aborted,
                fatal_error=fatal_error,
                key_fingerprint=self.key_fingerprint,
                dry_run=self.dry_run,
            )
            self.close()
            return self._finalized

    def close(self) -> None:
        """Detach and close the log file handler."""
        if self._handler is not None:
            self._logger.removeHandler(self._handler)
            self._handler.close()
            self._handler = None

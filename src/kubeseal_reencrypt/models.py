"""Data models for kubeseal-reencrypt.

This module provides the typed records that flow between the cluster
reader, the re-encryption engine, the scheduler and the reporter.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, NamedTuple

from kubeseal_reencrypt.exceptions import ErrorKind, InvalidTransitionError

__all__ = [
    "ControllerInfo",
    "ErrorKind",
    "ItemOutcome",
    "ItemState",
    "PublicKeyMaterial",
    "ReencryptionItem",
    "RunReport",
    "SealedSecretRef",
    "SealedSecretSpec",
]


class ItemState(str, Enum):
    """Lifecycle states of a single SealedSecret re-encryption.

    Inherits from str so states render directly in log lines and reports.
    """

    DISCOVERED = "Discovered"
    VALIDATED = "Validated"
    AWAITING_DECRYPTION = "AwaitingDecryption"
    RESEALED = "Resealed"
    VERIFIED = "Verified"
    COMMITTED = "Committed"
    FAILED = "Failed"
    SKIPPED = "Skipped"

    @property
    def rank(self) -> int:
        """Position in the forward ordering; terminal branches rank highest."""
        return _STATE_RANKS[self]

    @property
    def is_terminal(self) -> bool:
        return self in (ItemState.COMMITTED, ItemState.FAILED, ItemState.SKIPPED)


_STATE_RANKS = {
    ItemState.DISCOVERED: 0,
    ItemState.VALIDATED: 1,
    ItemState.AWAITING_DECRYPTION: 2,
    ItemState.RESEALED: 3,
    ItemState.VERIFIED: 4,
    ItemState.COMMITTED: 5,
    ItemState.FAILED: 6,
    ItemState.SKIPPED: 6,
}


class ControllerInfo(NamedTuple):
    """Information about the SealedSecrets controller.

    Attributes:
        name: The controller service name.
        namespace: The namespace where the controller is deployed.
        version: The controller version string (may include 'v' prefix).

    """

    name: str
    namespace: str
    version: str


class SealedSecretRef(NamedTuple):
    """Identity of a SealedSecret plus the version token it was read at.

    Attributes:
        namespace: Namespace of the SealedSecret.
        name: Name of the SealedSecret.
        resource_version: Optimistic-concurrency token from the last read.

    """

    namespace: str
    name: str
    resource_version: str

    @property
    def key(self) -> tuple[str, str]:
        return (self.namespace, self.name)

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True, slots=True)
class SealedSecretSpec:
    """A SealedSecret as read from the cluster.

    Attributes:
        ref: Reference carrying the resourceVersion the object was read at.
        fingerprint: SHA-256 over the canonical form of spec.encryptedData.
        template_target_name: Name of the Secret the controller materializes.
        sealed_with: Key fingerprint stamped by a previous run, or "".
        body: The raw object as returned by the API.

    """

    ref: SealedSecretRef
    fingerprint: str
    template_target_name: str
    sealed_with: str
    body: dict[str, Any]


@dataclass(frozen=True, slots=True)
class PublicKeyMaterial:
    """The controller's public certificate, fixed for the whole run."""

    fingerprint: str
    pem: bytes
    fetched_at: datetime

    @property
    def short_fingerprint(self) -> str:
        return self.fingerprint[:16]

    def age_seconds(self, now: datetime | None = None) -> float:
        now = now or datetime.now(timezone.utc)
        return (now - self.fetched_at).total_seconds()


@dataclass(slots=True)
class ReencryptionItem:
    """One unit of work, owned by a single engine while it is processed.

    Attributes:
        ref: The SealedSecret reference from discovery.
        index: Discovery position, used to keep reporting deterministic.
        expected_secret_name: Name of the decrypted Secret, once known.
        state: Current lifecycle state.
        attempts: Number of times the pipeline has been started.
        last_error: Kind of the error that ended the last attempt.
        message: Human-readable detail for the last transition.

    """

    ref: SealedSecretRef
    index: int = 0
    expected_secret_name: str = ""
    state: ItemState = ItemState.DISCOVERED
    attempts: int = 0
    last_error: ErrorKind | None = None
    message: str = ""
    history: list[ItemState] = field(default_factory=list)

    def advance(self, state: ItemState, *, error: ErrorKind | None = None, message: str = "") -> None:
        """Move the item forward, or into a terminal branch.

        Raises:
            InvalidTransitionError: If the item is terminal or the target
                state lies behind the current one.

        """
        if self.state.is_terminal:
            raise InvalidTransitionError(f"{self.ref} is already {self.state.value}; cannot move to {state.value}")
        if not state.is_terminal and state.rank <= self.state.rank:
            raise InvalidTransitionError(f"{self.ref} cannot move backward from {self.state.value} to {state.value}")
        if state is ItemState.COMMITTED and self.state is not ItemState.VERIFIED:
            raise InvalidTransitionError(f"{self.ref} must be Verified before it can be Committed")
        self.history.append(self.state)
        self.state = state
        self.last_error = error
        self.message = message

    def restart(self) -> None:
        """Begin a fresh attempt from Discovered after a retryable failure."""
        self.state = ItemState.DISCOVERED
        self.history = []
        self.last_error = None
        self.message = ""
        self.expected_secret_name = ""


@dataclass(frozen=True, slots=True)
class ItemOutcome:
    """Terminal result of one item, as handed to the reporter."""

    ref: SealedSecretRef
    index: int
    state: ItemState
    error_kind: ErrorKind | None = None
    message: str = ""
    attempts: int = 0
    old_fingerprint: str = ""
    new_fingerprint: str = ""
    audit_path: str | None = None

    @property
    def failed(self) -> bool:
        return self.state is ItemState.FAILED

    @property
    def is_fatal(self) -> bool:
        return self.error_kind in (ErrorKind.CLUSTER_UNREACHABLE, ErrorKind.KEY_FETCH_FAILED)


@dataclass(frozen=True, slots=True)
class RunReport:
    """Aggregated result of a re-encryption run.

    Attributes:
        started: When the run began.
        ended: When the report was finalized.
        counts: Number of outcomes per terminal state.
        outcomes: Per-item outcomes in discovery order.
        aborted: Whether the run stopped early (fatal error or cancellation).
        fatal_error: Description of the error that aborted the run.
        key_fingerprint: Fingerprint of the certificate used for resealing.
        dry_run: Whether cluster writes were only dry-run submissions.

    """

    started: datetime
    ended: datetime
    counts: dict[ItemState, int]
    outcomes: tuple[ItemOutcome, ...]
    aborted: bool = False
    fatal_error: str = ""
    key_fingerprint: str = ""
    dry_run: bool = False

    def count(self, state: ItemState) -> int:
        return self.counts.get(state, 0)

    @property
    def failed(self) -> tuple[ItemOutcome, ...]:
        return tuple(o for o in self.outcomes if o.failed)

    @property
    def exit_code(self) -> int:
        """0 when nothing failed, 1 on any Failed item, 2 on an aborted run."""
        if self.aborted:
            return 2
        if self.count(ItemState.FAILED):
            return 1
        return 0

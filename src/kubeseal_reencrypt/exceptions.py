"""Custom exceptions for kubeseal-reencrypt.

This module defines the error taxonomy used throughout the application.
Setup errors (cluster, controller, key, binary) abort a whole run, while
``ItemError`` subclasses describe why a single SealedSecret did not reach
Committed and are caught at the item boundary.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Classification of why an item did not reach Committed.

    Inherits from str so kinds render directly in log lines and reports.
    """

    CLUSTER_UNREACHABLE = "ClusterUnreachable"
    KEY_FETCH_FAILED = "KeyFetchFailed"
    VALIDATION_ERROR = "ValidationError"
    REPRESENTATION_INVALID = "RepresentationInvalid"
    NO_DECRYPTED_SECRET = "NoDecryptedSecret"
    RESEAL_FAILED = "ResealFailed"
    NO_CHANGE_DETECTED = "NoChangeDetected"
    CONCURRENT_MODIFICATION = "ConcurrentModification"
    WRITE_CONFLICT = "WriteConflict"
    CANCELLED = "Cancelled"
    UNEXPECTED = "Unexpected"


class ReencryptError(Exception):
    """Root of every error raised by kubeseal-reencrypt.

    ``kind`` is the classification recorded on an item when the error
    ends its processing.
    """

    kind: ErrorKind = ErrorKind.UNEXPECTED


class ClusterConnectionError(ReencryptError):
    """The Kubernetes API could not be reached or refused our credentials.

    Raised for a missing kubeconfig, an expired token, a refused
    connection or a timed-out call. Every remaining item would fail the
    same way, so this aborts the run.
    """

    kind = ErrorKind.CLUSTER_UNREACHABLE


class ControllerNotFoundError(ReencryptError):
    """No service of the SealedSecrets controller could be located.

    Either the controller is not deployed, it lacks the
    ``app.kubernetes.io/name=sealed-secrets`` label, or listing services
    is forbidden.
    """


class KeyFetchError(ReencryptError):
    """Raised when the controller's public certificate cannot be obtained.

    Covers an unreachable certificate endpoint as well as a response that
    is not a PEM encoded certificate.
    """

    kind = ErrorKind.KEY_FETCH_FAILED


class BinaryNotFoundError(ReencryptError):
    """No usable kubeseal: not downloadable and not on PATH."""


class UnsupportedPlatformError(ReencryptError):
    """kubeseal releases exist only for linux/darwin on amd64/arm64."""


class SecretParsingError(ReencryptError):
    """Raised when a YAML document cannot be parsed into a Kubernetes object."""


class InvalidTransitionError(ReencryptError):
    """Raised when an item would move backward or leave a terminal state."""


class ItemError(ReencryptError):
    """Base class for failures scoped to a single SealedSecret."""


class ValidationError(ItemError):
    """The cluster's admission path rejected the object on a dry run."""

    kind = ErrorKind.VALIDATION_ERROR


class RepresentationInvalidError(ItemError):
    """The object, or kubeseal's output, is not a well-formed SealedSecret."""

    kind = ErrorKind.REPRESENTATION_INVALID


class NotFoundError(ItemError):
    """The SealedSecret disappeared between listing and reading it."""

    kind = ErrorKind.REPRESENTATION_INVALID


class ResealError(ItemError):
    """kubeseal failed, timed out, or could not be started."""

    kind = ErrorKind.RESEAL_FAILED


class NoChangeDetectedError(ItemError):
    """Resealing produced the ciphertext already stored in the cluster."""

    kind = ErrorKind.NO_CHANGE_DETECTED


class ConcurrentModificationError(ItemError):
    """The object changed in the cluster after it was read.

    Retryable by running the item again from Discovered.
    """

    kind = ErrorKind.CONCURRENT_MODIFICATION


class WriteConflictError(ItemError):
    """The cluster refused the final write for a reason other than a version clash."""

    kind = ErrorKind.WRITE_CONFLICT


class CancelledError(ItemError):
    """The run was cancelled before the item reached its commit step."""

    kind = ErrorKind.CANCELLED

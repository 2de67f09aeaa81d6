"""kubeseal-reencrypt: reseal Kubernetes SealedSecrets after a key rotation.

This package lists every SealedSecret in a cluster, reseals the matching
decrypted Secret against the SealedSecrets controller's current
certificate, verifies the ciphertext changed and writes the result back
guarded by the object's resourceVersion.

Example usage:
    from kubeseal_reencrypt import Reencryptor, RunConfig

    with Reencryptor(RunConfig(namespace="apps", dry_run=True)) as reencryptor:
        report = reencryptor.run()
        print(report.counts, report.exit_code)
"""

__version__ = "0.1.0"

from kubeseal_reencrypt.cli import cli
from kubeseal_reencrypt.config import RunConfig
from kubeseal_reencrypt.engine import ReencryptionEngine
from kubeseal_reencrypt.exceptions import (
    BinaryNotFoundError,
    ClusterConnectionError,
    ControllerNotFoundError,
    KeyFetchError,
    ReencryptError,
    SecretParsingError,
    UnsupportedPlatformError,
)
from kubeseal_reencrypt.models import ErrorKind, ItemState, RunReport
from kubeseal_reencrypt.runner import Reencryptor
from kubeseal_reencrypt.scheduler import Scheduler

__all__ = [
    # Version
    "__version__",
    # Main CLI
    "cli",
    # Classes
    "Reencryptor",
    "ReencryptionEngine",
    "RunConfig",
    "Scheduler",
    # Results
    "ErrorKind",
    "ItemState",
    "RunReport",
    # Exceptions
    "ReencryptError",
    "BinaryNotFoundError",
    "ClusterConnectionError",
    "ControllerNotFoundError",
    "KeyFetchError",
    "SecretParsingError",
    "UnsupportedPlatformError",
]

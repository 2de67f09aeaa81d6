"""Run configuration.

Every field maps to a ``reencrypt`` command-line option; the CLI also
reads them from ``KUBESEAL_REENCRYPT_*`` environment variables.
"""

from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

ENV_PREFIX = "KUBESEAL_REENCRYPT"

DEFAULT_CONCURRENCY = 4
DEFAULT_TIMEOUT = 30.0
DEFAULT_KEY_MAX_AGE = timedelta(minutes=30)


@dataclass(frozen=True, slots=True)
class RunConfig:
    """Settings for one re-encryption run.

    Attributes:
        namespace: Restrict the run to one namespace; None means all.
        output_dir: Directory for audit copies of every updated object.
        concurrency: Number of items processed in parallel.
        dry_run: Validate and reseal, but only dry-run the final write.
        log_path: File receiving the taxonomy log lines.
        context: Kubernetes context; None means the current one.
        select_context: Prompt for the context.
        certificate: Seal against this certificate file instead of fetching one.
        controller_name: SealedSecrets controller service name.
        controller_namespace: SealedSecrets controller namespace.
        timeout: Seconds allowed for each cluster or kubeseal call.
        retries: Extra attempts for items hit by a concurrent modification.
        assume_yes: Skip the confirmation prompt.
        key_max_age: Age after which the run's certificate is reported stale.

    """

    namespace: str | None = None
    output_dir: Path | None = None
    concurrency: int = DEFAULT_CONCURRENCY
    dry_run: bool = False
    log_path: Path | None = None
    context: str | None = None
    select_context: bool = False
    certificate: Path | None = None
    controller_name: str | None = None
    controller_namespace: str | None = None
    timeout: float = DEFAULT_TIMEOUT
    retries: int = 0
    assume_yes: bool = False
    key_max_age: timedelta = DEFAULT_KEY_MAX_AGE

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
        if self.retries < 0:
            raise ValueError("retries cannot be negative")

    @property
    def max_attempts(self) -> int:
        return self.retries + 1

    @property
    def scope(self) -> str:
        return f"namespace {self.namespace}" if self.namespace else "all namespaces"

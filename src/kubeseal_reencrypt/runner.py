"""Reencryptor facade.

This module provides the Reencryptor class, the entry point for a whole
run: it connects to the cluster, resolves the controller and the kubeseal
binary, discovers the work list, fetches the key once, and hands the
items to the scheduler.
"""

import contextlib
from collections.abc import Callable

from icecream import ic
from rich.progress import Progress, TaskID

from kubeseal_reencrypt import console
from kubeseal_reencrypt.cluster import Cluster
from kubeseal_reencrypt.config import RunConfig
from kubeseal_reencrypt.engine import ReencryptionEngine
from kubeseal_reencrypt.host import Host
from kubeseal_reencrypt.interfaces import ClusterClient, Resealer
from kubeseal_reencrypt.keys import FileCertificateSource, KeyProvider
from kubeseal_reencrypt.kubeseal import Kubeseal
from kubeseal_reencrypt.models import ItemOutcome, ReencryptionItem, RunReport
from kubeseal_reencrypt.reporter import Reporter
from kubeseal_reencrypt.scheduler import Scheduler
from kubeseal_reencrypt.scratch import ScratchArena


def _advance_progress(progress: Progress, task_id: TaskID) -> Callable[[ItemOutcome], None]:
    def advance(_outcome: ItemOutcome) -> None:
        progress.update(task_id, advance=1)

    return advance


class Reencryptor:
    """One re-encryption run against one cluster.

    Use as a context manager; leaving it drops the cached key, removes
    the scratch arena and closes the API client on every exit path.

    Attributes:
        config: The run configuration.
        reader: Cluster access used by the engines.
        kubeseal: The resealing primitive.
        keys: Run-scoped key provider.
        controller_namespace: Namespace of the SealedSecrets controller.

    """

    def __init__(
        self,
        config: RunConfig,
        *,
        reader: ClusterClient | None = None,
        kubeseal: Resealer | None = None,
        keys: KeyProvider | None = None,
        controller_namespace: str | None = None,
    ) -> None:
        """Connect to the cluster unless collaborators are injected.

        Raises:
            ClusterConnectionError: If kubeconfig is invalid or the cluster is unreachable.
            ControllerNotFoundError: If the controller cannot be found.
            BinaryNotFoundError: If no kubeseal binary is available.

        """
        self.config = config
        self.cluster: Cluster | None = None
        self.arena = ScratchArena()
        self.controller_namespace = controller_namespace or config.controller_namespace or ""

        if reader is None or kubeseal is None:
            self.cluster = Cluster(
                context=config.context,
                select_context=config.select_context,
                pool_size=config.concurrency,
            )
            try:
                controller = self.cluster.find_controller(config.controller_name, config.controller_namespace)
                self.controller_namespace = controller.namespace
                if reader is None:
                    reader = self.cluster.reader(timeout=config.timeout)
                if kubeseal is None:
                    kubeseal = Kubeseal(
                        Host(timeout=max(config.timeout, 60.0)).resolve_binary(controller.version),
                        context=self.cluster.context,
                        controller_name=controller.name,
                        controller_namespace=controller.namespace,
                        timeout=config.timeout,
                    )
            except Exception:
                # __exit__ never runs for a failed constructor
                self.cluster.close()
                raise

        self.reader: ClusterClient = reader
        self.kubeseal: Resealer = kubeseal
        if keys is None:
            source = FileCertificateSource(config.certificate) if config.certificate else kubeseal
            keys = KeyProvider(source)
        self.keys = keys

    def __enter__(self) -> "Reencryptor":
        self.arena.__enter__()
        return self

    def __exit__(self, exc_type: type | None, exc_val: BaseException | None, exc_tb: object) -> None:
        self.keys.close()
        self.arena.cleanup()
        if self.cluster is not None:
            self.cluster.close()

    def __repr__(self) -> str:
        return f"Reencryptor(cluster={self.cluster!r}, scope={self.config.scope!r}, dry_run={self.config.dry_run})"

    def discover(self) -> list[ReencryptionItem]:
        """List the SealedSecrets in scope, in API order.

        Raises:
            ClusterConnectionError: If the cluster is unreachable.

        """
        with console.spinner(f"Listing SealedSecrets in {self.config.scope}..."):
            items = [
                ReencryptionItem(ref=ref, index=index)
                for index, ref in enumerate(self.reader.list_sealed_secrets(self.config.namespace))
            ]
        ic(len(items))
        return items

    def make_engine(self) -> ReencryptionEngine:
        return ReencryptionEngine(
            self.reader,
            self.kubeseal,
            self.keys,
            self.arena,
            controller_namespace=self.controller_namespace,
            output_dir=self.config.output_dir,
            dry_run=self.config.dry_run,
        )

    def run(
        self,
        *,
        confirm: Callable[[int], bool] | None = None,
        reporter: Reporter | None = None,
        echo: bool = True,
    ) -> RunReport | None:
        """Discover, fetch the key, and re-encrypt every item.

        Args:
            confirm: Called with the item count before any cluster write;
                returning False ends the run before anything is processed.
            reporter: Reporter to use; one logging to ``config.log_path``
                is created otherwise.
            echo: Print taxonomy lines and progress to the terminal.

        Returns:
            The run report, or None if ``confirm`` declined.

        Raises:
            ClusterConnectionError: If the cluster is unreachable at start.
            KeyFetchError: If the controller's certificate cannot be obtained.

        """
        items = self.discover()
        key = self.keys.current_public_key(self.controller_namespace)

        if items and confirm is not None and not confirm(len(items)):
            return None

        reporter = reporter or Reporter(log_path=self.config.log_path, echo=echo)
        reporter.start(len(items), key_fingerprint=key.fingerprint, dry_run=self.config.dry_run)

        progress_ctx = console.create_task_progress() if echo and items else contextlib.nullcontext()
        with progress_ctx as progress:
            on_outcome = None
            if progress is not None:
                task_id = progress.add_task("Re-encrypting SealedSecrets", total=len(items))
                on_outcome = _advance_progress(progress, task_id)

            scheduler = Scheduler(
                self.make_engine,
                reporter,
                max_attempts=self.config.max_attempts,
                on_outcome=on_outcome,
            )
            report = scheduler.run(items, self.config.concurrency)

        if self.keys.is_stale(self.controller_namespace, self.config.key_max_age):
            console.warning(
                "The run outlived the certificate refresh window; "
                "run again to pick up any key rotated during this run"
            )
        return report

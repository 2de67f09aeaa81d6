"""Re-encryption state machine for a single SealedSecret.

An engine drives one ReencryptionItem through

    Discovered -> Validated -> AwaitingDecryption -> Resealed -> Verified -> Committed

or into a terminal Failed/Skipped branch. Each transition is a separate
method so it can be exercised on its own. Every error raised while an
item is processed ends that item only; nothing escapes ``process``.
"""

import threading
from pathlib import Path
from typing import Any

import yaml
from icecream import ic

from kubeseal_reencrypt.exceptions import (
    CancelledError,
    ConcurrentModificationError,
    ErrorKind,
    NoChangeDetectedError,
    NotFoundError,
    ReencryptError,
)
from kubeseal_reencrypt.interfaces import ClusterClient, KeySource, Resealer
from kubeseal_reencrypt.manifests import (
    build_plain_secret,
    build_updated_sealed_secret,
    fingerprint,
    write_audit_copy,
)
from kubeseal_reencrypt.models import (
    ItemOutcome,
    ItemState,
    PublicKeyMaterial,
    ReencryptionItem,
    SealedSecretSpec,
)
from kubeseal_reencrypt.scratch import ScratchArena


class ReencryptionEngine:
    """Processes one item at a time against shared, read-only collaborators.

    Attributes:
        cluster: Cluster access (reads, dry runs, the final write).
        resealer: The resealing primitive.
        keys: Source of the run's public key material.
        arena: Scratch area for kubeseal's input and output files.
        controller_namespace: Namespace passed to the key source.
        output_dir: Where audit copies are written, if anywhere.
        dry_run: Submit the final write as a server dry run and stop at Verified.

    """

    def __init__(
        self,
        cluster: ClusterClient,
        resealer: Resealer,
        keys: KeySource,
        arena: ScratchArena,
        *,
        controller_namespace: str,
        output_dir: Path | None = None,
        dry_run: bool = False,
    ) -> None:
        self.cluster = cluster
        self.resealer = resealer
        self.keys = keys
        self.arena = arena
        self.controller_namespace = controller_namespace
        self.output_dir = output_dir
        self.dry_run = dry_run

    def process(self, item: ReencryptionItem, cancelled: threading.Event | None = None) -> ItemOutcome:
        """Run one attempt for ``item`` and return its terminal outcome."""
        cancelled = cancelled or threading.Event()
        item.attempts += 1
        old_fingerprint = new_fingerprint = ""
        audit_path: Path | None = None

        try:
            self._checkpoint(cancelled)
            key = self.keys.current_public_key(self.controller_namespace)

            spec = self.validate(item)
            old_fingerprint = spec.fingerprint

            self._checkpoint(cancelled)
            self.await_decryption(item, spec)

            self._checkpoint(cancelled)
            secret = self.cluster.fetch_secret(spec.ref.namespace, item.expected_secret_name)
            if secret is None:
                item.advance(
                    ItemState.SKIPPED,
                    error=ErrorKind.NO_DECRYPTED_SECRET,
                    message=f"Secret {spec.ref.namespace}/{item.expected_secret_name} does not exist",
                )
            else:
                new_data = self.reseal(item, spec, secret.type, secret.data or {}, key)
                new_fingerprint = fingerprint(new_data)

                self._checkpoint(cancelled)
                self.verify(item, spec, new_fingerprint, key)
                audit_path = self.commit(item, spec, new_data, key)
        except ReencryptError as exc:
            # Cluster and key errors also end here; the scheduler escalates them from the outcome
            self._fail(item, exc.kind, str(exc))
        except Exception as exc:  # noqa: BLE001 - item boundary
            ic(exc)
            self._fail(item, ErrorKind.UNEXPECTED, f"{type(exc).__name__}: {exc}")

        return ItemOutcome(
            ref=item.ref,
            index=item.index,
            state=item.state,
            error_kind=item.last_error,
            message=item.message,
            attempts=item.attempts,
            old_fingerprint=old_fingerprint,
            new_fingerprint=new_fingerprint,
            audit_path=str(audit_path) if audit_path else None,
        )

    @staticmethod
    def _checkpoint(cancelled: threading.Event) -> None:
        if cancelled.is_set():
            raise CancelledError("Run cancelled before the item was committed")

    @staticmethod
    def _fail(item: ReencryptionItem, kind: ErrorKind, message: str) -> None:
        if not item.state.is_terminal:
            item.advance(ItemState.FAILED, error=kind, message=message)

    def validate(self, item: ReencryptionItem) -> SealedSecretSpec:
        """Discovered -> Validated.

        Reads the object (capturing its fingerprint and resourceVersion)
        and submits it unchanged through the admission path as a dry run.
        """
        spec = self.cluster.fetch_sealed_secret_spec(item.ref)
        item.ref = spec.ref
        self.cluster.dry_run_apply(spec.body)
        item.advance(ItemState.VALIDATED)
        return spec

    @staticmethod
    def await_decryption(item: ReencryptionItem, spec: SealedSecretSpec) -> None:
        """Validated -> AwaitingDecryption."""
        item.expected_secret_name = spec.template_target_name
        item.advance(ItemState.AWAITING_DECRYPTION)

    def reseal(
        self,
        item: ReencryptionItem,
        spec: SealedSecretSpec,
        secret_type: str | None,
        secret_data: dict[str, str],
        key: PublicKeyMaterial,
    ) -> dict[str, str]:
        """AwaitingDecryption -> Resealed; returns the new encryptedData."""
        plain = build_plain_secret(spec.body, secret_type, secret_data)
        certificate = self.arena.certificate_path(key)
        with self.arena.slot(spec.ref.namespace, spec.ref.name, item.attempts) as slot:
            secret_path = slot / "secret.yaml"
            with secret_path.open("w") as stream:
                yaml.safe_dump(plain, stream)
            secret_path.chmod(0o600)
            new_data = self.resealer.reseal(secret_path, certificate, slot / "sealed.yaml")
        item.advance(ItemState.RESEALED)
        return new_data

    @staticmethod
    def verify(item: ReencryptionItem, spec: SealedSecretSpec, new_fingerprint: str, key: PublicKeyMaterial) -> None:
        """Resealed -> Verified, only if the ciphertext really changed.

        Raises:
            NoChangeDetectedError: If the ciphertext is unchanged, or the
                object is already stamped as sealed with this key.

        """
        if new_fingerprint == spec.fingerprint:
            raise NoChangeDetectedError(f"Ciphertext unchanged after reseal (fingerprint {new_fingerprint[:16]})")
        if spec.sealed_with == key.fingerprint:
            raise NoChangeDetectedError(f"Already sealed with certificate {key.short_fingerprint}")
        item.advance(ItemState.VERIFIED)

    def commit(
        self,
        item: ReencryptionItem,
        spec: SealedSecretSpec,
        new_data: dict[str, str],
        key: PublicKeyMaterial,
    ) -> Path | None:
        """Verified -> Committed: the only step that mutates the cluster.

        The live resourceVersion is re-read; if it moved, or the object is
        gone, nothing is written. Otherwise the audit copy is written and a
        single replace is sent with the captured resourceVersion as
        precondition.
        In dry-run mode the replace is a server dry run and the item stays
        Verified.
        """
        try:
            live_version = self.cluster.current_resource_version(spec.ref)
        except NotFoundError as err:
            raise ConcurrentModificationError(f"{spec.ref} was deleted before it could be updated") from err
        if live_version != spec.ref.resource_version:
            raise ConcurrentModificationError(
                f"{spec.ref} moved from resourceVersion {spec.ref.resource_version} to {live_version}"
            )

        updated: dict[str, Any] = build_updated_sealed_secret(spec.body, new_data, key.fingerprint)
        audit_path = write_audit_copy(self.output_dir, updated) if self.output_dir else None
        self.cluster.replace_sealed_secret(updated, spec.ref.resource_version, dry_run=self.dry_run)
        if not self.dry_run:
            item.advance(ItemState.COMMITTED)
        return audit_path

"""Collaborator interfaces consumed by the re-encryption engine.

The engine only talks to the cluster, to kubeseal and to the certificate
endpoint through these protocols, so tests can swap in in-memory fakes.
"""

from collections.abc import Iterator
from pathlib import Path
from typing import Any, Protocol

from kubernetes.client import V1Secret

from kubeseal_reencrypt.models import PublicKeyMaterial, SealedSecretRef, SealedSecretSpec


class ClusterClient(Protocol):
    """Read and write access to SealedSecrets and Secrets."""

    def list_sealed_secrets(self, namespace: str | None = None) -> Iterator[SealedSecretRef]:
        """Enumerate SealedSecrets lazily; a new call lists again."""
        ...

    def fetch_sealed_secret_spec(self, ref: SealedSecretRef) -> SealedSecretSpec: ...

    def fetch_secret(self, namespace: str, name: str) -> V1Secret | None:
        """Return the decrypted Secret, or None when it does not exist."""
        ...

    def current_resource_version(self, ref: SealedSecretRef) -> str: ...

    def dry_run_apply(self, body: dict[str, Any]) -> None:
        """Submit through admission without persisting; raise ValidationError on rejection."""
        ...

    def replace_sealed_secret(
        self, body: dict[str, Any], resource_version: str, *, dry_run: bool = False
    ) -> dict[str, Any]:
        """Write guarded by resource_version; raise ConcurrentModificationError on a clash."""
        ...


class Resealer(Protocol):
    """Produces ciphertext for a plaintext Secret manifest."""

    def reseal(self, secret_path: Path, certificate_path: Path, output_path: Path) -> dict[str, str]:
        """Return the new spec.encryptedData for the Secret at ``secret_path``."""
        ...


class CertificateSource(Protocol):
    """Where the controller's public certificate comes from."""

    def fetch_certificate(self, controller_namespace: str) -> bytes: ...


class KeySource(Protocol):
    """What the engine needs from the key provider."""

    def current_public_key(self, controller_namespace: str) -> PublicKeyMaterial: ...

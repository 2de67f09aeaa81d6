"""Wrapper around the kubeseal binary.

This module provides the Kubeseal class, the resealing primitive used by
the engine: it turns a plaintext Secret manifest into new ciphertext for
a given certificate, and fetches the controller's certificate.
"""

import subprocess
from pathlib import Path

from icecream import ic

from kubeseal_reencrypt.exceptions import (
    KeyFetchError,
    RepresentationInvalidError,
    ResealError,
    SecretParsingError,
)
from kubeseal_reencrypt.manifests import SEALED_SECRET_KIND, encrypted_data, parse_document

# CLI flag constant for kubeseal commands
_FORMAT_YAML = "--format=yaml"


def _stderr_tail(err: subprocess.CalledProcessError) -> str:
    stderr = err.stderr.decode(errors="replace") if isinstance(err.stderr, bytes) else (err.stderr or "")
    return stderr.strip().splitlines()[-1] if stderr.strip() else f"exit code {err.returncode}"


class Kubeseal:
    """kubeseal invocations bound to one cluster context and controller.

    Attributes:
        binary: Path to the kubeseal binary.
        context: Kubernetes context name, or "" for the current one.
        controller_name: Name of the SealedSecrets controller service.
        controller_namespace: Namespace of the SealedSecrets controller.
        timeout: Seconds before a kubeseal call is killed.

    """

    def __init__(
        self,
        binary: str = "kubeseal",
        *,
        context: str = "",
        controller_name: str = "",
        controller_namespace: str = "",
        timeout: float = 30.0,
    ) -> None:
        self.binary = binary
        self.context = context
        self.controller_name = controller_name
        self.controller_namespace = controller_namespace
        self.timeout = timeout

    def __repr__(self) -> str:
        return (
            f"Kubeseal(binary={self.binary!r}, context={self.context!r}, "
            f"controller={self.controller_namespace}/{self.controller_name})"
        )

    def _controller_args(self, controller_namespace: str | None = None) -> list[str]:
        args: list[str] = []
        if self.context:
            args.append(f"--context={self.context}")
        namespace = controller_namespace or self.controller_namespace
        if namespace:
            args.append(f"--controller-namespace={namespace}")
        if self.controller_name:
            args.append(f"--controller-name={self.controller_name}")
        return args

    def fetch_certificate(self, controller_namespace: str) -> bytes:
        """Download the controller's current public certificate.

        Raises:
            KeyFetchError: If kubeseal fails, times out or cannot be started.

        """
        cmd = [self.binary, *self._controller_args(controller_namespace), "--fetch-cert"]
        ic(cmd)
        try:
            result = subprocess.run(cmd, capture_output=True, check=True, timeout=self.timeout)
        except subprocess.CalledProcessError as err:
            raise KeyFetchError(f"kubeseal --fetch-cert failed: {_stderr_tail(err)}") from err
        except subprocess.TimeoutExpired as err:
            raise KeyFetchError(f"kubeseal --fetch-cert timed out after {self.timeout}s") from err
        except OSError as err:
            raise KeyFetchError(f"Could not run {self.binary}: {err}") from err
        return result.stdout

    def reseal(self, secret_path: Path, certificate_path: Path, output_path: Path) -> dict[str, str]:
        """Seal the Secret at ``secret_path`` offline against a certificate.

        Args:
            secret_path: Plaintext Secret manifest (YAML).
            certificate_path: PEM certificate to encrypt for.
            output_path: Where kubeseal writes the SealedSecret.

        Returns:
            The resulting spec.encryptedData.

        Raises:
            ResealError: If kubeseal fails, times out or cannot be started.
            RepresentationInvalidError: If kubeseal's output is not a SealedSecret.

        """
        cmd = [self.binary, _FORMAT_YAML, f"--cert={certificate_path}"]
        ic(cmd)

        try:
            with secret_path.open() as stdin_f, output_path.open("w") as stdout_f:
                subprocess.run(
                    cmd,
                    stdin=stdin_f,
                    stdout=stdout_f,
                    stderr=subprocess.PIPE,
                    check=True,
                    timeout=self.timeout,
                )
        except subprocess.CalledProcessError as err:
            raise ResealError(f"kubeseal failed: {_stderr_tail(err)}") from err
        except subprocess.TimeoutExpired as err:
            raise ResealError(f"kubeseal timed out after {self.timeout}s") from err
        except OSError as err:
            raise ResealError(f"Could not run {self.binary}: {err}") from err

        try:
            sealed = parse_document(output_path.read_text(), source="kubeseal output")
        except SecretParsingError as err:
            raise RepresentationInvalidError(str(err)) from err
        if sealed.get("kind") != SEALED_SECRET_KIND:
            raise RepresentationInvalidError(f"kubeseal produced a {sealed.get('kind')!r}, not a SealedSecret")
        return encrypted_data(sealed)

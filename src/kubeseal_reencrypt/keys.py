"""Public key handling for a re-encryption run.

The KeyProvider fetches the controller's certificate once and hands the
same PublicKeyMaterial to every engine, so all items of a run are sealed
against one key even if the controller rotates again mid-run. Such a
rotation is picked up by the next run.
"""

import base64
import binascii
import hashlib
import re
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

from icecream import ic

from kubeseal_reencrypt import console
from kubeseal_reencrypt.exceptions import KeyFetchError
from kubeseal_reencrypt.interfaces import CertificateSource
from kubeseal_reencrypt.models import PublicKeyMaterial

_PEM_CERTIFICATE = re.compile(
    rb"-----BEGIN CERTIFICATE-----\s*(?P<body>[A-Za-z0-9+/=\s]+?)\s*-----END CERTIFICATE-----"
)


def certificate_fingerprint(pem: bytes) -> str:
    """SHA-256 of the DER bytes of the first certificate in a PEM blob.

    Raises:
        KeyFetchError: If the data holds no decodable certificate.

    """
    match = _PEM_CERTIFICATE.search(pem)
    if match is None:
        raise KeyFetchError("Controller returned data that is not a PEM certificate")
    body = b"".join(match.group("body").split())
    try:
        der = base64.b64decode(body, validate=True)
    except binascii.Error as err:
        raise KeyFetchError(f"Controller certificate is not valid base64: {err}") from err
    if not der:
        raise KeyFetchError("Controller certificate is empty")
    return hashlib.sha256(der).hexdigest()


class FileCertificateSource:
    """Reads the certificate from a local file instead of the controller."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def fetch_certificate(self, controller_namespace: str) -> bytes:
        try:
            return self.path.read_bytes()
        except OSError as err:
            raise KeyFetchError(f"Cannot read certificate '{self.path}': {err}") from err


class KeyProvider:
    """Run-scoped cache of the controller's public key.

    Use as a context manager; leaving the context drops the cache so the
    next run fetches again.
    """

    def __init__(self, source: CertificateSource) -> None:
        self.source = source
        self._lock = threading.Lock()
        self._cache: dict[str, PublicKeyMaterial] = {}
        self.fetch_count = 0

    def __enter__(self) -> "KeyProvider":
        return self

    def __exit__(self, exc_type: type | None, exc_val: BaseException | None, exc_tb: object) -> None:
        self.close()

    def close(self) -> None:
        with self._lock:
            self._cache.clear()

    def current_public_key(self, controller_namespace: str) -> PublicKeyMaterial:
        """Return the run's key material, fetching it on first use.

        Raises:
            KeyFetchError: If the endpoint is unreachable or returns
                malformed certificate data.

        """
        with self._lock:
            material = self._cache.get(controller_namespace)
            if material is None:
                material = self._fetch(controller_namespace)
                self._cache[controller_namespace] = material
            return material

    def _fetch(self, controller_namespace: str) -> PublicKeyMaterial:
        with console.spinner("Fetching controller certificate..."):
            pem = self.source.fetch_certificate(controller_namespace)
        self.fetch_count += 1
        material = PublicKeyMaterial(
            fingerprint=certificate_fingerprint(pem),
            pem=pem,
            fetched_at=datetime.now(timezone.utc),
        )
        ic(material.fingerprint)
        console.success(f"Using certificate {console.highlight(material.short_fingerprint)}")
        return material

    def is_stale(self, controller_namespace: str, max_age: timedelta, now: datetime | None = None) -> bool:
        """Whether the cached key is older than ``max_age``.

        A key that was never fetched counts as stale.
        """
        with self._lock:
            material = self._cache.get(controller_namespace)
        if material is None:
            return True
        return material.age_seconds(now) > max_age.total_seconds()

"""Scratch area for the files kubeseal reads and writes.

Every attempt at an item gets its own directory keyed by
``(namespace, name, attempt)``, removed as soon as the attempt ends.
The whole arena is removed when the run ends, on every exit path.
"""

import contextlib
import shutil
import tempfile
import threading
from collections.abc import Generator
from pathlib import Path

from icecream import ic

from kubeseal_reencrypt.models import PublicKeyMaterial


class ScratchArena:
    """Per-run temporary directory tree.

    Use as a context manager; slots and the certificate file are only
    available between ``__enter__`` and ``__exit__``.
    """

    def __init__(self, parent: str | None = None) -> None:
        self._parent = parent
        self._tmp: tempfile.TemporaryDirectory[str] | None = None
        self._lock = threading.Lock()
        self._certificates: dict[str, Path] = {}

    def __enter__(self) -> "ScratchArena":
        self._tmp = tempfile.TemporaryDirectory(prefix="kubeseal-reencrypt-", dir=self._parent)
        ic(self._tmp.name)
        return self

    def __exit__(self, exc_type: type | None, exc_val: BaseException | None, exc_tb: object) -> None:
        self.cleanup()

    def cleanup(self) -> None:
        """Remove the arena and everything still inside it."""
        if self._tmp is not None:
            with contextlib.suppress(OSError):
                self._tmp.cleanup()
            self._tmp = None
        self._certificates.clear()

    @property
    def root(self) -> Path:
        if self._tmp is None:
            raise RuntimeError("ScratchArena used outside of its context")
        return Path(self._tmp.name)

    @staticmethod
    def slot_name(namespace: str, name: str, attempt: int) -> str:
        return f"{namespace}__{name}__{attempt}"

    @contextlib.contextmanager
    def slot(self, namespace: str, name: str, attempt: int) -> Generator[Path, None, None]:
        """Yield a private directory for one attempt at one item.

        Raises:
            FileExistsError: If the same slot is already in use.

        """
        path = self.root / self.slot_name(namespace, name, attempt)
        path.mkdir(mode=0o700)
        try:
            yield path
        finally:
            shutil.rmtree(path, ignore_errors=True)

    def certificate_path(self, key: PublicKeyMaterial) -> Path:
        """Write the run's certificate once and return its path."""
        with self._lock:
            path = self._certificates.get(key.fingerprint)
            if path is None:
                path = self.root / f"cert-{key.short_fingerprint}.pem"
                path.write_bytes(key.pem)
                self._certificates[key.fingerprint] = path
            return path

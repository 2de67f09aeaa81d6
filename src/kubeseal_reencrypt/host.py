"""Locating a kubeseal binary that matches the SealedSecrets controller.

Binaries are cached per version under the XDG data directory and fetched
from the sealed-secrets GitHub releases on first use. When no version
can be determined or the download fails, ``kubeseal`` from PATH is used.
"""

import os
import platform
import re
import shutil
import tarfile
import tempfile
from pathlib import Path

import requests
from icecream import ic

from kubeseal_reencrypt import console
from kubeseal_reencrypt.exceptions import BinaryNotFoundError, UnsupportedPlatformError

RELEASES_URL = "https://github.com/bitnami-labs/sealed-secrets/releases/download"

_VERSION = re.compile(r"v?(?P<version>\d+\.\d+\.\d+(?:-[\w.]+)?(?:\+[\w.]+)?)")

# platform.machine() / platform.system() values mapped to release asset names
_ARCHITECTURES = {"x86_64": "amd64", "amd64": "amd64", "arm64": "arm64", "aarch64": "arm64"}
_SYSTEMS = {"Linux": "linux", "Darwin": "darwin"}


def normalize_version(version: str) -> str:
    """Return ``version`` as bare semver, without its optional ``v`` prefix.

    Raises:
        ValueError: If ``version`` is empty or not a semantic version.

    """
    match = _VERSION.fullmatch(version or "")
    if match is None:
        raise ValueError(f"Not a semantic version: {version!r}")
    return match["version"]


def default_bin_location() -> Path:
    data_home = os.environ.get("XDG_DATA_HOME") or Path.home() / ".local" / "share"
    return Path(data_home) / "kubeseal-reencrypt" / "bin"


class Host:
    """The local machine, as far as picking a kubeseal build goes.

    Attributes:
        bin_location: Cache directory holding ``kubeseal-<version>`` files.
        cpu_type: Release architecture name, ``amd64`` or ``arm64``.
        system: Release OS name, ``linux`` or ``darwin``.

    """

    def __init__(self, bin_location: Path | None = None, *, timeout: float = 60.0) -> None:
        self.bin_location: Path = bin_location or default_bin_location()
        self.timeout = timeout
        self.cpu_type: str = self._get_cpu_type()
        self.system: str = self._get_system_type()

    @staticmethod
    def _get_cpu_type() -> str:
        machine = platform.machine()
        try:
            return _ARCHITECTURES[machine]
        except KeyError:
            raise UnsupportedPlatformError(f"Unsupported CPU architecture: {machine}") from None

    @staticmethod
    def _get_system_type() -> str:
        system = platform.system()
        try:
            return _SYSTEMS[system]
        except KeyError:
            raise UnsupportedPlatformError(f"Unsupported operating system: {system}") from None

    def __repr__(self) -> str:
        return f"Host({self.system}/{self.cpu_type}, cache={self.bin_location})"

    def get_binary_path(self, version: str) -> Path:
        return self.bin_location / f"kubeseal-{normalize_version(version)}"

    def resolve_binary(self, version: str) -> str:
        """Return the kubeseal to run against a controller of ``version``.

        Raises:
            BinaryNotFoundError: If no versioned build can be had and
                kubeseal is not on PATH either.

        """
        if not version:
            console.warning("Controller does not advertise its version")
            return self.system_binary()

        try:
            cached = self.get_binary_path(version)
            if cached.exists():
                ic(cached)
            else:
                console.info(f"No cached kubeseal at {console.highlight(str(cached))}")
                self._download_kubeseal_binary(normalize_version(version))
        except (BinaryNotFoundError, ValueError, requests.RequestException) as exc:
            console.warning(f"Cannot use kubeseal {version}: {exc}")
            return self.system_binary()
        return str(cached)

    @staticmethod
    def system_binary() -> str:
        """Return kubeseal from PATH.

        Raises:
            BinaryNotFoundError: If kubeseal is not installed.

        """
        found = shutil.which("kubeseal")
        if found is None:
            raise BinaryNotFoundError(
                "kubeseal binary not found on PATH; install it from "
                "https://github.com/bitnami-labs/sealed-secrets#installation"
            )
        console.warning(f"Using kubeseal from PATH ({found})")
        return found

    def _download_kubeseal_binary(self, version: str) -> None:
        """Fetch the release archive for ``version`` and unpack kubeseal from it.

        Raises:
            BinaryNotFoundError: If the release does not exist or lacks kubeseal.
            requests.RequestException: On any other download failure.

        """
        version = normalize_version(version)
        asset = f"kubeseal-{version}-{self.system}-{self.cpu_type}.tar.gz"
        url = f"{RELEASES_URL}/v{version}/{asset}"
        console.action(f"Downloading {asset}")
        ic(url)

        self.bin_location.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix="kubeseal-reencrypt-") as tmp:
            archive = Path(tmp) / asset
            with requests.get(url, timeout=self.timeout, stream=True) as response:
                if response.status_code == 404:
                    raise BinaryNotFoundError(f"kubeseal {version} is not available for {self.system}/{self.cpu_type}")
                response.raise_for_status()
                size = int(response.headers.get("content-length", 0))
                with console.create_download_progress() as progress, archive.open("wb") as out:
                    task = progress.add_task(f"kubeseal v{version}", total=size)
                    for chunk in response.iter_content(chunk_size=64 * 1024):
                        out.write(chunk)
                        progress.advance(task, len(chunk))

            with tarfile.open(archive, "r:gz") as tar:
                self._extract_kubeseal(tar, version)

    def _extract_kubeseal(self, tar: tarfile.TarFile, version: str) -> None:
        """Copy the ``kubeseal`` member of ``tar`` to its versioned cache path.

        Only that one regular file is read, so no archive paths are
        ever written to disk.
        """
        try:
            member = tar.getmember("kubeseal")
        except KeyError:
            member = None
        source = tar.extractfile(member) if member is not None and member.isfile() else None
        if source is None:
            raise BinaryNotFoundError(f"kubeseal binary not found in archive for version {version}")

        target = self.get_binary_path(version)
        with source, target.open("wb") as out:
            shutil.copyfileobj(source, out)
        target.chmod(0o755)

"""Shared test fixtures for kubeseal-reencrypt tests."""

import base64
import copy
import hashlib
import threading
import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import yaml
from icecream import ic
from kubernetes.client import V1ObjectMeta, V1Secret

from kubeseal_reencrypt.engine import ReencryptionEngine
from kubeseal_reencrypt.exceptions import (
    ClusterConnectionError,
    ConcurrentModificationError,
    NotFoundError,
    ResealError,
    ValidationError,
)
from kubeseal_reencrypt.keys import KeyProvider
from kubeseal_reencrypt.manifests import encrypted_data, fingerprint, sealed_with, template_target_name
from kubeseal_reencrypt.models import ReencryptionItem, SealedSecretRef, SealedSecretSpec
from kubeseal_reencrypt.reporter import Reporter
from kubeseal_reencrypt.scratch import ScratchArena

ic.disable()


def make_pem(seed: bytes) -> bytes:
    """A PEM block whose DER body is derived from ``seed``."""
    body = base64.encodebytes(hashlib.sha256(seed).digest() * 4).decode()
    return f"-----BEGIN CERTIFICATE-----\n{body}-----END CERTIFICATE-----\n".encode()


def sealed_secret_obj(namespace, name, *, resource_version="1", data=None, template_name=None, annotations=None):
    """A SealedSecret as the API returns it."""
    obj = {
        "apiVersion": "bitnami.com/v1alpha1",
        "kind": "SealedSecret",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "resourceVersion": resource_version,
            "annotations": dict(annotations or {}),
        },
        "spec": {
            "encryptedData": data or {"password": f"AgB-original-{namespace}-{name}"},
            "template": {"metadata": {"name": template_name or name, "namespace": namespace}, "type": "Opaque"},
        },
    }
    return obj


def plain_secret(namespace, name, data=None):
    return V1Secret(
        metadata=V1ObjectMeta(name=name, namespace=namespace),
        type="Opaque",
        data=data or {"password": base64.b64encode(f"pw-{name}".encode()).decode()},
    )


class FakeCluster:
    """In-memory cluster implementing the ClusterClient protocol."""

    def __init__(self):
        self.sealed = {}
        self.secrets = {}
        self.unreachable = False
        self.unreachable_on_fetch = set()
        self.reject = set()
        self.bump_before_commit = set()
        self.delete_before_commit = set()
        self.writes = []
        self._lock = threading.Lock()

    def add(self, namespace, name, *, with_secret=True, **kwargs):
        self.sealed[(namespace, name)] = sealed_secret_obj(namespace, name, **kwargs)
        if with_secret:
            secret_name = kwargs.get("template_name") or name
            self.secrets[(namespace, secret_name)] = plain_secret(namespace, secret_name)

    def _check(self, key=None):
        if self.unreachable or key in self.unreachable_on_fetch:
            raise ClusterConnectionError("Failed to connect to the Kubernetes cluster: connection refused")

    def list_sealed_secrets(self, namespace=None):
        self._check()
        for (ns, name), obj in sorted(self.sealed.items()):
            if namespace is None or ns == namespace:
                yield SealedSecretRef(ns, name, obj["metadata"]["resourceVersion"])

    def fetch_sealed_secret_spec(self, ref):
        self._check(ref.key)
        with self._lock:
            obj = self.sealed.get(ref.key)
            if obj is None:
                raise NotFoundError(f"SealedSecret {ref} no longer exists")
            obj = copy.deepcopy(obj)
        return SealedSecretSpec(
            ref=ref._replace(resource_version=obj["metadata"]["resourceVersion"]),
            fingerprint=fingerprint(encrypted_data(obj)),
            template_target_name=template_target_name(obj),
            sealed_with=sealed_with(obj),
            body=obj,
        )

    def fetch_secret(self, namespace, name):
        self._check()
        return self.secrets.get((namespace, name))

    def current_resource_version(self, ref):
        self._check()
        with self._lock:
            if ref.key in self.delete_before_commit:
                self.sealed.pop(ref.key, None)
            obj = self.sealed.get(ref.key)
            if obj is None:
                raise NotFoundError(f"SealedSecret {ref} no longer exists")
            if ref.key in self.bump_before_commit:
                self.bump_before_commit.discard(ref.key)
                obj["metadata"]["resourceVersion"] = str(int(obj["metadata"]["resourceVersion"]) + 1)
            return obj["metadata"]["resourceVersion"]

    def dry_run_apply(self, body):
        self._check()
        key = (body["metadata"]["namespace"], body["metadata"]["name"])
        if key in self.reject:
            raise ValidationError(f"Admission rejected {key[0]}/{key[1]}: HTTP 422 Unprocessable Entity")

    def replace_sealed_secret(self, body, resource_version, *, dry_run=False):
        self._check()
        key = (body["metadata"]["namespace"], body["metadata"]["name"])
        with self._lock:
            current = self.sealed[key]
            if current["metadata"]["resourceVersion"] != resource_version:
                raise ConcurrentModificationError(f"{key[0]}/{key[1]} was modified externally")
            self.writes.append((key, dry_run))
            if dry_run:
                return copy.deepcopy(body)
            stored = copy.deepcopy(body)
            stored["metadata"]["resourceVersion"] = str(int(resource_version) + 1)
            self.sealed[key] = stored
            return copy.deepcopy(stored)

    def ciphertext(self, namespace, name):
        return self.sealed[(namespace, name)]["spec"]["encryptedData"]


class FakeResealer:
    """Deterministic resealing: same plaintext and certificate give the same ciphertext."""

    def __init__(self, delay=0.0):
        self.delay = delay
        self.fail = set()
        self.calls = []
        self._lock = threading.Lock()

    def reseal(self, secret_path: Path, certificate_path: Path, output_path: Path):
        secret = yaml.safe_load(secret_path.read_text())
        cert = certificate_path.read_bytes()
        meta = secret["metadata"]
        with self._lock:
            self.calls.append((meta["namespace"], meta["name"]))
        if self.delay:
            time.sleep(self.delay)
        if (meta["namespace"], meta["name"]) in self.fail:
            raise ResealError("kubeseal failed: error: cannot fetch certificate")
        return {
            key: "AgB" + hashlib.sha256(cert + f"{meta['namespace']}/{meta['name']}/{key}={value}".encode()).hexdigest()
            for key, value in secret["data"].items()
        }


class FakeCertificateSource:
    """Certificate endpoint that can be rotated or taken down."""

    def __init__(self, seed=b"key-1"):
        self.pem = make_pem(seed)
        self.calls = 0
        self.error = None

    def rotate(self, seed):
        self.pem = make_pem(seed)

    def fetch_certificate(self, controller_namespace):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.pem


@pytest.fixture
def fake_cluster():
    """Cluster with three SealedSecrets, each with its decrypted Secret."""
    cluster = FakeCluster()
    cluster.add("default", "api-token")
    cluster.add("default", "db-creds")
    cluster.add("monitoring", "grafana")
    return cluster


@pytest.fixture
def resealer():
    return FakeResealer()


@pytest.fixture
def cert_source():
    return FakeCertificateSource()


@pytest.fixture
def keys(cert_source):
    with KeyProvider(cert_source) as provider:
        yield provider


@pytest.fixture
def arena(tmp_path):
    with ScratchArena(str(tmp_path)) as scratch:
        yield scratch


@pytest.fixture
def make_engine(fake_cluster, resealer, keys, arena):
    """Factory for engines bound to the fakes."""

    def factory(**kwargs):
        return ReencryptionEngine(
            fake_cluster,
            resealer,
            keys,
            arena,
            controller_namespace="kube-system",
            **kwargs,
        )

    return factory


@pytest.fixture
def make_items(fake_cluster):
    """Work list in discovery order, as the cluster lists it."""

    def factory(namespace=None):
        return [ReencryptionItem(ref=ref, index=i) for i, ref in enumerate(fake_cluster.list_sealed_secrets(namespace))]

    return factory


@pytest.fixture
def quiet_reporter():
    reporter = Reporter(echo=False)
    yield reporter
    reporter.close()


@pytest.fixture
def mock_kube_contexts():
    """Mock kubernetes config contexts."""
    with patch("kubernetes.config.list_kube_config_contexts") as mock:
        mock.return_value = ([{"name": "test-context"}, {"name": "prod"}], {"name": "test-context"})
        yield mock


@pytest.fixture
def mock_kube_config():
    """Mock kubernetes config loading."""
    with patch("kubernetes.config.load_kube_config") as mock:
        yield mock


@pytest.fixture
def mock_core_v1_api():
    """Mock CoreV1Api for controller discovery."""
    with patch("kubernetes.client.CoreV1Api") as mock:
        api_instance = MagicMock()
        mock.return_value = api_instance
        yield api_instance


@pytest.fixture
def mock_subprocess():
    """Mock subprocess.run for command execution."""
    with patch("subprocess.run") as mock:
        mock.return_value = MagicMock(returncode=0, stdout=b"", stderr=b"")
        yield mock

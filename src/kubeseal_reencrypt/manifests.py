"""SealedSecret manifest helpers.

This module provides YAML parsing of kubeseal output, ciphertext
fingerprinting, construction of the plaintext Secret fed to kubeseal and
of the updated SealedSecret written back, and audit copies on disk.
"""

import copy
import hashlib
import json
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from kubeseal_reencrypt.exceptions import RepresentationInvalidError, SecretParsingError

SEALED_SECRET_GROUP = "bitnami.com"
SEALED_SECRET_VERSION = "v1alpha1"
SEALED_SECRET_PLURAL = "sealedsecrets"
SEALED_SECRET_KIND = "SealedSecret"

# Annotation recording the fingerprint of the certificate a SealedSecret was last sealed with
SEALED_WITH_ANNOTATION = "kubeseal-reencrypt.io/sealed-with"

# Scope annotations kubeseal reads from the input Secret
SCOPE_ANNOTATIONS = (
    "sealedsecrets.bitnami.com/namespace-wide",
    "sealedsecrets.bitnami.com/cluster-wide",
)


def parse_document(text: str, *, source: str = "<stdin>") -> dict[str, Any]:
    """Parse a single YAML document into a mapping.

    Args:
        text: The YAML text.
        source: Where the text came from, used in error messages.

    Raises:
        SecretParsingError: If the text is empty, malformed, holds several
            documents, or is not a mapping.

    """
    try:
        docs = [doc for doc in yaml.safe_load_all(text) if doc is not None]
    except yaml.YAMLError as err:
        raise SecretParsingError(f"{source} contains malformed YAML: {err}") from err
    if len(docs) != 1:
        raise SecretParsingError(f"{source} must contain exactly one YAML document, found {len(docs)}")
    if not isinstance(docs[0], dict):
        raise SecretParsingError(f"{source} does not contain a YAML mapping")
    return docs[0]


def encrypted_data(obj: Mapping[str, Any]) -> dict[str, str]:
    """Return spec.encryptedData of a SealedSecret.

    Raises:
        RepresentationInvalidError: If it is missing, empty or not a mapping.

    """
    spec = obj.get("spec")
    data = spec.get("encryptedData") if isinstance(spec, Mapping) else None
    if not isinstance(data, Mapping) or not data:
        raise RepresentationInvalidError("spec.encryptedData is missing or empty")
    return {str(k): str(v) for k, v in data.items()}


def fingerprint(data: Mapping[str, str]) -> str:
    """SHA-256 over the canonical JSON of an encryptedData mapping."""
    canonical = json.dumps(dict(data), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode()).hexdigest()


def template_target_name(obj: Mapping[str, Any]) -> str:
    """Name of the Secret the controller materializes for this SealedSecret."""
    template = (obj.get("spec") or {}).get("template") or {}
    template_meta = template.get("metadata") or {}
    return template_meta.get("name") or obj["metadata"]["name"]


def sealed_with(obj: Mapping[str, Any]) -> str:
    annotations = obj.get("metadata", {}).get("annotations") or {}
    return annotations.get(SEALED_WITH_ANNOTATION, "")


def build_plain_secret(sealed: Mapping[str, Any], secret_type: str | None, data: Mapping[str, str]) -> dict[str, Any]:
    """Build the plaintext Secret manifest passed to kubeseal.

    The manifest carries the SealedSecret's own name and namespace, which
    kubeseal binds into the ciphertext for strict scope, and any scope
    annotations so namespace-wide and cluster-wide objects keep their scope.

    Args:
        sealed: The SealedSecret being resealed.
        secret_type: ``type`` of the decrypted Secret.
        data: Base64 values of the decrypted Secret.

    """
    meta = sealed["metadata"]
    annotations = {k: v for k, v in (meta.get("annotations") or {}).items() if k in SCOPE_ANNOTATIONS}
    metadata: dict[str, Any] = {"name": meta["name"], "namespace": meta["namespace"]}
    if annotations:
        metadata["annotations"] = annotations
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": metadata,
        "type": secret_type or "Opaque",
        "data": dict(data),
    }


def build_updated_sealed_secret(
    original: Mapping[str, Any],
    new_encrypted_data: Mapping[str, str],
    key_fingerprint: str,
) -> dict[str, Any]:
    """Return a copy of the SealedSecret carrying the new ciphertext.

    The template and the resourceVersion of the original are kept; the
    key fingerprint is stamped so a later run can tell the object is
    already sealed against that key.
    """
    updated = copy.deepcopy(dict(original))
    updated.setdefault("spec", {})["encryptedData"] = dict(new_encrypted_data)
    metadata = updated.setdefault("metadata", {})
    annotations = metadata.get("annotations") or {}
    annotations[SEALED_WITH_ANNOTATION] = key_fingerprint
    metadata["annotations"] = annotations
    # Server-populated fields that must not be sent back
    metadata.pop("managedFields", None)
    updated.pop("status", None)
    return updated


def audit_filename(namespace: str, name: str) -> str:
    """Deterministic file name for an object's audit copy."""
    return f"{namespace}__{name}.yaml"


def write_audit_copy(output_dir: Path, obj: Mapping[str, Any]) -> Path:
    """Write an object to ``output_dir`` before it is submitted to the cluster.

    Returns:
        The path written.

    """
    output_dir.mkdir(parents=True, exist_ok=True)
    meta = obj["metadata"]
    path = output_dir / audit_filename(meta["namespace"], meta["name"])
    tmp = path.with_suffix(path.suffix + "_new")
    with tmp.open("w") as stream:
        yaml.safe_dump(dict(obj), stream, sort_keys=False)
    tmp.replace(path)
    return path

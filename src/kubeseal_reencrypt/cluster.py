"""Access to the Kubernetes API.

``Cluster`` pins a kubeconfig context and locates the SealedSecrets
controller. ``ClusterReader`` is what the engine talks to: it pages
through SealedSecrets, reads them and their decrypted Secrets, and
submits replacements guarded by resourceVersion.
"""

import contextlib
from collections.abc import Generator, Iterator
from typing import Any

import click
import questionary
from icecream import ic
from kubernetes import client, config
from kubernetes.client import ApiException, V1Secret
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError, MaxRetryError

from kubeseal_reencrypt import console
from kubeseal_reencrypt.exceptions import (
    ClusterConnectionError,
    ConcurrentModificationError,
    ControllerNotFoundError,
    NotFoundError,
    ValidationError,
    WriteConflictError,
)
from kubeseal_reencrypt.manifests import (
    SEALED_SECRET_GROUP,
    SEALED_SECRET_PLURAL,
    SEALED_SECRET_VERSION,
    encrypted_data,
    fingerprint,
    sealed_with,
    template_target_name,
)
from kubeseal_reencrypt.models import ControllerInfo, SealedSecretRef, SealedSecretSpec
from kubeseal_reencrypt.styles import POINTER, PROMPT_STYLE, QMARK

CONTROLLER_LABEL = "app.kubernetes.io/name=sealed-secrets"

# Credentials refused: every later call would fail the same way
_UNAUTHORIZED = 401


@contextlib.contextmanager
def _connection_errors(action: str) -> Generator[None, None, None]:
    """Translate transport failures into ClusterConnectionError."""
    try:
        yield
    except MaxRetryError as e:
        raise ClusterConnectionError(f"Failed to connect to the Kubernetes cluster while {action}: {e.reason}") from e
    except HTTPError as e:
        raise ClusterConnectionError(f"Kubernetes API error while {action}: {e}") from e


def _reason(e: ApiException) -> str:
    return f"HTTP {e.status} {e.reason}".strip()


def _refused(e: ApiException, action: str) -> ClusterConnectionError | ValidationError:
    """Classify a status error on a call made for a single item.

    Only rejected credentials end the run. Anything else, such as RBAC
    forbidding one namespace or a transient 500, fails that item alone.
    """
    if e.status == _UNAUTHORIZED:
        return ClusterConnectionError(f"Cluster rejected our credentials while {action}: {_reason(e)}")
    return ValidationError(f"Cluster refused {action}: {_reason(e)}")


class Cluster:
    """Connection to one kubeconfig context and its SealedSecrets controller.

    Attributes:
        context: The active Kubernetes context name.
        api_client: Shared API client; its connection pool serves all workers.
        controller: ControllerInfo containing controller metadata.

    """

    def __init__(
        self,
        *,
        context: str | None = None,
        select_context: bool = False,
        pool_size: int = 4,
    ) -> None:
        """Load kubeconfig for the chosen context.

        Args:
            context: Explicit context name; overrides ``select_context``.
            select_context: Prompt for the context when no name is given.
            pool_size: Minimum size of the HTTP connection pool.

        Raises:
            ClusterConnectionError: If kubeconfig is invalid or missing.

        """
        self.context: str = context or self._set_context(select_context=select_context)
        configuration = client.Configuration()
        try:
            config.load_kube_config(context=self.context, client_configuration=configuration)
        except ConfigException as e:
            raise ClusterConnectionError(f"Invalid or missing kubeconfig: {e}") from e
        configuration.connection_pool_maxsize = max(configuration.connection_pool_maxsize or 0, pool_size)
        self.api_client = client.ApiClient(configuration)
        self.controller: ControllerInfo | None = None
        console.action(f"Working with {console.highlight(self.context)} cluster")

    @staticmethod
    def _set_context(*, select_context: bool) -> str:
        """Name of the kubeconfig context to use, asking the user if requested.

        Raises:
            ClusterConnectionError: If no kubeconfig can be read.
            click.Abort: If the prompt is dismissed.

        """
        try:
            contexts, current_context = config.list_kube_config_contexts()
        except ConfigException as e:
            raise ClusterConnectionError(f"Invalid or missing kubeconfig: {e}") from e
        if not select_context:
            return str(current_context["name"])

        context: str | None = questionary.select(
            "Which kubeconfig context should be re-encrypted?",
            choices=[c["name"] for c in contexts],
            default=current_context["name"],
            style=PROMPT_STYLE,
            pointer=POINTER,
            qmark=QMARK,
        ).ask()
        if context is None:
            console.warning("No context selected.")
            raise click.Abort()
        return context

    def find_controller(self, name: str | None = None, namespace: str | None = None) -> ControllerInfo:
        """Locate the SealedSecrets controller service.

        With both ``name`` and ``namespace`` given the service is read
        directly; otherwise services labelled
        ``app.kubernetes.io/name=sealed-secrets`` are searched.

        Raises:
            ClusterConnectionError: If the cluster is unreachable.
            ControllerNotFoundError: If no SealedSecrets controller is found.

        """
        core_v1_api = client.CoreV1Api(self.api_client)

        with console.spinner("Searching for SealedSecrets controller..."), _connection_errors("finding the controller"):
            if name and namespace:
                try:
                    found = [core_v1_api.read_namespaced_service(name, namespace)]
                except ApiException as e:
                    if e.status == 404:
                        found = []
                    else:
                        raise ClusterConnectionError(f"Cannot read controller service: {_reason(e)}") from e
            else:
                found = core_v1_api.list_service_for_all_namespaces(label_selector=CONTROLLER_LABEL).items
                found = [svc for svc in found if "metrics" not in svc.metadata.name]
                if namespace:
                    found = [svc for svc in found if svc.metadata.namespace == namespace]

        if not found:
            raise ControllerNotFoundError(
                f"SealedSecrets controller not found in the cluster (looked for services labelled {CONTROLLER_LABEL})"
            )

        service = found[0]
        if len(found) > 1:
            console.warning(
                f"{len(found)} controller services match; using "
                f"{console.highlight(f'{service.metadata.namespace}/{service.metadata.name}')}"
            )

        labels = service.metadata.labels or {}
        self.controller = ControllerInfo(
            name=service.metadata.name,
            namespace=service.metadata.namespace,
            version=labels.get("app.kubernetes.io/version", ""),
        )
        console.success(f"Found controller: {console.highlight(f'{self.controller.namespace}/{self.controller.name}')}")
        if self.controller.version:
            console.info(f"Controller version: {console.highlight(self.controller.version)}")
        return self.controller

    def reader(self, *, timeout: float) -> "ClusterReader":
        return ClusterReader(self.api_client, timeout=timeout)

    def close(self) -> None:
        with contextlib.suppress(Exception):
            self.api_client.close()

    def __repr__(self) -> str:
        return f"Cluster(context={self.context!r}, controller={self.controller!r})"


class ClusterReader:
    """SealedSecret and Secret access used by the engine.

    Every call carries a per-call timeout. Connection failures surface as
    ClusterConnectionError; a missing object is reported as such, not as
    an error, where the caller expects it.
    """

    def __init__(self, api_client: client.ApiClient | None = None, *, timeout: float = 30.0, page_size: int = 100):
        self.custom_api = client.CustomObjectsApi(api_client)
        self.core_api = client.CoreV1Api(api_client)
        self.timeout = timeout
        self.page_size = page_size

    def list_sealed_secrets(self, namespace: str | None = None) -> Iterator[SealedSecretRef]:
        """Yield every SealedSecret, one API page at a time.

        Raises:
            ClusterConnectionError: If the cluster is unreachable or refuses the list.
            ControllerNotFoundError: If the SealedSecret CRD is not installed.

        """
        continue_token: str | None = None
        while True:
            kwargs: dict[str, Any] = {"limit": self.page_size, "_request_timeout": self.timeout}
            if continue_token:
                kwargs["_continue"] = continue_token
            with _connection_errors("listing SealedSecrets"):
                try:
                    if namespace:
                        page = self.custom_api.list_namespaced_custom_object(
                            SEALED_SECRET_GROUP, SEALED_SECRET_VERSION, namespace, SEALED_SECRET_PLURAL, **kwargs
                        )
                    else:
                        page = self.custom_api.list_cluster_custom_object(
                            SEALED_SECRET_GROUP, SEALED_SECRET_VERSION, SEALED_SECRET_PLURAL, **kwargs
                        )
                except ApiException as e:
                    if e.status == 404:
                        raise ControllerNotFoundError("SealedSecret resource type is not installed in the cluster") from e
                    raise ClusterConnectionError(f"Cannot list SealedSecrets: {_reason(e)}") from e

            for obj in page.get("items", []):
                meta = obj["metadata"]
                yield SealedSecretRef(meta["namespace"], meta["name"], meta.get("resourceVersion", ""))

            continue_token = (page.get("metadata") or {}).get("continue")
            if not continue_token:
                return

    def _get(self, ref: SealedSecretRef) -> dict[str, Any]:
        with _connection_errors(f"reading {ref}"):
            try:
                return self.custom_api.get_namespaced_custom_object(
                    SEALED_SECRET_GROUP,
                    SEALED_SECRET_VERSION,
                    ref.namespace,
                    SEALED_SECRET_PLURAL,
                    ref.name,
                    _request_timeout=self.timeout,
                )
            except ApiException as e:
                if e.status == 404:
                    raise NotFoundError(f"SealedSecret {ref} no longer exists") from e
                raise _refused(e, f"reading SealedSecret {ref}") from e

    def fetch_sealed_secret_spec(self, ref: SealedSecretRef) -> SealedSecretSpec:
        """Read a SealedSecret and capture its ciphertext fingerprint.

        Raises:
            NotFoundError: If the object was deleted since it was listed.
            ValidationError: If the cluster refuses the read.
            RepresentationInvalidError: If spec.encryptedData is malformed.

        """
        obj = self._get(ref)
        current = ref._replace(resource_version=obj["metadata"].get("resourceVersion", ""))
        spec = SealedSecretSpec(
            ref=current,
            fingerprint=fingerprint(encrypted_data(obj)),
            template_target_name=template_target_name(obj),
            sealed_with=sealed_with(obj),
            body=obj,
        )
        ic(spec.ref, spec.fingerprint)
        return spec

    def current_resource_version(self, ref: SealedSecretRef) -> str:
        return self._get(ref)["metadata"].get("resourceVersion", "")

    def fetch_secret(self, namespace: str, name: str) -> V1Secret | None:
        """Read the decrypted Secret; None when the controller has not created it.

        Raises:
            ValidationError: If the cluster refuses the read, e.g. RBAC forbids it.
            ClusterConnectionError: If the cluster is unreachable or rejects our credentials.

        """
        with _connection_errors(f"reading Secret {namespace}/{name}"):
            try:
                return self.core_api.read_namespaced_secret(name, namespace, _request_timeout=self.timeout)
            except ApiException as e:
                if e.status == 404:
                    return None
                raise _refused(e, f"reading Secret {namespace}/{name}") from e

    def _replace(self, body: dict[str, Any], dry_run: bool) -> dict[str, Any]:
        meta = body["metadata"]
        kwargs: dict[str, Any] = {"_request_timeout": self.timeout}
        if dry_run:
            kwargs["dry_run"] = "All"
        return self.custom_api.replace_namespaced_custom_object(
            SEALED_SECRET_GROUP,
            SEALED_SECRET_VERSION,
            meta["namespace"],
            SEALED_SECRET_PLURAL,
            meta["name"],
            body,
            **kwargs,
        )

    def dry_run_apply(self, body: dict[str, Any]) -> None:
        """Run an object through the admission path without persisting it.

        Raises:
            ValidationError: If admission or any other policy rejects the object.
            ConcurrentModificationError: If the object changed since it was read.

        """
        ref = f"{body['metadata']['namespace']}/{body['metadata']['name']}"
        with _connection_errors(f"validating {ref}"):
            try:
                self._replace(body, dry_run=True)
            except ApiException as e:
                if e.status == 409:
                    raise ConcurrentModificationError(f"{ref} changed while it was being validated") from e
                raise _refused(e, f"admission of {ref}") from e

    def replace_sealed_secret(
        self, body: dict[str, Any], resource_version: str, *, dry_run: bool = False
    ) -> dict[str, Any]:
        """Replace a SealedSecret only if it is still at ``resource_version``.

        Raises:
            ConcurrentModificationError: If the object changed or was deleted.
            ClusterConnectionError: If the cluster rejects our credentials.
            WriteConflictError: If the cluster refused the write otherwise.

        """
        body["metadata"]["resourceVersion"] = resource_version
        ref = f"{body['metadata']['namespace']}/{body['metadata']['name']}"
        with _connection_errors(f"writing {ref}"):
            try:
                return self._replace(body, dry_run=dry_run)
            except ApiException as e:
                if e.status in (404, 409):
                    raise ConcurrentModificationError(
                        f"{ref} was modified externally (expected resourceVersion {resource_version})"
                    ) from e
                if e.status == _UNAUTHORIZED:
                    raise _refused(e, f"writing {ref}") from e
                raise WriteConflictError(f"Cluster refused update of {ref}: {_reason(e)}") from e

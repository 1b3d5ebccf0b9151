from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import re
from typing import Any, Callable, Iterable, TypeVar

from kubernetes import client, config
from kubernetes.client import ApiException

from .config import DEFAULT_FS_TYPE
from .models import (
    DRIVER_PATH_CSI,
    DRIVER_PATH_IN_TREE,
    ClaimInfo,
    ControllerRef,
    PersistentVolumeInfo,
    PodReference,
)

DEPLOYMENT_KIND = "Deployment"
STATEFULSET_KIND = "StatefulSet"
DEFAULT_REQUEST_TIMEOUT_SECONDS = 20
TERMINAL_SUCCESS_PHASE = "Succeeded"
RECLAIM_POLICY_DELETE = "Delete"
RECLAIM_POLICY_RETAIN = "Retain"
_ORDINAL_PATTERN = re.compile(r"\d+")
T = TypeVar("T")


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api
    apps_api: client.AppsV1Api


class KubernetesDiscoveryError(RuntimeError):
    """Raised when a read against the cluster cannot safely continue."""


class KubernetesMutationError(RuntimeError):
    """Raised when a create, patch, scale or delete call is rejected."""


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
) -> KubernetesClients:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=expanded, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _format_authentication_error(
                in_cluster=in_cluster,
                kubeconfig_path=expanded,
                context=context,
                error=error,
            )
        ) from error

    api_client = client.ApiClient()
    return KubernetesClients(
        api_client=api_client,
        core_api=client.CoreV1Api(api_client),
        apps_api=client.AppsV1Api(api_client),
    )


def discover_pod_claims(
    clients: KubernetesClients,
    pod: PodReference,
    *,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> list[str]:
    try:
        pod_object = clients.core_api.read_namespaced_pod(
            name=pod.name,
            namespace=pod.namespace,
            _request_timeout=request_timeout_seconds,
        )
    except ApiException as error:
        if error.status == 404:
            raise KubernetesDiscoveryError(f"Pod {pod.name} not found in namespace {pod.namespace}.") from error
        raise KubernetesDiscoveryError(
            _format_api_exception_message(
                operation=f"read Pod '{pod.namespace}/{pod.name}'",
                hint="Check API reachability and RBAC verbs for pods.",
                error=error,
            )
        ) from error

    claim_names = _claim_names(pod_object.spec)
    if not claim_names:
        raise KubernetesDiscoveryError(f"No PVCs found on Pod {pod.namespace}/{pod.name}.")
    return claim_names


def discover_referencing_controllers(
    clients: KubernetesClients,
    *,
    namespace: str,
    claim_names: Iterable[str],
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> tuple[ControllerRef, ...]:
    targets = set(claim_names)
    deployments = _safe_kubernetes_call(
        operation=f"list Deployments in namespace '{namespace}'",
        hint="Check RBAC verbs for deployments in the apps API group.",
        func=lambda: clients.apps_api.list_namespaced_deployment(
            namespace=namespace,
            _request_timeout=request_timeout_seconds,
        ).items,
    )
    statefulsets = _safe_kubernetes_call(
        operation=f"list StatefulSets in namespace '{namespace}'",
        hint="Check RBAC verbs for statefulsets in the apps API group.",
        func=lambda: clients.apps_api.list_namespaced_stateful_set(
            namespace=namespace,
            _request_timeout=request_timeout_seconds,
        ).items,
    )

    controllers: list[ControllerRef] = []
    for kind, items in ((DEPLOYMENT_KIND, deployments), (STATEFULSET_KIND, statefulsets)):
        for item in items:
            name = item.metadata.name if item.metadata and item.metadata.name else ""
            if not name or not _controller_uses_claims(kind=kind, controller=item, targets=targets):
                continue
            replicas = item.spec.replicas if item.spec and item.spec.replicas is not None else 1
            controllers.append(ControllerRef(kind=kind, name=name, replicas=int(replicas)))

    controllers.sort(key=lambda ref: (ref.kind, ref.name))
    return tuple(controllers)


def list_pods_using_claims(
    clients: KubernetesClients,
    *,
    namespace: str,
    claim_names: Iterable[str],
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> list[str]:
    """Names of pods that mount a target claim and have not succeeded."""
    targets = set(claim_names)
    pods = _safe_kubernetes_call(
        operation=f"list Pods in namespace '{namespace}'",
        hint="Check RBAC verbs for pods and confirm the namespace still exists.",
        func=lambda: clients.core_api.list_namespaced_pod(
            namespace=namespace,
            _request_timeout=request_timeout_seconds,
        ).items,
    )

    in_use: list[str] = []
    for pod in pods:
        phase = pod.status.phase if pod.status and pod.status.phase else "Unknown"
        if phase == TERMINAL_SUCCESS_PHASE:
            continue
        if targets.intersection(_claim_names(pod.spec)):
            in_use.append(pod.metadata.name if pod.metadata and pod.metadata.name else "<unnamed>")
    return in_use


def scale_controller(
    clients: KubernetesClients,
    *,
    namespace: str,
    kind: str,
    name: str,
    replicas: int,
) -> None:
    body = {"spec": {"replicas": replicas}}
    if kind == DEPLOYMENT_KIND:
        patch: Callable[..., Any] = clients.apps_api.patch_namespaced_deployment_scale
    elif kind == STATEFULSET_KIND:
        patch = clients.apps_api.patch_namespaced_stateful_set_scale
    else:
        raise ValueError(f"unsupported controller kind: {kind}")

    _safe_kubernetes_call(
        operation=f"scale {kind} '{namespace}/{name}' to {replicas} replicas",
        hint=f"Verify RBAC allows patch on the {kind.lower()}s/scale subresource.",
        func=lambda: patch(name=name, namespace=namespace, body=body),
        error_type=KubernetesMutationError,
    )


def read_claim(
    clients: KubernetesClients,
    *,
    namespace: str,
    name: str,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> ClaimInfo | None:
    try:
        pvc = clients.core_api.read_namespaced_persistent_volume_claim(
            name=name,
            namespace=namespace,
            _request_timeout=request_timeout_seconds,
        )
    except ApiException as error:
        if error.status == 404:
            return None
        raise KubernetesDiscoveryError(
            _format_api_exception_message(
                operation=f"read PVC '{namespace}/{name}'",
                hint="Check RBAC verbs for persistentvolumeclaims.",
                error=error,
            )
        ) from error

    volume_name = pvc.spec.volume_name if pvc.spec and pvc.spec.volume_name else None
    return ClaimInfo(
        namespace=namespace,
        name=name,
        volume_name=volume_name,
        manifest=clients.api_client.sanitize_for_serialization(pvc),
    )


def read_persistent_volume(
    clients: KubernetesClients,
    *,
    name: str,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> PersistentVolumeInfo:
    pv = _safe_kubernetes_call(
        operation=f"read PV '{name}'",
        hint="Check RBAC verbs for persistentvolumes (cluster scoped).",
        func=lambda: clients.core_api.read_persistent_volume(name=name, _request_timeout=request_timeout_seconds),
    )
    return parse_persistent_volume(pv)


def parse_persistent_volume(pv: Any) -> PersistentVolumeInfo:
    spec = pv.spec
    name = pv.metadata.name if pv.metadata and pv.metadata.name else ""
    capacity = spec.capacity.get("storage") if spec.capacity else None

    driver_path: str | None = None
    csi_driver: str | None = None
    volume_id: str | None = None
    fs_type = DEFAULT_FS_TYPE
    if spec.csi is not None and spec.csi.driver:
        driver_path = DRIVER_PATH_CSI
        csi_driver = spec.csi.driver
        volume_id = spec.csi.volume_handle or None
        fs_type = spec.csi.fs_type or DEFAULT_FS_TYPE
    elif spec.aws_elastic_block_store is not None and spec.aws_elastic_block_store.volume_id:
        driver_path = DRIVER_PATH_IN_TREE
        volume_id = ebs_volume_id_from_location(spec.aws_elastic_block_store.volume_id)
        fs_type = spec.aws_elastic_block_store.fs_type or DEFAULT_FS_TYPE

    return PersistentVolumeInfo(
        name=name,
        storage_class=spec.storage_class_name or None,
        capacity=capacity,
        access_modes=tuple(spec.access_modes or ()),
        reclaim_policy=spec.persistent_volume_reclaim_policy or RECLAIM_POLICY_DELETE,
        driver_path=driver_path,
        csi_driver=csi_driver,
        volume_id=volume_id,
        fs_type=fs_type,
    )


def ebs_volume_id_from_location(location: str) -> str:
    """Return the ``vol-...`` id from an in-tree ``aws://<zone>/<vol-id>`` string."""
    return location.rstrip("/").rsplit("/", 1)[-1]


def set_reclaim_policy_retain(clients: KubernetesClients, *, name: str) -> None:
    _safe_kubernetes_call(
        operation=f"patch PV '{name}' reclaim policy to {RECLAIM_POLICY_RETAIN}",
        hint="Verify RBAC allows patch on persistentvolumes.",
        func=lambda: clients.core_api.patch_persistent_volume(
            name=name,
            body={"spec": {"persistentVolumeReclaimPolicy": RECLAIM_POLICY_RETAIN}},
        ),
        error_type=KubernetesMutationError,
    )


def create_persistent_volume(clients: KubernetesClients, *, manifest: dict[str, Any]) -> None:
    name = manifest["metadata"]["name"]
    _safe_kubernetes_call(
        operation=f"create PV '{name}'",
        hint="Verify RBAC allows create on persistentvolumes and the name is unused.",
        func=lambda: clients.core_api.create_persistent_volume(body=manifest),
        error_type=KubernetesMutationError,
    )


def delete_claim(clients: KubernetesClients, *, namespace: str, name: str) -> None:
    try:
        clients.core_api.delete_namespaced_persistent_volume_claim(
            name=name,
            namespace=namespace,
            body=client.V1DeleteOptions(),
        )
    except ApiException as error:
        if error.status == 404:
            return
        raise KubernetesMutationError(
            _format_api_exception_message(
                operation=f"delete PVC '{namespace}/{name}'",
                hint="Verify RBAC allows delete on persistentvolumeclaims.",
                error=error,
                verb="mutation",
            )
        ) from error


def create_claim(clients: KubernetesClients, *, namespace: str, manifest: dict[str, Any]) -> None:
    name = manifest["metadata"]["name"]
    _safe_kubernetes_call(
        operation=f"create PVC '{namespace}/{name}'",
        hint="Verify RBAC allows create on persistentvolumeclaims and the old claim is gone.",
        func=lambda: clients.core_api.create_namespaced_persistent_volume_claim(namespace=namespace, body=manifest),
        error_type=KubernetesMutationError,
    )


def _claim_names(pod_spec: Any) -> list[str]:
    names: list[str] = []
    volumes = pod_spec.volumes if pod_spec is not None and pod_spec.volumes else []
    for volume in volumes:
        pvc_source = volume.persistent_volume_claim
        if not pvc_source or not pvc_source.claim_name:
            continue
        if pvc_source.claim_name not in names:
            names.append(pvc_source.claim_name)
    return names


def _controller_uses_claims(*, kind: str, controller: Any, targets: set[str]) -> bool:
    spec = controller.spec
    template_spec = spec.template.spec if spec and spec.template else None
    if targets.intersection(_claim_names(template_spec)):
        return True
    if kind != STATEFULSET_KIND or not spec:
        return False

    controller_name = controller.metadata.name
    for claim_template in spec.volume_claim_templates or []:
        template_name = claim_template.metadata.name if claim_template.metadata else None
        if not template_name:
            continue
        prefix = f"{template_name}-{controller_name}-"
        for claim_name in targets:
            if claim_name.startswith(prefix) and _ORDINAL_PATTERN.fullmatch(claim_name[len(prefix):]):
                return True
    return False


def _safe_kubernetes_call(
    *,
    operation: str,
    hint: str,
    func: Callable[[], T],
    error_type: type[RuntimeError] = KubernetesDiscoveryError,
) -> T:
    verb = "mutation" if error_type is KubernetesMutationError else "discovery"
    try:
        return func()
    except ApiException as error:
        raise error_type(
            _format_api_exception_message(
                operation=operation,
                hint=hint,
                error=error,
                verb=verb,
            )
        ) from error
    except Exception as error:
        raise error_type(f"Kubernetes {verb} failed while trying to {operation}: {error}. {hint}") from error


def _format_api_exception_message(*, operation: str, hint: str, error: ApiException, verb: str = "discovery") -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return (
        f"Kubernetes {verb} failed while trying to {operation}: "
        f"API status {status} ({reason}). {hint}"
    )


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())


def _format_authentication_error(
    *,
    in_cluster: bool,
    kubeconfig_path: str | None,
    context: str | None,
    error: Exception,
) -> str:
    reason = str(error).strip() or error.__class__.__name__
    if in_cluster:
        return (
            "Kubernetes authentication setup failed while loading in-cluster service account credentials: "
            f"{reason}. Ensure the pod has a mounted service account token and Kubernetes service host "
            "environment variables."
        )

    kubeconfig_source = kubeconfig_path or "default kubeconfig search path"
    context_message = f" with context '{context}'" if context else ""
    return (
        "Kubernetes authentication setup failed while loading kubeconfig "
        f"from '{kubeconfig_source}'{context_message}: {reason}. "
        "Verify the kubeconfig path and context are valid."
    )

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import copy
import re
from typing import Any

import yaml

from .config import EBS_CSI_DRIVER, ZONE_TOPOLOGY_KEY
from .models import DRIVER_PATH_CSI, DRIVER_PATH_IN_TREE, PersistentVolumeInfo

BINDING_ANNOTATIONS = (
    "pv.kubernetes.io/bind-completed",
    "pv.kubernetes.io/bound-by-controller",
    "volume.kubernetes.io/selected-node",
)


@dataclass(frozen=True)
class ManifestBackup:
    directory: Path
    persistent_volume_path: Path
    claim_path: Path


def compose_persistent_volume(
    *,
    source: PersistentVolumeInfo,
    name: str,
    namespace: str,
    claim_name: str,
    new_volume_id: str,
    target_zone: str,
) -> dict[str, Any]:
    spec: dict[str, Any] = {
        "capacity": {"storage": source.capacity},
        "accessModes": list(source.access_modes),
        "persistentVolumeReclaimPolicy": "Retain" if source.reclaim_policy == "Retain" else "Delete",
        "claimRef": {"namespace": namespace, "name": claim_name},
        "nodeAffinity": {
            "required": {
                "nodeSelectorTerms": [
                    {
                        "matchExpressions": [
                            {"key": ZONE_TOPOLOGY_KEY, "operator": "In", "values": [target_zone]},
                        ]
                    }
                ]
            }
        },
    }
    if source.storage_class:
        spec["storageClassName"] = source.storage_class

    if source.driver_path == DRIVER_PATH_CSI:
        spec["csi"] = {"driver": EBS_CSI_DRIVER, "fsType": source.fs_type, "volumeHandle": new_volume_id}
    elif source.driver_path == DRIVER_PATH_IN_TREE:
        spec["awsElasticBlockStore"] = {
            "fsType": source.fs_type,
            "volumeID": f"aws://{target_zone}/{new_volume_id}",
        }
    else:
        raise ValueError(f"PV {source.name} has no EBS driver section to mirror")

    return {
        "apiVersion": "v1",
        "kind": "PersistentVolume",
        "metadata": {"name": name},
        "spec": spec,
    }


def sanitize_claim_manifest(manifest: dict[str, Any], *, namespace: str) -> dict[str, Any]:
    """Strip a serialized PVC down to what is needed to recreate it unbound."""
    original_metadata = manifest.get("metadata") or {}
    annotations = {
        key: value
        for key, value in (original_metadata.get("annotations") or {}).items()
        if key not in BINDING_ANNOTATIONS
    }
    metadata: dict[str, Any] = {
        "name": original_metadata.get("name"),
        "namespace": namespace,
        "labels": dict(original_metadata.get("labels") or {}),
        "annotations": annotations,
    }

    spec = copy.deepcopy(manifest.get("spec") or {})
    spec.pop("volumeName", None)

    return {
        "apiVersion": manifest.get("apiVersion") or "v1",
        "kind": manifest.get("kind") or "PersistentVolumeClaim",
        "metadata": metadata,
        "spec": spec,
    }


def write_manifest_backup(
    *,
    base_dir: Path,
    namespace: str,
    claim_name: str,
    stamp: str,
    persistent_volume: dict[str, Any],
    claim: dict[str, Any],
) -> ManifestBackup:
    directory = base_dir / _sanitize_filesystem_component(f"{namespace}-{claim_name}-{stamp}")
    directory.mkdir(parents=True, exist_ok=True)
    pv_path = directory / f"pv-{_sanitize_filesystem_component(persistent_volume['metadata']['name'])}.yaml"
    claim_path = directory / f"pvc-orig-{_sanitize_filesystem_component(claim_name)}.yaml"
    pv_path.write_text(yaml.safe_dump(persistent_volume, sort_keys=False), encoding="utf-8")
    claim_path.write_text(yaml.safe_dump(claim, sort_keys=False), encoding="utf-8")
    return ManifestBackup(directory=directory, persistent_volume_path=pv_path, claim_path=claim_path)


def _sanitize_filesystem_component(value: str) -> str:
    sanitized = re.sub(r"[^a-zA-Z0-9._-]", "_", value)
    return sanitized or "unknown"

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

DRIVER_PATH_CSI = "csi"
DRIVER_PATH_IN_TREE = "in-tree"


class MigrationState(str, Enum):
    DISCOVERED = "Discovered"
    SKIPPED_INELIGIBLE = "SkippedIneligible"
    SNAPSHOT_PENDING = "SnapshotPending"
    SNAPSHOT_READY = "SnapshotReady"
    VOLUME_CREATING = "VolumeCreating"
    VOLUME_READY = "VolumeReady"
    MANIFEST_APPLIED = "ManifestApplied"
    BOUND = "Bound"
    FAILED = "Failed"

    @property
    def terminal(self) -> bool:
        return self in {MigrationState.SKIPPED_INELIGIBLE, MigrationState.BOUND, MigrationState.FAILED}


@dataclass(frozen=True)
class PodReference:
    namespace: str
    name: str


@dataclass(frozen=True)
class ControllerRef:
    kind: str
    name: str
    replicas: int


@dataclass(frozen=True)
class ClaimInfo:
    namespace: str
    name: str
    volume_name: str | None
    manifest: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class PersistentVolumeInfo:
    name: str
    storage_class: str | None
    capacity: str | None
    access_modes: tuple[str, ...]
    reclaim_policy: str
    driver_path: str | None
    csi_driver: str | None
    volume_id: str | None
    fs_type: str


@dataclass(frozen=True)
class EbsVolume:
    volume_id: str
    volume_type: str
    availability_zone: str
    size_gib: int
    iops: int | None
    throughput: int | None
    encrypted: bool
    kms_key_id: str | None


@dataclass(frozen=True)
class SnapshotRecord:
    snapshot_id: str
    description: str
    volume_id: str


@dataclass(frozen=True)
class MigrationResult:
    namespace: str
    claim_name: str
    state: MigrationState
    source_volume_id: str | None = None
    snapshot_id: str | None = None
    new_volume_id: str | None = None
    new_pv_name: str | None = None
    simulated: bool = False
    message: str = ""

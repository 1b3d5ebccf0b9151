from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os

LEGACY_VOLUME_TYPE = "gp2"
EBS_CSI_DRIVER = "ebs.csi.aws.com"
ZONE_TOPOLOGY_KEY = "topology.kubernetes.io/zone"
DEFAULT_FS_TYPE = "ext4"
IOPS_VOLUME_TYPES = frozenset({"gp3", "io1", "io2"})
THROUGHPUT_VOLUME_TYPES = frozenset({"gp3"})


@dataclass(frozen=True)
class MigratorConfig:
    poll_interval_seconds: float = float(os.getenv("EAZM_POLL_INTERVAL_SECONDS", "5"))
    drain_max_attempts: int = int(os.getenv("EAZM_DRAIN_MAX_ATTEMPTS", "60"))
    bind_max_attempts: int = int(os.getenv("EAZM_BIND_MAX_ATTEMPTS", "60"))
    claim_delete_max_attempts: int = int(os.getenv("EAZM_CLAIM_DELETE_MAX_ATTEMPTS", "60"))
    snapshot_wait_delay_seconds: int = int(os.getenv("EAZM_SNAPSHOT_WAIT_DELAY_SECONDS", "15"))
    snapshot_wait_max_attempts: int = int(os.getenv("EAZM_SNAPSHOT_WAIT_MAX_ATTEMPTS", "40"))
    volume_wait_delay_seconds: int = int(os.getenv("EAZM_VOLUME_WAIT_DELAY_SECONDS", "15"))
    volume_wait_max_attempts: int = int(os.getenv("EAZM_VOLUME_WAIT_MAX_ATTEMPTS", "40"))
    request_timeout_seconds: int = int(os.getenv("EAZM_REQUEST_TIMEOUT_SECONDS", "20"))
    manifest_dir: Path = Path(os.getenv("EAZM_MANIFEST_DIR", "./manifests"))


@dataclass(frozen=True)
class MigrationRequest:
    namespace: str
    pod_name: str
    target_zone: str
    region: str
    context: str | None = None
    kubeconfig_path: str | None = None
    in_cluster: bool = False
    dry_run: bool = False


def ensure_directories(config: MigratorConfig) -> None:
    config.manifest_dir.mkdir(parents=True, exist_ok=True)

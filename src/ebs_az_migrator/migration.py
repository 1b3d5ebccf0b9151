from __future__ import annotations

from contextlib import contextmanager
from datetime import UTC, datetime
import logging
import time
from typing import Callable, Iterator

from .config import EBS_CSI_DRIVER, LEGACY_VOLUME_TYPE, MigrationRequest, MigratorConfig
from .ec2 import Ec2Gateway
from .k8s import (
    KubernetesClients,
    create_claim,
    create_persistent_volume,
    delete_claim,
    discover_pod_claims,
    discover_referencing_controllers,
    read_claim,
    read_persistent_volume,
    set_reclaim_policy_retain,
)
from .manifests import compose_persistent_volume, sanitize_claim_manifest, write_manifest_backup
from .models import DRIVER_PATH_CSI, MigrationResult, MigrationState, PodReference
from .polling import poll_until
from .scaling import ControllerScaler, restoration_guard

DRY_RUN_SNAPSHOT_ID = "snap-DRYRUN"
DRY_RUN_VOLUME_ID = "vol-DRYRUN"

logger = logging.getLogger(__name__)


class MigrationStepError(RuntimeError):
    def __init__(self, *, stage: str, claim: str, reason: str, last_state: MigrationState) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"{stage} stage failed for PVC {claim}: {normalized_reason}")
        self.stage = stage
        self.claim = claim
        self.last_state = last_state
        self.state = MigrationState.FAILED


class VolumeMigrationEngine:
    def __init__(
        self,
        *,
        clients: KubernetesClients,
        ec2: Ec2Gateway,
        namespace: str,
        target_zone: str,
        config: MigratorConfig,
        dry_run: bool = False,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.clients = clients
        self.ec2 = ec2
        self.namespace = namespace
        self.target_zone = target_zone
        self.config = config
        self.dry_run = dry_run
        self.sleep = sleep
        self.now = now or (lambda: datetime.now(tz=UTC))
        self.state = MigrationState.DISCOVERED

    def migrate_many(self, claim_names: list[str]) -> list[MigrationResult]:
        return [self.migrate(claim_name) for claim_name in claim_names]

    def migrate(self, claim_name: str) -> MigrationResult:
        logger.info(f"---- Processing PVC: {claim_name} ----")
        self.state = MigrationState.DISCOVERED

        with self._stage("inspect", claim_name):
            claim = read_claim(
                self.clients,
                namespace=self.namespace,
                name=claim_name,
                request_timeout_seconds=self.config.request_timeout_seconds,
            )
            if claim is None:
                return self._skip(claim_name, f"PVC {claim_name} not found")
            if not claim.volume_name:
                return self._skip(claim_name, f"PVC {claim_name} not bound yet.")

            pv = read_persistent_volume(
                self.clients,
                name=claim.volume_name,
                request_timeout_seconds=self.config.request_timeout_seconds,
            )
            if pv.driver_path == DRIVER_PATH_CSI and pv.csi_driver != EBS_CSI_DRIVER:
                return self._skip(claim_name, f"PV {pv.name} driver={pv.csi_driver} (not {EBS_CSI_DRIVER}).")
            if pv.driver_path is None or not pv.volume_id:
                return self._skip(claim_name, f"PV {pv.name} not EBS-backed.")

            volume = self.ec2.describe_volume(pv.volume_id)
            if volume.volume_type != LEGACY_VOLUME_TYPE:
                return self._skip(
                    claim_name,
                    f"PVC {claim_name} -> Volume {volume.volume_id} is type '{volume.volume_type}' "
                    f"(only {LEGACY_VOLUME_TYPE}).",
                    source_volume_id=volume.volume_id,
                )
            if volume.availability_zone == self.target_zone:
                return self._skip(
                    claim_name,
                    f"PVC {claim_name} already in target AZ ({self.target_zone}).",
                    source_volume_id=volume.volume_id,
                )

        logger.info(
            f"Candidate: PVC={claim_name} PV={pv.name} SC={pv.storage_class} cap={pv.capacity} ; "
            f"Volume={volume.volume_id} type={volume.volume_type} {volume.availability_zone} -> {self.target_zone}"
        )
        stamp = self.now().strftime("%Y%m%d%H%M%S")
        description = f"migrate-gp2-{self.namespace}-{claim_name}-{stamp}"
        tags = {"Name": description, "PVC": claim_name, "Namespace": self.namespace}

        self.state = MigrationState.SNAPSHOT_PENDING
        with self._stage("snapshot", claim_name):
            if self.dry_run:
                snapshot_id = DRY_RUN_SNAPSHOT_ID
                logger.info(f"[DRY-RUN] Would create snapshot of {volume.volume_id}")
            else:
                snapshot = self.ec2.create_snapshot(volume_id=volume.volume_id, description=description, tags=tags)
                snapshot_id = snapshot.snapshot_id
                logger.info(f"Snapshot {snapshot_id} created; waiting to complete...")
                self.ec2.wait_snapshot_completed(
                    snapshot_id,
                    delay_seconds=self.config.snapshot_wait_delay_seconds,
                    max_attempts=self.config.snapshot_wait_max_attempts,
                )
        self.state = MigrationState.SNAPSHOT_READY

        self.state = MigrationState.VOLUME_CREATING
        with self._stage("volume", claim_name):
            if self.dry_run:
                new_volume_id = DRY_RUN_VOLUME_ID
                logger.info(f"[DRY-RUN] Would create new volume in {self.target_zone} from {snapshot_id}")
            else:
                new_volume_id = self.ec2.create_volume_from_snapshot(
                    source=volume,
                    snapshot_id=snapshot_id,
                    availability_zone=self.target_zone,
                    tags={**tags, "Name": f"{description}-dst"},
                )
                logger.info(f"Created new volume: {new_volume_id} ; waiting available...")
                self.ec2.wait_volume_available(
                    new_volume_id,
                    delay_seconds=self.config.volume_wait_delay_seconds,
                    max_attempts=self.config.volume_wait_max_attempts,
                )
        self.state = MigrationState.VOLUME_READY

        self._protect_source(pv.name)

        new_pv_name = f"{pv.name}-migrated-{stamp}"
        with self._stage("apply", claim_name):
            pv_manifest = compose_persistent_volume(
                source=pv,
                name=new_pv_name,
                namespace=self.namespace,
                claim_name=claim_name,
                new_volume_id=new_volume_id,
                target_zone=self.target_zone,
            )
            claim_manifest = sanitize_claim_manifest(claim.manifest, namespace=self.namespace)
            backup = write_manifest_backup(
                base_dir=self.config.manifest_dir,
                namespace=self.namespace,
                claim_name=claim_name,
                stamp=stamp,
                persistent_volume=pv_manifest,
                claim=claim_manifest,
            )
            logger.info(f"PV manifest: {backup.persistent_volume_path}")
            logger.info(f"PVC backup:  {backup.claim_path}")

            if self.dry_run:
                logger.info("[DRY-RUN] Would: apply new PV, delete+recreate PVC, wait for binding.")
                self.state = MigrationState.MANIFEST_APPLIED
                return MigrationResult(
                    namespace=self.namespace,
                    claim_name=claim_name,
                    state=self.state,
                    source_volume_id=volume.volume_id,
                    snapshot_id=snapshot_id,
                    new_volume_id=new_volume_id,
                    new_pv_name=new_pv_name,
                    simulated=True,
                    message="dry-run: no changes were made",
                )

            create_persistent_volume(self.clients, manifest=pv_manifest)
            delete_claim(self.clients, namespace=self.namespace, name=claim_name)
            self._wait_for_claim_deleted(claim_name)
            create_claim(self.clients, namespace=self.namespace, manifest=claim_manifest)
        self.state = MigrationState.MANIFEST_APPLIED

        with self._stage("bind", claim_name):
            logger.info(f"Waiting for PVC to bind to {new_pv_name}...")
            self._wait_for_claim_bound(claim_name, new_pv_name)
        self.state = MigrationState.BOUND
        logger.info(f"PVC {claim_name} migrated to volume {new_volume_id} in AZ {self.target_zone}.")

        return MigrationResult(
            namespace=self.namespace,
            claim_name=claim_name,
            state=self.state,
            source_volume_id=volume.volume_id,
            snapshot_id=snapshot_id,
            new_volume_id=new_volume_id,
            new_pv_name=new_pv_name,
        )

    def _protect_source(self, pv_name: str) -> None:
        if self.dry_run:
            logger.info(f"[DRY-RUN] Would patch PV {pv_name} reclaimPolicy->Retain")
            return
        try:
            set_reclaim_policy_retain(self.clients, name=pv_name)
        except Exception as error:  # pylint: disable=broad-except
            logger.warning(f"Could not set reclaimPolicy=Retain on PV {pv_name}: {error}")

    def _wait_for_claim_deleted(self, claim_name: str) -> None:
        poll_until(
            lambda: read_claim(
                self.clients,
                namespace=self.namespace,
                name=claim_name,
                request_timeout_seconds=self.config.request_timeout_seconds,
            )
            is None,
            description=f"PVC {claim_name} to be deleted",
            attempts=self.config.claim_delete_max_attempts,
            interval_seconds=self.config.poll_interval_seconds,
            sleep=self.sleep,
        )

    def _wait_for_claim_bound(self, claim_name: str, new_pv_name: str) -> None:
        observed: list[str | None] = [None]

        def _bound() -> bool:
            current = read_claim(
                self.clients,
                namespace=self.namespace,
                name=claim_name,
                request_timeout_seconds=self.config.request_timeout_seconds,
            )
            observed[0] = current.volume_name if current is not None else None
            return observed[0] == new_pv_name

        poll_until(
            _bound,
            description=f"PVC {claim_name} to bind to {new_pv_name}",
            attempts=self.config.bind_max_attempts,
            interval_seconds=self.config.poll_interval_seconds,
            sleep=self.sleep,
            describe_last=lambda: f"last observed volumeName={observed[0]}",
        )
        logger.info(f"PVC {claim_name} bound to {new_pv_name}.")

    def _skip(self, claim_name: str, reason: str, *, source_volume_id: str | None = None) -> MigrationResult:
        logger.info(f"Skip: {reason}")
        self.state = MigrationState.SKIPPED_INELIGIBLE
        return MigrationResult(
            namespace=self.namespace,
            claim_name=claim_name,
            state=self.state,
            source_volume_id=source_volume_id,
            message=reason,
        )

    @contextmanager
    def _stage(self, stage: str, claim_name: str) -> Iterator[None]:
        try:
            yield
        except MigrationStepError:
            raise
        except Exception as error:  # pylint: disable=broad-except
            last_state = self.state
            self.state = MigrationState.FAILED
            raise MigrationStepError(
                stage=stage,
                claim=claim_name,
                reason=_error_message(error),
                last_state=last_state,
            ) from error


def run_migration(
    request: MigrationRequest,
    *,
    clients: KubernetesClients,
    ec2: Ec2Gateway,
    config: MigratorConfig,
    sleep: Callable[[float], None] = time.sleep,
    now: Callable[[], datetime] | None = None,
) -> list[MigrationResult]:
    pod = PodReference(namespace=request.namespace, name=request.pod_name)
    claim_names = discover_pod_claims(clients, pod, request_timeout_seconds=config.request_timeout_seconds)
    logger.info(f"Found PVCs: {' '.join(claim_names)}")

    controllers = discover_referencing_controllers(
        clients,
        namespace=request.namespace,
        claim_names=claim_names,
        request_timeout_seconds=config.request_timeout_seconds,
    )
    for controller in controllers:
        logger.info(f"Referencing controller: {controller.kind}/{controller.name} (replicas={controller.replicas})")

    scaler = ControllerScaler(
        clients=clients,
        namespace=request.namespace,
        controllers=controllers,
        claim_names=tuple(claim_names),
        config=config,
        dry_run=request.dry_run,
        sleep=sleep,
    )
    engine = VolumeMigrationEngine(
        clients=clients,
        ec2=ec2,
        namespace=request.namespace,
        target_zone=request.target_zone,
        config=config,
        dry_run=request.dry_run,
        sleep=sleep,
        now=now,
    )

    with restoration_guard(scaler):
        scaler.quiesce()
        results = engine.migrate_many(claim_names)
    return results


def _error_message(error: BaseException) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__

from __future__ import annotations

from contextlib import contextmanager
import logging
import time
from typing import Callable, Iterator

from .config import MigratorConfig
from .k8s import KubernetesClients, list_pods_using_claims, scale_controller
from .models import ControllerRef
from .polling import poll_until

logger = logging.getLogger(__name__)


class ControllerScaler:
    """Scales referencing controllers to zero and back to their captured replica counts."""

    def __init__(
        self,
        *,
        clients: KubernetesClients,
        namespace: str,
        controllers: tuple[ControllerRef, ...],
        claim_names: tuple[str, ...],
        config: MigratorConfig,
        dry_run: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.clients = clients
        self.namespace = namespace
        self.controllers = controllers
        self.claim_names = claim_names
        self.config = config
        self.dry_run = dry_run
        self.sleep = sleep
        self.scaled = False
        self._quiesced = False
        self._restored = False

    def quiesce(self) -> None:
        if self._quiesced:
            return
        self._quiesced = True
        if not self.controllers:
            logger.info(f"No Deployment/StatefulSet in {self.namespace} references these PVCs; skipping scale down.")
            return

        for controller in self.controllers:
            logger.info(f"Scaling down {controller.kind}/{controller.name} from replicas={controller.replicas} -> 0 ...")
            if self.dry_run:
                logger.info(f"[DRY-RUN] Would scale {controller.kind}/{controller.name} to 0")
            else:
                scale_controller(
                    self.clients,
                    namespace=self.namespace,
                    kind=controller.kind,
                    name=controller.name,
                    replicas=0,
                )
            self.scaled = True

        if not self.dry_run:
            self.wait_for_claims_released()

    def wait_for_claims_released(self) -> None:
        logger.info("Waiting for pods using target PVCs to terminate...")
        in_use: list[str] = []

        def _released() -> bool:
            in_use[:] = list_pods_using_claims(
                self.clients,
                namespace=self.namespace,
                claim_names=self.claim_names,
                request_timeout_seconds=self.config.request_timeout_seconds,
            )
            return not in_use

        poll_until(
            _released,
            description=f"pods using {', '.join(self.claim_names)} to terminate",
            attempts=self.config.drain_max_attempts,
            interval_seconds=self.config.poll_interval_seconds,
            sleep=self.sleep,
            describe_last=lambda: f"still running: {', '.join(in_use)}",
        )
        logger.info("All related pods terminated.")

    def restore(self) -> None:
        if not self.scaled or self._restored:
            return
        self._restored = True

        for controller in self.controllers:
            logger.info(f"Restoring {controller.kind}/{controller.name} -> replicas={controller.replicas} ...")
            if self.dry_run:
                logger.info(f"[DRY-RUN] Would restore {controller.kind}/{controller.name} to {controller.replicas}")
                continue
            try:
                scale_controller(
                    self.clients,
                    namespace=self.namespace,
                    kind=controller.kind,
                    name=controller.name,
                    replicas=controller.replicas,
                )
            except Exception as error:  # pylint: disable=broad-except
                logger.warning(f"WARN: restore scale failed for {controller.kind}/{controller.name}: {error}")


@contextmanager
def restoration_guard(scaler: ControllerScaler) -> Iterator[ControllerScaler]:
    try:
        yield scaler
    except BaseException as error:
        logger.error(f"Migration aborted ({error.__class__.__name__}). Attempting to restore controllers...")
        raise
    finally:
        scaler.restore()

from __future__ import annotations

import argparse
import logging
import sys

from .config import MigrationRequest, MigratorConfig, ensure_directories
from .ec2 import CloudProviderError, Ec2Gateway
from .k8s import (
    KubernetesAuthenticationError,
    KubernetesDiscoveryError,
    KubernetesMutationError,
    load_kubernetes_clients,
)
from .migration import MigrationStepError, run_migration
from .models import MigrationResult
from .polling import PollTimeoutError

EXIT_OK = 0
EXIT_FAILURE = 1

_FATAL_ERRORS = (
    KubernetesAuthenticationError,
    KubernetesDiscoveryError,
    KubernetesMutationError,
    CloudProviderError,
    PollTimeoutError,
    MigrationStepError,
)

logger = logging.getLogger("ebs_az_migrator")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ebs-az-migrator",
        description=(
            "Migrate all gp2 EBS-backed PVCs used by a given Pod to another availability zone. "
            "Deployments/StatefulSets that reference those PVCs are scaled down first and restored afterwards."
        ),
        epilog="""
Examples:
  ebs-az-migrator -n prod -P web-0 -z eu-west-1b -r eu-west-1
  ebs-az-migrator -n prod -P web-0 -z eu-west-1b -r eu-west-1 -c staging --dry-run
""",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-n", "--namespace", required=True, help="Namespace of the pod")
    parser.add_argument("-P", "--pod", required=True, help="Pod whose PVCs should be migrated")
    parser.add_argument("-z", "--target-az", required=True, help="Availability zone to move the volumes to")
    parser.add_argument("-r", "--region", required=True, help="AWS region of the volumes")
    parser.add_argument("-c", "--context", default=None, help="kubeconfig context to use")
    parser.add_argument("--kubeconfig", default=None, help="Path to a kubeconfig file")
    parser.add_argument("--in-cluster", action="store_true", help="Use in-cluster service account credentials")
    parser.add_argument("--dry-run", action="store_true", help="Log intended actions without changing anything")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser


def configure_logging(*, verbose: bool = False) -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s %(message)s", datefmt="%Y-%m-%d %H:%M:%S"))
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    # Client libraries are chatty at DEBUG.
    for noisy in ("botocore", "boto3", "urllib3", "kubernetes"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def parse_request(argv: list[str] | None = None) -> tuple[MigrationRequest, bool]:
    parser = build_parser()
    args = parser.parse_args(argv)
    required = {
        "namespace": args.namespace,
        "pod": args.pod,
        "target-az": args.target_az,
        "region": args.region,
    }
    blank = sorted(name for name, value in required.items() if not value or not value.strip())
    if blank:
        parser.error(f"Missing required args: {', '.join('--' + name for name in blank)}. Use -h.")

    request = MigrationRequest(
        namespace=args.namespace.strip(),
        pod_name=args.pod.strip(),
        target_zone=args.target_az.strip(),
        region=args.region.strip(),
        context=args.context,
        kubeconfig_path=args.kubeconfig,
        in_cluster=args.in_cluster,
        dry_run=args.dry_run,
    )
    return request, args.verbose


def main(argv: list[str] | None = None) -> int:
    request, verbose = parse_request(argv)
    configure_logging(verbose=verbose)
    config = MigratorConfig()

    logger.info(
        f"Namespace: {request.namespace} ; Pod: {request.pod_name} ; "
        f"Region: {request.region} ; Target AZ: {request.target_zone}"
    )
    if request.dry_run:
        logger.info("DRY-RUN mode enabled (no changes will be made).")
    logger.info("This will SCALE DOWN related Deployments/StatefulSets that use these PVCs, then restore afterwards.")

    try:
        ensure_directories(config)
        clients = load_kubernetes_clients(
            kubeconfig_path=request.kubeconfig_path,
            context=request.context,
            in_cluster=request.in_cluster,
        )
        ec2 = Ec2Gateway.for_region(request.region)
        results = run_migration(request, clients=clients, ec2=ec2, config=config)
    except _FATAL_ERRORS as error:
        logger.error(f"ERROR: {error}")
        return EXIT_FAILURE
    except Exception as error:  # pylint: disable=broad-except
        logger.exception(f"ERROR: unexpected failure: {error}")
        return EXIT_FAILURE

    _log_summary(results)
    logger.info("All done. Controllers restored to original replicas.")
    logger.info(
        f"Reminder: ensure scheduling to target AZ {request.target_zone} (nodegroups/affinity/topology)."
    )
    return EXIT_OK


def _log_summary(results: list[MigrationResult]) -> None:
    for result in results:
        suffix = f" -> {result.new_pv_name}" if result.new_pv_name else ""
        simulated = " (simulated)" if result.simulated else ""
        logger.info(f"{result.claim_name}: {result.state.value}{suffix}{simulated}")


if __name__ == "__main__":
    sys.exit(main())

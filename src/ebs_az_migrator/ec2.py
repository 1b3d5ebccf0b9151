from __future__ import annotations

from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, WaiterError

from .config import IOPS_VOLUME_TYPES, THROUGHPUT_VOLUME_TYPES
from .models import EbsVolume, SnapshotRecord


class CloudProviderError(RuntimeError):
    """Raised when an EC2 call or waiter fails."""


class Ec2Gateway:
    """EC2 volume and snapshot operations used by the migration engine."""

    def __init__(self, *, ec2_client: Any, region: str) -> None:
        self.ec2_client = ec2_client
        self.region = region

    @classmethod
    def for_region(cls, region: str) -> "Ec2Gateway":
        config = Config(region_name=region, retries={"max_attempts": 3, "mode": "adaptive"})
        return cls(ec2_client=boto3.client("ec2", config=config), region=region)

    def describe_volume(self, volume_id: str) -> EbsVolume:
        response = self._call(
            f"describe volume {volume_id}",
            lambda: self.ec2_client.describe_volumes(VolumeIds=[volume_id]),
        )
        volumes = response.get("Volumes") or []
        if not volumes:
            raise CloudProviderError(f"EC2 returned no volume for {volume_id} in {self.region}")
        return parse_volume(volumes[0])

    def create_snapshot(self, *, volume_id: str, description: str, tags: dict[str, str]) -> SnapshotRecord:
        response = self._call(
            f"create snapshot of {volume_id}",
            lambda: self.ec2_client.create_snapshot(
                VolumeId=volume_id,
                Description=description,
                TagSpecifications=[{"ResourceType": "snapshot", "Tags": _tag_list(tags)}],
            ),
        )
        return SnapshotRecord(snapshot_id=response["SnapshotId"], description=description, volume_id=volume_id)

    def wait_snapshot_completed(self, snapshot_id: str, *, delay_seconds: int, max_attempts: int) -> None:
        self._wait(
            "snapshot_completed",
            f"snapshot {snapshot_id} to complete",
            delay_seconds=delay_seconds,
            max_attempts=max_attempts,
            SnapshotIds=[snapshot_id],
        )

    def create_volume_from_snapshot(
        self,
        *,
        source: EbsVolume,
        snapshot_id: str,
        availability_zone: str,
        tags: dict[str, str],
    ) -> str:
        arguments = volume_creation_arguments(source=source, snapshot_id=snapshot_id, availability_zone=availability_zone)
        arguments["TagSpecifications"] = [{"ResourceType": "volume", "Tags": _tag_list(tags)}]
        response = self._call(
            f"create volume in {availability_zone} from {snapshot_id}",
            lambda: self.ec2_client.create_volume(**arguments),
        )
        return response["VolumeId"]

    def wait_volume_available(self, volume_id: str, *, delay_seconds: int, max_attempts: int) -> None:
        self._wait(
            "volume_available",
            f"volume {volume_id} to become available",
            delay_seconds=delay_seconds,
            max_attempts=max_attempts,
            VolumeIds=[volume_id],
        )

    def _wait(self, waiter_name: str, description: str, *, delay_seconds: int, max_attempts: int, **kwargs: Any) -> None:
        waiter = self.ec2_client.get_waiter(waiter_name)
        self._call(
            f"wait for {description}",
            lambda: waiter.wait(WaiterConfig={"Delay": delay_seconds, "MaxAttempts": max_attempts}, **kwargs),
        )

    def _call(self, operation: str, func: Any) -> Any:
        try:
            return func()
        except WaiterError as error:
            raise CloudProviderError(f"EC2 waiter failed to {operation} in {self.region}: {error}") from error
        except ClientError as error:
            code = error.response.get("Error", {}).get("Code", "Unknown")
            message = error.response.get("Error", {}).get("Message", str(error))
            raise CloudProviderError(f"EC2 failed to {operation} in {self.region}: {code}: {message}") from error
        except BotoCoreError as error:
            raise CloudProviderError(f"EC2 failed to {operation} in {self.region}: {error}") from error


def parse_volume(payload: dict[str, Any]) -> EbsVolume:
    return EbsVolume(
        volume_id=payload["VolumeId"],
        volume_type=payload.get("VolumeType", ""),
        availability_zone=payload.get("AvailabilityZone", ""),
        size_gib=int(payload["Size"]),
        iops=payload.get("Iops"),
        throughput=payload.get("Throughput"),
        encrypted=bool(payload.get("Encrypted", False)),
        kms_key_id=payload.get("KmsKeyId") or None,
    )


def volume_creation_arguments(*, source: EbsVolume, snapshot_id: str, availability_zone: str) -> dict[str, Any]:
    arguments: dict[str, Any] = {
        "AvailabilityZone": availability_zone,
        "SnapshotId": snapshot_id,
        "VolumeType": source.volume_type,
        "Size": source.size_gib,
    }
    if source.volume_type in IOPS_VOLUME_TYPES and source.iops:
        arguments["Iops"] = source.iops
    if source.volume_type in THROUGHPUT_VOLUME_TYPES and source.throughput:
        arguments["Throughput"] = source.throughput
    if source.encrypted:
        arguments["Encrypted"] = True
    if source.kms_key_id:
        arguments["KmsKeyId"] = source.kms_key_id
    return arguments


def _tag_list(tags: dict[str, str]) -> list[dict[str, str]]:
    return [{"Key": key, "Value": value} for key, value in tags.items()]

"""EC2 side of the lifecycle: launch, poll and terminate a single instance with boto3."""

from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass
from typing import Optional

import boto3
import botocore.exceptions

from .errors import ComputeError

log = logging.getLogger(__name__)

INSTANCE_TAG = "ec2-socks-proxy"


@dataclass(frozen=True)
class InstanceStatus:
    state: str
    public_address: Optional[str] = None


class Ec2ComputeClient:
    """Thin request/response wrapper around the EC2 instance API.

    Every failure to reach EC2 or an error response is raised as ComputeError.
    """

    def __init__(self, profile: Optional[str] = None, region: Optional[str] = None, ec2_client=None):
        self.profile = profile
        self.region = region
        self._ec2 = ec2_client

    @property
    def ec2(self):
        if self._ec2 is None:
            session = boto3.Session(profile_name=self.profile, region_name=self.region)
            self._ec2 = session.client("ec2")
        return self._ec2

    def _call(self, operation: str, **params):
        log.debug("ec2 %s %s", operation, params)
        try:
            return getattr(self.ec2, operation)(**params)
        except (botocore.exceptions.ClientError, botocore.exceptions.BotoCoreError) as e:
            raise ComputeError(f"ec2 {operation} failed: {e}") from e

    def launch(self, image_id: str, instance_type: str, key_name: str,
               security_group: Optional[str] = None) -> Optional[str]:
        params = dict(
            ImageId=image_id,
            InstanceType=instance_type,
            KeyName=key_name,
            MinCount=1,
            MaxCount=1,
            TagSpecifications=[{
                "ResourceType": "instance",
                "Tags": [{"Key": "Name", "Value": INSTANCE_TAG}],
            }],
        )
        if security_group:
            params["SecurityGroupIds"] = [security_group]
        resp = self._call("run_instances", **params)
        instances = resp.get("Instances") or [{}]
        return instances[0].get("InstanceId") or None

    def describe_state(self, instance_id: str) -> InstanceStatus:
        resp = self._call("describe_instances", InstanceIds=[instance_id])
        for reservation in resp.get("Reservations", []):
            for inst in reservation.get("Instances", []):
                if inst.get("InstanceId") == instance_id:
                    return InstanceStatus(
                        state=inst.get("State", {}).get("Name", "unknown"),
                        public_address=inst.get("PublicIpAddress") or None,
                    )
        return InstanceStatus(state="unknown")

    def terminate(self, instance_id: str) -> None:
        self._call("terminate_instances", InstanceIds=[instance_id])


def terminate_command(instance_id: str, profile: Optional[str] = None, region: Optional[str] = None) -> str:
    """AWS CLI command an operator can run by hand when automatic termination failed."""
    cmd = ["aws"]
    if profile:
        cmd += ["--profile", profile]
    if region:
        cmd += ["--region", region]
    cmd += ["ec2", "terminate-instances", "--instance-ids", instance_id]
    return " ".join(shlex.quote(part) for part in cmd)

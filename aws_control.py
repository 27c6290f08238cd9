#!/usr/bin/env python3
"""
aws_control.py

boto3 wrappers for the EC2 and ELBv2 calls issued by terminator.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import ClientError


logger = logging.getLogger("terminator.aws")

TARGET_GROUP_NOT_FOUND = "TargetGroupNotFound"


def create_session(region: Optional[str] = None) -> boto3.session.Session:
    return boto3.session.Session(region_name=region)


def _state_change(response: Dict[str, Any], key: str) -> Dict[str, Optional[str]]:
    changes = response.get(key) or []
    if not changes:
        return {}
    change = changes[0]
    return {
        "InstanceId": change.get("InstanceId"),
        "PreviousState": (change.get("PreviousState") or {}).get("Name"),
        "CurrentState": (change.get("CurrentState") or {}).get("Name"),
    }


class Ec2Control:
    """Instance listing and power control."""

    def __init__(self, client: Any):
        self.client = client

    @classmethod
    def from_session(cls, session: boto3.session.Session) -> "Ec2Control":
        return cls(session.client("ec2"))

    def list_instances(self) -> List[Dict[str, Any]]:
        instances: List[Dict[str, Any]] = []
        paginator = self.client.get_paginator("describe_instances")
        for page in paginator.paginate():
            for reservation in page.get("Reservations") or []:
                instances.extend(reservation.get("Instances") or [])
        logger.debug("Listed %s EC2 instance(s)", len(instances))
        return instances

    def stop(self, instance_id: str, force: bool = False) -> Dict[str, Optional[str]]:
        response = self.client.stop_instances(InstanceIds=[instance_id], Force=force)
        return _state_change(response, "StoppingInstances")

    def start(self, instance_id: str, note: str = "") -> Dict[str, Optional[str]]:
        kwargs: Dict[str, Any] = {"InstanceIds": [instance_id]}
        if note:
            kwargs["AdditionalInfo"] = note
        response = self.client.start_instances(**kwargs)
        return _state_change(response, "StartingInstances")

    def terminate(self, instance_id: str) -> Dict[str, Optional[str]]:
        response = self.client.terminate_instances(InstanceIds=[instance_id])
        return _state_change(response, "TerminatingInstances")


class TargetGroupControl:
    """Target group lookup, registration and deregistration."""

    def __init__(self, client: Any):
        self.client = client

    @classmethod
    def from_session(cls, session: boto3.session.Session) -> "TargetGroupControl":
        return cls(session.client("elbv2"))

    def lookup(self, name: str) -> Optional[Dict[str, Any]]:
        try:
            response = self.client.describe_target_groups(Names=[name])
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == TARGET_GROUP_NOT_FOUND:
                logger.debug("Target group %s not found", name)
                return None
            raise
        groups = response.get("TargetGroups") or []
        return groups[0] if groups else None

    def register(self, target_group: Dict[str, Any], instance_id: str, port: int) -> None:
        self.client.register_targets(
            TargetGroupArn=target_group["TargetGroupArn"],
            Targets=[{"Id": instance_id, "Port": port}],
        )

    def deregister(self, target_group: Dict[str, Any], instance_id: str, port: Optional[int] = None) -> None:
        target: Dict[str, Any] = {"Id": instance_id}
        if port is not None:
            target["Port"] = port
        self.client.deregister_targets(
            TargetGroupArn=target_group["TargetGroupArn"],
            Targets=[target],
        )

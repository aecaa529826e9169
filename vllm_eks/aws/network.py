"""Security group and subnet helpers for the storage and ingress stages.

All mutations here are create-or-no-op: a duplicate group or rule comes
back from EC2 as ``InvalidGroup.Duplicate`` / ``InvalidPermission.Duplicate``
and is treated as success rather than retried.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from vllm_eks.aws.errors import is_already_exists, is_not_found
from vllm_eks.errors import CreationFailed

logger = logging.getLogger(__name__)

#: Lustre traffic uses this TCP port range.
LUSTRE_PORT_RANGE = (988, 1023)


@dataclass
class SubnetInfo:
    """A discovered subnet."""

    subnet_id: str = ""
    availability_zone: str = ""
    vpc_id: str = ""


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def find_security_group(ec2_client: Any, group_name: str, vpc_id: str = "") -> str:
    """Return the ID of the security group named *group_name*, or ``""``."""
    filters: List[Dict[str, Any]] = [{"Name": "group-name", "Values": [group_name]}]
    if vpc_id:
        filters.append({"Name": "vpc-id", "Values": [vpc_id]})
    resp = ec2_client.describe_security_groups(Filters=filters)
    groups = resp.get("SecurityGroups", [])
    return groups[0]["GroupId"] if groups else ""


def find_private_subnet(
    ec2_client: Any, vpc_id: str, subnet_ids: Optional[List[str]] = None,
) -> Optional[SubnetInfo]:
    """Return the first private subnet of *vpc_id*.

    A subnet is private when it does not map public IPs on launch.  When
    *subnet_ids* is given, only those subnets are considered.
    """
    resp = ec2_client.describe_subnets(
        Filters=[
            {"Name": "vpc-id", "Values": [vpc_id]},
            {"Name": "map-public-ip-on-launch", "Values": ["false"]},
        ]
    )
    subnets = resp.get("Subnets", [])
    if subnet_ids:
        subnets = [s for s in subnets if s.get("SubnetId") in subnet_ids] or subnets
    if not subnets:
        return None
    subnets = sorted(subnets, key=lambda s: (s.get("AvailabilityZone", ""), s["SubnetId"]))
    first = subnets[0]
    return SubnetInfo(
        subnet_id=first["SubnetId"],
        availability_zone=first.get("AvailabilityZone", ""),
        vpc_id=first.get("VpcId", vpc_id),
    )


def find_nodegroup_security_group(ec2_client: Any, nodegroup_name: str) -> str:
    """Return the first security group attached to a node of *nodegroup_name*."""
    resp = ec2_client.describe_instances(
        Filters=[
            {"Name": "tag:eks:nodegroup-name", "Values": [nodegroup_name]},
            {"Name": "instance-state-name", "Values": ["pending", "running"]},
        ]
    )
    for reservation in resp.get("Reservations", []):
        for instance in reservation.get("Instances", []):
            groups = instance.get("SecurityGroups", [])
            if groups:
                return groups[0]["GroupId"]
    return ""


# ---------------------------------------------------------------------------
# Idempotent mutations
# ---------------------------------------------------------------------------


def ensure_security_group(
    ec2_client: Any,
    group_name: str,
    vpc_id: str,
    description: str,
    *,
    tags: Optional[Dict[str, str]] = None,
) -> str:
    """Create *group_name* in *vpc_id*, or return the existing group's ID."""
    kwargs: Dict[str, Any] = {
        "GroupName": group_name,
        "Description": description,
        "VpcId": vpc_id,
    }
    if tags:
        kwargs["TagSpecifications"] = [{
            "ResourceType": "security-group",
            "Tags": [{"Key": k, "Value": v} for k, v in sorted(tags.items())],
        }]
    try:
        resp = ec2_client.create_security_group(**kwargs)
        logger.info("Created security group %s (%s)", group_name, resp["GroupId"])
        return str(resp["GroupId"])
    except ClientError as exc:
        if not is_already_exists(exc):
            raise
    group_id = find_security_group(ec2_client, group_name, vpc_id)
    if not group_id:
        raise CreationFailed(
            f"Security group {group_name} reported as existing but cannot be described",
            resource=group_name,
        )
    logger.info("Security group %s already exists (%s)", group_name, group_id)
    return group_id


def authorize_ingress(
    ec2_client: Any,
    group_id: str,
    *,
    port_from: int,
    port_to: Optional[int] = None,
    source_group_id: str = "",
    cidr: str = "",
) -> bool:
    """Allow TCP ingress on *group_id*.

    Returns True when a rule was added, False when it already existed.
    """
    permission: Dict[str, Any] = {
        "IpProtocol": "tcp",
        "FromPort": port_from,
        "ToPort": port_to if port_to is not None else port_from,
    }
    if source_group_id:
        permission["UserIdGroupPairs"] = [{"GroupId": source_group_id}]
    if cidr:
        permission["IpRanges"] = [{"CidrIp": cidr}]
    try:
        ec2_client.authorize_security_group_ingress(
            GroupId=group_id, IpPermissions=[permission],
        )
        return True
    except ClientError as exc:
        if is_already_exists(exc):
            logger.debug("Ingress rule already present on %s", group_id)
            return False
        raise


def revoke_ingress(
    ec2_client: Any,
    group_id: str,
    *,
    port: int,
    source_group_id: str,
) -> bool:
    """Remove a group-sourced TCP rule.  Returns False when it was absent."""
    try:
        ec2_client.revoke_security_group_ingress(
            GroupId=group_id,
            IpPermissions=[{
                "IpProtocol": "tcp",
                "FromPort": port,
                "ToPort": port,
                "UserIdGroupPairs": [{"GroupId": source_group_id}],
            }],
        )
        return True
    except ClientError as exc:
        if is_not_found(exc):
            return False
        raise


def delete_security_group(ec2_client: Any, group_id: str) -> bool:
    """Delete *group_id*.  Returns False when it was already gone."""
    try:
        ec2_client.delete_security_group(GroupId=group_id)
        return True
    except ClientError as exc:
        if is_not_found(exc):
            return False
        raise

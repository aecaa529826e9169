"""AWS service interactions (STS, EC2, EKS, FSx, ELBv2, IAM)."""

from vllm_eks.aws.context import (
    AWSContext,
    configure_profile,
    ensure_profile,
    list_profiles,
    validate_identity,
)
from vllm_eks.aws.errors import (
    ALREADY_EXISTS_CODES,
    NOT_FOUND_CODES,
    TRANSIENT_CODES,
    error_code,
    is_already_exists,
    is_not_found,
    is_transient,
)
from vllm_eks.aws.iam import ensure_managed_policy, policy_arn, read_policy_document
from vllm_eks.aws.network import (
    LUSTRE_PORT_RANGE,
    SubnetInfo,
    authorize_ingress,
    delete_security_group,
    ensure_security_group,
    find_nodegroup_security_group,
    find_private_subnet,
    find_security_group,
    revoke_ingress,
)

__all__ = [
    "ALREADY_EXISTS_CODES",
    "AWSContext",
    "LUSTRE_PORT_RANGE",
    "NOT_FOUND_CODES",
    "SubnetInfo",
    "TRANSIENT_CODES",
    "authorize_ingress",
    "configure_profile",
    "delete_security_group",
    "ensure_managed_policy",
    "ensure_profile",
    "ensure_security_group",
    "error_code",
    "find_nodegroup_security_group",
    "find_private_subnet",
    "find_security_group",
    "is_already_exists",
    "is_not_found",
    "is_transient",
    "list_profiles",
    "policy_arn",
    "read_policy_document",
    "revoke_ingress",
    "validate_identity",
]

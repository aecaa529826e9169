"""Pydantic models for the deployment target.

A :class:`DeploymentTarget` is the single value threaded through every
component call.  It is frozen once built so a plan constructed from it
cannot drift mid-run.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_REGION = "us-west-2"
DEFAULT_PROFILE = "vllm-profile"


class StageTiming(BaseModel):
    """Per-stage timeout and poll interval, in seconds."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    timeout: float = Field(gt=0)
    poll_interval: float = Field(gt=0)


#: Defaults derived from the provider's typical creation times.
DEFAULT_STAGE_TIMINGS: Dict[str, StageTiming] = {
    "cluster": StageTiming(timeout=2400, poll_interval=30),
    "nodegroup": StageTiming(timeout=1800, poll_interval=30),
    "storage": StageTiming(timeout=1200, poll_interval=30),
    "controllers": StageTiming(timeout=600, poll_interval=10),
    "workload": StageTiming(timeout=1200, poll_interval=20),
    "ingress": StageTiming(timeout=600, poll_interval=10),
}


class DeploymentTarget(BaseModel):
    """Everything that identifies one deployment.

    Names double as the stable selectors the Prober uses to rediscover
    resources across process restarts.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    # -- identity -----------------------------------------------------------
    cluster_name: str = "vllm-cluster-west2"
    region: str = DEFAULT_REGION
    profile: str = DEFAULT_PROFILE
    namespace: str = "vllm-production"
    kubernetes_version: str = "1.31"

    # -- node group ---------------------------------------------------------
    nodegroup_name: str = "vllm-g5-nodes-west2"
    instance_types: List[str] = Field(default_factory=lambda: ["g5.xlarge"])
    min_size: int = Field(default=0, ge=0)
    max_size: int = Field(default=1, ge=1)
    desired_capacity: int = Field(default=1, ge=0)
    node_volume_size: int = Field(default=100, gt=0)
    ami_family: str = "AmazonLinux2"
    ami: Optional[str] = None
    node_role_label: str = "small-model-worker"

    # -- storage ------------------------------------------------------------
    storage_capacity_gib: int = Field(default=1200, gt=0)
    fsx_deployment_type: str = "SCRATCH_2"
    filesystem_name: str = "vllm-qwen-model-storage"
    fsx_security_group_name: str = "fsx-lustre-qwen-sg"
    storage_class_name: str = "fsx-sc"
    volume_name: str = "fsx-lustre-pv"
    claim_name: str = "fsx-lustre-pvc"

    # -- workload -----------------------------------------------------------
    model_id: str = "Qwen/Qwen2.5-0.5B-Instruct"
    image: str = "763104351884.dkr.ecr.us-east-1.amazonaws.com/vllm:0.8.5-gpu-py312-ec2"
    workload_name: str = "vllm-qwen-25b"
    service_name: str = "vllm-qwen-25b-service"
    replicas: int = Field(default=1, ge=1)
    gpus: int = Field(default=1, ge=1)
    cpu: str = "2"
    memory: str = "8Gi"
    max_model_len: int = 8192
    gpu_memory_utilization: float = Field(default=0.85, gt=0, le=1)
    container_port: int = 8000

    # -- ingress ------------------------------------------------------------
    ingress_name: str = "vllm-qwen-25b-ingress"
    alb_security_group_name: str = "vllm-qwen-alb-sg"
    #: Source CIDR for the ALB; empty means the caller's public IP as a /32.
    allowed_cidr: str = ""

    # -- controllers --------------------------------------------------------
    lb_controller_policy_name: str = "AWSLoadBalancerControllerIAMPolicy"
    lws_chart_version: str = "0.6.1"

    # -- timing -------------------------------------------------------------
    stage_timings: Dict[str, StageTiming] = Field(
        default_factory=lambda: dict(DEFAULT_STAGE_TIMINGS)
    )

    @field_validator("instance_types")
    @classmethod
    def _non_empty_instance_types(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("instance_types must list at least one instance type")
        return value

    @field_validator("stage_timings", mode="before")
    @classmethod
    def _merge_stage_timings(cls, value: object) -> object:
        """Overlay partial overrides on top of the defaults."""
        if isinstance(value, dict):
            merged: Dict[str, object] = dict(DEFAULT_STAGE_TIMINGS)
            merged.update(value)
            return merged
        return value

    @model_validator(mode="after")
    def _check_sizes(self) -> "DeploymentTarget":
        if not self.min_size <= self.desired_capacity <= self.max_size:
            raise ValueError(
                "node group sizing must satisfy min_size <= desired_capacity <= max_size"
            )
        return self

    def timing(self, stage: str) -> StageTiming:
        """Return the timing for *stage*, falling back to a conservative default."""
        return self.stage_timings.get(stage) or StageTiming(timeout=600, poll_interval=15)

"""Blueprint catalogue: one structured manifest builder per named blueprint.

Each blueprint declares the identifier slots it needs.  Builders receive the
:class:`DeploymentTarget`, the bound identifiers and, for file-backed
blueprints, the documents parsed from the working-directory template file,
and return a list of manifest documents (plain dicts).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from vllm_eks.config.models import DeploymentTarget
from vllm_eks.tools.resolver import (
    PERSISTENT_VOLUME_FILE,
    STORAGE_CLASS_FILE,
    VOLUME_CLAIM_FILE,
)

# ── identifier slot names ────────────────────────────────────────────

VPC_ID = "vpcId"
CLUSTER_SECURITY_GROUP_ID = "clusterSecurityGroupId"
SUBNET_ID = "subnetId"
AVAILABILITY_ZONE = "availabilityZone"
NODE_SECURITY_GROUP_ID = "nodeSecurityGroupId"
FSX_SECURITY_GROUP_ID = "fsxSecurityGroupId"
FILE_SYSTEM_ID = "fileSystemId"
FILE_SYSTEM_DNS_NAME = "fileSystemDnsName"
MOUNT_NAME = "mountName"
ALB_SECURITY_GROUP_ID = "albSecurityGroupId"
LOAD_BALANCER_DNS_NAME = "loadBalancerDnsName"

#: Where the inference server caches model weights on the shared filesystem.
MODEL_CACHE_DIR = "/mnt/fsx/models"

CSI_DRIVER = "fsx.csi.aws.com"

Documents = List[Dict[str, Any]]
Builder = Callable[[DeploymentTarget, Dict[str, str], Documents], Documents]


@dataclass(frozen=True)
class Blueprint:
    """A named manifest builder with its required identifier slots."""

    name: str
    slots: Tuple[str, ...]
    build: Builder
    source_file: Optional[str] = None


def set_path(doc: Dict[str, Any], path: str, value: Any) -> None:
    """Set ``doc[a][b][c] = value`` for *path* ``"a.b.c"``, creating mappings."""
    keys = path.split(".")
    node = doc
    for key in keys[:-1]:
        child = node.get(key)
        if not isinstance(child, dict):
            child = {}
            node[key] = child
        node = child
    node[keys[-1]] = value


def _first(docs: Documents, kind: str) -> Dict[str, Any]:
    for doc in docs:
        if isinstance(doc, dict) and doc.get("kind") == kind:
            return doc
    return {"kind": kind}


# ── eksctl configs ───────────────────────────────────────────────────


def build_cluster_config(target: DeploymentTarget, ids: Dict[str, str], base: Documents) -> Documents:
    return [{
        "apiVersion": "eksctl.io/v1alpha5",
        "kind": "ClusterConfig",
        "metadata": {
            "name": target.cluster_name,
            "region": target.region,
            "version": target.kubernetes_version,
        },
        "iam": {"withOIDC": True},
        "addons": [{"name": "vpc-cni"}, {"name": "coredns"}, {"name": "kube-proxy"}],
    }]


def build_nodegroup_config(target: DeploymentTarget, ids: Dict[str, str], base: Documents) -> Documents:
    nodegroup: Dict[str, Any] = {
        "name": target.nodegroup_name,
        "instanceTypes": list(target.instance_types),
        "minSize": target.min_size,
        "maxSize": target.max_size,
        "desiredCapacity": target.desired_capacity,
        "availabilityZones": [ids[AVAILABILITY_ZONE]],
        "volumeSize": target.node_volume_size,
        "privateNetworking": True,
        "amiFamily": target.ami_family,
        "labels": {
            "role": target.node_role_label,
            "nvidia.com/gpu": "true",
            "k8s.amazonaws.com/accelerator": "nvidia-gpu",
        },
        "tags": {"nodegroup-role": target.node_role_label},
        "iam": {
            "withAddonPolicies": {
                "autoScaler": True,
                "albIngress": True,
                "cloudWatch": True,
                "ebs": True,
                "imageBuilder": True,
            },
        },
    }
    if target.ami:
        # Custom AMIs need an explicit bootstrap.
        nodegroup["ami"] = target.ami
        nodegroup["overrideBootstrapCommand"] = (
            "#!/bin/bash\n"
            "set -ex\n"
            f"/etc/eks/bootstrap.sh {target.cluster_name} --container-runtime containerd\n"
        )
    return [{
        "apiVersion": "eksctl.io/v1alpha5",
        "kind": "ClusterConfig",
        "metadata": {"name": target.cluster_name, "region": target.region},
        "managedNodeGroups": [nodegroup],
    }]


# ── orchestrator manifests ───────────────────────────────────────────


def build_namespace(target: DeploymentTarget, ids: Dict[str, str], base: Documents) -> Documents:
    return [{
        "apiVersion": "v1",
        "kind": "Namespace",
        "metadata": {"name": target.namespace},
    }]


def build_storage_class(target: DeploymentTarget, ids: Dict[str, str], base: Documents) -> Documents:
    doc = _first(base, "StorageClass")
    set_path(doc, "metadata.name", target.storage_class_name)
    doc.setdefault("provisioner", CSI_DRIVER)
    set_path(doc, "parameters.subnetId", ids[SUBNET_ID])
    set_path(doc, "parameters.securityGroupIds", ids[FSX_SECURITY_GROUP_ID])
    set_path(doc, "parameters.deploymentType", target.fsx_deployment_type)
    return [doc]


def build_persistent_volume(target: DeploymentTarget, ids: Dict[str, str], base: Documents) -> Documents:
    doc = _first(base, "PersistentVolume")
    set_path(doc, "metadata.name", target.volume_name)
    set_path(doc, "spec.capacity.storage", f"{target.storage_capacity_gib}Gi")
    set_path(doc, "spec.storageClassName", target.storage_class_name)
    set_path(doc, "spec.csi.driver", CSI_DRIVER)
    set_path(doc, "spec.csi.volumeHandle", ids[FILE_SYSTEM_ID])
    set_path(doc, "spec.csi.volumeAttributes.dnsname", ids[FILE_SYSTEM_DNS_NAME])
    set_path(doc, "spec.csi.volumeAttributes.mountname", ids[MOUNT_NAME])
    return [doc]


def build_volume_claim(target: DeploymentTarget, ids: Dict[str, str], base: Documents) -> Documents:
    doc = _first(base, "PersistentVolumeClaim")
    set_path(doc, "metadata.name", target.claim_name)
    set_path(doc, "metadata.namespace", target.namespace)
    set_path(doc, "spec.storageClassName", target.storage_class_name)
    set_path(doc, "spec.volumeName", target.volume_name)
    set_path(doc, "spec.resources.requests.storage", f"{target.storage_capacity_gib}Gi")
    return [doc]


def server_command(target: DeploymentTarget) -> str:
    """Shell command that starts the OpenAI-compatible inference server."""
    return " ".join([
        "python -m vllm.entrypoints.openai.api_server",
        f"--model {target.model_id}",
        "--host 0.0.0.0",
        f"--port {target.container_port}",
        f"--tensor-parallel-size {target.gpus}",
        f"--download-dir {MODEL_CACHE_DIR}",
        f"--max-model-len {target.max_model_len}",
        f"--gpu-memory-utilization {target.gpu_memory_utilization}",
    ])


def build_workload(target: DeploymentTarget, ids: Dict[str, str], base: Documents) -> Documents:
    labels = {"app": target.workload_name}
    port = target.container_port
    resources = {
        "nvidia.com/gpu": str(target.gpus),
        "cpu": target.cpu,
        "memory": target.memory,
    }
    container = {
        "name": "vllm-server",
        "image": target.image,
        "securityContext": {
            "privileged": False,
            "capabilities": {"add": ["IPC_LOCK"]},
        },
        "env": [
            {"name": "TRANSFORMERS_CACHE", "value": MODEL_CACHE_DIR},
            {"name": "HF_HOME", "value": MODEL_CACHE_DIR},
        ],
        "command": ["/bin/bash"],
        "args": ["-c", server_command(target)],
        "resources": {"limits": dict(resources), "requests": dict(resources)},
        "ports": [{"containerPort": port}],
        "readinessProbe": {
            "httpGet": {"path": "/health", "port": port},
            "initialDelaySeconds": 120,
            "periodSeconds": 30,
            "timeoutSeconds": 10,
            "successThreshold": 1,
            "failureThreshold": 10,
        },
        "livenessProbe": {
            "httpGet": {"path": "/health", "port": port},
            "initialDelaySeconds": 180,
            "periodSeconds": 60,
            "timeoutSeconds": 10,
            "failureThreshold": 3,
        },
        "volumeMounts": [
            {"name": "fsx-lustre-volume", "mountPath": "/mnt/fsx"},
            {"name": "dshm", "mountPath": "/dev/shm"},
        ],
    }
    deployment = {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": target.workload_name, "namespace": target.namespace},
        "spec": {
            "replicas": target.replicas,
            "selector": {"matchLabels": dict(labels)},
            "template": {
                "metadata": {"labels": {**labels, "role": "leader"}},
                "spec": {
                    "containers": [container],
                    "volumes": [
                        {
                            "name": "fsx-lustre-volume",
                            "persistentVolumeClaim": {"claimName": target.claim_name},
                        },
                        {"name": "dshm", "emptyDir": {"medium": "Memory", "sizeLimit": "4Gi"}},
                    ],
                    "nodeSelector": {"role": target.node_role_label},
                },
            },
        },
    }
    service = {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": target.service_name, "namespace": target.namespace},
        "spec": {
            "type": "ClusterIP",
            "ports": [{"name": "http", "port": port, "targetPort": port}],
            "selector": dict(labels),
        },
    }
    return [deployment, service]


def build_ingress(target: DeploymentTarget, ids: Dict[str, str], base: Documents) -> Documents:
    port = target.container_port
    prefix = "alb.ingress.kubernetes.io"
    return [{
        "apiVersion": "networking.k8s.io/v1",
        "kind": "Ingress",
        "metadata": {
            "name": target.ingress_name,
            "namespace": target.namespace,
            "annotations": {
                f"{prefix}/scheme": "internet-facing",
                f"{prefix}/target-type": "ip",
                f"{prefix}/security-groups": ids[ALB_SECURITY_GROUP_ID],
                f"{prefix}/healthcheck-path": "/health",
                f"{prefix}/healthcheck-port": str(port),
                f"{prefix}/healthcheck-protocol": "HTTP",
                f"{prefix}/listen-ports": '[{"HTTP": 80}]',
                f"{prefix}/load-balancer-attributes": "load_balancing.cross_zone.enabled=true",
            },
        },
        "spec": {
            "ingressClassName": "alb",
            "rules": [{
                "http": {
                    "paths": [{
                        "path": "/",
                        "pathType": "Prefix",
                        "backend": {
                            "service": {
                                "name": target.service_name,
                                "port": {"number": port},
                            },
                        },
                    }],
                },
            }],
        },
    }]


# ── catalogue ────────────────────────────────────────────────────────

BLUEPRINTS: Dict[str, Blueprint] = {
    bp.name: bp
    for bp in (
        Blueprint("cluster-config", (), build_cluster_config),
        Blueprint("nodegroup-config", (AVAILABILITY_ZONE,), build_nodegroup_config),
        Blueprint("namespace", (), build_namespace),
        Blueprint(
            "storage-class", (SUBNET_ID, FSX_SECURITY_GROUP_ID), build_storage_class,
            source_file=STORAGE_CLASS_FILE,
        ),
        Blueprint(
            "persistent-volume", (FILE_SYSTEM_ID, FILE_SYSTEM_DNS_NAME, MOUNT_NAME),
            build_persistent_volume,
            source_file=PERSISTENT_VOLUME_FILE,
        ),
        Blueprint("volume-claim", (), build_volume_claim, source_file=VOLUME_CLAIM_FILE),
        Blueprint("workload", (), build_workload),
        Blueprint("ingress", (ALB_SECURITY_GROUP_ID,), build_ingress),
    )
}

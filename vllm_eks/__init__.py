"""vLLM on EKS - Python provisioning control plane.

Replaces the per-step shell scripts (create cluster, node group, storage,
controllers, application, cleanup) with a structured Python package that
provisions a GPU-enabled EKS cluster backed by FSx for Lustre and deploys
a vLLM inference server behind an ALB ingress.
"""

try:
    from importlib.metadata import version

    __version__ = version("vllm-eks-deployer")
except Exception:
    __version__ = "0.0.0.dev0"

__all__ = ["__version__"]

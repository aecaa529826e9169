from setuptools import setup, find_packages

setup(
    name="vllm-eks-deployer",
    version="0.1.0",
    description="Provision a GPU EKS cluster with FSx for Lustre and serve vLLM behind an ALB",
    packages=find_packages(exclude=["tests", "tests.*"]),
    include_package_data=True,
    python_requires=">=3.10",
    install_requires=[
        "boto3",
        "botocore",
        "pydantic>=2",
        "typer",
        "rich",
        "PyYAML",
        "requests",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "vllm-eks=vllm_eks.cli:main",
        ],
    },
)

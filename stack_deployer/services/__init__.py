"""
Stack Deployer Services

Orchestration of stack deployments on top of the core primitives.
"""

from .bootstrap import BootstrapCompatibilityGuard, BootstrapStack  # noqa: F401
from .deployments import CloudFormationDeployments  # noqa: F401
from .toolkit import StackParameterMap, StackToolkit, ToolkitDeployOptions  # noqa: F401

__all__ = [
    "BootstrapCompatibilityGuard",
    "BootstrapStack",
    "CloudFormationDeployments",
    "StackParameterMap",
    "StackToolkit",
    "ToolkitDeployOptions",
]

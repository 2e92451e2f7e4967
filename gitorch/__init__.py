"""
gitorch - GitOps deployment orchestrator.

Drives a generated artifact bundle through repository creation, review,
CI validation, merge, deployment, verification and catalog registration,
compensating partial failures and recovering from classified errors.
"""

__version__ = "0.1.0"
__author__ = "Platform Engineering Team"


__all__ = [
    "GitorchConfig",
    "load_config",
    "get_gitorch_home",
    "Orchestrator",
    "PipelineInput",
    "PipelineResult",
    "RunStatus",
    "ClassifiedError",
    "ErrorKind",
]

from .config import GitorchConfig, load_config, get_gitorch_home
from .errors import ClassifiedError, ErrorKind
from .schemas import PipelineResult, RunStatus
from .orchestrator import Orchestrator, PipelineInput

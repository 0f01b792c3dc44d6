from .base import ExecutorHandle, ProcessResult, run_process
from .container import ContainerHandle
from .machine import MachineHandle
from .provisioner import Provisioner, resolve_environment

__all__ = [
    "ExecutorHandle",
    "ProcessResult",
    "run_process",
    "ContainerHandle",
    "MachineHandle",
    "Provisioner",
    "resolve_environment",
]

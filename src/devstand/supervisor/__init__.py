"""Supervision of project dev servers: start, readiness, ports, stop."""

from .ports import PortReclaimer
from .supervisor import (
    ProcessSupervisor,
    ProjectProcessHandle,
    ProjectState,
    StartRequest,
)

__all__ = [
    "PortReclaimer",
    "ProcessSupervisor",
    "ProjectProcessHandle",
    "ProjectState",
    "StartRequest",
]

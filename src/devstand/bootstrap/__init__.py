"""Download, unpack and install portable runtimes."""

from .extractor import extract
from .installer import (
    InstallStatus,
    JavaToolchainInstaller,
    NodeRuntimeInstaller,
    RuntimeInstaller,
)
from .transfer import download

__all__ = [
    "InstallStatus",
    "JavaToolchainInstaller",
    "NodeRuntimeInstaller",
    "RuntimeInstaller",
    "download",
    "extract",
]

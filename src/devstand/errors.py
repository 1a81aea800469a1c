"""Exception hierarchy for devstand.

Every failure the core can surface derives from :class:`DevstandError`.
Lower layers raise their own errors (transfer, extraction); the installer
wraps them with version/OS context using ``raise ... from cause`` so the
original error stays reachable through ``__cause__``.
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional


class DevstandError(Exception):
    """Base class for all devstand errors."""


# ---------------------------------------------------------------------------
# Transfer
# ---------------------------------------------------------------------------


class TransferError(DevstandError):
    """Raised when an archive download fails."""

    def __init__(self, message: str, url: str):
        self.url = url
        super().__init__(message)


class NetworkError(TransferError):
    """Connection-level failure (DNS, reset, timeout)."""


class HTTPStatusError(TransferError):
    """The server answered with a non-2xx terminal status."""

    def __init__(self, url: str, status_code: int):
        self.status_code = status_code
        super().__init__(f"HTTP {status_code} while downloading {url}", url)


class TooManyRedirects(TransferError):
    """The redirect chain exceeded the configured bound."""

    def __init__(self, url: str, max_redirects: int):
        self.max_redirects = max_redirects
        super().__init__(
            f"Too many redirects (> {max_redirects}) while downloading {url}", url
        )


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


class ExtractError(DevstandError):
    """Raised when an archive cannot be unpacked."""

    def __init__(self, message: str, archive_path: Path):
        self.archive_path = Path(archive_path)
        super().__init__(message)


class UnsupportedFormat(ExtractError):
    def __init__(self, archive_path: Path):
        super().__init__(
            f"Unsupported archive format: {Path(archive_path).name}", archive_path
        )


class ExtractionFailed(ExtractError):
    def __init__(self, archive_path: Path, cause: BaseException):
        self.cause = cause
        super().__init__(
            f"Failed to extract {Path(archive_path).name}: {cause}", archive_path
        )


# ---------------------------------------------------------------------------
# Installation
# ---------------------------------------------------------------------------


class InstallError(DevstandError):
    """Raised when a runtime cannot be made available.

    Attributes:
        version: Runtime version being installed
        os_name: Target OS identifier ("windows", "linux", "mac", "mac-arm64")
    """

    def __init__(self, message: str, version: str, os_name: str):
        self.version = version
        self.os_name = os_name
        super().__init__(message)


class NotAvailableForPlatform(InstallError):
    def __init__(self, version: str, os_name: str, label: str = "runtime"):
        super().__init__(
            f"{label} {version} is not available for {os_name}", version, os_name
        )


class DownloadFailed(InstallError):
    def __init__(self, version: str, os_name: str, cause: TransferError):
        self.cause = cause
        super().__init__(
            f"Download of {version} ({os_name}) failed: {cause}", version, os_name
        )


class InstallExtractionFailed(InstallError):
    """Extraction failed during install.

    ``stale_archive`` is True when the archive came from an earlier,
    interrupted run. Callers should then offer to discard it and download
    again rather than retrying extraction of the same file.
    """

    def __init__(
        self,
        version: str,
        os_name: str,
        archive_path: Path,
        cause: ExtractError,
        stale_archive: bool = False,
    ):
        self.archive_path = Path(archive_path)
        self.cause = cause
        self.stale_archive = stale_archive
        hint = " (existing archive may be corrupt; reinstall to download it again)" if stale_archive else ""
        super().__init__(
            f"Extraction of {version} ({os_name}) failed: {cause}{hint}",
            version,
            os_name,
        )


class CompanionToolInstallFailed(InstallError):
    def __init__(
        self,
        version: str,
        os_name: str,
        package: str,
        exit_code: Optional[int],
        reason: Optional[str] = None,
    ):
        self.package = package
        self.exit_code = exit_code
        if reason is None:
            reason = "timed out" if exit_code is None else f"exited with code {exit_code}"
        super().__init__(
            f"Installing {package} into runtime {version} {reason}", version, os_name
        )


class InstalledButMissing(InstallError):
    """Installation steps succeeded but the expected executables are absent."""

    def __init__(self, version: str, os_name: str, missing: List[Path]):
        self.missing = [Path(p) for p in missing]
        listing = ", ".join(str(p) for p in self.missing)
        super().__init__(
            f"Runtime {version} ({os_name}) installed but not found: {listing}",
            version,
            os_name,
        )


# ---------------------------------------------------------------------------
# Supervision
# ---------------------------------------------------------------------------


class StartError(DevstandError):
    def __init__(self, message: str, project_name: str):
        self.project_name = project_name
        super().__init__(message)


class StartCancelled(StartError):
    def __init__(self, project_name: str):
        super().__init__(f"Start of {project_name} was cancelled", project_name)


class SpawnError(StartError):
    def __init__(self, project_name: str, cause: BaseException):
        self.cause = cause
        super().__init__(f"Could not launch {project_name}: {cause}", project_name)


class StartFailed(StartError):
    """The process ended (or was ended) before it became ready.

    ``exit_code`` is None when the supervisor gave up on it (startup
    timeout or unresolved port conflict) rather than it exiting by itself.
    """

    def __init__(
        self, project_name: str, exit_code: Optional[int], message: Optional[str] = None
    ):
        self.exit_code = exit_code
        super().__init__(
            message or f"{project_name} exited with code {exit_code} before it was ready",
            project_name,
        )


class PortConflictError(StartFailed):
    def __init__(self, project_name: str, port: int):
        self.port = port
        super().__init__(
            project_name,
            None,
            f"{project_name} could not start: port {port} is still in use after retry",
        )


class DependencyInstallFailed(StartFailed):
    """``npm install`` inside the project failed, so it was never spawned."""

    def __init__(
        self, project_name: str, exit_code: Optional[int], reason: Optional[str] = None
    ):
        if reason is None:
            reason = "timed out" if exit_code is None else f"exited with code {exit_code}"
        super().__init__(
            project_name,
            exit_code,
            f"Installing dependencies for {project_name} {reason}",
        )

"""MCP Server for devstand.

Exposes runtime installation and dev-server supervision as MCP tools
using FastMCP.
"""

from __future__ import annotations

import atexit
import os
import signal
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from mcp.server import FastMCP

from .server import DevstandServer

# Global server instance and project path
_server: Optional[DevstandServer] = None
_project_path: Optional[str] = None

PROJECT_PATH_ENV = "DEVSTAND_PROJECT_PATH"

mcp = FastMCP("devstand")


def set_project_path(path: str) -> None:
    """Set the project path for the devstand server."""
    global _project_path
    _project_path = str(Path(path).resolve())


def get_project_path() -> str:
    """Get the current project path."""
    return _project_path or os.getenv(PROJECT_PATH_ENV) or os.getcwd()


async def get_server() -> DevstandServer:
    """Get or create the devstand server instance."""
    global _server, _project_path
    if _server is None:
        project_path = get_project_path()
        if not _project_path:
            _project_path = project_path
        _server = DevstandServer(project_path=project_path)
        await _server.start()
    return _server


def _cleanup_server() -> None:
    """Kill every supervised dev server on exit.

    The event loop that spawned the processes may already be gone, so
    the process trees are terminated synchronously.
    """
    global _server
    if _server is not None:
        try:
            _server.kill_all_sync()
        except Exception:
            # Best effort cleanup - ignore errors during shutdown
            pass
        finally:
            _server = None


def _setup_cleanup_handlers() -> None:
    """Set up signal handlers and atexit hooks for cleanup."""
    atexit.register(_cleanup_server)

    def signal_handler(signum, frame):
        _cleanup_server()
        # Re-raise the signal to allow normal termination
        signal.signal(signum, signal.SIG_DFL)
        signal.raise_signal(signum)

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)


def _to_dict(obj: Any) -> Any:
    """Convert dataclass objects to dictionaries for JSON serialization."""
    if hasattr(obj, "__dataclass_fields__"):
        return asdict(obj)
    elif isinstance(obj, list):
        return [_to_dict(item) for item in obj]
    elif isinstance(obj, dict):
        return {k: _to_dict(v) for k, v in obj.items()}
    return obj


# ============================================================================
# QUICK START GUIDE
# ============================================================================
#
# 📦 RUNTIMES
#     list_runtimes            - Catalog versions and what is installed
#     install_runtime          - Install a Node.js or JDK+Maven runtime
#     reinstall_runtime        - Wipe and reinstall a Node.js or Java runtime
#     install_custom_node      - Install Node.js from a custom URL
#     install_java_for_project - Install the Java version a pom.xml asks for
#
# 🚀 PROJECTS
#     start_project            - Start a dev server and wait for readiness
#     stop_project             - Stop a dev server and its child processes
#     cancel_project           - Abort a start that is still in progress
#     project_status           - States of running/starting projects
#     get_project_output       - Recent output lines of a project
#
# 🔧 CONFIGURATION
#     get_devstand_config      - Paths and projects from .devstand.toml
#
# ============================================================================
# Runtime Tools
# ============================================================================


@mcp.tool()
async def list_runtimes(os_name: str | None = None) -> List[Dict[str, Any]]:
    """List known runtime versions and their install status.

    Args:
        os_name: Target OS ("windows", "linux", "mac", "mac-arm64").
                 Defaults to the OS devstand is running on.

    Returns:
        One entry per runtime version:
        - runtime: "node" or "java"
        - version, os_name
        - status: "installed", "missing", "installing" or "unavailable"
        - root_dir, executable: Where it lives (executable only if installed)
        - companion_package: CLI installed alongside Node.js (e.g. @angular/cli)
        - custom: True for versions not in the built-in catalog
    """
    server = await get_server()
    return _to_dict(server.list_runtimes(os_name))


@mcp.tool()
async def install_runtime(
    version: str,
    runtime: Literal["node", "java"] = "node",
    os_name: str | None = None,
) -> Dict[str, Any]:
    """Install a runtime if it is not installed yet.

    Idempotent: an installed runtime is returned without any download.
    Java installs also fetch the shared Maven distribution.

    Args:
        version: "16.10.0" style for Node.js, major version ("17") for Java
        runtime: "node" or "java"
        os_name: Target OS; defaults to the running OS

    Returns:
        Paths of the verified runtime (root_dir, executable, package_manager,
        tool, java_home)
    """
    server = await get_server()
    result = await server.install_runtime(version, runtime, os_name)
    return _to_dict(result)


@mcp.tool()
async def reinstall_runtime(
    version: str,
    runtime: Literal["node", "java"] = "node",
    os_name: str | None = None,
) -> Dict[str, Any]:
    """Delete a runtime (and any leftover archive) and install it again.

    Use this when an install is corrupted, e.g. after an
    "installed but not found" error or an extraction failure caused by a
    stale archive. For Java the JDK is reinstalled; Maven is only
    downloaded again when its install is incomplete.
    """
    server = await get_server()
    result = await server.reinstall_runtime(version, runtime, os_name)
    return _to_dict(result)


@mcp.tool()
async def install_custom_node(
    version: str, url: str, companion_package: str | None = None
) -> Dict[str, Any]:
    """Install a Node.js version from a user-supplied archive URL.

    Args:
        version: Version label, e.g. "22.3.0"
        url: Download URL of a .zip, .tar.gz or .tar.xz Node.js archive
        companion_package: Optional npm package to install globally afterwards
    """
    server = await get_server()
    result = await server.install_custom_node(version, url, companion_package)
    return _to_dict(result)


@mcp.tool()
async def install_java_for_project(
    project_dir: str | None = None, manifest_url: str | None = None
) -> Dict[str, Any]:
    """Install the JDK version a Maven project asks for.

    The version is read from the project's pom.xml (``java.version``,
    then ``maven.compiler.source``, then ``maven.compiler.release``). A
    remote pom can be given via ``manifest_url``. Falls back to the
    configured default when nothing is found.
    """
    server = await get_server()
    result = await server.ensure_java_for_project(project_dir, manifest_url)
    return _to_dict(result)


# ============================================================================
# Project Tools
# ============================================================================


@mcp.tool()
async def start_project(
    name: str,
    project_dir: str | None = None,
    port: int | None = None,
    runtime: Literal["node", "java"] | None = None,
    version: str | None = None,
    args: List[str] | None = None,
    readiness_patterns: List[str] | None = None,
    env: Dict[str, str] | None = None,
    startup_timeout: float | None = None,
) -> Dict[str, Any]:
    """Start a project's dev server and wait until it is ready.

    Installs the project's runtime first if needed. A running instance of
    the same project is stopped first; the port is freed before spawning
    and one restart is attempted if the server reports the port as taken.

    Args:
        name: Project name (matches [projects.<name>] in .devstand.toml)
        project_dir: Project directory; required if not configured
        port: Port the dev server listens on
        runtime: "node" (npm start) or "java" (mvn spring-boot:run)
        version: Runtime version; defaults to the project store or catalog default
        args: Arguments for the package manager (default ["start"] / ["spring-boot:run"])
        readiness_patterns: Regexes that mark the server as ready
        env: Extra environment variables
        startup_timeout: Seconds to wait for readiness (no limit by default)

    Returns:
        ready, pid, port, runtime_version, exit_code, message.
        ready=false only when the process exited with code 0 before any
        readiness pattern matched.
    """
    server = await get_server()
    result = await server.start_project(
        name,
        project_dir=project_dir,
        port=port,
        runtime=runtime,
        version=version,
        args=args,
        readiness_patterns=readiness_patterns,
        env=env,
        startup_timeout=startup_timeout,
    )
    return _to_dict(result)


@mcp.tool()
async def stop_project(name: str) -> Dict[str, Any]:
    """Stop a project's dev server and all of its child processes."""
    server = await get_server()
    confirmed = await server.stop_project(name)
    return {"project": name, "stopped": confirmed}


@mcp.tool()
async def cancel_project(name: str) -> Dict[str, Any]:
    """Abort a project that is still starting.

    The pending start_project call fails with a cancellation error.
    """
    server = await get_server()
    confirmed = await server.cancel_project(name)
    return {"project": name, "cancelled": confirmed}


@mcp.tool()
async def project_status(name: str | None = None) -> List[Dict[str, Any]]:
    """States of running and starting projects (or of one project)."""
    server = await get_server()
    return _to_dict(server.project_status(name))


@mcp.tool()
async def get_project_output(name: str, limit: int = 100) -> Dict[str, Any]:
    """Most recent output lines of a project's dev server.

    Args:
        name: Project name
        limit: Maximum number of lines (0 = everything buffered)
    """
    server = await get_server()
    return _to_dict(server.get_output(name, limit))


# ============================================================================
# Configuration
# ============================================================================


@mcp.tool()
async def get_devstand_config() -> Dict[str, Any]:
    """Get devstand's configuration for the current project.

    Returns:
        - project_path, config_file
        - base_path: Directory holding nodes/ and java/
        - project_store: Path of the per-project settings file
        - projects: Projects declared in .devstand.toml
    """
    from .config import find_config_file

    server = await get_server()
    config = server.config
    config_file = find_config_file(Path(server.project_path))
    return {
        "project_path": server.project_path,
        "config_file": str(config_file) if config_file else None,
        "base_path": str(server.base_path),
        "project_store": str(config.project_store_path),
        "projects": _to_dict(dict(config.projects)),
    }


# ============================================================================
# Resources
# ============================================================================


@mcp.resource("project://info")
def get_project_info_resource() -> str:
    """Get information about the project devstand is serving."""
    project_path = get_project_path()
    return f"""# devstand Server Information

**Project Name:** {Path(project_path).name}
**Project Path:** {project_path}

This MCP server installs portable Node.js and Java/Maven runtimes and
supervises project dev servers (start, readiness, ports, stop).
"""


# ============================================================================
# Entry Point
# ============================================================================


def main():
    """Run the MCP server.

    The project path can be set via:
    1. First command line argument
    2. DEVSTAND_PROJECT_PATH environment variable
    3. Current working directory (default)
    """
    import sys

    _setup_cleanup_handlers()

    if len(sys.argv) > 1 and not sys.argv[1].startswith("-"):
        set_project_path(sys.argv[1])
        # Remove the argument so FastMCP doesn't see it
        sys.argv = [sys.argv[0]] + sys.argv[2:]

    project_path = get_project_path()
    if not _project_path:
        set_project_path(project_path)

    # stdout is used for the MCP protocol
    print("🚀 Starting devstand MCP Server", file=sys.stderr)
    print(f"📁 Project: {Path(project_path).name}", file=sys.stderr)
    print(f"📂 Path: {project_path}", file=sys.stderr)
    print("", file=sys.stderr)

    mcp.run()


if __name__ == "__main__":
    main()

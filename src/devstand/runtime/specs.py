"""Declarative catalog of installable runtimes.

This is DATA, not code. To pin a new runtime version, add its spec here.
"""

from typing import Dict, List, Optional

from .types import (
    OS_LINUX,
    OS_MAC,
    OS_MAC_ARM64,
    OS_WINDOWS,
    RuntimePurpose,
    RuntimeVersionSpec,
)

_NODE_RELEASES = "https://nodejs.org/download/release"
_NODE_DIST = "https://nodejs.org/dist"

_NODE_PLATFORMS = {
    OS_WINDOWS: "win-x64.zip",
    OS_LINUX: "linux-x64.tar.xz",
    OS_MAC: "darwin-x64.tar.gz",
    OS_MAC_ARM64: "darwin-arm64.tar.gz",
}


def _node_spec(
    version: str,
    companion_package: str,
    base_url: str = _NODE_RELEASES,
    platforms: tuple = (OS_WINDOWS, OS_LINUX, OS_MAC),
    folder_overrides: Optional[Dict[str, str]] = None,
) -> RuntimeVersionSpec:
    downloads = {}
    folders = {}
    for os_name in platforms:
        suffix = _NODE_PLATFORMS[os_name]
        downloads[os_name] = f"{base_url}/v{version}/node-v{version}-{suffix}"
        folders[os_name] = f"node-v{version}-{suffix.split('.', 1)[0]}"
    folders.update(folder_overrides or {})
    return RuntimeVersionSpec(
        version=version,
        downloads=downloads,
        folder_names=folders,
        companion_package=companion_package,
        label="Node.js",
    )


NODE_VERSIONS: Dict[str, RuntimeVersionSpec] = {
    "16.10.0": _node_spec("16.10.0", "@angular/cli@13.3.11"),
    "18.18.2": _node_spec("18.18.2", "@angular/cli@15.2.10"),
    "18.20.4": _node_spec(
        "18.20.4",
        "@angular/cli@15.2.10",
        folder_overrides={OS_WINDOWS: "node-v18.20.4/node-v18.20.4-win-x64"},
    ),
    "20.19.5": _node_spec(
        "20.19.5",
        "@angular/cli@18.2.0",
        base_url=_NODE_DIST,
        platforms=(OS_WINDOWS, OS_LINUX, OS_MAC, OS_MAC_ARM64),
    ),
}

DEFAULT_NODE_VERSION = "16.10.0"

# Microsoft Build of OpenJDK, keyed by major version
_JDK_BASE = "https://aka.ms/download-jdk"

JDK_VERSIONS: Dict[str, RuntimeVersionSpec] = {
    "25": RuntimeVersionSpec(
        version="25",
        downloads={OS_WINDOWS: f"{_JDK_BASE}/microsoft-jdk-25-windows-x64.zip"},
        label="Java",
    ),
    "21": RuntimeVersionSpec(
        version="21",
        downloads={
            OS_WINDOWS: f"{_JDK_BASE}/microsoft-jdk-21.0.5-windows-x64.zip",
            OS_MAC: f"{_JDK_BASE}/microsoft-jdk-21.0.5-macOS-x64.tar.gz",
            OS_MAC_ARM64: f"{_JDK_BASE}/microsoft-jdk-21.0.5-macOS-aarch64.tar.gz",
            OS_LINUX: f"{_JDK_BASE}/microsoft-jdk-21.0.5-linux-x64.tar.gz",
        },
        label="Java",
    ),
    "17": RuntimeVersionSpec(
        version="17",
        downloads={
            OS_WINDOWS: f"{_JDK_BASE}/microsoft-jdk-17.0.13-windows-x64.zip",
            OS_MAC: f"{_JDK_BASE}/microsoft-jdk-17.0.13-macOS-x64.tar.gz",
            OS_MAC_ARM64: f"{_JDK_BASE}/microsoft-jdk-17.0.13-macOS-aarch64.tar.gz",
            OS_LINUX: f"{_JDK_BASE}/microsoft-jdk-17.0.13-linux-x64.tar.gz",
        },
        label="Java",
    ),
}

MAVEN_VERSION = "3.9.11"
_MAVEN_BASE = f"https://dlcdn.apache.org/maven/maven-3/{MAVEN_VERSION}/binaries"

MAVEN_SPEC = RuntimeVersionSpec(
    version=MAVEN_VERSION,
    downloads={
        OS_WINDOWS: f"{_MAVEN_BASE}/apache-maven-{MAVEN_VERSION}-bin.zip",
        OS_LINUX: f"{_MAVEN_BASE}/apache-maven-{MAVEN_VERSION}-bin.tar.gz",
        OS_MAC: f"{_MAVEN_BASE}/apache-maven-{MAVEN_VERSION}-bin.tar.gz",
        OS_MAC_ARM64: f"{_MAVEN_BASE}/apache-maven-{MAVEN_VERSION}-bin.tar.gz",
    },
    label="Maven",
)

DEFAULT_JAVA_VERSION = "17"

# Project name -> pinned Node.js version
DEFAULT_PROJECT_VERSIONS: Dict[str, str] = {
    "mp-pas-configuracoes": "20.19.5",
    "mp-pas-root": "16.10.0",
    "mp-pamp": "16.10.0",
}

# Output that means a dev server finished starting
DEFAULT_READINESS_PATTERNS: Dict[RuntimePurpose, List[str]] = {
    RuntimePurpose.NODE: [
        r"webpack.*compiled.*in.*ms",
        r"Compiled successfully",
        r"No issues found",
        r"Local:\s+https?://",
    ],
    RuntimePurpose.JAVA: [
        r"Started \w+ in [\d.]+ seconds",
        r"Tomcat started on port",
    ],
}

# Command arguments given to the package manager when starting a project
DEFAULT_START_ARGS: Dict[RuntimePurpose, List[str]] = {
    RuntimePurpose.NODE: ["start"],
    RuntimePurpose.JAVA: ["spring-boot:run"],
}

# Projects whose start script differs from the runtime default
PROJECT_START_ARGS: Dict[str, List[str]] = {
    "mp-pas-root": ["run", "start"],
}

SINGLE_SPA_PREFIX = "mp-pas-"


def project_start_args(project_name: str, purpose: RuntimePurpose) -> List[str]:
    """Package manager arguments that start ``project_name``.

    Single-spa micro-frontends (``mp-pas-*``) are served through their
    ``serve:single-spa:<name without "mp-">`` script.
    """
    if purpose is RuntimePurpose.NODE:
        if project_name in PROJECT_START_ARGS:
            return list(PROJECT_START_ARGS[project_name])
        if project_name.startswith(SINGLE_SPA_PREFIX):
            return ["run", f"serve:single-spa:{project_name[len('mp-'):]}"]
    return list(DEFAULT_START_ARGS[purpose])

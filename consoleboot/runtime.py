"""Container runtime detection and arbitrary-UID support for consoleboot."""

from __future__ import annotations

import os
import pwd
from dataclasses import dataclass
from pathlib import Path

from consoleboot.utils import log

PASSWD_FILE = Path("/etc/passwd")
GROUP_FILE = Path("/etc/group")


@dataclass
class RuntimeInfo:
    engine: str  # "docker", "podman", "kubernetes", "unknown"
    uid: int
    known_user: bool


def _detect_engine() -> str:
    """Detect which container runtime is in use."""
    if Path("/var/run/secrets/kubernetes.io").exists():
        return "kubernetes"
    if Path("/run/.containerenv").exists():
        return "podman"
    if Path("/.dockerenv").exists():
        return "docker"
    return "unknown"


def _uid_known(uid: int) -> bool:
    try:
        pwd.getpwuid(uid)
    except KeyError:
        return False
    return True


def detect_runtime() -> RuntimeInfo:
    uid = os.getuid()
    return RuntimeInfo(engine=_detect_engine(), uid=uid, known_user=_uid_known(uid))


def ensure_container_user(
    info: RuntimeInfo,
    passwd_file: Path = PASSWD_FILE,
    group_file: Path = GROUP_FILE,
) -> bool:
    """Give an arbitrary UID (OpenShift style) a passwd entry so tools work.

    Returns True when an entry was added.
    """
    if info.known_user:
        return False
    if not os.access(passwd_file, os.W_OK):
        log("WARN", f"UID {info.uid} has no passwd entry and {passwd_file} is not writable")
        return False
    with open(passwd_file, "a") as f:
        f.write(f"container:x:{info.uid}:0:Container User:/tmp:/sbin/nologin\n")
    if os.access(group_file, os.W_OK):
        with open(group_file, "a") as f:
            f.write(f"container:x:{info.uid}:\n")
    log("INFO", f"Added passwd entry for UID {info.uid}")
    return True

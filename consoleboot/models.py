"""Data models for consoleboot."""

from __future__ import annotations

import base64
import binascii
import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, NamedTuple, Optional, Tuple

from consoleboot.constants import (
    INITIALIZED_MARKER_NAME,
    RESULT_FAILURE_TOKEN,
    RESULT_MARKER_PREFIX,
    RESULT_SUCCESS_TOKEN,
    WORK_IMAGE_NAME,
)


@dataclass
class VMConfig:
    image: str
    image_name: str
    image_url: str
    image_sha256: Optional[str]
    memory: str
    storage: str
    smp: str
    lan_options: str
    wan_network: str
    wan_options: str
    password: str
    hostname: str
    config_timeout: int
    config_no_defaults: bool
    extra_args: List[str]
    data_dir: Path
    base_images_dir: Path
    config_dir: Path
    console_socket: Path
    monitor_socket: Path

    @property
    def work_image(self) -> Path:
        return self.data_dir / WORK_IMAGE_NAME

    @property
    def marker_path(self) -> Path:
        return self.data_dir / INITIALIZED_MARKER_NAME


class InitState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"


class ManifestUnit(NamedTuple):
    name: str
    source: str  # "override" or "default"


@dataclass
class ScriptManifest:
    """Ordered executable units of one subset (``container.d`` or ``vm.d``)."""

    subset: str
    units: List[ManifestUnit] = field(default_factory=list)

    @classmethod
    def merge(cls, subset: str, defaults: List[str], overrides: List[str]) -> "ScriptManifest":
        """Merge unit names; an override shadows a default of the same name."""
        sources = {name: "default" for name in defaults}
        sources.update({name: "override" for name in overrides})
        return cls(subset, [ManifestUnit(name, sources[name]) for name in sorted(sources)])

    @property
    def names(self) -> List[str]:
        return [unit.name for unit in self.units]

    def __len__(self) -> int:
        return len(self.units)


def encode_payload(data: bytes) -> str:
    """Channel-safe single-line text for *data*."""
    return base64.b64encode(data).decode("ascii")


def decode_payload(text: str) -> bytes:
    try:
        return base64.b64decode(text.strip(), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"Invalid payload text: {exc}") from exc


@dataclass
class ConfigBundle:
    root: Path
    archive: bytes
    container_manifest: ScriptManifest
    vm_manifest: ScriptManifest
    decoder: str
    executor: str

    @property
    def payload(self) -> str:
        return encode_payload(self.archive)

    def segments(self) -> Tuple[str, str, str]:
        """Decoder commands, encoded payload line, execute commands."""
        return self.decoder, self.payload + "\n", self.executor


@dataclass
class ExecutionResult:
    success: bool
    marker_line: str
    progress: List[str] = field(default_factory=list)

    @classmethod
    def from_marker(cls, line: str, progress: Optional[List[str]] = None) -> "ExecutionResult":
        """Classify a terminating marker line.

        Anything other than an explicit success token is treated as a failure,
        including an empty or garbled remainder.
        """
        if not line.startswith(RESULT_MARKER_PREFIX):
            raise ValueError(f"Not a result marker line: {line!r}")
        remainder = line[len(RESULT_MARKER_PREFIX):].strip()
        if RESULT_FAILURE_TOKEN in remainder:
            success = False
        else:
            success = remainder.rstrip(".").strip() == RESULT_SUCCESS_TOKEN
        return cls(success=success, marker_line=line, progress=list(progress or []))

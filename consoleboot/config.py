"""Configuration loading and environment variable parsing for consoleboot."""

from __future__ import annotations

import shlex
from pathlib import Path
from typing import Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from consoleboot.constants import (
    BASE_IMAGES_DIR,
    CONSOLE_SOCKET,
    DEFAULT_CONFIG_PATH,
    DEFAULT_IMAGE,
    HOSTNAME_RE,
    MONITOR_SOCKET,
    VM_DATA_DIR,
    VMCONFIG_DIR,
)
from consoleboot.exceptions import ManagerError
from consoleboot.models import VMConfig
from consoleboot.utils import get_env, log, parse_int_env, validate_disk_size

DEFAULT_WAN_OPTIONS = (
    "hostfwd=tcp::30022-:22,hostfwd=tcp::30080-:80,hostfwd=tcp::30443-:443,hostfwd=udp::51820-:51820"
)


def load_image_config(image: str, config_path: Optional[Path] = None) -> Dict[str, str]:
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
    if not config_path.exists():
        raise ManagerError(f"Image catalog missing: {config_path}")
    try:
        data = yaml.safe_load(config_path.read_text()) or {}
    except yaml.YAMLError as exc:
        raise ManagerError(f"Image catalog {config_path} is not valid YAML: {exc}")
    images = data.get("images", {})
    if image not in images:
        available = sorted(images.keys())
        available_list = "\n    ".join(available)
        raise ManagerError(
            f"Unknown image '{image}'.\n"
            f"  Available images:\n"
            f"    {available_list}\n"
            f"  Use --list-images to see details."
        )
    return images[image]


def validate_hostname(raw: str) -> str:
    if not HOSTNAME_RE.match(raw):
        raise ManagerError(
            f"Invalid QEMU_HOSTNAME '{raw}'. Use letters, digits and '-' (max 63 characters)"
        )
    return raw


def validate_password(raw: str) -> str:
    if not raw:
        raise ManagerError("QEMU_PASSWORD must not be empty")
    if any(ord(ch) < 0x20 or ord(ch) == 0x7F for ch in raw):
        raise ManagerError("QEMU_PASSWORD must not contain control characters")
    if len(raw.encode("utf-8")) > 72:
        raise ManagerError("QEMU_PASSWORD must be at most 72 bytes")
    return raw


def parse_env() -> VMConfig:
    image = (get_env("IMAGE") or DEFAULT_IMAGE).strip() or DEFAULT_IMAGE
    image_url = (get_env("IMAGE_URL") or "").strip()
    image_sha256 = (get_env("IMAGE_SHA256") or "").strip() or None
    if image_url:
        image_info: Dict[str, str] = {"name": image, "url": image_url}
        log("INFO", f"Using IMAGE_URL override: {image_url}")
    else:
        image_info = load_image_config(image)
        image_url = image_info["url"]
        image_sha256 = image_sha256 or image_info.get("sha256")

    storage = (get_env("QEMU_STORAGE", "1G") or "").strip()
    if storage:
        storage = validate_disk_size(storage)

    try:
        extra_args = shlex.split(get_env("QEMU_ARGS", "") or "")
    except ValueError as exc:
        raise ManagerError(f"QEMU_ARGS could not be parsed: {exc}")

    return VMConfig(
        image=image,
        image_name=image_info.get("name", image),
        image_url=image_url,
        image_sha256=image_sha256,
        memory=(get_env("QEMU_MEMORY", "256M") or "256M").strip(),
        storage=storage,
        smp=(get_env("QEMU_SMP", "2") or "2").strip(),
        lan_options=(get_env("QEMU_LAN_OPTIONS", "") or "").strip(),
        wan_network=(get_env("QEMU_WAN_NETWORK", "172.16.0.0/24") or "172.16.0.0/24").strip(),
        wan_options=(get_env("QEMU_WAN_OPTIONS", DEFAULT_WAN_OPTIONS) or "").strip(),
        password=validate_password(get_env("QEMU_PASSWORD", "pass1234") or ""),
        hostname=validate_hostname((get_env("QEMU_HOSTNAME", "OpenWrtVM") or "").strip()),
        config_timeout=parse_int_env("QEMU_CONFIG_TIMEOUT", "300"),
        # Any non-empty value disables the defaults, matching the shell `-z` test.
        config_no_defaults=bool(get_env("QEMU_CONFIG_NO_DEFAULTS", "")),
        extra_args=extra_args,
        data_dir=VM_DATA_DIR,
        base_images_dir=BASE_IMAGES_DIR,
        config_dir=VMCONFIG_DIR,
        console_socket=CONSOLE_SOCKET,
        monitor_socket=MONITOR_SOCKET,
    )

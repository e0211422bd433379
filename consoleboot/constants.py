"""Global constants and path configuration for consoleboot."""

from __future__ import annotations

import os
import re
from pathlib import Path

DEFAULT_CONFIG_PATH = Path(os.environ.get("IMAGE_CATALOG", "/config/images.yaml"))
DEFAULT_IMAGE = "openwrt-21.02"

# VM_DATA_DIR holds the working disk and the completion marker; it must be a
# persistent volume for the run-once gate to survive container restarts.
VM_DATA_DIR = Path(os.environ.get("VM_DATA_DIR", "/var/lib/qemu"))
BASE_IMAGES_DIR = Path(os.environ.get("BASE_IMAGES_DIR", "/var/lib/qemu-image"))
VMCONFIG_DIR = Path(os.environ.get("VMCONFIG_DIR", "/var/lib/vmconfig"))
STAGING_DIR = Path("/tmp/vmconfig")
WORK_IMAGE_NAME = "image.qcow2"
INITIALIZED_MARKER_NAME = "initialized"

CONSOLE_SOCKET = Path("/tmp/qemu-console.sock")
MONITOR_SOCKET = Path("/tmp/qemu-monitor.sock")
SPICE_SECRET_FILE = Path("/tmp/qemu-password.txt")
QEMU_BINARY = "/usr/bin/qemu-system-x86_64"

HEALTHCHECK_URL = "http://127.0.0.1:30080"

TRUTHY = {"1", "true", "yes", "on"}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

_SENSITIVE_FIELDS = {"password"}

DISK_SIZE_RE = re.compile(r"^\d+[KMGTkmgt]?$")
HOSTNAME_RE = re.compile(r"^[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?$")

# Console protocol
CONTAINER_SUBSET = "container.d"
VM_SUBSET = "vm.d"
DEFAULTS_DIR_NAME = "defaults"
MANIFEST_RUNNER_NAME = ".vmconfig-manifest.sh"

BOOT_PROMPT = "Please press Enter to activate this console."
RESULT_MARKER_PREFIX = "VM configuration result:"
RESULT_SUCCESS_TOKEN = "successful"
RESULT_FAILURE_TOKEN = "failed"
PROGRESS_PREFIX = "Executing "

REMOTE_ARCHIVE_PATH = "/tmp/vmconfig.tgz"
REMOTE_DECODER_PATH = "/tmp/base64_decode.lua"
REMOTE_EXTRACT_DIR = "/tmp/vmconfig"
REMOTE_SETTLE_SECONDS = 5

# Lines longer than this are dropped by the console reader.
MAX_CONSOLE_LINE = 4 * 1024 * 1024
CONSOLE_POLL_INTERVAL = 0.5
VM_STOP_GRACE_SECONDS = 10

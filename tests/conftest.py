"""Shared test fixtures and a fake VM console peer."""

from __future__ import annotations

import base64
import io
import socket
import subprocess
import tarfile
import threading
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from consoleboot.constants import (
    BOOT_PROMPT,
    DEFAULTS_DIR_NAME,
    MANIFEST_RUNNER_NAME,
    RESULT_MARKER_PREFIX,
    VM_SUBSET,
)
from consoleboot.models import VMConfig


@pytest.fixture
def default_vm_config(tmp_path) -> VMConfig:
    """Return a VMConfig whose paths all live under tmp_path."""
    config_dir = tmp_path / "vmconfig"
    (config_dir / "container.d").mkdir(parents=True)
    (config_dir / "vm.d").mkdir()
    return VMConfig(
        image="openwrt-21.02",
        image_name="OpenWrt 21.02.7",
        image_url="https://example.com/openwrt-x86-64-generic-ext4-combined.img.gz",
        image_sha256=None,
        memory="256M",
        storage="1G",
        smp="2",
        lan_options="",
        wan_network="172.16.0.0/24",
        wan_options="hostfwd=tcp::30022-:22",
        password="pass1234",
        hostname="OpenWrtVM",
        config_timeout=10,
        config_no_defaults=False,
        extra_args=[],
        data_dir=tmp_path / "qemu",
        base_images_dir=tmp_path / "qemu-image",
        config_dir=config_dir,
        console_socket=tmp_path / "console.sock",
        monitor_socket=tmp_path / "monitor.sock",
    )


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set


# Environment variables read by parse_env().
_PARSE_ENV_VARS = [
    "IMAGE",
    "IMAGE_URL",
    "IMAGE_SHA256",
    "QEMU_MEMORY",
    "QEMU_STORAGE",
    "QEMU_SMP",
    "QEMU_LAN_OPTIONS",
    "QEMU_WAN_NETWORK",
    "QEMU_WAN_OPTIONS",
    "QEMU_PASSWORD",
    "QEMU_HOSTNAME",
    "QEMU_CONFIG_TIMEOUT",
    "QEMU_CONFIG_NO_DEFAULTS",
    "QEMU_ARGS",
]


@pytest.fixture
def clean_env(monkeypatch):
    """Clear all environment variables that parse_env() reads."""
    for key in _PARSE_ENV_VARS:
        monkeypatch.delenv(key, raising=False)


def _extract(archive: bytes, target: Path) -> None:
    with tarfile.open(fileobj=io.BytesIO(archive), mode="r:gz") as tar:
        if hasattr(tarfile, "data_filter"):
            tar.extractall(target, filter="data")
        else:  # pragma: no cover - Python < 3.12
            tar.extractall(target)


class FakeConsoleVM(threading.Thread):
    """Plays the guest side of the serial console on one end of a socketpair.

    Sends boot noise and the prompt, swallows the transfer up to ``poweroff``,
    unpacks the payload, swaps every unit for a stub that records its name,
    runs the real manifest runner with ``sh`` and reports like the guest would.
    """

    def __init__(
        self,
        sock: socket.socket,
        workdir: Path,
        boot_lines: Optional[List[str]] = None,
        send_prompt: bool = True,
        failing_units: Optional[Dict[str, int]] = None,
        report: bool = True,
    ) -> None:
        super().__init__(daemon=True)
        self.sock = sock
        self.workdir = workdir
        self.boot_lines = boot_lines if boot_lines is not None else ["[    0.000000] Linux version 5.4"]
        self.send_prompt = send_prompt
        self.failing_units = failing_units or {}
        self.report = report
        self.received = ""
        self.executed: List[str] = []
        self.runner_output = ""

    def _send(self, text: str) -> None:
        self.sock.sendall(text.replace("\n", "\r\n").encode("utf-8"))

    def run(self) -> None:
        try:
            for line in self.boot_lines:
                self._send(line + "\n")
            if not self.send_prompt:
                return
            self._send("\n" + BOOT_PROMPT + "\n")
            while "\npoweroff\n" not in self.received:
                data = self.sock.recv(65536)
                if not data:
                    return
                self.received += data.decode("utf-8")
            if self.report:
                self._execute()
        except OSError:
            return

    def payload(self) -> bytes:
        lines = self.received.split("\n")
        for idx, line in enumerate(lines):
            if line.startswith("lua "):
                return base64.b64decode(lines[idx + 1])
        raise AssertionError("decoder command not found in transfer")

    def _execute(self) -> None:
        root = self.workdir / "vmconfig"
        root.mkdir(parents=True)
        _extract(self.payload(), root)
        log_file = self.workdir / "executed.log"
        for unit_dir in (root / VM_SUBSET, root / DEFAULTS_DIR_NAME / VM_SUBSET):
            if not unit_dir.is_dir():
                continue
            for unit in unit_dir.iterdir():
                code = self.failing_units.get(unit.name, 0)
                unit.write_text(f'#!/bin/sh\necho "{unit.name}" >> "{log_file}"\nexit {code}\n')
                unit.chmod(0o755)
        proc = subprocess.run(
            ["sh", str(root / MANIFEST_RUNNER_NAME)],
            capture_output=True,
            text=True,
            check=False,
        )
        self.runner_output = proc.stdout
        if log_file.exists():
            self.executed = log_file.read_text().split()
        result = "successful" if proc.returncode == 0 else "failed"
        self._send(proc.stdout)
        self._send(f"\n{RESULT_MARKER_PREFIX} {result}.\n")
        # The guest keeps chatting after the marker.
        self._send(f"{RESULT_MARKER_PREFIX} failed.\n")


@pytest.fixture
def console_pair():
    """A connected (host, guest) socket pair, closed after the test."""
    host, guest = socket.socketpair()
    yield host, guest
    host.close()
    guest.close()


@pytest.fixture
def fake_console_vm():
    """The FakeConsoleVM class, for tests that drive a full protocol run."""
    return FakeConsoleVM

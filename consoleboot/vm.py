"""VM lifecycle management for consoleboot."""

from __future__ import annotations

import os
import signal
import subprocess
import time
import zlib
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlparse

from consoleboot.constants import QEMU_BINARY, SPICE_SECRET_FILE, VM_STOP_GRACE_SECONDS
from consoleboot.exceptions import ManagerError
from consoleboot.models import VMConfig
from consoleboot.utils import (
    download_file,
    ensure_directory,
    kvm_available,
    log,
    run,
    sha256_file,
)

_GZIP_MAGIC = b"\x1f\x8b"
_QCOW2_MAGIC = b"QFI\xfb"


def decompress_first_member(source: Path, destination: Path) -> None:
    """Inflate the first gzip member of *source*; trailing data is ignored.

    OpenWrt images carry metadata after the compressed stream, which makes
    gunzip report an error even though the disk image is complete.
    """
    inflater = zlib.decompressobj(16 + zlib.MAX_WBITS)
    with open(source, "rb") as src, open(destination, "wb") as dst:
        while not inflater.eof:
            chunk = src.read(1024 * 1024)
            if not chunk:
                break
            dst.write(inflater.decompress(chunk))
        dst.write(inflater.flush())
    if not inflater.eof:
        raise ManagerError(f"Truncated gzip image: {source}")
    if inflater.unused_data:
        log("DEBUG", f"Ignored trailing data after gzip stream in {source.name}")


class VMManager:
    def __init__(self, vm_config: VMConfig) -> None:
        self.cfg = vm_config
        self.process: Optional[subprocess.Popen] = None
        image_file = Path(urlparse(self.cfg.image_url).path).name or f"{self.cfg.image}.img"
        self.base_image = self.cfg.base_images_dir / image_file
        self.work_image = self.cfg.work_image
        self.secret_file = SPICE_SECRET_FILE

    def prepare(self) -> None:
        if not kvm_available():
            log("WARN", "/dev/kvm not available; add QEMU_ARGS=-enable-kvm and --device /dev/kvm for speed")
        ensure_directory(self.cfg.data_dir)
        if self.work_image.exists():
            log("INFO", f"Reusing disk {self.work_image}")
        else:
            self._ensure_base_image()
            self._create_work_image()
        if self.cfg.storage:
            log("INFO", f"Resizing disk to {self.cfg.storage}")
            try:
                run(["qemu-img", "resize", str(self.work_image), self.cfg.storage])
            except subprocess.CalledProcessError as exc:
                raise ManagerError(f"Failed to resize {self.work_image} to {self.cfg.storage}") from exc

    def _ensure_base_image(self) -> None:
        if self.base_image.exists() and self._checksum_ok(self.base_image):
            log("INFO", f"Using cached image: {self.base_image}")
            return
        ensure_directory(self.base_image.parent)
        download_file(self.cfg.image_url, self.base_image, label=f"Downloading {self.cfg.image_name}")
        if not self._checksum_ok(self.base_image):
            self.base_image.unlink(missing_ok=True)
            raise ManagerError(f"SHA-256 mismatch for {self.cfg.image_url}")

    def _checksum_ok(self, path: Path) -> bool:
        expected = self.cfg.image_sha256
        if not expected:
            log("WARN", f"No SHA-256 configured for {self.cfg.image}; skipping verification")
            return True
        actual = sha256_file(path)
        if actual != expected.lower():
            log("WARN", f"Checksum mismatch for {path.name}: expected {expected}, got {actual}")
            return False
        return True

    def _create_work_image(self) -> None:
        with open(self.base_image, "rb") as f:
            magic = f.read(4)
        raw_image = self.work_image.with_suffix(".raw")
        source, source_format = self.base_image, "raw"
        if magic.startswith(_GZIP_MAGIC):
            log("INFO", f"Decompressing {self.base_image.name}")
            decompress_first_member(self.base_image, raw_image)
            source = raw_image
        elif magic == _QCOW2_MAGIC:
            source_format = "qcow2"
        log("INFO", f"Creating working disk {self.work_image}")
        try:
            run(["qemu-img", "convert", "-f", source_format, "-O", "qcow2", str(source), str(self.work_image)])
        except subprocess.CalledProcessError as exc:
            self.work_image.unlink(missing_ok=True)
            raise ManagerError(f"qemu-img convert failed for {source}") from exc
        finally:
            raw_image.unlink(missing_ok=True)
        self.work_image.chmod(self.work_image.stat().st_mode | 0o060)

    def _write_secret(self) -> None:
        fd = os.open(self.secret_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write(self.cfg.password)

    def build_command(self) -> List[str]:
        cfg = self.cfg
        lan = ",".join(
            part
            for part in (
                "user,model=virtio,restrict=on,ipv6=off,net=192.168.1.0/24,host=192.168.1.2",
                cfg.lan_options,
            )
            if part
        )
        wan = ",".join(part for part in (f"user,model=virtio,net={cfg.wan_network}", cfg.wan_options) if part)
        console = (
            f"socket,id=chr0,path={cfg.console_socket},mux=on,logfile=/dev/stdout,"
            "signal=off,server=on,wait=off"
        )
        cmd = [
            QEMU_BINARY,
            "-nodefaults",
            "-smp", cfg.smp,
            "-m", cfg.memory,
            "-drive", f"file={self.work_image},if=virtio",
            "-chardev", console,
            "-serial", "chardev:chr0",
            "-monitor", f"unix:{cfg.monitor_socket},server,nowait",
            "-nic", lan,
            "-nic", wan,
            "-object", f"secret,id=secvnc0,format=raw,file={self.secret_file}",
            "-display", "none",
            "-device", "virtio-vga",
            "-spice", "port=5900,password-secret=secvnc0",
            "-device", "intel-hda",
            "-device", "hda-duplex",
            "-device", "ich9-usb-ehci1,id=usb",
            "-device", "ich9-usb-uhci1,masterbus=usb.0,firstport=0,multifunction=on",
            "-device", "ich9-usb-uhci2,masterbus=usb.0,firstport=2",
        ]
        for idx in (1, 2):
            cmd += [
                "-chardev", f"spicevmc,name=usbredir,id=usbredirchardev{idx}",
                "-device", f"usb-redir,chardev=usbredirchardev{idx},id=usbredirdev{idx}",
            ]
        cmd.extend(cfg.extra_args)
        return cmd

    def start(self) -> None:
        if self.is_running():
            raise ManagerError("QEMU is already running")
        self._write_secret()
        self.cfg.console_socket.unlink(missing_ok=True)
        cmd = self.build_command()
        log("DEBUG", f"Running: {' '.join(cmd)}")
        try:
            # Own session: Ctrl+C reaches only the supervisor, which decides.
            self.process = subprocess.Popen(cmd, stdin=subprocess.DEVNULL, start_new_session=True)
        except OSError as exc:
            raise ManagerError(f"Failed to start QEMU: {exc}") from exc
        log("SUCCESS", f"QEMU started (PID {self.process.pid})")

    def is_running(self) -> bool:
        return self.process is not None and self.process.poll() is None

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """Return the QEMU exit status, or None if still running after *timeout*."""
        if self.process is None:
            return None
        try:
            return self.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None

    def terminate(self) -> None:
        if not self.is_running():
            return
        assert self.process is not None
        log("INFO", f"Stopping QEMU (PID {self.process.pid})")
        self.process.terminate()
        try:
            self.process.wait(timeout=VM_STOP_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            log("WARN", "QEMU ignored SIGTERM; killing it")
            self.process.kill()
            self.process.wait()

    def wait_until_stopped(self) -> int:
        if self.process is None:
            raise ManagerError("QEMU not started")

        _first_sigint_time: Optional[float] = None
        _DOUBLE_PRESS_WINDOW = 3.0  # seconds

        def _request_shutdown(signum, frame):
            nonlocal _first_sigint_time
            # SIGTERM always shuts down immediately (Docker stop, orchestrators)
            if signum == signal.SIGTERM:
                log("INFO", "SIGTERM received, shutting down VM")
                if self.is_running():
                    self.process.terminate()  # type: ignore[union-attr]
                return
            now = time.time()
            if _first_sigint_time is not None and (now - _first_sigint_time) < _DOUBLE_PRESS_WINDOW:
                log("INFO", "Second Ctrl+C received, shutting down VM")
                if self.is_running():
                    self.process.terminate()  # type: ignore[union-attr]
            else:
                _first_sigint_time = now
                log("WARN", "Press Ctrl+C again within 3s to shutdown the VM")

        prev_sigterm = signal.signal(signal.SIGTERM, _request_shutdown)
        prev_sigint = signal.signal(signal.SIGINT, _request_shutdown)
        try:
            log("INFO", "Waiting for QEMU to exit")
            retcode = self.process.wait()
        finally:
            signal.signal(signal.SIGTERM, prev_sigterm)
            signal.signal(signal.SIGINT, prev_sigint)
        if retcode == 0:
            log("INFO", "VM stopped")
        else:
            log("WARN", f"QEMU exited with status {retcode}")
        return retcode

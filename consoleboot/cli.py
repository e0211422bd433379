"""CLI entry points for consoleboot."""

from __future__ import annotations

import argparse
import dataclasses
import signal
import sys
from pathlib import Path
from typing import List, Optional
from urllib.error import URLError
from urllib.request import urlopen

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from consoleboot.config import parse_env
from consoleboot.constants import _SENSITIVE_FIELDS, DEFAULT_CONFIG_PATH, HEALTHCHECK_URL
from consoleboot.exceptions import ManagerError, ProtocolError, RemoteScriptFailure
from consoleboot.gate import CompletionMarker
from consoleboot.models import VMConfig
from consoleboot.protocol import ConfigProtocol, ProtocolOutcome
from consoleboot.runtime import detect_runtime, ensure_container_user
from consoleboot.utils import kvm_available, log
from consoleboot.vm import VMManager


def list_images(config_path: Optional[Path] = None) -> None:
    """Print the image catalog."""
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
    if not config_path.exists():
        log("ERROR", f"Image catalog missing: {config_path}")
        return
    data = yaml.safe_load(config_path.read_text()) or {}
    images = data.get("images", {})
    if not images:
        log("WARN", "No images found")
        return
    max_key = max(len(k) for k in images)
    for key in sorted(images):
        info = images[key]
        name = info.get("name", key)
        verified = "sha256" if info.get("sha256") else "unverified"
        print(f"  {key:<{max_key}}  {name}  ({verified})")


def show_config(cfg: VMConfig) -> None:
    """Print the resolved VM configuration."""
    for field in dataclasses.fields(cfg):
        value = getattr(cfg, field.name)
        if field.name in _SENSITIVE_FIELDS:
            print(f"  {field.name}: ********")
        else:
            print(f"  {field.name}: {value}")


def healthcheck(cfg: VMConfig, url: str = HEALTHCHECK_URL, timeout: float = 5.0) -> int:
    """Return 0 when the VM is configured, its console is up and the web UI answers."""
    if not cfg.console_socket.exists():
        log("ERROR", f"Console socket missing: {cfg.console_socket}")
        return 1
    if not CompletionMarker(cfg.marker_path).is_initialized():
        log("ERROR", "VM configuration has not completed")
        return 1
    try:
        with urlopen(url, timeout=timeout) as response:
            status = response.status
    except (URLError, OSError) as exc:
        log("ERROR", f"Health check request to {url} failed: {exc}")
        return 1
    if status >= 400:
        log("ERROR", f"Health check request to {url} returned HTTP {status}")
        return 1
    return 0


def report_failure(exc: ProtocolError) -> None:
    log("ERROR", f"{exc.summary}: {exc}")
    if isinstance(exc, RemoteScriptFailure):
        for line in exc.progress:
            log("ERROR", f"  {line}")
        if exc.progress:
            log("ERROR", f"Last unit started: {exc.progress[-1]}")


def run_config_protocol(cfg: VMConfig, vm_mgr: VMManager) -> ProtocolOutcome:
    """Run the bootstrap with SIGTERM/SIGINT cancelling the shared deadline."""
    protocol = ConfigProtocol(cfg, vm_mgr)

    def _cancel(signum, frame):
        log("WARN", f"{signal.Signals(signum).name} received, aborting VM configuration")
        protocol.cancel()

    prev_sigterm = signal.signal(signal.SIGTERM, _cancel)
    prev_sigint = signal.signal(signal.SIGINT, _cancel)
    try:
        return protocol.run()
    finally:
        signal.signal(signal.SIGTERM, prev_sigterm)
        signal.signal(signal.SIGINT, prev_sigint)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Boot an OpenWrt VM and configure it over its serial console")
    parser.add_argument("--list-images", action="store_true", help="List the image catalog and exit")
    parser.add_argument("--show-config", action="store_true", help="Show resolved VM configuration and exit")
    parser.add_argument("--dry-run", action="store_true", help="Validate config and environment, then exit")
    parser.add_argument("--healthcheck", action="store_true", help="Exit 0 if the configured VM is healthy")
    parser.add_argument(
        "--skip-config",
        action="store_true",
        help="Start the VM without sending configuration (marker untouched)",
    )
    args = parser.parse_args(argv)

    if args.list_images:
        list_images()
        return 0

    try:
        cfg = parse_env()
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1

    if args.show_config:
        show_config(cfg)
        return 0

    if args.healthcheck:
        return healthcheck(cfg)

    if args.dry_run:
        log("INFO", "=== Configuration ===")
        show_config(cfg)
        log("INFO", "=== Environment Checks ===")
        if kvm_available():
            log("SUCCESS", "KVM:          available (/dev/kvm)")
        else:
            log("WARN", "KVM:          NOT available (TCG emulation)")
        if cfg.config_dir.is_dir():
            log("SUCCESS", f"Config dir:   {cfg.config_dir}")
        else:
            log("ERROR", f"Config dir:   {cfg.config_dir} (NOT FOUND)")
        state = CompletionMarker(cfg.marker_path).state()
        log("INFO", f"Init state:   {state.value} ({cfg.marker_path})")
        log("INFO", "=== Dry-run complete (no VM started) ===")
        return 0

    runtime = detect_runtime()
    log("INFO", f"Container runtime: {runtime.engine} (UID {runtime.uid})")
    ensure_container_user(runtime)
    log("INFO", f"Image: {cfg.image_name} | Memory: {cfg.memory} | CPUs: {cfg.smp} | Disk: {cfg.storage or 'as-is'}")

    vm_mgr = VMManager(cfg)
    try:
        vm_mgr.prepare()
        if args.skip_config:
            log("INFO", "Skipping VM configuration (--skip-config)")
        else:
            outcome = run_config_protocol(cfg, vm_mgr)
            if outcome is ProtocolOutcome.CONFIGURED:
                log("SUCCESS", "VM configuration complete")
        vm_mgr.start()
        return vm_mgr.wait_until_stopped()
    except ProtocolError as exc:
        report_failure(exc)
        return 1
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
    finally:
        vm_mgr.terminate()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())

"""Payload packaging: stage, merge, archive and render console commands."""

from __future__ import annotations

import io
import os
import shutil
import subprocess
import tarfile
from pathlib import Path
from typing import List, Optional

from consoleboot.constants import (
    CONTAINER_SUBSET,
    DEFAULTS_DIR_NAME,
    MANIFEST_RUNNER_NAME,
    PROGRESS_PREFIX,
    REMOTE_ARCHIVE_PATH,
    REMOTE_DECODER_PATH,
    REMOTE_EXTRACT_DIR,
    REMOTE_SETTLE_SECONDS,
    RESULT_FAILURE_TOKEN,
    RESULT_MARKER_PREFIX,
    RESULT_SUCCESS_TOKEN,
    STAGING_DIR,
    VM_SUBSET,
)
from consoleboot.channel import Deadline
from consoleboot.defaults import install_vm_defaults
from consoleboot.exceptions import PreconditionError
from consoleboot.models import ConfigBundle, ScriptManifest, VMConfig
from consoleboot.script import RemoteCapability, ShellScript, quote
from consoleboot.utils import ensure_directory, log, run


def _unit_names(directory: Path) -> List[str]:
    if not directory.is_dir():
        return []
    return sorted(entry.name for entry in directory.iterdir() if entry.is_file())


def _make_executable(directory: Path) -> None:
    for name in _unit_names(directory):
        path = directory / name
        path.chmod(path.stat().st_mode | 0o111)


def render_manifest_runner(manifest: ScriptManifest) -> ShellScript:
    """Remote runner: execute units in manifest order, stop at the first failure.

    Each unit resolves to the override copy when present, else the default.
    """
    script = ShellScript(errexit=False)
    script.raw(
        f"""
        cd "$(dirname "$0")" || exit 1
        run_unit() {{
            if [ -e "{manifest.subset}/$1" ]; then
                unit="{manifest.subset}/$1"
            else
                unit="{DEFAULTS_DIR_NAME}/{manifest.subset}/$1"
            fi
            echo "{PROGRESS_PREFIX}./$unit"
            "./$unit"
        }}
        """
    )
    for name in manifest.names:
        script.raw(f"run_unit {quote(name, label='unit name')} || exit 1")
    return script


def render_executor(
    archive_path: str = REMOTE_ARCHIVE_PATH,
    extract_dir: str = REMOTE_EXTRACT_DIR,
    settle_seconds: int = REMOTE_SETTLE_SECONDS,
) -> ShellScript:
    """Console lines that unpack the bundle, run it, report and power off.

    The marker is assembled by printf so the echoed command line never
    starts with the marker prefix itself.
    """
    subject, _, predicate = RESULT_MARKER_PREFIX.partition(" ")
    runner = f"{extract_dir}/{MANIFEST_RUNNER_NAME}"
    script = ShellScript(shebang=False, errexit=False)
    script.blank()
    script.raw(
        f"rm -rf {quote(extract_dir)} && mkdir -p {quote(extract_dir)}"
        f" && tar -zxvf {quote(archive_path)} -C {quote(extract_dir)}"
        f" && sleep {int(settle_seconds)}"
        f" && sh {quote(runner)}"
        f" && result={RESULT_SUCCESS_TOKEN} || result={RESULT_FAILURE_TOKEN}"
    )
    script.raw(f"""printf '\\n%s %s %s.\\n' {quote(subject)} {quote(predicate)} "$result\"""")
    script.raw("poweroff")
    return script


class Packager:
    """Turn the configuration directory into a :class:`ConfigBundle`."""

    def __init__(
        self,
        cfg: VMConfig,
        source_dir: Optional[Path] = None,
        staging_dir: Optional[Path] = None,
        capability: Optional[RemoteCapability] = None,
    ) -> None:
        self.cfg = cfg
        self.source_dir = source_dir or cfg.config_dir
        self.staging_dir = staging_dir or STAGING_DIR
        self.capability = capability or RemoteCapability()

    def package(self, deadline: Optional[Deadline] = None) -> ConfigBundle:
        """Build the bundle; container units must finish before *deadline*."""
        self._check_source()
        self._stage()
        container_manifest = ScriptManifest.merge(
            CONTAINER_SUBSET, [], _unit_names(self.staging_dir / CONTAINER_SUBSET)
        )
        self._run_container_units(container_manifest, deadline)

        overrides_dir = self.staging_dir / VM_SUBSET
        defaults_dir = self.staging_dir / DEFAULTS_DIR_NAME / VM_SUBSET
        _make_executable(overrides_dir)
        _make_executable(defaults_dir)
        vm_manifest = ScriptManifest.merge(VM_SUBSET, _unit_names(defaults_dir), _unit_names(overrides_dir))
        runner = self.staging_dir / MANIFEST_RUNNER_NAME
        runner.write_text(render_manifest_runner(vm_manifest).render())
        runner.chmod(0o755)

        for unit in vm_manifest.units:
            log("INFO", f"VM unit {unit.name} ({unit.source})")
        archive = self._archive()
        log("INFO", f"Packaged {len(vm_manifest)} VM unit(s) into {len(archive)} bytes")
        return ConfigBundle(
            root=self.staging_dir,
            archive=archive,
            container_manifest=container_manifest,
            vm_manifest=vm_manifest,
            decoder=self.capability.render_decoder(REMOTE_DECODER_PATH, REMOTE_ARCHIVE_PATH).render(),
            executor=render_executor().render(),
        )

    def _check_source(self) -> None:
        source = self.source_dir
        if not source.is_dir():
            raise PreconditionError(f"Configuration directory not found: {source}")
        if not os.access(source, os.R_OK | os.X_OK):
            raise PreconditionError(f"Configuration directory is not readable: {source}")

    def _stage(self) -> None:
        log("INFO", f"Discovered vmconfig in {self.source_dir}")
        if self.staging_dir.exists():
            shutil.rmtree(self.staging_dir)
        try:
            shutil.copytree(self.source_dir, self.staging_dir, symlinks=True)
        except (OSError, shutil.Error) as exc:
            raise PreconditionError(f"Failed to copy {self.source_dir}: {exc}") from exc
        ensure_directory(self.staging_dir / CONTAINER_SUBSET)
        ensure_directory(self.staging_dir / VM_SUBSET)
        defaults_dir = self.staging_dir / DEFAULTS_DIR_NAME / VM_SUBSET
        if defaults_dir.exists():
            shutil.rmtree(defaults_dir)
        if self.cfg.config_no_defaults:
            log("INFO", "Built-in configuration units disabled (QEMU_CONFIG_NO_DEFAULTS)")
        else:
            install_vm_defaults(defaults_dir, self.cfg)

    def _run_container_units(self, manifest: ScriptManifest, deadline: Optional[Deadline] = None) -> None:
        unit_dir = self.staging_dir / CONTAINER_SUBSET
        _make_executable(unit_dir)
        for name in manifest.names:
            timeout = None
            if deadline is not None:
                if deadline.expired():
                    raise PreconditionError(f"Deadline reached before {CONTAINER_SUBSET}/{name} could run")
                timeout = deadline.remaining()
            log("INFO", f"Executing ./{CONTAINER_SUBSET}/{name}")
            try:
                run([str(unit_dir / name)], cwd=self.staging_dir, timeout=timeout)
            except subprocess.TimeoutExpired as exc:
                raise PreconditionError(
                    f"Container unit {CONTAINER_SUBSET}/{name} did not finish within the configuration deadline"
                ) from exc
            except subprocess.CalledProcessError as exc:
                raise PreconditionError(
                    f"Container unit {CONTAINER_SUBSET}/{name} failed with exit code {exc.returncode}"
                ) from exc
            except OSError as exc:
                raise PreconditionError(f"Cannot execute {CONTAINER_SUBSET}/{name}: {exc}") from exc

    def _archive(self) -> bytes:
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
            for entry in sorted(self.staging_dir.iterdir()):
                tar.add(entry, arcname=f"./{entry.name}")
        return buffer.getvalue()

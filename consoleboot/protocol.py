"""Config-over-console bootstrap: boot sync, transfer, result, run-once gate."""

from __future__ import annotations

import enum
from pathlib import Path
from typing import Callable, List, Optional

from consoleboot.channel import ConsoleChannel, Deadline, Tee
from consoleboot.constants import BOOT_PROMPT, CONSOLE_POLL_INTERVAL, PROGRESS_PREFIX, RESULT_MARKER_PREFIX
from consoleboot.exceptions import BootTimeout, RemoteScriptFailure, TransferTimeout
from consoleboot.gate import CompletionMarker
from consoleboot.models import ConfigBundle, ExecutionResult, VMConfig
from consoleboot.packager import Packager
from consoleboot.utils import log


class BootSynchronizer:
    """Wait for the console to offer an interactive prompt."""

    def __init__(self, channel: ConsoleChannel, prompt: str = BOOT_PROMPT) -> None:
        self.channel = channel
        self.prompt = prompt

    def matches(self, line: str) -> bool:
        # The prompt has to start the line; kernel or procd messages that
        # merely quote it do not count, printk text appended to it does.
        return line.strip().startswith(self.prompt)

    def wait(self, deadline: Deadline) -> None:
        log("INFO", "Waiting for the VM console prompt")
        while True:
            line = self.channel.read_line(deadline)
            if line is None:
                raise BootTimeout(f"Prompt {self.prompt!r} not seen within {deadline.timeout:g}s")
            if self.matches(line):
                log("INFO", "VM console is ready")
                return


class TransportWriter:
    def __init__(self, channel: ConsoleChannel) -> None:
        self.channel = channel

    def send(self, bundle: ConfigBundle, deadline: Deadline) -> None:
        stream = "".join(bundle.segments())
        log("INFO", f"Sending configuration to the VM ({len(stream)} characters)")
        self.channel.write(stream, deadline)


class ResultListener:
    """Pick the first terminating marker line out of the console chatter."""

    def __init__(self, channel: ConsoleChannel, prefix: str = RESULT_MARKER_PREFIX) -> None:
        self.channel = channel
        self.prefix = prefix
        self.progress: List[str] = []
        self._result: Optional[ExecutionResult] = None

    def await_result(self, deadline: Deadline) -> ExecutionResult:
        if self._result is not None:
            return self._result
        while True:
            line = self.channel.read_line(deadline)
            if line is None:
                raise TransferTimeout(f"No {self.prefix!r} line within {deadline.timeout:g}s")
            if line.startswith(PROGRESS_PREFIX):
                self.progress.append(line)
                log("INFO", f"VM: {line}")
            elif line.startswith(self.prefix):
                self._result = ExecutionResult.from_marker(line, self.progress)
                return self._result


class ProtocolOutcome(enum.Enum):
    CONFIGURED = "configured"
    SKIPPED = "skipped"


ChannelFactory = Callable[[Path, Deadline], ConsoleChannel]


class ConfigProtocol:
    """Run the one-shot configuration of a fresh VM.

    ``vm`` needs ``start()``, ``is_running()``, ``wait(timeout)`` and
    ``terminate()``; the VM is always stopped when this returns or raises.
    """

    def __init__(
        self,
        cfg: VMConfig,
        vm,
        gate: Optional[CompletionMarker] = None,
        packager: Optional[Packager] = None,
        channel_factory: Optional[ChannelFactory] = None,
        tee: Optional[Tee] = None,
    ) -> None:
        self.cfg = cfg
        self.vm = vm
        self.gate = gate or CompletionMarker(cfg.marker_path)
        self.packager = packager or Packager(cfg)
        self.channel_factory = channel_factory or (
            lambda path, deadline: ConsoleChannel.connect(path, deadline, tee=tee, alive=self.vm.is_running)
        )
        self.deadline: Optional[Deadline] = None

    def cancel(self) -> None:
        if self.deadline is not None:
            self.deadline.cancel()

    def _await_poweroff(self, deadline: Deadline) -> bool:
        """Wait for the guest to exit; give up early when the run is cancelled."""
        budget = Deadline(max(deadline.remaining(), 1.0))
        while not deadline.cancelled:
            remaining = budget.remaining()
            if remaining <= 0:
                return False
            if self.vm.wait(timeout=min(remaining, CONSOLE_POLL_INTERVAL)) is not None:
                return True
        return False

    def run(self) -> ProtocolOutcome:
        if self.gate.is_initialized():
            log("INFO", f"VM already initialized ({self.gate.path}); skipping configuration")
            return ProtocolOutcome.SKIPPED

        self.deadline = deadline = Deadline(self.cfg.config_timeout)
        bundle = self.packager.package(deadline)
        if deadline.expired():
            raise BootTimeout("Deadline reached before the VM was started")
        try:
            self.vm.start()
            with self.channel_factory(self.cfg.console_socket, deadline) as channel:
                BootSynchronizer(channel).wait(deadline)
                TransportWriter(channel).send(bundle, deadline)
                result = ResultListener(channel).await_result(deadline)
            if not result.success:
                raise RemoteScriptFailure(result.marker_line, result.progress)
            log("SUCCESS", result.marker_line)
            if not self._await_poweroff(deadline):
                log("WARN", "VM did not power off after configuration; stopping it")
        finally:
            self.vm.terminate()

        self.gate.mark_initialized()
        return ProtocolOutcome.CONFIGURED

"""Tests for consoleboot.protocol: boot sync, transfer, result and run-once gate."""

from __future__ import annotations

import time
from unittest.mock import MagicMock

import pytest

from consoleboot.channel import ConsoleChannel, Deadline
from consoleboot.constants import BOOT_PROMPT
from consoleboot.exceptions import (
    BootTimeout,
    ChannelError,
    PreconditionError,
    RemoteScriptFailure,
    TransferTimeout,
)
from consoleboot.gate import CompletionMarker
from consoleboot.models import ConfigBundle, ScriptManifest
from consoleboot.packager import Packager
from consoleboot.protocol import (
    BootSynchronizer,
    ConfigProtocol,
    ProtocolOutcome,
    ResultListener,
    TransportWriter,
)

DEFAULT_UNITS = [
    "20-firewall.sh",
    "20-hostname.sh",
    "20-password.sh",
    "30-wait-for-network.sh",
    "40-resize-disk.sh",
]


def _fake_vm_process():
    vm = MagicMock()
    vm.wait.return_value = 0
    return vm


def _protocol(cfg, tmp_path, host_sock, vm=None, gate=None):
    return ConfigProtocol(
        cfg,
        vm or _fake_vm_process(),
        gate=gate or CompletionMarker(cfg.marker_path),
        packager=Packager(cfg, staging_dir=tmp_path / "staging"),
        channel_factory=lambda path, deadline: ConsoleChannel(host_sock),
    )


class TestBootSynchronizer:
    def test_waits_past_noise_for_the_real_prompt(self, console_pair):
        host, guest = console_pair
        guest.sendall(
            (
                "[    1.2] procd: - init -\r\n"
                f"[    3.4] console hint: {BOOT_PROMPT} (deferred)\r\n"
                f"\r\n{BOOT_PROMPT}\r\n"
                "after prompt\r\n"
            ).encode()
        )
        channel = ConsoleChannel(host)
        BootSynchronizer(channel).wait(Deadline(2))
        # Output before the match is consumed, output after it is not.
        assert channel.read_line(Deadline(1)) == "after prompt"

    def test_prompt_with_trailing_kernel_text(self, console_pair):
        host, guest = console_pair
        guest.sendall(f"{BOOT_PROMPT}[    5.1] random: crng init done\r\nafter prompt\r\n".encode())
        channel = ConsoleChannel(host)
        BootSynchronizer(channel).wait(Deadline(2))
        assert channel.read_line(Deadline(1)) == "after prompt"

    def test_prompt_inside_noise_only_times_out(self, console_pair):
        host, guest = console_pair
        guest.sendall(f"kernel: echo '{BOOT_PROMPT}' > /dev/console\r\n".encode())
        with pytest.raises(BootTimeout):
            BootSynchronizer(ConsoleChannel(host)).wait(Deadline(0.3))

    def test_closed_console_is_channel_error(self, console_pair):
        host, guest = console_pair
        guest.close()
        with pytest.raises(ChannelError):
            BootSynchronizer(ConsoleChannel(host)).wait(Deadline(2))


class TestResultListener:
    def test_first_marker_wins(self, console_pair):
        host, guest = console_pair
        guest.sendall(
            (
                "Executing ./defaults/vm.d/20-firewall.sh\r\n"
                "+ uci commit firewall\r\n"
                "VM configuration result: successful.\r\n"
                "VM configuration result: failed.\r\n"
            ).encode()
        )
        listener = ResultListener(ConsoleChannel(host))
        result = listener.await_result(Deadline(2))
        assert result.success is True
        assert result.progress == ["Executing ./defaults/vm.d/20-firewall.sh"]
        assert listener.await_result(Deadline(2)) is result

    def test_prefix_must_start_the_line(self, console_pair):
        host, guest = console_pair
        guest.sendall(
            (
                "root@OpenWrt:/# printf 'VM configuration result: failed.'\r\n"
                "VM configuration result: successful.\r\n"
            ).encode()
        )
        result = ResultListener(ConsoleChannel(host)).await_result(Deadline(2))
        assert result.success is True

    def test_malformed_marker_is_failure(self, console_pair):
        host, guest = console_pair
        guest.sendall(b"VM configuration result:\r\n")
        result = ResultListener(ConsoleChannel(host)).await_result(Deadline(2))
        assert result.success is False

    def test_no_marker_times_out(self, console_pair):
        host, guest = console_pair
        guest.sendall(b"Executing ./vm.d/10-slow.sh\r\n")
        with pytest.raises(TransferTimeout):
            ResultListener(ConsoleChannel(host)).await_result(Deadline(0.3))


class TestTransportWriter:
    def test_writes_segments_in_order(self, console_pair):
        host, guest = console_pair
        bundle = ConfigBundle(
            root=None,  # type: ignore[arg-type]
            archive=b"\x00\x01binary",
            container_manifest=ScriptManifest("container.d"),
            vm_manifest=ScriptManifest("vm.d"),
            decoder="\nDECODE\n",
            executor="\nEXECUTE\n",
        )
        TransportWriter(ConsoleChannel(host)).send(bundle, Deadline(2))
        guest.settimeout(2)
        received = b""
        while not received.endswith(b"EXECUTE\n"):
            received += guest.recv(4096)
        assert received.decode() == f"\nDECODE\n{bundle.payload}\n\nEXECUTE\n"


class TestConfigProtocol:
    def test_default_units_end_to_end(self, default_vm_config, tmp_path, console_pair, fake_console_vm):
        host, guest = console_pair
        fake = fake_console_vm(guest, tmp_path / "guest")
        fake.start()
        vm = _fake_vm_process()
        gate = CompletionMarker(default_vm_config.marker_path)

        outcome = _protocol(default_vm_config, tmp_path, host, vm=vm, gate=gate).run()
        fake.join(timeout=5)

        assert outcome is ProtocolOutcome.CONFIGURED
        assert fake.executed == DEFAULT_UNITS
        assert gate.is_initialized()
        vm.start.assert_called_once()
        vm.terminate.assert_called_once()

        # A second start never touches the console.
        second_vm = _fake_vm_process()
        packager = MagicMock()
        factory = MagicMock()
        second = ConfigProtocol(
            default_vm_config, second_vm, gate=gate, packager=packager, channel_factory=factory
        )
        assert second.run() is ProtocolOutcome.SKIPPED
        packager.package.assert_not_called()
        factory.assert_not_called()
        second_vm.start.assert_not_called()

    def test_failing_unit_stops_manifest(self, default_vm_config, tmp_path, console_pair, fake_console_vm):
        host, guest = console_pair
        override = default_vm_config.config_dir / "vm.d" / "25-custom.sh"
        override.write_text("#!/bin/sh\nexit 0\n")
        fake = fake_console_vm(guest, tmp_path / "guest", failing_units={"25-custom.sh": 3})
        fake.start()
        gate = CompletionMarker(default_vm_config.marker_path)

        with pytest.raises(RemoteScriptFailure) as exc:
            _protocol(default_vm_config, tmp_path, host, gate=gate).run()
        fake.join(timeout=5)

        assert fake.executed == DEFAULT_UNITS[:3] + ["25-custom.sh"]
        assert exc.value.progress[-1] == "Executing ./vm.d/25-custom.sh"
        assert not gate.is_initialized()

    def test_override_replaces_default_unit(self, default_vm_config, tmp_path, console_pair, fake_console_vm):
        host, guest = console_pair
        (default_vm_config.config_dir / "vm.d" / "20-firewall.sh").write_text("#!/bin/sh\n")
        fake = fake_console_vm(guest, tmp_path / "guest")
        fake.start()

        _protocol(default_vm_config, tmp_path, host).run()
        fake.join(timeout=5)

        assert "Executing ./vm.d/20-firewall.sh" in fake.runner_output
        assert "defaults/vm.d/20-firewall.sh" not in fake.runner_output

    def test_missing_marker_is_transfer_timeout(self, default_vm_config, tmp_path, console_pair, fake_console_vm):
        host, guest = console_pair
        default_vm_config.config_timeout = 2
        fake = fake_console_vm(guest, tmp_path / "guest", report=False)
        fake.start()
        vm = _fake_vm_process()
        gate = CompletionMarker(default_vm_config.marker_path)

        with pytest.raises(TransferTimeout):
            _protocol(default_vm_config, tmp_path, host, vm=vm, gate=gate).run()

        assert not gate.is_initialized()
        vm.terminate.assert_called_once()

    def test_missing_prompt_is_boot_timeout(self, default_vm_config, tmp_path, console_pair, fake_console_vm):
        host, guest = console_pair
        default_vm_config.config_timeout = 2
        fake = fake_console_vm(guest, tmp_path / "guest", send_prompt=False)
        fake.start()
        vm = _fake_vm_process()

        with pytest.raises(BootTimeout):
            _protocol(default_vm_config, tmp_path, host, vm=vm).run()
        vm.terminate.assert_called_once()
        assert not default_vm_config.marker_path.exists()

    def test_precondition_failure_precedes_vm_start(self, default_vm_config, tmp_path, console_pair):
        host, _ = console_pair
        default_vm_config.config_dir = tmp_path / "missing"
        vm = _fake_vm_process()
        factory = MagicMock()
        protocol = ConfigProtocol(
            default_vm_config,
            vm,
            packager=Packager(default_vm_config, staging_dir=tmp_path / "staging"),
            channel_factory=factory,
        )
        with pytest.raises(PreconditionError):
            protocol.run()
        vm.start.assert_not_called()
        factory.assert_not_called()

    def test_cancel_aborts_waiting(self, default_vm_config, tmp_path, console_pair):
        host, _ = console_pair
        default_vm_config.config_timeout = 30
        protocol = _protocol(default_vm_config, tmp_path, host)
        protocol.vm.start.side_effect = protocol.cancel

        with pytest.raises(BootTimeout):
            protocol.run()

    def test_slow_container_unit_never_starts_vm(self, default_vm_config, tmp_path, console_pair):
        host, _ = console_pair
        default_vm_config.config_timeout = 1
        unit = default_vm_config.config_dir / "container.d" / "10-slow.sh"
        unit.write_text("#!/bin/sh\nexec sleep 5\n")
        unit.chmod(0o755)
        vm = _fake_vm_process()
        gate = CompletionMarker(default_vm_config.marker_path)

        started = time.monotonic()
        with pytest.raises(PreconditionError, match="did not finish"):
            _protocol(default_vm_config, tmp_path, host, vm=vm, gate=gate).run()

        assert time.monotonic() - started < 4
        vm.start.assert_not_called()
        assert not gate.is_initialized()

    def test_vm_exit_before_console_fails_fast(self, default_vm_config, tmp_path):
        default_vm_config.config_timeout = 30
        default_vm_config.console_socket = tmp_path / "c.sock"
        vm = _fake_vm_process()
        vm.is_running.return_value = False
        gate = CompletionMarker(default_vm_config.marker_path)
        protocol = ConfigProtocol(
            default_vm_config,
            vm,
            gate=gate,
            packager=Packager(default_vm_config, staging_dir=tmp_path / "staging"),
        )

        started = time.monotonic()
        with pytest.raises(ChannelError, match="exited"):
            protocol.run()

        assert time.monotonic() - started < 10
        vm.start.assert_called_once()
        vm.terminate.assert_called_once()
        assert not gate.is_initialized()

    def test_cancel_stops_poweroff_wait(self, default_vm_config, tmp_path, console_pair, fake_console_vm):
        host, guest = console_pair
        default_vm_config.config_timeout = 30
        fake = fake_console_vm(guest, tmp_path / "guest")
        fake.start()
        vm = _fake_vm_process()
        gate = CompletionMarker(default_vm_config.marker_path)
        protocol = _protocol(default_vm_config, tmp_path, host, vm=vm, gate=gate)

        def _still_running(timeout=None):
            protocol.cancel()
            return None

        vm.wait.side_effect = _still_running

        started = time.monotonic()
        assert protocol.run() is ProtocolOutcome.CONFIGURED
        fake.join(timeout=5)

        assert time.monotonic() - started < 15
        vm.wait.assert_called_once()
        vm.terminate.assert_called_once()
        assert gate.is_initialized()

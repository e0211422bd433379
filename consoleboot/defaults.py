"""Built-in configuration units.

VM-side units are fixed text. Container-side defaults run before packaging
and render VM-side units from the resolved configuration (hostname and root
password); they are written next to the static defaults so that a user unit
with the same name still takes precedence.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Dict, List

from consoleboot.models import VMConfig
from consoleboot.script import ShellScript
from consoleboot.utils import hash_password


def _firewall() -> ShellScript:
    return ShellScript(xtrace=True).raw(
        """
        uci add firewall rule
        uci set firewall.@rule[-1].name="Allow-Admin"
        uci set firewall.@rule[-1].enabled="true"
        uci set firewall.@rule[-1].src="wan"
        uci set firewall.@rule[-1].proto="tcp"
        uci set firewall.@rule[-1].dest_port="22 80 443"
        uci set firewall.@rule[-1].target="ACCEPT"
        uci commit firewall
        """
    )


def _wait_for_network() -> ShellScript:
    return ShellScript(xtrace=True).raw(
        """
        ubus wait_for network.interface.wan
        sleep 3
        opkg update
        """
    )


def _resize_disk() -> ShellScript:
    return ShellScript(xtrace=True).raw(
        """
        opkg install partx-utils resize2fs sfdisk tune2fs
        echo "- +" | sfdisk --force -N 2 /dev/vda
        partx -u /dev/vda
        mount -o remount,ro /
        tune2fs -O^resize_inode /dev/vda2
        e2fsck -y -f /dev/vda2 || true
        mount -o remount,rw /
        resize2fs /dev/vda2
        """
    )


VM_DEFAULTS: Dict[str, Callable[[], ShellScript]] = {
    "20-firewall.sh": _firewall,
    "30-wait-for-network.sh": _wait_for_network,
    "40-resize-disk.sh": _resize_disk,
}


def render_hostname_unit(cfg: VMConfig) -> ShellScript:
    script = ShellScript()
    script.command("uci", "set", f"system.@system[0].hostname={cfg.hostname}")
    script.command("uci", "commit", "system")
    return script


def render_password_unit(cfg: VMConfig) -> ShellScript:
    # Only the hash crosses the console; musl's crypt() understands $2b$.
    script = ShellScript()
    script.assign("hash", hash_password(cfg.password))
    script.raw(
        """
        sed -i "s|^root:[^:]*:|root:${hash}:|" /etc/shadow
        """
    )
    return script


RENDERED_VM_DEFAULTS: Dict[str, Callable[[VMConfig], ShellScript]] = {
    "20-hostname.sh": render_hostname_unit,
    "20-password.sh": render_password_unit,
}


def write_unit(path: Path, script: ShellScript) -> None:
    path.write_text(script.render())
    path.chmod(0o755)


def install_vm_defaults(target: Path, cfg: VMConfig) -> List[str]:
    """Write every built-in VM-side unit into *target*; return their names."""
    target.mkdir(parents=True, exist_ok=True)
    for name, factory in VM_DEFAULTS.items():
        write_unit(target / name, factory())
    for name, renderer in RENDERED_VM_DEFAULTS.items():
        write_unit(target / name, renderer(cfg))
    return sorted([*VM_DEFAULTS, *RENDERED_VM_DEFAULTS])

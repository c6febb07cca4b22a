"""
Host-side collaborators: IP forwarding, the persistent rules file, the boot
time restore unit, package installation and the advisory operation lock.
"""

import contextlib
import fcntl
import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Iterator, List, Optional

from natmap.config import Settings
from natmap.errors import NatMapError
from natmap.shell import run_command

logger = logging.getLogger(__name__)

FORWARD_SETTING = 'net.ipv4.ip_forward=1'
SYSCTL_DROPIN = '99-natmap-ipforward.conf'

REQUIRED_COMMANDS = ('iptables', 'iptables-save', 'iptables-restore')

RESTORE_UNIT = """\
[Unit]
Description=Restore iptables rules
DefaultDependencies=no
Before=network-pre.target
Wants=network-pre.target

[Service]
Type=oneshot
ExecStart=/bin/sh -c '{restore} < {rules_file}'
RemainAfterExit=yes

[Install]
WantedBy=multi-user.target
"""

# package manager -> install commands, tried in order
INSTALL_COMMANDS = {
    'apt': [['apt-get', 'update', '-y'], ['apt-get', 'install', '-y', 'iptables']],
    'dnf': [['dnf', 'install', '-y', 'iptables', 'iptables-services']],
    'yum': [['yum', 'install', '-y', 'iptables', 'iptables-services']],
    'zypper': [['zypper', '--non-interactive', 'install', 'iptables']],
}
# retried without the services package if the first attempt fails
FALLBACK_INSTALL = {
    'dnf': [['dnf', 'install', '-y', 'iptables']],
    'yum': [['yum', 'install', '-y', 'iptables']],
}


def require_root():
    """Raise unless running as root."""
    if os.geteuid() != 0:
        raise NatMapError("natmap must run as root (try: sudo natmap)")


def detect_package_manager() -> Optional[str]:
    for name, binary in (('apt', 'apt-get'), ('dnf', 'dnf'), ('yum', 'yum'), ('zypper', 'zypper')):
        if shutil.which(binary):
            return name
    return None


class SystemHost:
    """Changes to the gateway outside the packet filter itself."""

    def __init__(self, settings: Settings, dry_run: bool = False):
        self.settings = settings
        self.dry_run = dry_run

    # ------------------------------------------------------------------
    # IP forwarding
    # ------------------------------------------------------------------

    def enable_ip_forwarding(self):
        """
        Turn on IPv4 forwarding now and across reboots.

        Raises:
            NatMapError: sysctl failed or the setting could not be written.
        """
        try:
            run_command(['sysctl', '-w', FORWARD_SETTING], dry_run=self.dry_run)
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            raise NatMapError(f"Could not enable IP forwarding: {e}") from e

        sysctl_dir = Path(self.settings.sysctl_dir)
        if self.dry_run:
            logger.info(f"[DRY RUN] Would persist {FORWARD_SETTING}")
            return

        try:
            if sysctl_dir.is_dir():
                (sysctl_dir / SYSCTL_DROPIN).write_text(FORWARD_SETTING + '\n')
                return

            sysctl_conf = Path(self.settings.sysctl_conf)
            current = sysctl_conf.read_text() if sysctl_conf.exists() else ''
            if FORWARD_SETTING not in current.splitlines():
                with open(sysctl_conf, 'a') as f:
                    if current and not current.endswith('\n'):
                        f.write('\n')
                    f.write(FORWARD_SETTING + '\n')
        except OSError as e:
            raise NatMapError(f"Could not persist {FORWARD_SETTING}: {e}") from e

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def write_rules_file(self, content: str):
        """Overwrite the rules file with a full rule set dump."""
        rules_file = Path(self.settings.rules_file)
        if self.dry_run:
            logger.info(f"[DRY RUN] Would write rules to {rules_file}")
            return
        logger.info(f"Persisting rules to {rules_file}")
        try:
            rules_file.parent.mkdir(parents=True, exist_ok=True)
            rules_file.write_text(content)
        except OSError as e:
            raise NatMapError(f"Could not write {rules_file}: {e}") from e

    def ensure_restore_service(self, restore_command: str) -> bool:
        """
        Register a systemd unit that replays the rules file at boot.

        Args:
            restore_command: e.g. ``iptables-restore``.

        Returns:
            True if the unit was created, False if it already existed or
            systemd is not available.
        """
        rules_file = self.settings.rules_file
        if not shutil.which('systemctl'):
            logger.warning(
                f"systemd not found; restore rules at boot manually with: "
                f"{restore_command} < {rules_file}"
            )
            return False

        unit = Path(self.settings.systemd_service)
        if unit.exists():
            logger.debug(f"Restore service already present: {unit}")
            return False

        restore = shutil.which(restore_command) or restore_command
        logger.info(f"Creating boot restore service {unit.name}")
        if self.dry_run:
            logger.info(f"[DRY RUN] Would write {unit}")
        else:
            unit.parent.mkdir(parents=True, exist_ok=True)
            unit.write_text(RESTORE_UNIT.format(restore=restore, rules_file=rules_file))

        run_command(['systemctl', 'daemon-reload'], dry_run=self.dry_run)
        run_command(['systemctl', 'enable', unit.name], dry_run=self.dry_run)
        return True

    # ------------------------------------------------------------------
    # Dependencies
    # ------------------------------------------------------------------

    def missing_commands(self) -> List[str]:
        return [c for c in REQUIRED_COMMANDS if shutil.which(c) is None]

    def install_dependencies(self):
        """Install iptables through the system package manager if needed."""
        missing = self.missing_commands()
        if not missing:
            logger.info(f"Dependencies present: {', '.join(REQUIRED_COMMANDS)}")
            return

        if not self.settings.auto_install_deps:
            raise NatMapError(
                f"Missing {', '.join(missing)} and AUTO_INSTALL_DEPS is off; install iptables manually"
            )

        manager = detect_package_manager()
        if manager is None:
            raise NatMapError("No supported package manager found; install iptables manually")

        logger.info(f"Installing iptables with {manager}")
        try:
            for cmd in INSTALL_COMMANDS[manager]:
                run_command(cmd, dry_run=self.dry_run)
        except subprocess.CalledProcessError:
            if manager not in FALLBACK_INSTALL:
                raise
            for cmd in FALLBACK_INSTALL[manager]:
                run_command(cmd, dry_run=self.dry_run)

        if not self.dry_run and self.missing_commands():
            raise NatMapError("iptables installation failed; check the package sources")

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @contextlib.contextmanager
    def operation_lock(self) -> Iterator[None]:
        """Hold an exclusive advisory lock on the lock file."""
        lock_path = Path(self.settings.lock_file)
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        with open(lock_path, 'a') as handle:
            logger.debug(f"Waiting for lock {lock_path}")
            fcntl.flock(handle, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle, fcntl.LOCK_UN)

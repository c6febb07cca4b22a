"""
Run-time configuration.

Settings come from, in increasing priority: built-in defaults, a YAML file,
environment variables, and command-line overrides. They are resolved once at
startup into a ``Settings`` value and carried, together with the selected
backend and port block size, in a ``NatContext``.
"""

import ipaddress
import logging
import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional, Tuple

import yaml

from natmap.errors import ValidationError

if TYPE_CHECKING:
    from natmap.backend import PacketFilter
    from natmap.system import SystemHost

logger = logging.getLogger(__name__)

MAX_PORT = 65535
MAX_PORTS_PER_HOST = 2000

# ASCII digits only; str.isdigit() also accepts superscripts and other scripts
DIGITS = re.compile(r'[0-9]+')

# field name -> environment variable
ENV_VARS = {
    'subnet_cidr': 'NATMAP_SUBNET',
    'min_host': 'NATMAP_MIN_HOST',
    'max_host': 'NATMAP_MAX_HOST',
    'base_ssh_port': 'NATMAP_BASE_SSH_PORT',
    'base_block_port': 'NATMAP_BASE_BLOCK_PORT',
    'ports_per_host': 'NATMAP_PORTS_PER_HOST',
    'auto_persist': 'AUTO_PERSIST',
    'rules_file': 'RULES_FILE',
    'systemd_service': 'SYSTEMD_SERVICE',
    'auto_install_deps': 'AUTO_INSTALL_DEPS',
    'sysctl_dir': 'NATMAP_SYSCTL_DIR',
    'sysctl_conf': 'NATMAP_SYSCTL_CONF',
    'lock_file': 'NATMAP_LOCK_FILE',
    'backends': 'NATMAP_BACKENDS',
}

CONFIG_ENV_VAR = 'NATMAP_CONFIG'

_TRUE = ('1', 'true', 'yes', 'on')
_FALSE = ('0', 'false', 'no', 'off', '')


def parse_bool(value: Any, name: str = 'value') -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValidationError(f"{name}: expected a boolean, got '{value}'")


def parse_int(value: Any, name: str = 'value') -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{name}: expected an integer, got '{value}'")
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not DIGITS.fullmatch(text):
        raise ValidationError(f"{name}: expected an integer, got '{value}'")
    return int(text)


def parse_list(value: Any) -> Tuple[str, ...]:
    if isinstance(value, str):
        items = value.split(',')
    else:
        items = [str(v) for v in value]
    return tuple(item.strip() for item in items if item.strip())


@dataclass(frozen=True)
class Settings:
    """All recognized options. Validated on construction."""
    subnet_cidr: str = '10.0.0.0/24'
    min_host: int = 100
    max_host: int = 250
    base_ssh_port: int = 30000
    base_block_port: int = 40000
    ports_per_host: int = 20
    auto_persist: bool = True
    rules_file: str = '/etc/iptables/rules.v4'
    systemd_service: str = '/etc/systemd/system/iptables-restore.service'
    auto_install_deps: bool = True
    sysctl_dir: str = '/etc/sysctl.d'
    sysctl_conf: str = '/etc/sysctl.conf'
    lock_file: str = '/run/natmap.lock'
    backends: Tuple[str, ...] = field(
        default=('iptables', 'iptables-legacy', 'iptables-nft')
    )

    def __post_init__(self):
        try:
            network = ipaddress.IPv4Network(self.subnet_cidr, strict=True)
        except ValueError as e:
            raise ValidationError(f"subnet_cidr: {e}") from e
        if network.prefixlen != 24:
            raise ValidationError(f"subnet_cidr must be a /24 network, got {self.subnet_cidr}")

        if not (1 <= self.min_host <= self.max_host <= 254):
            raise ValidationError(
                f"host range {self.min_host}-{self.max_host} must satisfy 1 <= min <= max <= 254"
            )
        for name in ('base_ssh_port', 'base_block_port'):
            if not (0 < getattr(self, name) <= MAX_PORT):
                raise ValidationError(f"{name} must be within 1-{MAX_PORT}")
        if self.base_ssh_port + self.max_host > MAX_PORT:
            raise ValidationError(
                f"base_ssh_port {self.base_ssh_port} + max_host {self.max_host} exceeds {MAX_PORT}"
            )
        if not (1 <= self.ports_per_host <= MAX_PORTS_PER_HOST):
            raise ValidationError(f"ports_per_host must be within 1-{MAX_PORTS_PER_HOST}")
        if not self.backends:
            raise ValidationError("backends must name at least one packet-filter command")

    @property
    def net_prefix(self) -> str:
        """Dotted prefix shared by every host address, e.g. ``"10.0.0."``."""
        network = ipaddress.IPv4Network(self.subnet_cidr)
        return str(network.network_address).rsplit('.', 1)[0] + '.'

    def host_address(self, host_id: int) -> str:
        return f"{self.net_prefix}{host_id}"

    def host_id_of(self, address: str) -> Optional[int]:
        """Host number of ``address`` if it lies on the subnet."""
        if not address.startswith(self.net_prefix):
            return None
        last = address[len(self.net_prefix):]
        return int(last) if DIGITS.fullmatch(last) else None


def _coerce(name: str, value: Any) -> Any:
    kind = Settings.__dataclass_fields__[name].type
    if name == 'backends':
        return parse_list(value)
    if kind in (bool, 'bool'):
        return parse_bool(value, name)
    if kind in (int, 'int'):
        return parse_int(value, name)
    return str(value)


def load_config_file(config_path: str) -> Dict[str, Any]:
    """
    Load settings from a YAML file.

    Unknown keys are ignored with a warning. An empty file yields no settings.
    """
    logger.info(f"Loading configuration from {config_path}")

    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_file, 'r') as f:
        config = yaml.safe_load(f)

    if not config:
        logger.warning("Config file is empty")
        return {}
    if not isinstance(config, dict):
        raise ValidationError("Config file must contain a mapping of option names to values")

    known = {f.name for f in fields(Settings)}
    values = {}
    for key, value in config.items():
        if key not in known:
            logger.warning(f"Ignoring unknown config option: {key}")
            continue
        values[key] = value
    return values


def load_settings(
    config_path: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None
) -> Settings:
    """
    Resolve settings from defaults, YAML file, environment and overrides.

    Args:
        config_path: YAML file; falls back to ``$NATMAP_CONFIG`` when None.
        env: Environment mapping (``os.environ`` by default).
        overrides: Command-line values; ``None`` entries are ignored.

    Returns:
        Validated Settings.
    """
    env = os.environ if env is None else env
    values: Dict[str, Any] = {}

    config_path = config_path or env.get(CONFIG_ENV_VAR)
    if config_path:
        values.update(load_config_file(config_path))

    for name, var in ENV_VARS.items():
        if var in env:
            values[name] = env[var]

    for name, value in (overrides or {}).items():
        if value is not None:
            values[name] = value

    return Settings(**{name: _coerce(name, value) for name, value in values.items()})


@dataclass
class NatContext:
    """Everything an operation needs, built once per run."""
    settings: Settings
    backend: 'PacketFilter'
    system: 'SystemHost'
    ports_per_host: int
    dry_run: bool = False

    @property
    def auto_persist(self) -> bool:
        return self.settings.auto_persist and not self.dry_run

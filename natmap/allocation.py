"""
Deterministic host -> port allocation.

Every host on the subnet owns one SSH port and one contiguous block of
service ports::

    ssh_port    = base_ssh_port + host_id
    block_start = base_block_port + (host_id - min_host) * ports_per_host + 1
    block_end   = block_start + ports_per_host - 1

Blocks of distinct hosts never overlap for a given ``ports_per_host``, so no
registry is needed to avoid collisions.
"""

from dataclasses import dataclass
from typing import Union

from natmap.config import DIGITS, MAX_PORT, MAX_PORTS_PER_HOST
from natmap.errors import ValidationError


@dataclass(frozen=True)
class Allocation:
    """Ports assigned to one host."""
    host_id: int
    ssh_port: int
    block_start: int
    block_end: int

    @property
    def ports_per_host(self) -> int:
        return self.block_end - self.block_start + 1

    @property
    def block(self) -> str:
        """Port range in packet-filter syntax, ``start:end``."""
        return f"{self.block_start}:{self.block_end}"

    @property
    def fits_port_space(self) -> bool:
        return self.ssh_port <= MAX_PORT and self.block_end <= MAX_PORT

    def __str__(self):
        return (
            f"host {self.host_id}: ssh {self.ssh_port}, "
            f"ports {self.block_start}-{self.block_end}"
        )


def validate_host(value: Union[int, str], min_host: int, max_host: int) -> int:
    """
    Validate a host number typed by the operator or passed by a script.

    Args:
        value: Host number; strings must be digits only (surrounding
               whitespace and carriage returns are ignored).
        min_host: Lowest allowed host number.
        max_host: Highest allowed host number.

    Returns:
        The host number as int.

    Raises:
        ValidationError: non-numeric or out of range.
    """
    if isinstance(value, bool):
        raise ValidationError(f"Host number must be numeric, got '{value}'")
    if isinstance(value, int):
        host_id = value
    else:
        text = str(value).replace('\r', '').strip()
        if not DIGITS.fullmatch(text):
            raise ValidationError(f"Host number must be numeric, got '{value}'")
        host_id = int(text)

    if not (min_host <= host_id <= max_host):
        raise ValidationError(f"Host number must be between {min_host} and {max_host}, got {host_id}")
    return host_id


def validate_ports_per_host(value: Union[int, str], upper: int = MAX_PORTS_PER_HOST) -> int:
    """Validate a port block size in ``1..upper``."""
    text = str(value).replace('\r', '').strip()
    if isinstance(value, bool) or not DIGITS.fullmatch(text):
        raise ValidationError(f"Ports per host must be numeric, got '{value}'")
    size = int(text)
    if not (1 <= size <= upper):
        raise ValidationError(f"Ports per host must be between 1 and {upper}, got {size}")
    return size


def allocate(
    host_id: int,
    ports_per_host: int,
    min_host: int = 100,
    base_ssh_port: int = 30000,
    base_block_port: int = 40000
) -> Allocation:
    """Compute the ports of ``host_id``. Callers validate ``host_id`` first."""
    block_start = base_block_port + (host_id - min_host) * ports_per_host + 1
    return Allocation(
        host_id=host_id,
        ssh_port=base_ssh_port + host_id,
        block_start=block_start,
        block_end=block_start + ports_per_host - 1,
    )

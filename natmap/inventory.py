"""Read the installed mappings back out of the live rule set."""

from dataclasses import dataclass
from typing import Iterable, List, Optional, Union

from natmap.allocation import validate_host
from natmap.config import NatContext, Settings
from natmap.reconciler import allocation_for
from natmap.rules import Rule

NOT_DETECTED = 'not detected'


@dataclass(frozen=True)
class HostMapping:
    """Ports of one mapped host; ``None`` marks a field that was not found."""
    host_id: int
    address: str
    ssh_port: Optional[int] = None
    block_start: Optional[int] = None
    block_end: Optional[int] = None

    @property
    def ports_per_host(self) -> Optional[int]:
        if self.block_start is None or self.block_end is None:
            return None
        return self.block_end - self.block_start + 1

    @property
    def ssh_display(self) -> str:
        return str(self.ssh_port) if self.ssh_port is not None else NOT_DETECTED

    @property
    def block_display(self) -> str:
        if self.block_start is None:
            return NOT_DETECTED
        return f"{self.block_start}-{self.block_end}"


def _dnat_rules(ctx: NatContext) -> List[Rule]:
    return [r for r in ctx.backend.list_rules('nat', 'PREROUTING') if r.is_dnat]


def mapped_hosts(rules: Iterable[Rule], settings: Settings) -> List[int]:
    """Distinct host numbers targeted by DNAT rules on the subnet, ascending."""
    hosts = set()
    for rule in rules:
        if not rule.is_dnat or not rule.target_host:
            continue
        host_id = settings.host_id_of(rule.target_host)
        if host_id is not None:
            hosts.add(host_id)
    return sorted(hosts)


def parse_mapping(rules: Iterable[Rule], host_id: int, settings: Settings) -> Optional[HostMapping]:
    """
    Build a host's mapping from its own rules.

    The SSH port is the single-port rule translating to port 22; the service
    block is the first port-range rule, TCP preferred over UDP.

    Returns:
        HostMapping, or None if no DNAT rule targets the host.
    """
    address = settings.host_address(host_id)
    own = [r for r in rules if r.is_dnat and r.target_host == address]
    if not own:
        return None

    ssh_port = next(
        (r.single_dport for r in own if r.target_port == 22 and r.single_dport is not None),
        None
    )
    ranges = sorted(
        (r for r in own if r.dport_range is not None),
        key=lambda r: r.protocol != 'tcp'
    )
    block_start = block_end = None
    if ranges:
        block_start, block_end = ranges[0].dport_range

    return HostMapping(host_id, address, ssh_port, block_start, block_end)


def inspect_host(ctx: NatContext, host: Union[int, str]) -> Optional[HostMapping]:
    """
    Look up one host's installed mapping.

    Raises:
        ValidationError: bad host number; the backend is not queried.
    """
    host_id = validate_host(host, ctx.settings.min_host, ctx.settings.max_host)
    return parse_mapping(_dnat_rules(ctx), host_id, ctx.settings)


def list_mappings(ctx: NatContext, fast: bool = False) -> List[HostMapping]:
    """
    All mapped hosts, ascending by host number.

    Args:
        ctx: Run context.
        fast: Recompute ports from the run's port block size instead of
              parsing each host's rules. Only correct when every mapping was
              created with the same block size.
    """
    rules = _dnat_rules(ctx)
    mappings = []
    for host_id in mapped_hosts(rules, ctx.settings):
        address = ctx.settings.host_address(host_id)
        if fast:
            a = allocation_for(ctx, host_id)
            mappings.append(HostMapping(host_id, address, a.ssh_port, a.block_start, a.block_end))
        else:
            mappings.append(parse_mapping(rules, host_id, ctx.settings))
    return mappings


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

def format_mapping(mapping: HostMapping) -> str:
    size = mapping.ports_per_host
    per_host = f" ({size} per host)" if size is not None else ''
    return '\n'.join([
        '-' * 34,
        f"Internal IP   : {mapping.address}",
        f"SSH port      : {mapping.ssh_display}",
        f"Service ports : {mapping.block_display}{per_host}",
        '-' * 34,
    ])


def format_mappings(mappings: List[HostMapping], ctx: NatContext) -> str:
    rule = '-' * 52
    lines = [
        "Current NAT mappings:",
        rule,
        f"{'Host':<8} {'Internal IP':<16} {'SSH port':<10} {'Service ports':<15}",
        rule,
    ]
    if not mappings:
        lines += ["(no NAT mappings installed)", rule]
        return '\n'.join(lines)

    for m in mappings:
        lines.append(f"{m.host_id:<8} {m.address:<16} {m.ssh_display:<10} {m.block_display:<15}")
    lines += [
        rule,
        f"Backend: {ctx.backend.name}",
        f"Ports per host: {ctx.ports_per_host}",
    ]
    return '\n'.join(lines)

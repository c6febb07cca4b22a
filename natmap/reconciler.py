"""
Add, delete and persist host mappings.

Every operation re-reads the live rule set; nothing is cached between
operations. Adds are check-then-insert per rule, so re-running an add only
fills in what is missing. Deletes work from the rules actually installed for
the host rather than from the formula, so mappings created under a different
port block size are still removed completely.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Union

from natmap.allocation import Allocation, allocate, validate_host
from natmap.config import MAX_PORT, NatContext, Settings
from natmap.errors import NatMapError, ValidationError
from natmap.rules import Rule

logger = logging.getLogger(__name__)

ADDED = 'added'
UNCHANGED = 'unchanged'
REMOVED = 'removed'
SKIPPED = 'skipped'
PARTIAL = 'partial'


@dataclass
class ReconcileResult:
    """Outcome of one add or delete."""
    host_id: int
    status: str
    added: int = 0
    removed: int = 0
    unchanged: int = 0
    failed: int = 0
    allocation: Optional[Allocation] = None

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)

    @property
    def ok(self) -> bool:
        return self.failed == 0


@dataclass
class BatchResult:
    """Outcome of an add or delete over a range of hosts."""
    results: List[ReconcileResult] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return any(r.changed for r in self.results)

    @property
    def ok(self) -> bool:
        return not self.errors and all(r.ok for r in self.results)


# ---------------------------------------------------------------------------
# Desired state
# ---------------------------------------------------------------------------

def masquerade_rule(settings: Settings) -> Rule:
    return Rule(table='nat', chain='POSTROUTING', source=settings.subnet_cidr, target='MASQUERADE')


def forward_rules(address: str) -> List[Rule]:
    return [
        Rule(table='filter', chain='FORWARD', destination=address, target='ACCEPT'),
        Rule(table='filter', chain='FORWARD', source=address,
             ctstate='ESTABLISHED,RELATED', target='ACCEPT'),
    ]


def desired_rules(allocation: Allocation, settings: Settings) -> List[Rule]:
    """
    Rules that make up the mapping of one host.

    Returns:
        Subnet masquerade, the two host forwarding rules, the SSH DNAT rule
        and the TCP/UDP DNAT rules for the service port block.
    """
    address = settings.host_address(allocation.host_id)
    dnat = [
        Rule(table='nat', chain='PREROUTING', protocol='tcp', dport=str(allocation.ssh_port),
             target='DNAT', to_destination=f"{address}:22"),
    ]
    for protocol in ('tcp', 'udp'):
        dnat.append(
            Rule(table='nat', chain='PREROUTING', protocol=protocol, dport=allocation.block,
                 target='DNAT', to_destination=address)
        )
    return [masquerade_rule(settings)] + forward_rules(address) + dnat


def allocation_for(ctx: NatContext, host_id: int) -> Allocation:
    s = ctx.settings
    return allocate(host_id, ctx.ports_per_host, s.min_host, s.base_ssh_port, s.base_block_port)


def _validate(ctx: NatContext, host: Union[int, str]) -> int:
    return validate_host(host, ctx.settings.min_host, ctx.settings.max_host)


def _should_persist(ctx: NatContext, persist: Optional[bool]) -> bool:
    if ctx.dry_run:
        return False
    return ctx.auto_persist if persist is None else persist


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------

def persist(ctx: NatContext):
    """Write the full live rule set to the rules file."""
    ctx.system.write_rules_file(ctx.backend.save())


def add_host(ctx: NatContext, host: Union[int, str], persist_rules: Optional[bool] = None) -> ReconcileResult:
    """
    Ensure the mapping of ``host`` is installed.

    Args:
        ctx: Run context.
        host: Host number (validated here).
        persist_rules: Override ``auto_persist`` for this call; batches pass
                       False and persist once at the end.

    Returns:
        ReconcileResult with per-rule counts.

    Raises:
        ValidationError: bad host number, or the allocation does not fit in
                         the port space.
    """
    host_id = _validate(ctx, host)
    allocation = allocation_for(ctx, host_id)
    if not allocation.fits_port_space:
        raise ValidationError(
            f"Host {host_id} would need ports up to {allocation.block_end}, beyond {MAX_PORT}; "
            f"lower the port block size or the host range"
        )

    address = ctx.settings.host_address(host_id)
    logger.info(f"Adding mapping: {address}")
    logger.info(f"  SSH port:      {allocation.ssh_port}")
    logger.info(
        f"  Service ports: {allocation.block_start}-{allocation.block_end} "
        f"({ctx.ports_per_host} per host)"
    )

    ctx.system.enable_ip_forwarding()

    result = ReconcileResult(host_id=host_id, status=UNCHANGED, allocation=allocation)
    for rule in desired_rules(allocation, ctx.settings):
        if ctx.backend.has_rule(rule):
            logger.debug(f"Rule already present: {rule}")
            result.unchanged += 1
        elif ctx.backend.add_rule(rule):
            result.added += 1
        else:
            result.failed += 1

    if result.failed:
        result.status = PARTIAL
        logger.error(f"{result.failed} rule(s) for {address} could not be added")
    elif result.added:
        result.status = ADDED
        logger.info(f"Mapping added for {address}")
    else:
        logger.info(f"Mapping for {address} already complete")

    if _should_persist(ctx, persist_rules):
        persist(ctx)
    return result


def host_rules(ctx: NatContext, address: str) -> List[Rule]:
    """Installed DNAT rules that translate to ``address``."""
    return [
        r for r in ctx.backend.list_rules('nat', 'PREROUTING')
        if r.is_dnat and r.target_host == address
    ]


def _remaining_hosts(ctx: NatContext) -> List[str]:
    prefix = ctx.settings.net_prefix
    return [
        r.target_host for r in ctx.backend.list_rules('nat', 'PREROUTING')
        if r.is_dnat and r.target_host and r.target_host.startswith(prefix)
    ]


def _remove(ctx: NatContext, rules: List[Rule], result: ReconcileResult):
    for rule in rules:
        if ctx.backend.delete_rule(rule):
            result.removed += 1
        else:
            result.unchanged += 1


def _drop_unused_masquerade(ctx: NatContext, result: ReconcileResult):
    if _remaining_hosts(ctx):
        return
    masquerade = masquerade_rule(ctx.settings)
    if ctx.backend.has_rule(masquerade) and ctx.backend.delete_rule(masquerade):
        logger.info(f"Last mapping removed, dropped masquerade for {ctx.settings.subnet_cidr}")
        result.removed += 1


def delete_host(ctx: NatContext, host: Union[int, str], persist_rules: Optional[bool] = None) -> ReconcileResult:
    """
    Remove every installed mapping rule of ``host``.

    A host without DNAT rules is skipped, not an error; forwarding rules left
    behind by an interrupted add are still cleaned up. Only the forwarding
    rules this tool installs are removed, other FORWARD rules naming the host
    stay. The shared subnet masquerade rule is removed together with the last
    mapped host.
    """
    host_id = _validate(ctx, host)
    address = ctx.settings.host_address(host_id)

    dnat = host_rules(ctx, address)
    if not dnat:
        result = ReconcileResult(host_id=host_id, status=SKIPPED)
        leftover = [r for r in forward_rules(address) if ctx.backend.has_rule(r)]
        if not leftover:
            logger.info(f"No mapping found for {address}, skipping")
            return result
        logger.info(f"No mapping found for {address}, removing {len(leftover)} leftover forwarding rule(s)")
        _remove(ctx, leftover, result)
        _drop_unused_masquerade(ctx, result)
        if result.changed and _should_persist(ctx, persist_rules):
            persist(ctx)
        return result

    logger.info(f"Removing mapping: {address} ({len(dnat)} NAT rules)")
    result = ReconcileResult(host_id=host_id, status=REMOVED)
    _remove(ctx, dnat + forward_rules(address), result)
    _drop_unused_masquerade(ctx, result)

    logger.info(f"Mapping removed for {address}")
    if _should_persist(ctx, persist_rules):
        persist(ctx)
    return result


def _validate_range(ctx: NatContext, start: Union[int, str], end: Union[int, str]):
    first = _validate(ctx, start)
    last = _validate(ctx, end)
    if first > last:
        raise ValidationError(f"Range start {first} must not be greater than end {last}")
    return first, last


def _run_batch(ctx: NatContext, operation, start, end) -> BatchResult:
    first, last = _validate_range(ctx, start, end)
    batch = BatchResult()
    for host_id in range(first, last + 1):
        try:
            batch.results.append(operation(ctx, host_id, persist_rules=False))
        except NatMapError as e:
            logger.error(f"Host {host_id}: {e}")
            batch.errors.append(f"{host_id}: {e}")

    if _should_persist(ctx, None):
        persist(ctx)
    return batch


def add_range(ctx: NatContext, start: Union[int, str], end: Union[int, str]) -> BatchResult:
    """Add hosts ``start..end`` inclusive, persisting once at the end."""
    return _run_batch(ctx, add_host, start, end)


def delete_range(ctx: NatContext, start: Union[int, str], end: Union[int, str]) -> BatchResult:
    """Delete hosts ``start..end`` inclusive, persisting once at the end."""
    return _run_batch(ctx, delete_host, start, end)

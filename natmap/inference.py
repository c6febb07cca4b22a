"""Detect the port block size the installed mappings were created with."""

import logging
from typing import Callable, Iterable, Optional

from natmap.allocation import validate_ports_per_host
from natmap.backend import PacketFilter
from natmap.config import MAX_PORT, Settings
from natmap.errors import PacketFilterError
from natmap.rules import Rule

logger = logging.getLogger(__name__)


def infer_ports_per_host(rules: Iterable[Rule], net_prefix: str) -> Optional[int]:
    """
    Derive the block size from the first port-range DNAT rule to the subnet.

    Args:
        rules: nat/PREROUTING rules in listing order.
        net_prefix: Subnet prefix, e.g. ``"10.0.0."``.

    Returns:
        ``end - start + 1`` of the first matching ``start:end`` rule, or None
        if there is no such rule or its size is outside ``1..65535``.
    """
    for rule in rules:
        if not rule.is_dnat or not (rule.to_destination or '').startswith(net_prefix):
            continue
        port_range = rule.dport_range
        if port_range is None:
            continue
        start, end = port_range
        size = end - start + 1
        if 0 < size <= MAX_PORT:
            logger.info(f"Inferred ports per host: {size} (from {start}-{end})")
            return size
        return None
    return None


def prompt_ports_per_host(prompt: Callable[[str], str], default: int) -> int:
    """Ask the operator for a block size; empty input selects ``default``."""
    print("=" * 41)
    print("No existing NAT mappings were found.")
    print("Choose how many service ports each host gets.")
    answer = prompt(f"Ports per host (Enter for {default}): ")
    answer = answer.replace('\r', '').strip()
    size = default if not answer else validate_ports_per_host(answer)
    print(f"Ports per host set to {size}")
    print("=" * 41)
    return size


def resolve_ports_per_host(
    backend: PacketFilter,
    settings: Settings,
    prompt: Optional[Callable[[str], str]] = None,
    requested: Optional[int] = None
) -> int:
    """
    Decide the block size for this run.

    Installed mappings always win: when rules exist, the size is read back
    from them (or the default is used with a warning if that fails). Only
    with no mappings installed may the operator pick a size, either through
    ``requested`` or interactively through ``prompt``.

    Args:
        backend: Selected packet filter.
        settings: Run settings; ``settings.ports_per_host`` is the default.
        prompt: ``input``-like callable, or None for non-interactive runs.
        requested: Size asked for on the command line, if any.

    Returns:
        Ports per host.

    Raises:
        ValidationError: the operator typed an invalid size.
    """
    default = settings.ports_per_host
    try:
        rules = backend.list_rules('nat', 'PREROUTING')
    except PacketFilterError as e:
        logger.warning(f"Could not list NAT rules, assuming none: {e}")
        rules = []

    existing = [
        r for r in rules
        if r.is_dnat and (r.to_destination or '').startswith(settings.net_prefix)
    ]

    if existing:
        size = infer_ports_per_host(existing, settings.net_prefix)
        if size is None:
            logger.warning(
                f"NAT mappings exist but the port block size could not be inferred, "
                f"using default {default}"
            )
            return default
        if requested is not None and requested != size:
            logger.warning(
                f"Ignoring requested ports per host {requested}: "
                f"installed mappings use {size}"
            )
        return size

    if requested is not None:
        return validate_ports_per_host(requested)
    if prompt is not None:
        return prompt_ports_per_host(prompt, default)
    return default

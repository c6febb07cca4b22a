"""
Packet-filter backends and backend selection.

Systems that carry both the legacy and the nftables-backed iptables commands
keep two independent rule tables. Only one of them normally holds the NAT
mappings, so the backend is chosen by counting matching DNAT rules in each.
"""

import logging
import subprocess
from abc import ABC, abstractmethod
from typing import Callable, List, Sequence, Tuple

from natmap.errors import PacketFilterError
from natmap.rules import Rule
from natmap.shell import run_command

logger = logging.getLogger(__name__)

DEFAULT_BACKENDS = ('iptables', 'iptables-legacy', 'iptables-nft')


class PacketFilter(ABC):
    """Capability the reconciler needs from a packet filter."""

    name: str = ''

    @abstractmethod
    def list_rules(self, table: str, chain: str) -> List[Rule]:
        """Return the rules of ``chain`` in ``table``, in evaluation order."""

    @abstractmethod
    def has_rule(self, rule: Rule) -> bool:
        """Check whether ``rule`` is present."""

    @abstractmethod
    def add_rule(self, rule: Rule) -> bool:
        """Append ``rule``; False if the packet filter rejected it."""

    @abstractmethod
    def delete_rule(self, rule: Rule) -> bool:
        """Delete ``rule``; False if it was not present."""

    @abstractmethod
    def save(self) -> str:
        """Serialize the whole rule set in the native save format."""

    @property
    def restore_command(self) -> str:
        return f"{self.name}-restore"


class IptablesBackend(PacketFilter):
    """``iptables`` (or one of its variants) driven through subprocess."""

    def __init__(self, command: str = 'iptables', dry_run: bool = False):
        """
        Args:
            command: Executable name, e.g. ``iptables-legacy``.
            dry_run: If True, only log mutating commands.
        """
        self.name = command
        self.dry_run = dry_run

    @property
    def save_command(self) -> str:
        return f"{self.name}-save"

    def _rule_cmd(self, action: str, rule: Rule) -> List[str]:
        return [self.name, '-t', rule.table, action, rule.chain] + rule.to_args()

    def list_rules(self, table: str, chain: str) -> List[Rule]:
        cmd = [self.name, '-t', table, '-S', chain]
        try:
            result = run_command(cmd, check=False)
        except FileNotFoundError as e:
            raise PacketFilterError(f"{self.name} is not installed") from e

        if result.returncode != 0:
            raise PacketFilterError(
                f"{' '.join(cmd)} failed ({result.returncode}): {result.stderr.strip()}"
            )

        rules = []
        for line in result.stdout.splitlines():
            rule = Rule.from_spec(line, table=table)
            if rule is not None:
                rules.append(rule)
        return rules

    def has_rule(self, rule: Rule) -> bool:
        try:
            result = run_command(self._rule_cmd('-C', rule), check=False)
        except FileNotFoundError:
            return False
        return result.returncode == 0

    def add_rule(self, rule: Rule) -> bool:
        logger.info(f"Adding rule: {rule}")
        try:
            run_command(self._rule_cmd('-A', rule), dry_run=self.dry_run)
            return True
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            logger.error(f"Failed to add rule {rule}: {e}")
            return False

    def delete_rule(self, rule: Rule) -> bool:
        logger.info(f"Removing rule: {rule}")
        try:
            result = run_command(self._rule_cmd('-D', rule), check=False, dry_run=self.dry_run)
        except FileNotFoundError:
            return False
        if result.returncode != 0:
            logger.debug(f"Rule not present, nothing to remove: {rule}")
            return False
        return True

    def save(self) -> str:
        try:
            result = run_command([self.save_command])
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            raise PacketFilterError(f"{self.save_command} failed: {e}") from e
        return result.stdout


# ---------------------------------------------------------------------------
# Backend selection
# ---------------------------------------------------------------------------

def count_nat_rules(backend: PacketFilter, net_prefix: str) -> int:
    """
    Count pre-routing DNAT rules that translate to the subnet.

    A backend that is missing or fails to list its rules counts as zero.
    """
    try:
        rules = backend.list_rules('nat', 'PREROUTING')
    except PacketFilterError as e:
        logger.debug(f"Probe of {backend.name} failed: {e}")
        return 0
    return sum(
        1 for r in rules
        if r.is_dnat and (r.to_destination or '').startswith(net_prefix)
    )


def select_backend(
    candidates: Sequence[str],
    net_prefix: str,
    factory: Callable[[str], PacketFilter] = IptablesBackend
) -> Tuple[PacketFilter, int]:
    """
    Pick the backend holding the most NAT rules for the subnet.

    Args:
        candidates: Backend commands in preference order.
        net_prefix: Subnet prefix, e.g. ``"10.0.0."``.
        factory: Builds a backend from its command name.

    Returns:
        Tuple of (backend, matching_rule_count). Falls back to the first
        candidate when no backend has any matching rule.
    """
    if not candidates:
        raise ValueError("At least one backend candidate is required")

    best = None
    best_count = 0
    for name in candidates:
        backend = factory(name)
        count = count_nat_rules(backend, net_prefix)
        logger.info(f"Backend probe: {name} NAT rules={count}")
        if count > best_count:
            best, best_count = backend, count

    if best is None:
        best = factory(candidates[0])

    logger.info(f"Selected backend: {best.name} (matching NAT rules={best_count})")
    return best, best_count

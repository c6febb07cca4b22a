"""Shared pytest fixtures: in-memory packet filter and host adapter."""

import contextlib
from typing import Dict, List, Tuple

import pytest

from natmap.backend import PacketFilter
from natmap.config import NatContext, Settings
from natmap.errors import PacketFilterError
from natmap.rules import Rule


class FakePacketFilter(PacketFilter):
    """Rule tables kept in memory, with the same semantics as iptables."""

    def __init__(self, name: str = 'iptables', rules: List[Rule] = (), broken: bool = False):
        self.name = name
        self.broken = broken
        self.tables: Dict[Tuple[str, str], List[Rule]] = {}
        self.calls: List[str] = []
        self.saves = 0
        for rule in rules:
            self.tables.setdefault((rule.table, rule.chain), []).append(rule)

    def list_rules(self, table, chain):
        self.calls.append('list')
        if self.broken:
            raise PacketFilterError(f"{self.name} is not installed")
        return list(self.tables.get((table, chain), []))

    def has_rule(self, rule):
        self.calls.append('check')
        return rule in self.tables.get((rule.table, rule.chain), [])

    def add_rule(self, rule):
        self.calls.append('add')
        self.tables.setdefault((rule.table, rule.chain), []).append(rule)
        return True

    def delete_rule(self, rule):
        self.calls.append('delete')
        chain = self.tables.get((rule.table, rule.chain), [])
        if rule not in chain:
            return False
        chain.remove(rule)
        return True

    def save(self):
        self.saves += 1
        lines = []
        for (table, chain), rules in sorted(self.tables.items()):
            lines.append(f"*{table}")
            lines.extend(f"-A {chain} {' '.join(r.to_args())}" for r in rules)
            lines.append("COMMIT")
        return '\n'.join(lines) + '\n'

    def all_rules(self) -> List[Rule]:
        return [r for rules in self.tables.values() for r in rules]


class RecordingSystem:
    """Stands in for SystemHost; records instead of touching the machine."""

    def __init__(self):
        self.forwarding_enabled = 0
        self.written: List[str] = []
        self.locks = 0

    def enable_ip_forwarding(self):
        self.forwarding_enabled += 1

    def write_rules_file(self, content):
        self.written.append(content)

    def ensure_restore_service(self, restore_command):
        return False

    @contextlib.contextmanager
    def operation_lock(self):
        self.locks += 1
        yield


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def backend():
    return FakePacketFilter()


@pytest.fixture
def system():
    return RecordingSystem()


@pytest.fixture
def ctx(settings, backend, system):
    return NatContext(settings=settings, backend=backend, system=system, ports_per_host=20)


@pytest.fixture
def make_ctx(settings, system):
    """Context factory for a given backend and block size."""
    def _make(backend, ports_per_host=20, **kwargs):
        return NatContext(settings=settings, backend=backend, system=system,
                          ports_per_host=ports_per_host, **kwargs)
    return _make

import subprocess

import pytest

from natmap import shell
from natmap.backend import IptablesBackend, count_nat_rules, select_backend
from natmap.errors import PacketFilterError
from natmap.rules import Rule

from conftest import FakePacketFilter

NAT_LISTING = """\
-P PREROUTING ACCEPT
-A PREROUTING -p tcp -m tcp --dport 30100 -j DNAT --to-destination 10.0.0.100:22
-A PREROUTING -p tcp -m tcp --dport 40001:40020 -j DNAT --to-destination 10.0.0.100
-A PREROUTING -p tcp -m tcp --dport 8080 -j DNAT --to-destination 192.168.1.5:80
"""

SSH_RULE = Rule(table='nat', chain='PREROUTING', protocol='tcp', dport='30100',
                target='DNAT', to_destination='10.0.0.100:22')


class FakeRun:
    """Replacement for subprocess.run keyed on the command."""

    def __init__(self, returncode=0, stdout='', missing=False):
        self.returncode = returncode
        self.stdout = stdout
        self.missing = missing
        self.commands = []

    def __call__(self, cmd, capture_output, text, check):
        self.commands.append(cmd)
        if self.missing:
            raise FileNotFoundError(cmd[0])
        if check and self.returncode:
            raise subprocess.CalledProcessError(self.returncode, cmd, self.stdout, 'iptables: error')
        return subprocess.CompletedProcess(cmd, self.returncode, stdout=self.stdout, stderr='')


@pytest.fixture
def fake_run(monkeypatch):
    def install(**kwargs):
        run = FakeRun(**kwargs)
        monkeypatch.setattr(shell.subprocess, 'run', run)
        return run
    return install


def test_list_rules_parses_listing(fake_run):
    run = fake_run(stdout=NAT_LISTING)
    rules = IptablesBackend('iptables-nft').list_rules('nat', 'PREROUTING')

    assert run.commands == [['iptables-nft', '-t', 'nat', '-S', 'PREROUTING']]
    assert len(rules) == 3
    assert rules[0] == SSH_RULE


def test_list_rules_missing_binary(fake_run):
    fake_run(missing=True)
    with pytest.raises(PacketFilterError, match='not installed'):
        IptablesBackend('iptables-legacy').list_rules('nat', 'PREROUTING')


def test_list_rules_command_failure(fake_run):
    fake_run(returncode=3)
    with pytest.raises(PacketFilterError):
        IptablesBackend().list_rules('nat', 'PREROUTING')


def test_has_rule_uses_check(fake_run):
    run = fake_run(returncode=1)
    assert not IptablesBackend().has_rule(SSH_RULE)
    assert run.commands[0][:5] == ['iptables', '-t', 'nat', '-C', 'PREROUTING']


def test_add_rule(fake_run):
    run = fake_run()
    assert IptablesBackend().add_rule(SSH_RULE)
    assert run.commands == [[
        'iptables', '-t', 'nat', '-A', 'PREROUTING', '-p', 'tcp', '--dport', '30100',
        '-j', 'DNAT', '--to-destination', '10.0.0.100:22',
    ]]


def test_add_rule_rejected(fake_run):
    fake_run(returncode=2)
    assert not IptablesBackend().add_rule(SSH_RULE)


def test_delete_missing_rule_is_not_an_error(fake_run):
    fake_run(returncode=1)
    assert not IptablesBackend().delete_rule(SSH_RULE)


def test_dry_run_skips_mutations(fake_run):
    run = fake_run()
    backend = IptablesBackend(dry_run=True)
    assert backend.add_rule(SSH_RULE)
    assert backend.delete_rule(SSH_RULE)
    backend.has_rule(SSH_RULE)
    assert [c[3] for c in run.commands] == ['-C']


def test_save_uses_matching_save_command(fake_run):
    run = fake_run(stdout='*nat\nCOMMIT\n')
    backend = IptablesBackend('iptables-legacy')
    assert backend.save() == '*nat\nCOMMIT\n'
    assert run.commands == [['iptables-legacy-save']]
    assert backend.restore_command == 'iptables-legacy-restore'


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

def dnat_rules(count, prefix='10.0.0.'):
    return [
        Rule(table='nat', chain='PREROUTING', protocol='tcp', dport=str(30100 + i),
             target='DNAT', to_destination=f"{prefix}{100 + i}:22")
        for i in range(count)
    ]


def test_count_ignores_other_subnets():
    backend = FakePacketFilter(rules=dnat_rules(2) + dnat_rules(3, prefix='192.168.0.'))
    assert count_nat_rules(backend, '10.0.0.') == 2


def test_count_treats_failure_as_zero():
    assert count_nat_rules(FakePacketFilter(broken=True), '10.0.0.') == 0


def test_select_prefers_most_rules():
    backends = {
        'iptables': FakePacketFilter('iptables', dnat_rules(1)),
        'iptables-legacy': FakePacketFilter('iptables-legacy', dnat_rules(4)),
        'iptables-nft': FakePacketFilter('iptables-nft', broken=True),
    }
    backend, count = select_backend(list(backends), '10.0.0.', factory=backends.get)
    assert backend.name == 'iptables-legacy'
    assert count == 4


def test_select_tie_keeps_first():
    backends = {
        'iptables': FakePacketFilter('iptables', dnat_rules(2)),
        'iptables-nft': FakePacketFilter('iptables-nft', dnat_rules(2)),
    }
    backend, _ = select_backend(list(backends), '10.0.0.', factory=backends.get)
    assert backend.name == 'iptables'


def test_select_falls_back_to_first_candidate():
    backend, count = select_backend(
        ['iptables', 'iptables-legacy'], '10.0.0.',
        factory=lambda name: FakePacketFilter(name, broken=True)
    )
    assert backend.name == 'iptables'
    assert count == 0

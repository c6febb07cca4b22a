from natmap.rules import Rule


def test_parse_ssh_dnat():
    rule = Rule.from_spec(
        '-A PREROUTING -p tcp -m tcp --dport 30100 -j DNAT --to-destination 10.0.0.100:22',
        table='nat'
    )
    assert rule == Rule(table='nat', chain='PREROUTING', protocol='tcp', dport='30100',
                        target='DNAT', to_destination='10.0.0.100:22')
    assert rule.is_dnat
    assert rule.single_dport == 30100
    assert rule.dport_range is None
    assert rule.target_host == '10.0.0.100'
    assert rule.target_port == 22


def test_parse_port_range():
    rule = Rule.from_spec(
        '-A PREROUTING -p udp -m udp --dport 40001:40020 -j DNAT --to-destination 10.0.0.100',
        table='nat'
    )
    assert rule.dport_range == (40001, 40020)
    assert rule.target_port is None


def test_parse_forward_rules_normalizes_mask_and_ctstate():
    rule = Rule.from_spec(
        '-A FORWARD -s 10.0.0.100/32 -m conntrack --ctstate RELATED,ESTABLISHED -j ACCEPT'
    )
    assert rule == Rule(table='filter', chain='FORWARD', source='10.0.0.100',
                        ctstate='ESTABLISHED,RELATED', target='ACCEPT')


def test_non_rule_lines_are_ignored():
    assert Rule.from_spec('-P PREROUTING ACCEPT') is None
    assert Rule.from_spec('-N NATMAP') is None
    assert Rule.from_spec('') is None
    assert Rule.from_spec('-A FORWARD -d 10.0.0.1') is None


def test_unknown_and_negated_options_are_kept():
    rule = Rule.from_spec('-A FORWARD ! -i lo -d 10.0.0.100/32 -m comment --comment "host 100" -j ACCEPT')
    assert rule.destination == '10.0.0.100'
    assert rule.extra == ('!', '-i', 'lo', '-m', 'comment', '--comment', 'host 100')
    assert rule.to_args() == [
        '-d', '10.0.0.100', '!', '-i', 'lo', '-m', 'comment', '--comment', 'host 100',
        '-j', 'ACCEPT',
    ]


def test_to_args_round_trips_through_parse():
    rule = Rule(table='filter', chain='FORWARD', source='10.0.0.7',
                ctstate='ESTABLISHED,RELATED', target='ACCEPT')
    line = '-A FORWARD ' + ' '.join(rule.to_args())
    assert Rule.from_spec(line) == rule


def test_references_matches_exact_address():
    rule = Rule(table='nat', chain='PREROUTING', protocol='tcp', dport='30100',
                target='DNAT', to_destination='10.0.0.100:22')
    assert rule.references('10.0.0.100')
    assert not rule.references('10.0.0.10')
    assert not rule.references('10.0.0.1')

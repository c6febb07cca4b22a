"""
Structured view of packet-filter rules.

Rules are read back from ``iptables -S`` output, which prints each rule the
way it would be appended::

    -A PREROUTING -p tcp -m tcp --dport 30100 -j DNAT --to-destination 10.0.0.100:22
    -A FORWARD -s 10.0.0.100/32 -m conntrack --ctstate RELATED,ESTABLISHED -j ACCEPT

The same ``Rule`` renders back to the argument list used with ``-C``, ``-A``
and ``-D``, so rules found on the system can be deleted exactly.
"""

import re
import shlex
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple

# Matches iptables loads implicitly for the options we model.
IMPLICIT_MATCHES = ('tcp', 'udp', 'conntrack')

PORT = re.compile(r'[0-9]+')


def _strip_host_mask(address: str) -> str:
    if address.endswith('/32'):
        return address[:-3]
    return address


def _normalize_ctstate(value: str) -> str:
    return ','.join(sorted(s.strip().upper() for s in value.split(',') if s.strip()))


def _group_options(tokens: List[str]) -> Iterator[Tuple[bool, str, List[str]]]:
    """Yield ``(negated, option, values)`` for each option in ``tokens``."""
    negated = False
    i = 0
    while i < len(tokens):
        token = tokens[i]
        i += 1
        if token == '!':
            negated = True
            continue
        values = []
        while i < len(tokens) and tokens[i] != '!' and not tokens[i].startswith('-'):
            values.append(tokens[i])
            i += 1
        yield negated, token, values
        negated = False


@dataclass(frozen=True)
class Rule:
    """One rule in a table/chain of the packet filter."""
    table: str
    chain: str
    target: str
    protocol: Optional[str] = None
    source: Optional[str] = None
    destination: Optional[str] = None
    dport: Optional[str] = None
    to_destination: Optional[str] = None
    ctstate: Optional[str] = None
    extra: Tuple[str, ...] = ()

    @classmethod
    def from_spec(cls, line: str, table: str = 'filter') -> Optional['Rule']:
        """
        Parse one line of ``iptables -S`` output.

        Args:
            line: e.g. ``-A FORWARD -d 10.0.0.100/32 -j ACCEPT``.
            table: Table the listing was taken from.

        Returns:
            The parsed rule, or None for policy/chain lines (``-P``, ``-N``)
            and anything else that is not an appended rule.
        """
        try:
            tokens = shlex.split(line.strip())
        except ValueError:
            return None
        if len(tokens) < 2 or tokens[0] != '-A':
            return None

        chain = tokens[1]
        fields = {}
        extra: List[str] = []

        for negated, option, values in _group_options(tokens[2:]):
            value = values[0] if len(values) == 1 else None
            if negated or (value is None and option != '-m'):
                if negated:
                    extra.append('!')
                extra.append(option)
                extra.extend(values)
                continue

            if option in ('-p', '--protocol'):
                fields['protocol'] = value.lower()
            elif option in ('-s', '--source'):
                fields['source'] = _strip_host_mask(value)
            elif option in ('-d', '--destination'):
                fields['destination'] = _strip_host_mask(value)
            elif option in ('--dport', '--destination-port'):
                fields['dport'] = value
            elif option in ('-j', '--jump'):
                fields['target'] = value
            elif option == '--to-destination':
                fields['to_destination'] = value
            elif option == '--ctstate':
                fields['ctstate'] = _normalize_ctstate(value)
            elif option == '-m' and value in IMPLICIT_MATCHES:
                continue
            else:
                extra.append(option)
                extra.extend(values)

        if 'target' not in fields:
            return None
        return cls(table=table, chain=chain, extra=tuple(extra), **fields)

    def to_args(self) -> List[str]:
        """Rule body (everything after ``-A CHAIN``) as command arguments."""
        args: List[str] = []
        if self.protocol:
            args += ['-p', self.protocol]
        if self.source:
            args += ['-s', self.source]
        if self.destination:
            args += ['-d', self.destination]
        args += list(self.extra)
        if self.dport:
            args += ['--dport', self.dport]
        if self.ctstate:
            args += ['-m', 'conntrack', '--ctstate', self.ctstate]
        args += ['-j', self.target]
        if self.to_destination:
            args += ['--to-destination', self.to_destination]
        return args

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def is_dnat(self) -> bool:
        return self.target == 'DNAT'

    @property
    def dport_range(self) -> Optional[Tuple[int, int]]:
        """``(start, end)`` when ``--dport`` is a ``start:end`` range."""
        if not self.dport or ':' not in self.dport:
            return None
        start, _, end = self.dport.partition(':')
        if not (PORT.fullmatch(start) and PORT.fullmatch(end)):
            return None
        return int(start), int(end)

    @property
    def single_dport(self) -> Optional[int]:
        if self.dport and PORT.fullmatch(self.dport):
            return int(self.dport)
        return None

    @property
    def target_host(self) -> Optional[str]:
        """Address part of ``--to-destination``."""
        if not self.to_destination:
            return None
        return self.to_destination.split(':', 1)[0]

    @property
    def target_port(self) -> Optional[int]:
        if not self.to_destination or ':' not in self.to_destination:
            return None
        port = self.to_destination.split(':', 1)[1]
        return int(port) if PORT.fullmatch(port) else None

    def references(self, address: str) -> bool:
        """True if the rule names ``address`` exactly as source, destination or DNAT target."""
        return address in (self.source, self.destination, self.target_host)

    def __str__(self):
        return f"[{self.table}] -A {self.chain} {' '.join(self.to_args())}"

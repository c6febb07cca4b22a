"""Exception types raised by natmap."""


class NatMapError(Exception):
    """Base class for natmap errors."""


class ValidationError(NatMapError, ValueError):
    """Invalid operator input: host number, port block size, range or setting."""


class PacketFilterError(NatMapError):
    """A packet-filter command failed (listing, saving)."""

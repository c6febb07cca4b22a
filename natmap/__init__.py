"""
natmap: deterministic NAT port mapping for hosts on a private /24 subnet.

Each host gets one public SSH port and one block of service ports on the
gateway. The mappings live only in the packet filter; every run reads them
back from the live rule set.
"""

__version__ = '1.0.0'

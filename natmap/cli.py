"""Command-line entry point."""

import argparse
import contextlib
import logging
import sys
from typing import List, Optional

from natmap import inventory, reconciler
from natmap.backend import IptablesBackend, select_backend
from natmap.config import NatContext, Settings, load_settings
from natmap.errors import NatMapError, PacketFilterError, ValidationError
from natmap.inference import resolve_ports_per_host
from natmap.menu import CommandLoop
from natmap.system import SystemHost, require_root

logger = logging.getLogger('natmap')

MUTATING_COMMANDS = ('add', 'add-range', 'delete', 'delete-range', 'persist', 'menu')


# ---------------------------------------------------------------------------
# Logging helper
# ---------------------------------------------------------------------------

def setup_logging(verbose: bool = False):
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='natmap',
        description='Map SSH and service port blocks of subnet hosts through NAT (idempotent)',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  NATMAP_CONFIG           YAML file with any of the options below (by field name)
  NATMAP_SUBNET           Internal /24 subnet (default: 10.0.0.0/24)
  NATMAP_MIN_HOST         Lowest host number (default: 100)
  NATMAP_MAX_HOST         Highest host number (default: 250)
  NATMAP_BASE_SSH_PORT    SSH port of host N is BASE + N (default: 30000)
  NATMAP_BASE_BLOCK_PORT  Service blocks start after this port (default: 40000)
  NATMAP_PORTS_PER_HOST   Default service ports per host (default: 20)
  NATMAP_BACKENDS         Comma-separated backends to probe
                            (default: iptables,iptables-legacy,iptables-nft)
  AUTO_PERSIST            Save rules after every change (default: 1)
  RULES_FILE              Saved rules file (default: /etc/iptables/rules.v4)
  SYSTEMD_SERVICE         Boot restore unit (default: /etc/systemd/system/iptables-restore.service)
  AUTO_INSTALL_DEPS       Install iptables if missing (default: 1)

Port layout:
  SSH port      = BASE_SSH_PORT + host
  Service block = BASE_BLOCK_PORT + (host - MIN_HOST) * PORTS_PER_HOST + 1, PORTS_PER_HOST ports

  When mappings already exist, the block size is read back from them and
  cannot be changed until every mapping is deleted.

Examples:
  # Interactive menu
  %(prog)s

  # Map host 10.0.0.105
  %(prog)s add 105

  # Map hosts 100-120 with 50 service ports each (first mappings only)
  %(prog)s --ports-per-host 50 add-range 100 120

  # Show what is installed
  %(prog)s list

  # Dry run to see what would change
  %(prog)s --dry-run delete 105
        """
    )
    parser.add_argument('-c', '--config', help='YAML configuration file (default: from NATMAP_CONFIG)')
    parser.add_argument('-b', '--backend', help='Use this iptables command instead of probing')
    parser.add_argument(
        '--ports-per-host',
        type=int,
        help='Service ports per host when no mappings exist yet (1-2000)'
    )
    parser.add_argument('--no-persist', action='store_true', help='Do not save rules after changes')
    parser.add_argument(
        '-n', '--dry-run',
        action='store_true',
        help='Show what would be done without making changes'
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose logging')

    sub = parser.add_subparsers(dest='command')
    for name, help_text in (('add', 'Map one host'), ('delete', 'Remove one host'),
                            ('show', 'Show one host')):
        p = sub.add_parser(name, help=help_text)
        p.add_argument('host', help='Host number')
    for name, help_text in (('add-range', 'Map a range of hosts'),
                            ('delete-range', 'Remove a range of hosts')):
        p = sub.add_parser(name, help=help_text)
        p.add_argument('start', help='First host number')
        p.add_argument('end', help='Last host number')
    p = sub.add_parser('list', help='Show all mapped hosts')
    p.add_argument('--fast', action='store_true',
                   help='Compute ports from the current block size instead of parsing each rule')
    sub.add_parser('persist', help='Save the current rules')
    sub.add_parser('menu', help='Interactive menu (default)')
    return parser


def build_context(args: argparse.Namespace, settings: Settings, interactive: bool) -> NatContext:
    """Run the startup sequence and return the context for this run."""
    system = SystemHost(settings, dry_run=args.dry_run)
    system.install_dependencies()

    if args.backend:
        backend = IptablesBackend(args.backend, dry_run=args.dry_run)
        logger.info(f"Using backend: {backend.name}")
    else:
        backend, _ = select_backend(
            settings.backends,
            settings.net_prefix,
            factory=lambda name: IptablesBackend(name, dry_run=args.dry_run)
        )

    if args.command in MUTATING_COMMANDS:
        system.ensure_restore_service(backend.restore_command)

    ports_per_host = resolve_ports_per_host(
        backend,
        settings,
        prompt=input if interactive else None,
        requested=args.ports_per_host
    )
    return NatContext(
        settings=settings,
        backend=backend,
        system=system,
        ports_per_host=ports_per_host,
        dry_run=args.dry_run
    )


def execute(args: argparse.Namespace, ctx: NatContext) -> int:
    """Run one non-interactive command. Returns the exit status."""
    command = args.command
    if command == 'add':
        result = reconciler.add_host(ctx, args.host)
        return 0 if result.ok else 1
    if command == 'delete':
        result = reconciler.delete_host(ctx, args.host)
        return 0 if result.ok else 1
    if command in ('add-range', 'delete-range'):
        operation = reconciler.add_range if command == 'add-range' else reconciler.delete_range
        batch = operation(ctx, args.start, args.end)
        logger.info("=" * 60)
        logger.info(f"Batch {command} complete ({args.start}-{args.end})")
        logger.info(f"  Added:     {sum(r.added for r in batch.results)} rules")
        logger.info(f"  Removed:   {sum(r.removed for r in batch.results)} rules")
        logger.info(f"  Unchanged: {sum(r.unchanged for r in batch.results)} rules")
        logger.info(f"  Errors:    {len(batch.errors)}")
        logger.info("=" * 60)
        return 0 if batch.ok else 1
    if command == 'show':
        mapping = inventory.inspect_host(ctx, args.host)
        if mapping is None:
            logger.error(f"No NAT rules found for host {args.host}")
            return 1
        print(inventory.format_mapping(mapping))
        return 0
    if command == 'list':
        print(inventory.format_mappings(inventory.list_mappings(ctx, fast=args.fast), ctx))
        return 0
    if command == 'persist':
        reconciler.persist(ctx)
        return 0
    raise ValueError(f"Unknown command: {command}")


def main(argv: Optional[List[str]] = None):
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        args.command = 'menu'

    setup_logging(args.verbose)

    try:
        overrides = {'auto_persist': False} if args.no_persist else {}
        settings = load_settings(args.config, overrides=overrides)

        if args.dry_run:
            logger.info("*** DRY RUN - no changes will be made ***")
        else:
            require_root()

        interactive = args.command == 'menu' and sys.stdin.isatty()
        ctx = build_context(args, settings, interactive)

        if args.command == 'menu':
            loop = CommandLoop(ctx, lock=None if args.dry_run else ctx.system.operation_lock)
            sys.exit(loop.run())

        lock = ctx.system.operation_lock() if args.command in MUTATING_COMMANDS and not args.dry_run \
            else contextlib.nullcontext()
        with lock:
            status = execute(args, ctx)

        if args.dry_run:
            logger.info("DRY RUN mode - no changes were made")
        sys.exit(status)

    except FileNotFoundError as e:
        logger.error(f"File error: {e}")
        sys.exit(1)
    except ValidationError as e:
        logger.error(f"Invalid input: {e}")
        sys.exit(1)
    except PacketFilterError as e:
        logger.error(f"Packet filter error: {e}")
        sys.exit(1)
    except NatMapError as e:
        logger.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(130)
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()

#!/usr/bin/env python3
"""CLI entry point for bbctl.

Noun-action subcommands:
- bbctl instance create web1 -p pve1 -r default --cpu 2 --memory 4 --disk 20
- bbctl network create tenant-a -p vyos1 -r default --cidr 10.1.0.0/24
- bbctl reconcile sweep

Nouns:
- instance: VM instances (create/delete/list/show)
- volume: Block volumes (create/delete/attach/detach/list/show)
- network: Tenant networks (create/delete/list/show/usage)
- provider: Provider connections (list/connect)
- keys: Management-channel keys (list/rotate/tick/overdue)
- reconcile: Drift and recovery (sweep/check/retry/cancel/resume/run)

Every invocation loads the persisted state, so commands compose across runs.
"""

import argparse
import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from allocator import TenantAllocator
from config import ConfigError, Settings, get_config_dir, load_providers, load_settings
from errors import BbctlError
from keymanager import KeyLifecycleManager
from models.keys import make_sealer
from models.resource import Resource, ResourceKind
from providers import build_adapters
from reconciler.engine import ReconciliationEngine
from reconciler.lease import LeaseTable
from reconciler.retry import RetryPolicy
from reconciler.scheduler import Scheduler
from reconciler.state import JsonStateStore

VERSION = '0.1.0'

NOUN_COMMANDS = {
    "instance": "VM instances (create/delete/list/show)",
    "volume": "Block volumes (create/delete/attach/detach/list/show)",
    "network": "Tenant networks (create/delete/list/show/usage)",
    "provider": "Provider connections (list/connect)",
    "keys": "Management-channel keys (list/rotate/tick/overdue)",
    "reconcile": "Drift and recovery (sweep/check/retry/cancel/resume/run)",
}

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Everything one CLI invocation wires together."""
    settings: Settings
    engine: ReconciliationEngine
    keys: KeyLifecycleManager
    allocator: TenantAllocator
    providers: dict


def build_runtime(config_dir: Optional[Path] = None) -> Runtime:
    """Load configuration and construct the engine and its collaborators."""
    config_dir = config_dir or get_config_dir()
    settings = load_settings(config_dir)
    providers = load_providers(config_dir)
    if not providers:
        raise ConfigError(f"No providers configured in {config_dir / 'providers'}")

    adapters = build_adapters(providers)
    leases = LeaseTable(ttl=settings.reconcile.lease_ttl)
    store = JsonStateStore(settings.state_path)
    allocator = TenantAllocator.from_providers(providers.values())
    keys = KeyLifecycleManager(
        adapters,
        leases,
        store=store,
        rotation_interval=settings.keys.rotation_interval,
        grace_period=settings.keys.grace_period,
        sealer=make_sealer(settings.state_key) if settings.state_key else None,
        timeout=settings.reconcile.timeout,
    )
    if not settings.state_key:
        logger.debug("No state_key in secrets.yaml; private keys are not persisted")
    engine = ReconciliationEngine(
        adapters,
        allocator,
        keys,
        leases,
        store=store,
        policy=RetryPolicy.from_settings(settings.reconcile),
        timeout=settings.reconcile.timeout,
    )
    return Runtime(settings=settings, engine=engine, keys=keys, allocator=allocator, providers=providers)


def _setup_logging(verbose: bool, json_output: bool, level: str = 'info') -> None:
    """Configure logging based on flags."""
    root_logger = logging.getLogger()
    if json_output:
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        root_logger.addHandler(stderr_handler)

    if verbose:
        root_logger.setLevel(logging.DEBUG)
    else:
        root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))


def _parse_tags(values: Optional[list]) -> dict:
    tags = {}
    for value in values or []:
        if '=' not in value:
            raise ConfigError(f"Tag '{value}' must be key=value")
        key, val = value.split('=', 1)
        tags[key] = val
    return tags


def _emit(args, payload) -> None:
    """Print a result as JSON (--json) or as readable text."""
    if args.json:
        print(json.dumps(payload, indent=2, default=str))
        return
    if isinstance(payload, list):
        for item in payload:
            print(_line(item))
    elif isinstance(payload, dict):
        for key, value in payload.items():
            print(f"{key}: {value}")
    else:
        print(payload)


def _line(item) -> str:
    if isinstance(item, dict) and 'status' in item:
        ref = item.get('provider_ref')
        ref_text = f"{ref['provider']}:{ref['local_id']}" if ref else '-'
        return f"{item['id']}  {item['kind']:<8} {item['name']:<20} {item['status']:<12} {ref_text}"
    return str(item)


def _resources(resources: list[Resource]) -> list[dict]:
    return [r.to_dict() for r in resources]


# -----------------------------------------------------------------------------
# Parsers
# -----------------------------------------------------------------------------

def _common_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('--config', type=Path, help='Configuration directory (default: $BBCTL_CONFIG)')
    parser.add_argument('--json', action='store_true', help='Output JSON to stdout (logs to stderr)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose logging')


def _placement_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('name', help='Resource name')
    parser.add_argument('--provider', '-p', help='Provider connection (default: settings.yaml)')
    parser.add_argument('--region', '-r', help='Region (default: settings.yaml)')
    parser.add_argument('--tag', action='append', metavar='KEY=VALUE', help='Tag (repeatable)')
    parser.add_argument('--id', dest='resource_id', help='Explicit resource id (idempotent create)')


def _id_actions(sub, actions: tuple) -> None:
    for action in actions:
        p = sub.add_parser(action)
        _common_options(p)
        p.add_argument('id', help='Resource id')


def _build_parser(noun: str) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=f'bbctl {noun}', description=NOUN_COMMANDS[noun])
    sub = parser.add_subparsers(dest='action', required=True)

    if noun in ('instance', 'volume', 'network'):
        create = sub.add_parser('create', help=f'Create a {noun}')
        _common_options(create)
        _placement_options(create)
        if noun == 'instance':
            create.add_argument('--cpu', type=int, required=True, help='vCPU count')
            create.add_argument('--memory', type=int, required=True, help='Memory (GB)')
            create.add_argument('--disk', type=int, required=True, help='Root disk (GB)')
            create.add_argument('--power', choices=['running', 'stopped'], default='running')
            create.add_argument('--image', default='', help='Boot image (storage volid)')
            create.add_argument('--network', action='append', dest='networks', metavar='NETWORK_ID',
                                help='Attach to network (repeatable)')
        elif noun == 'volume':
            create.add_argument('--size', type=int, required=True, help='Size (GB)')
            create.add_argument('--type', dest='volume_type', default='standard', help='Volume type')
            create.add_argument('--attach', metavar='INSTANCE_ID', help='Attach to instance')
        else:
            create.add_argument('--cidr', help='Explicit CIDR (default: carved from the region supernet)')
            create.add_argument('--prefix-len', type=int, default=24, help='Prefix length when carving')
            create.add_argument('--type', dest='network_type', default='routed', help='Network type')
            create.add_argument('--gateway', help='Gateway address')
            create.add_argument('--dns', action='append', help='DNS server (repeatable)')

        _id_actions(sub, ('delete', 'show'))
        lst = sub.add_parser('list')
        _common_options(lst)
        lst.add_argument('--provider', '-p', help='Only this provider')

        if noun == 'volume':
            attach = sub.add_parser('attach')
            _common_options(attach)
            attach.add_argument('id', help='Volume id')
            attach.add_argument('instance', help='Instance id')
            _id_actions(sub, ('detach',))
        if noun == 'network':
            _common_options(sub.add_parser('usage', help='Allocator pool usage'))

    elif noun == 'provider':
        _common_options(sub.add_parser('list'))
        connect = sub.add_parser('connect')
        _common_options(connect)
        connect.add_argument('name', help='Provider connection')
        connect.add_argument('--no-enroll', action='store_true', help='Do not enroll a channel key')

    elif noun == 'keys':
        lst = sub.add_parser('list')
        _common_options(lst)
        lst.add_argument('--owner', help='Only this owner')
        rotate = sub.add_parser('rotate')
        _common_options(rotate)
        rotate.add_argument('owner', help='Key owner (provider name or vpn network id)')
        _common_options(sub.add_parser('tick'))
        _common_options(sub.add_parser('overdue'))

    elif noun == 'reconcile':
        _common_options(sub.add_parser('sweep'))
        _id_actions(sub, ('check', 'retry', 'cancel'))
        _common_options(sub.add_parser('resume'))
        _common_options(sub.add_parser('run', help='Run sweeps and key ticks until interrupted'))

    return parser


# -----------------------------------------------------------------------------
# Handlers
# -----------------------------------------------------------------------------

def _placement(args, runtime: Runtime) -> tuple[str, str]:
    provider = args.provider or runtime.settings.default_provider
    if not provider:
        raise ConfigError("No provider given and no defaults.provider in settings.yaml")
    region = args.region or runtime.settings.default_region
    if not region:
        config = runtime.providers.get(provider)
        region = config.regions[0].name if config else 'default'
    return provider, region


def _create(noun: str, args, runtime: Runtime) -> Resource:
    provider, region = _placement(args, runtime)
    if noun == 'instance':
        spec = {
            'cpu': args.cpu,
            'memory_gb': args.memory,
            'disk_gb': args.disk,
            'power': args.power,
            'image': args.image,
            'network_ids': args.networks or [],
        }
    elif noun == 'volume':
        spec = {'size_gb': args.size, 'volume_type': args.volume_type, 'attached_to': args.attach}
    else:
        spec = {
            'cidr': args.cidr,
            'prefix_len': args.prefix_len,
            'network_type': args.network_type,
            'gateway': args.gateway,
            'dns_servers': args.dns or [],
        }
    return runtime.engine.create(
        noun, args.name, provider, region, spec,
        tags=_parse_tags(args.tag), resource_id=args.resource_id,
    )


def _handle_resource(noun: str, args, runtime: Runtime):
    engine = runtime.engine
    if args.action == 'create':
        return _create(noun, args, runtime).to_dict()
    if args.action == 'delete':
        return engine.delete(args.id).to_dict()
    if args.action == 'show':
        return engine.show(args.id).to_dict()
    if args.action == 'list':
        return _resources(engine.list(kind=ResourceKind(noun), provider=args.provider))
    if args.action == 'attach':
        return engine.attach(args.id, args.instance).to_dict()
    if args.action == 'detach':
        return engine.detach(args.id).to_dict()
    if args.action == 'usage':
        return runtime.allocator.usage()
    raise ConfigError(f"Unknown action '{args.action}'")


def _handle_provider(args, runtime: Runtime):
    if args.action == 'list':
        return [
            {'name': c.name, 'type': c.type, 'endpoint': c.api_endpoint,
             'regions': [r.name for r in c.regions]}
            for c in runtime.providers.values()
        ]
    return runtime.engine.connect(args.name, enroll=not args.no_enroll).to_dict()


def _handle_keys(args, runtime: Runtime):
    keys = runtime.keys
    if args.action == 'list':
        return [_handle_dict(h) for h in keys.handles(args.owner)]
    if args.action == 'rotate':
        return _handle_dict(keys.rotate(args.owner))
    if args.action == 'tick':
        return keys.tick()
    return [_handle_dict(h) for h in keys.overdue()]


def _handle_dict(handle) -> dict:
    return {
        'owner': handle.owner,
        'key_id': handle.key_id,
        'public_key': handle.public_key,
        'state': handle.rotation_state.value,
        'valid_from': handle.valid_from,
        'valid_until': handle.valid_until,
    }


def _handle_reconcile(args, runtime: Runtime):
    engine = runtime.engine
    if args.action == 'sweep':
        return engine.sweep()
    if args.action == 'check':
        return {args.id: engine.check_drift(args.id)}
    if args.action == 'retry':
        return engine.retry(args.id).to_dict()
    if args.action == 'cancel':
        return {args.id: 'cancel requested' if engine.cancel(args.id) else 'nothing in flight'}
    if args.action == 'resume':
        return engine.resume()
    scheduler = Scheduler.from_settings(engine, runtime.keys, runtime.settings)
    scheduler.start()
    try:
        scheduler.wait()
    except KeyboardInterrupt:
        logger.info("Interrupted, stopping")
    finally:
        scheduler.stop()
    return {'stopped': True}


# Actions that only read state skip re-driving interrupted operations
READ_ONLY = {'list', 'show', 'usage', 'overdue'}


def dispatch_noun(noun: str, argv: list) -> int:
    """Dispatch to noun-specific handler.

    Args:
        noun: The noun command (e.g., "instance", "keys")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    parser = _build_parser(noun)
    args = parser.parse_args(argv)
    try:
        runtime = build_runtime(args.config)
        _setup_logging(args.verbose, args.json, runtime.settings.log_level)
        if args.action in READ_ONLY:
            runtime.engine.load()
        elif not (noun == 'reconcile' and args.action == 'resume'):
            runtime.engine.resume()

        if noun == 'provider':
            result = _handle_provider(args, runtime)
        elif noun == 'keys':
            result = _handle_keys(args, runtime)
        elif noun == 'reconcile':
            result = _handle_reconcile(args, runtime)
        else:
            result = _handle_resource(noun, args, runtime)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except BbctlError as e:
        logger.error(str(e))
        if args.json:
            print(json.dumps({'error': type(e).__name__, 'message': str(e)}, indent=2))
        return 1

    _emit(args, result)
    return 0


def print_usage():
    """Print top-level usage showing noun commands."""
    print(f"bbctl {VERSION}")
    print()
    print("Usage: bbctl <noun> <action> [options]")
    print()
    print("Commands:")
    for noun, desc in NOUN_COMMANDS.items():
        print(f"  {noun:<12} {desc}")
    print()
    print("Run 'bbctl <noun> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  bbctl network create tenant-a -p vyos1 --cidr 10.1.0.0/24")
    print("  bbctl instance create web1 -p pve1 --cpu 2 --memory 4 --disk 20")
    print("  bbctl volume attach <volume-id> <instance-id>")
    print("  bbctl keys list --json")
    print("  bbctl reconcile sweep")


def main(argv: Optional[list] = None) -> int:
    """CLI entry point: dispatch to noun-action handlers."""
    argv = sys.argv[1:] if argv is None else argv
    if not argv or argv[0] in ('-h', '--help'):
        print_usage()
        return 0
    if argv[0] == '--version':
        print(f"bbctl {VERSION}")
        return 0
    noun = argv[0]
    if noun not in NOUN_COMMANDS:
        print(f"Error: Unknown command '{noun}'")
        print_usage()
        return 1
    return dispatch_noun(noun, argv[1:])


if __name__ == '__main__':
    sys.exit(main())

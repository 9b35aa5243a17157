#!/usr/bin/env python3
"""CLI entry point for landform.

Verbs:
- init: Resolve provider versions and write the lock file
- validate: Check the configuration without touching state
- plan: Show what apply would change
- apply: Plan and apply in one locked cycle
- destroy: Destroy every object in state

Nouns with actions:
- providers lock: Re-resolve provider versions (optionally upgrading)
- state list|show|mv|rm|force-unlock: Inspect and edit state

Exit codes: 0 success, 1 failure, 2 plan --detailed-exitcode with changes.
"""

import argparse
import json
import logging
import signal
import sys
from importlib.metadata import PackageNotFoundError, version as package_version

from config import EngineConfig, load_engine_config
from engine.executor import NodeOutcome, NodeStatus
from engine.graph import GraphBuilder
from engine.orchestrator import CycleResult, Orchestrator
from engine.plan import Plan
from errors import LandformError
from providers.base import ProviderInstances
from reporting import ReportWriter, render_apply, render_plan

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CHANGES = 2

COMMANDS = {
    "init": "Resolve provider versions and write the lock file",
    "validate": "Validate the configuration",
    "plan": "Show changes required by the configuration",
    "apply": "Create or update infrastructure",
    "destroy": "Destroy all managed infrastructure",
    "providers": "Provider version management (lock)",
    "state": "State inspection and editing (list/show/mv/rm/force-unlock)",
}


def get_version() -> str:
    try:
        return package_version('landform')
    except PackageNotFoundError:
        return 'dev'


def _common_parser() -> argparse.ArgumentParser:
    """Options shared by every verb."""
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument(
        '--chdir', '-C',
        help='Working directory (default: $LANDFORM_WORKDIR or current directory)',
    )
    parser.add_argument(
        '--config-file', '-f',
        help='Configuration document, relative to the working directory (default: main.yaml)',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs to stderr)',
    )
    return parser


def build_parser() -> argparse.ArgumentParser:
    common = _common_parser()
    parser = argparse.ArgumentParser(
        prog='landform',
        description='Declarative provisioning engine',
    )
    parser.add_argument('--version', action='version', version=f'landform {get_version()}')
    sub = parser.add_subparsers(dest='command', metavar='<command>')

    p = sub.add_parser('init', parents=[common], help=COMMANDS['init'])
    p.add_argument('--upgrade', action='store_true', help='Select the newest allowed versions')
    p.set_defaults(handler=cmd_init)

    p = sub.add_parser('validate', parents=[common], help=COMMANDS['validate'])
    p.set_defaults(handler=cmd_validate)

    p = sub.add_parser('plan', parents=[common], help=COMMANDS['plan'])
    p.add_argument('--destroy', action='store_true', help='Plan destruction of every object')
    p.add_argument('--refresh', dest='refresh', action='store_true', default=None,
                   help='Read live objects before planning')
    p.add_argument('--no-refresh', dest='refresh', action='store_false',
                   help='Plan against recorded state only')
    p.add_argument('--detailed-exitcode', action='store_true',
                   help='Exit 2 when the plan has changes')
    p.set_defaults(handler=cmd_plan)

    for verb in ('apply', 'destroy'):
        p = sub.add_parser(verb, parents=[common], help=COMMANDS[verb])
        p.add_argument('--yes', '-y', action='store_true', help='Skip confirmation prompt')
        p.add_argument('--parallelism', type=int, help='Maximum concurrent operations')
        p.add_argument('--refresh', dest='refresh', action='store_true', default=None,
                       help='Read live objects before planning')
        p.add_argument('--no-refresh', dest='refresh', action='store_false',
                       help='Plan against recorded state only')
        p.set_defaults(handler=cmd_apply, destroy=(verb == 'destroy'))

    providers = sub.add_parser('providers', help=COMMANDS['providers'])
    providers_sub = providers.add_subparsers(dest='action', metavar='<action>')
    p = providers_sub.add_parser('lock', parents=[common], help='Resolve and record provider versions')
    p.add_argument('--upgrade', action='store_true', help='Ignore locked versions and select the newest')
    p.set_defaults(handler=cmd_init)

    state = sub.add_parser('state', help=COMMANDS['state'])
    state_sub = state.add_subparsers(dest='action', metavar='<action>')
    p = state_sub.add_parser('list', parents=[common], help='List addresses in state')
    p.set_defaults(handler=cmd_state_list)
    p = state_sub.add_parser('show', parents=[common], help='Show one state record')
    p.add_argument('address')
    p.set_defaults(handler=cmd_state_show)
    p = state_sub.add_parser('mv', parents=[common], help='Rename a state record')
    p.add_argument('source')
    p.add_argument('target')
    p.set_defaults(handler=cmd_state_mv)
    p = state_sub.add_parser('rm', parents=[common], help='Forget an object without destroying it')
    p.add_argument('address')
    p.set_defaults(handler=cmd_state_rm)
    p = state_sub.add_parser('force-unlock', parents=[common], help='Remove a stale state lock')
    p.add_argument('lock_id')
    p.set_defaults(handler=cmd_state_force_unlock)

    return parser


def _setup_logging(verbose: bool, json_output: bool) -> None:
    """Configure logging based on flags."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr if json_output else sys.stdout)
    handler.setFormatter(logging.Formatter(
        '%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    ))
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)


def _emit_json(data: dict) -> None:
    print(json.dumps(data, indent=2))


def _load_config(args, **overrides) -> EngineConfig:
    return load_engine_config(args.chdir, config_file=args.config_file, **overrides)


def cmd_init(args) -> int:
    config = _load_config(args)
    orchestrator = Orchestrator(config)
    configuration = orchestrator.load_configuration()
    entries = orchestrator.lock_providers(configuration, upgrade=args.upgrade)
    config.data_dir.mkdir(parents=True, exist_ok=True)

    if args.json_output:
        _emit_json({
            'success': True,
            'lock_file': str(config.lock_file),
            'providers': {name: e.to_dict() for name, e in sorted(entries.items())},
        })
        return EXIT_OK

    for name, entry in sorted(entries.items()):
        constraint = f" ({entry.constraints})" if entry.constraints else ''
        print(f"  {name} {entry.version}{constraint}")
    print(f"Provider versions recorded in {config.lock_file}")
    return EXIT_OK


def cmd_validate(args) -> int:
    """Load the configuration, build its graph and check every resource type."""
    config = _load_config(args)
    orchestrator = Orchestrator(config)
    configuration = orchestrator.load_configuration()

    locked = orchestrator.lock_file.load()
    versions = {}
    for name in configuration.provider_names():
        if name in locked:
            versions[name] = locked[name].version
        elif orchestrator.registry.versions(name):
            versions[name] = orchestrator.registry.versions(name)[-1]
    providers = ProviderInstances(orchestrator.registry, versions)
    for obj in configuration.objects.values():
        providers.schema(obj.provider, obj.type)

    graph = GraphBuilder().build(configuration, orchestrator.store.snapshot())
    count = len(configuration.objects)

    if args.json_output:
        _emit_json({'success': True, 'objects': count, 'nodes': len(graph)})
    else:
        print(f"Configuration is valid ({count} object{'s' if count != 1 else ''})")
    return EXIT_OK


def cmd_plan(args) -> int:
    config = _load_config(args)
    orchestrator = Orchestrator(config)
    result = orchestrator.plan(destroy=args.destroy, refresh=args.refresh)
    plan = result.plan

    if args.json_output:
        _emit_json({'success': True, 'has_changes': plan.has_changes, 'plan': plan.to_dict()})
    else:
        print(render_plan(plan))

    if args.detailed_exitcode and plan.has_changes:
        return EXIT_CHANGES
    return EXIT_OK


def _confirm(verb: str, json_output: bool):
    def confirm(plan: Plan) -> bool:
        if json_output:
            print("Error: --yes is required with --json-output", file=sys.stderr)
            return False
        print(render_plan(plan))
        print()
        if verb == 'destroy':
            print("WARNING: This will destroy the objects above. This action cannot be undone.")
        response = input(f"Continue with {verb}? [y/N] ").strip().lower()
        if response != 'y':
            print("Aborted.")
            return False
        return True
    return confirm


def _print_outcome(outcome: NodeOutcome) -> None:
    if outcome.kind == 'provider' or outcome.status == NodeStatus.UNCHANGED:
        return
    detail = f" ({outcome.message})" if outcome.message else ''
    print(f"{outcome.key}: {outcome.status.value}{detail}", flush=True)


def _install_sigint(orchestrator: Orchestrator):
    """First Ctrl-C cancels gracefully; a second one aborts."""
    interrupted = []

    def handler(signum, frame):
        if interrupted:
            raise KeyboardInterrupt
        interrupted.append(signum)
        print("\nInterrupt received: finishing in-flight operations (Ctrl-C again to abort)",
              file=sys.stderr)
        orchestrator.cancel()

    return signal.signal(signal.SIGINT, handler)


def cmd_apply(args) -> int:
    verb = 'destroy' if args.destroy else 'apply'
    config = _load_config(args, parallelism=args.parallelism)
    orchestrator = Orchestrator(config)

    previous = _install_sigint(orchestrator)
    try:
        result: CycleResult = orchestrator.apply(
            destroy=args.destroy,
            refresh=args.refresh,
            confirm=None if args.yes else _confirm(verb, args.json_output),
            on_outcome=None if args.json_output else _print_outcome,
        )
    finally:
        signal.signal(signal.SIGINT, previous)

    if not result.confirmed:
        return EXIT_FAILED

    report = result.report
    if report.outcomes:
        paths = ReportWriter(config.report_dir).write(verb, report, result.plan)
        logger.debug(f"Reports written: {', '.join(str(p) for p in paths)}")

    if args.json_output:
        _emit_json({'verb': verb, **report.to_dict(), 'plan': result.plan.to_dict()})
    elif report.outcomes:
        print(render_apply(report))
    else:
        print(render_plan(result.plan))

    return EXIT_OK if report.success else EXIT_FAILED


def cmd_state_list(args) -> int:
    store = Orchestrator(_load_config(args)).store
    addresses = store.addresses()
    if args.json_output:
        _emit_json({'serial': store.serial, 'addresses': addresses})
    else:
        for address in addresses:
            print(address)
    return EXIT_OK


def cmd_state_show(args) -> int:
    store = Orchestrator(_load_config(args)).store
    record = store.get(args.address)
    if record is None:
        print(f"Error: No state record at '{args.address}'", file=sys.stderr)
        return EXIT_FAILED
    print(json.dumps(record.to_dict(), indent=2))
    return EXIT_OK


def cmd_state_mv(args) -> int:
    store = Orchestrator(_load_config(args)).store
    with store.begin_transaction('state mv') as lock:
        store.move(args.source, args.target, lock)
    if args.json_output:
        _emit_json({'success': True, 'moved': {args.source: args.target}})
    else:
        print(f"Moved {args.source} to {args.target}")
    return EXIT_OK


def cmd_state_rm(args) -> int:
    store = Orchestrator(_load_config(args)).store
    with store.begin_transaction('state rm') as lock:
        record = store.get(args.address)
        if record is None:
            print(f"Error: No state record at '{args.address}'", file=sys.stderr)
            return EXIT_FAILED
        store.remove(args.address, record.serial, lock)
    if args.json_output:
        _emit_json({'success': True, 'removed': args.address})
    else:
        print(f"Removed {args.address} from state (object not destroyed)")
    return EXIT_OK


def cmd_state_force_unlock(args) -> int:
    store = Orchestrator(_load_config(args)).store
    store.force_unlock(args.lock_id)
    print(f"State lock {args.lock_id} removed")
    return EXIT_OK


def print_usage():
    """Print top-level usage showing commands."""
    print(f"landform {get_version()}")
    print()
    print("Usage: landform <command> [options]")
    print()
    print("Commands:")
    for name, desc in COMMANDS.items():
        print(f"  {name:<12} {desc}")
    print()
    print("Run 'landform <command> --help' for command-specific options.")


def main(argv: list | None = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        print_usage()
        return EXIT_OK
    if not hasattr(args, 'handler'):
        parser.parse_args([args.command, '--help'])
        return EXIT_FAILED

    _setup_logging(args.verbose, args.json_output)

    try:
        rc: int = args.handler(args)
        return rc
    except LandformError as e:
        print(f"Error: {e}", file=sys.stderr)
        if args.json_output:
            error = {'code': e.code, 'message': e.message}
            report = getattr(e, 'report', None)
            payload = {'success': False, 'error': error}
            if report is not None:
                payload.update(report.to_dict())
                payload['success'] = False
            _emit_json(payload)
        return EXIT_FAILED


if __name__ == '__main__':
    sys.exit(main())

#!/usr/bin/env python3
"""CLI entry point for converge-driver.

Verb subcommands:
    converge validate [-f DOCUMENT]
    converge plan     [-f DOCUMENT] [--var-file F] [--var k=v] [--detailed-exitcode]
    converge apply    [-f DOCUMENT] [--var-file F] [--var k=v] [--on-error continue|stop]
    converge destroy  [-f DOCUMENT] [--yes]
    converge output   [NAME]
    converge test     [-f DOCUMENT] [--probe OUTPUT] [--keep]
    converge state    list | show ADDRESS
"""

import argparse
import json
import logging
import sys
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Any, Optional

from common import format_value
from config import ON_ERROR_CHOICES, ConfigError, EngineConfig, load_engine_config
from document import Document, bind_variables, load_document, load_var_file, parse_var_assignments
from engine.executor import ApplyResult, Executor
from engine.graph import DependencyGraph
from engine.planner import Planner
from engine.state import State, StateLockError, StateStore
from providers import ProviderError, default_registry
from readiness import check_outputs, probe_outputs
from reporting.report import RunReport

VERB_COMMANDS = {
    "validate": "Check document structure, references and attribute schemas",
    "plan": "Show the changes apply would make",
    "apply": "Converge infrastructure to the document",
    "destroy": "Delete every resource recorded in state",
    "output": "Show output values from the last apply",
    "test": "Apply, verify outputs and endpoints, then destroy",
    "state": "Inspect recorded state (list, show)",
}

SENSITIVE = "(sensitive)"

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def get_version() -> str:
    """Installed package version, or 'dev' when running from a checkout."""
    try:
        return version('converge-driver')
    except PackageNotFoundError:
        return 'dev'


def _document_parser(verb: str, description: str) -> argparse.ArgumentParser:
    """Argument parser with options shared by every verb."""
    parser = argparse.ArgumentParser(
        prog=f'converge {verb}',
        description=description,
    )
    parser.add_argument(
        '--file', '-f',
        help='Document file, or directory holding main.yaml (default: ./main.yaml)',
    )
    parser.add_argument(
        '--document-json',
        help='Inline document JSON',
    )
    parser.add_argument(
        '--state',
        help='State file path (default: <state_dir>/<document>/state.json)',
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


def _common_parser(verb: str, description: str) -> argparse.ArgumentParser:
    """Parser for verbs that plan: adds variables and execution settings."""
    parser = _document_parser(verb, description)
    parser.add_argument(
        '--var-file',
        action='append',
        default=[],
        help='Variable file (YAML, JSON or name = "value" lines); repeatable',
    )
    parser.add_argument(
        '--var',
        action='append',
        default=[],
        metavar='NAME=VALUE',
        help='Set a variable; repeatable, overrides var files',
    )
    parser.add_argument(
        '--parallelism',
        type=int,
        help='Max concurrent provider operations',
    )
    parser.add_argument(
        '--on-error',
        choices=ON_ERROR_CHOICES,
        help='continue: keep independent branches going; stop: halt scheduling',
    )
    parser.add_argument(
        '--no-refresh',
        action='store_true',
        help='Diff against recorded state without reading it back from providers',
    )
    parser.add_argument(
        '--force-unlock',
        action='store_true',
        help='Remove a stale state lock before running',
    )
    return parser


def _setup_logging(verbose: bool, json_output: bool) -> None:
    """Configure logging based on flags."""
    if json_output:
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        root_logger.addHandler(stderr_handler)

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def _load_document_and_config(args) -> tuple[Document, EngineConfig]:
    """Load the document and engine configuration.

    Settings precedence: CLI flags, document settings, environment,
    converge.yaml, built-in defaults.
    """
    document = load_document(file_path=args.file, json_str=args.document_json)
    config = load_engine_config(document.base_dir)

    settings = document.settings
    if settings.parallelism is not None:
        config.parallelism = settings.parallelism
    if settings.on_error is not None:
        config.on_error = settings.on_error
    if getattr(args, 'parallelism', None) is not None:
        config.parallelism = args.parallelism
    if getattr(args, 'on_error', None) is not None:
        config.on_error = args.on_error
    if getattr(args, 'no_refresh', False):
        config.refresh = False
    config.validate()
    return document, config


def _open_state(args, document: Document, config: EngineConfig) -> tuple[StateStore, State]:
    path = Path(args.state) if args.state else config.state_path(document.name)
    store = StateStore(path)
    if getattr(args, 'force_unlock', False):
        store.force_unlock()
    return store, store.load(document.name)


def _bind(args, document: Document) -> dict[str, Any]:
    file_values: dict[str, Any] = {}
    for var_file in args.var_file:
        file_values.update(load_var_file(Path(var_file)))
    return bind_variables(document, file_values, parse_var_assignments(args.var))


def _planner(document: Document, config: EngineConfig, state: State, variables: dict) -> Planner:
    return Planner(
        document=document,
        graph=DependencyGraph(document),
        registry=default_registry(),
        state=state,
        variables=variables,
        data_dir=config.cloud_dir(),
        refresh=config.refresh,
    )


def _print_banner(title: str, document: Document, store: StateStore) -> None:
    print("")
    print("=" * 65)
    print(f"  {title}: {document.name}")
    print(f"  State: {store.path}")
    print("=" * 65)
    print("")


def _shown(document: Document, name: str, value: Any) -> str:
    """Display form of an output value; sensitive outputs are masked."""
    if any(o.name == name and o.sensitive for o in document.outputs):
        return SENSITIVE
    return format_value(value)


def _print_result(document: Document, result: ApplyResult) -> None:
    print("")
    for outcome in result.failed:
        print(f"  ✗ {outcome.address}: {outcome.message}")
    for outcome in result.skipped:
        print(f"  - {outcome.address}: skipped ({outcome.message})")
    if result.outputs:
        print("")
        print("Outputs:")
        for name, value in result.outputs.items():
            print(f"  {name} = {_shown(document, name, value)}")
    for name in result.missing_outputs:
        print(f"  {name} = (unavailable)")
    print("")
    print(result.summary())


def _emit_json(data: dict) -> None:
    """Emit structured JSON output."""
    print(json.dumps(data, indent=2, default=str))


def validate_main(argv: list) -> int:
    """Handle 'validate' verb."""
    parser = _document_parser('validate', VERB_COMMANDS['validate'])
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    document = load_document(file_path=args.file, json_str=args.document_json)
    graph = DependencyGraph(document)
    planner = Planner(document, graph, default_registry(), State(document.name), variables={})
    errors = planner.validate()

    if args.json_output:
        _emit_json({'document': document.name, 'valid': not errors, 'errors': errors})
        return 1 if errors else 0

    if errors:
        print(f"Document '{document.name}' has {len(errors)} validation error(s):", file=sys.stderr)
        for error in errors:
            print(f"  ✗ {error}", file=sys.stderr)
        return 1

    print(
        f"Document '{document.name}' is valid "
        f"({len(document.resources)} resources, {len(document.data)} data sources, "
        f"depth {graph.max_depth})"
    )
    return 0


def plan_main(argv: list) -> int:
    """Handle 'plan' verb."""
    parser = _common_parser('plan', VERB_COMMANDS['plan'])
    parser.add_argument(
        '--detailed-exitcode',
        action='store_true',
        help='Exit 2 when the plan has changes, 0 when it has none',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    document, config = _load_document_and_config(args)
    variables = _bind(args, document)
    store, state = _open_state(args, document, config)

    with store.lock('plan'):
        plan = _planner(document, config, state, variables).plan()

    if args.json_output:
        _emit_json(plan.to_dict())
    else:
        _print_banner('PLAN', document, store)
        print(plan.render())

    if args.detailed_exitcode and plan.has_changes:
        return 2
    return 0


def apply_main(argv: list) -> int:
    """Handle 'apply' verb."""
    parser = _common_parser('apply', VERB_COMMANDS['apply'])
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    document, config = _load_document_and_config(args)
    variables = _bind(args, document)
    store, state = _open_state(args, document, config)

    with store.lock('apply'):
        plan = _planner(document, config, state, variables).plan()
        if not args.json_output:
            _print_banner('APPLY', document, store)
            print(plan.render())
        logger.info(f"Applying '{document.name}' (parallelism={config.parallelism}, on_error={config.on_error})")
        result = _executor(config, state, store).apply(plan)

    if args.json_output:
        _emit_json(result.to_dict())
    else:
        _print_result(document, result)
    return 0 if result.success else 1


def _executor(config: EngineConfig, state: State, store: StateStore) -> Executor:
    return Executor(
        registry=default_registry(),
        state=state,
        store=store,
        parallelism=config.parallelism,
        on_error=config.on_error,
    )


def destroy_main(argv: list) -> int:
    """Handle 'destroy' verb."""
    parser = _common_parser('destroy', VERB_COMMANDS['destroy'])
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    document, config = _load_document_and_config(args)
    variables = _bind(args, document)
    store, state = _open_state(args, document, config)

    if not state.resources:
        logger.info(f"No resources recorded for '{document.name}'; nothing to destroy")
        if args.json_output:
            _emit_json(ApplyResult(document.name, operation='destroy').to_dict())
        return 0

    # Confirmation for destructive operation
    if not args.yes and args.json_output:
        print("Error: destroy with --json-output requires --yes", file=sys.stderr)
        return 1
    if not args.yes:
        print(f"\nWARNING: This will destroy all {len(state.resources)} resources in '{document.name}'.")
        print(f"State: {store.path}")
        print("This action cannot be undone.")
        response = input("Continue? [y/N] ").strip().lower()
        if response != 'y':
            print("Aborted.")
            return 1

    with store.lock('destroy'):
        plan = _planner(document, config, state, variables).plan_destroy()
        if not args.json_output:
            _print_banner('DESTROY', document, store)
            print(plan.render())
        result = _executor(config, state, store).destroy(plan)

    if args.json_output:
        _emit_json(result.to_dict())
    else:
        _print_result(document, result)
    return 0 if result.success else 1


def output_main(argv: list) -> int:
    """Handle 'output' verb."""
    parser = _document_parser('output', VERB_COMMANDS['output'])
    parser.add_argument(
        'name',
        nargs='?',
        help='Print only this output (raw value)',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    document, config = _load_document_and_config(args)
    _, state = _open_state(args, document, config)
    outputs = state.outputs

    if args.name:
        if args.name not in outputs:
            print(f"Error: Output '{args.name}' not found. Run apply first.", file=sys.stderr)
            return 1
        value = outputs[args.name]
        if args.json_output:
            _emit_json({args.name: value})
        elif isinstance(value, str):
            print(value)
        else:
            print(format_value(value))
        return 0

    if args.json_output:
        _emit_json(outputs)
        return 0
    if not outputs:
        print(f"No outputs recorded for '{document.name}'.")
        return 0
    for name, value in outputs.items():
        print(f"{name} = {_shown(document, name, value)}")
    return 0


def test_main(argv: list) -> int:
    """Handle 'test' verb: apply, verify, destroy, write a report."""
    parser = _common_parser('test', VERB_COMMANDS['test'])
    parser.add_argument(
        '--probe',
        action='append',
        default=[],
        metavar='OUTPUT',
        help='Output holding an HTTP URL that must answer unauthenticated requests',
    )
    parser.add_argument(
        '--probe-timeout',
        type=float,
        default=60,
        help='Seconds to wait for each probed endpoint',
    )
    parser.add_argument(
        '--keep',
        action='store_true',
        help='Skip the destroy phase',
    )
    parser.add_argument(
        '--report-dir', '-r',
        type=Path,
        help='Report directory (default: <state_dir>/<document>/reports)',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    document, config = _load_document_and_config(args)
    variables = _bind(args, document)
    store, state = _open_state(args, document, config)

    report_dir = args.report_dir or config.state_dir / document.name / 'reports'
    report = RunReport(document=document.name, report_dir=report_dir)
    report.start()
    success = True

    with store.lock('test'):
        report.start_phase('apply')
        plan = _planner(document, config, state, variables).plan()
        result = _executor(config, state, store).apply(plan)
        if result.success:
            report.pass_phase('apply', 'Converge infrastructure', result.summary(),
                              result.duration, {'plan': plan.counts()})
        else:
            success = False
            report.fail_phase('apply', 'Converge infrastructure', result.summary(),
                              result.duration, result.to_dict())

        if success:
            report.start_phase('outputs')
            check = check_outputs(result.outputs, [o.name for o in document.outputs])
            _record(report, 'outputs', 'Outputs present and non-empty', check)
            success = check.success
        else:
            report.skip_phase('outputs', 'Outputs present and non-empty', 'apply failed')

        if not args.probe:
            report.skip_phase('probe', 'Endpoints accept unauthenticated requests', 'no --probe given')
        elif success:
            check = probe_outputs(result.outputs, args.probe, timeout=args.probe_timeout)
            _record(report, 'probe', 'Endpoints accept unauthenticated requests', check)
            success = check.success
        else:
            report.skip_phase('probe', 'Endpoints accept unauthenticated requests', 'earlier phase failed')

        if args.keep:
            report.skip_phase('destroy', 'Delete all resources', '--keep')
        else:
            report.start_phase('destroy')
            destroy_plan = _planner(document, config, state, variables).plan_destroy()
            destroyed = _executor(config, state, store).destroy(destroy_plan)
            if destroyed.success:
                report.pass_phase('destroy', 'Delete all resources', destroyed.summary(), destroyed.duration)
            else:
                success = False
                report.fail_phase('destroy', 'Delete all resources', destroyed.summary(),
                                  destroyed.duration, destroyed.to_dict())

    paths = report.finish(success)
    if args.json_output:
        _emit_json(report.to_dict())
    else:
        print("")
        for phase in report.phases:
            print(f"  [{phase.status}] {phase.name}: {phase.message}")
        print("")
        print(f"Test {'PASSED' if success else 'FAILED'} in {report.duration:.1f}s")
        for path in paths:
            print(f"  Report: {path}")
    return 0 if success else 1


def _record(report: RunReport, name: str, description: str, check) -> None:
    if check.success:
        report.pass_phase(name, description, check.message, check.duration, check.details)
    else:
        report.fail_phase(name, description, check.message, check.duration, check.details)


def state_main(argv: list) -> int:
    """Handle 'state list' and 'state show ADDRESS'."""
    parser = _document_parser('state', VERB_COMMANDS['state'])
    parser.add_argument('action', choices=('list', 'show'))
    parser.add_argument('address', nargs='?')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    document, config = _load_document_and_config(args)
    _, state = _open_state(args, document, config)

    if args.action == 'list':
        addresses = sorted(state.resources)
        if args.json_output:
            _emit_json({'serial': state.serial, 'resources': addresses})
        else:
            for address in addresses:
                print(address)
        return 0

    if not args.address:
        print("Error: state show requires an ADDRESS", file=sys.stderr)
        return 1
    resource = state.get(args.address)
    if resource is None:
        print(f"Error: '{args.address}' is not in state", file=sys.stderr)
        return 1
    if args.json_output:
        _emit_json({'address': resource.address, **resource.to_dict()})
        return 0
    print(f"# {resource.address}")
    print(f"id = {format_value(resource.id)}")
    for key, value in sorted(resource.values.items()):
        print(f"{key} = {format_value(value)}")
    return 0


VERB_HANDLERS = {
    "validate": validate_main,
    "plan": plan_main,
    "apply": apply_main,
    "destroy": destroy_main,
    "output": output_main,
    "test": test_main,
    "state": state_main,
}


def dispatch(verb: str, argv: list) -> int:
    """Run a verb handler, turning engine errors into exit code 1.

    Args:
        verb: The verb command (e.g., "apply")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    try:
        return VERB_HANDLERS[verb](argv)
    except (ConfigError, ProviderError, StateLockError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def print_usage() -> None:
    """Print top-level usage showing verbs."""
    print(f"converge-driver {get_version()}")
    print()
    print("Usage: converge <verb> [options]")
    print()
    print("Commands:")
    for verb, desc in VERB_COMMANDS.items():
        print(f"  {verb:<10} {desc}")
    print()
    print("Run 'converge <verb> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  converge plan -f examples/cloud-function --var-file examples/cloud-function/vars.tfvars")
    print("  converge apply -f examples/cloud-function --var google_project_name=my-proj")
    print("  converge output function_url_trigger -f examples/cloud-function")


def main(argv: Optional[list] = None) -> int:
    """CLI entry point; dispatch to verb handlers."""
    argv = sys.argv[1:] if argv is None else argv
    if not argv or argv[0] in ('-h', '--help'):
        print_usage()
        return 0
    if argv[0] == '--version':
        print(f"converge-driver {get_version()}")
        return 0

    verb = argv[0]
    if verb not in VERB_HANDLERS:
        print(f"Error: Unknown command '{verb}'")
        print_usage()
        return 1
    return dispatch(verb, argv[1:])


if __name__ == '__main__':
    sys.exit(main())

"""
callmachines CLI Runner.

Inspect and drive stored machine definitions from the command line:
    python -m callmachines.run list
    python -m callmachines.run dot ivr_demo > ivr_demo.dot
    python -m callmachines.run transition ivr_demo startCall --state new_call \\
        --data '{"channelId": "chan-1"}'
"""

import argparse
import asyncio
import json
import sys
from typing import Optional, Tuple

from .actions import ActionRuntime
from .ari import AriClient
from .config import RuntimeSettings, load_settings
from .control import ControlDispatcher
from .errors import CallMachinesError
from .http_client import HttpxCollaborator
from .monitoring import get_logger, setup_logging
from .registry import MachineRegistry
from .service import MachineService
from .storage import LocalDefinitionStore

logger = get_logger(__name__)


def build_runtime(settings: RuntimeSettings) -> Tuple[ActionRuntime, HttpxCollaborator, Optional[AriClient]]:
    """Create collaborators from settings; the ARI client only when configured."""
    http = HttpxCollaborator()
    ari = None
    if settings.ari_configured:
        ari = AriClient(
            settings.asterisk_url,
            settings.asterisk_username,
            settings.asterisk_password,
            app_name=settings.asterisk_app_name,
        )
    else:
        logger.info("Asterisk ARI connection details missing; control operations are unavailable")
    control = ControlDispatcher(ari, app_name=settings.asterisk_app_name or "callmachines")
    runtime = ActionRuntime(http=http, control=control, default_timeout_ms=settings.http_timeout_ms)
    return runtime, http, ari


def _json_arg(value: Optional[str], name: str) -> dict:
    if not value:
        return {}
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as e:
        raise SystemExit(f"Invalid JSON for {name}: {e}")
    if not isinstance(parsed, dict):
        raise SystemExit(f"{name} must be a JSON object")
    return parsed


async def _run(args: argparse.Namespace, settings: RuntimeSettings) -> int:
    runtime, http, ari = build_runtime(settings)
    store = LocalDefinitionStore(args.definitions or settings.definitions_dir)
    registry = MachineRegistry(store, runtime)
    service = MachineService(registry)

    try:
        if args.command == "list":
            for machine_id in await service.list_machines():
                print(machine_id)
            return 0

        if args.command == "dot":
            sys.stdout.write(await service.graph(args.machine_id))
            return 0

        if args.command == "transition":
            result = await service.run_transition(
                args.machine_id,
                args.transition,
                current_state=args.state,
                payload=_json_arg(args.payload, "--payload"),
                initial_data=_json_arg(args.data, "--data"),
            )
            print(json.dumps(result, indent=2, default=str))
            return 0 if result["accepted"] else 2
    finally:
        await http.close()
        if ari is not None:
            await ari.close()

    return 1


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Inspect and drive call-flow machine definitions",
        prog="python -m callmachines.run"
    )
    parser.add_argument(
        "--settings", "-s",
        help="Path to a settings file (YAML or JSON)"
    )
    parser.add_argument(
        "--definitions", "-d",
        help="Definitions directory (overrides settings)"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("list", help="List stored machine ids")

    dot = subparsers.add_parser("dot", help="Print a machine as a Graphviz DOT graph")
    dot.add_argument("machine_id")

    transition = subparsers.add_parser("transition", help="Fire one transition on a fresh instance")
    transition.add_argument("machine_id")
    transition.add_argument("transition")
    transition.add_argument("--state", help="State to start from (default: initial)")
    transition.add_argument("--payload", help="JSON object passed as the transition payload")
    transition.add_argument("--data", help="JSON object seeding the instance data")

    args = parser.parse_args(argv)

    setup_logging(level="DEBUG" if args.verbose else None)

    try:
        settings = load_settings(args.settings)
    except (OSError, ValueError) as e:
        logger.error(f"Invalid settings: {e}")
        sys.exit(1)

    try:
        code = asyncio.run(_run(args, settings))
    except CallMachinesError as e:
        logger.error(f"{type(e).__name__}: {e}")
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()

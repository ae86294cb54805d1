############################################################
#
# fleetrouter - Fleet Health and Model Routing Service
#
# cli.py: Command line interface for status, routing and detection
#
############################################################

"""fleetrouter command line interface.

Exit codes:
    0  success
    1  configuration or input error
    2  no nodes reachable (or the server itself is unreachable)

A fallback-only route while some node is up still exits 0.
"""

import argparse
import asyncio
import json
import os
import sys
from typing import Any, Dict, List, Optional

import httpx

from fleetrouter.core.fleet_config import load_fleet_file
from fleetrouter.core.query import FleetQueryService, build_service
from fleetrouter.core.reporting import (
    decision_to_dict,
    format_decision,
    format_status,
    snapshot_to_dict,
)
from fleetrouter.core.telemetry.adapters.gpu_sources import (
    LocalGpuDetector,
    detect_compile_worker,
)
from fleetrouter.core.tiers import select_model_tier
from fleetrouter.errors import ConfigInvalid
from fleetrouter.logging_config import setup_logging
from fleetrouter.settings import get_settings

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_UNREACHABLE = 2


class CommandError(Exception):
    """A failure reported to the operator as one line."""

    def __init__(self, message: str, exit_code: int = EXIT_CONFIG):
        self.exit_code = exit_code
        super().__init__(message)


def _emit(args: argparse.Namespace, data: Dict[str, Any], lines: List[str]) -> None:
    if args.json:
        print(json.dumps(data, indent=2))
    else:
        print("\n".join(lines))


def _diagnose(message: str) -> None:
    print(f"fleetrouter: {message}", file=sys.stderr)


async def _probe_once(fleet_file: str) -> FleetQueryService:
    """Load the fleet, run a single probe cycle and return the service."""
    settings = get_settings()
    definition = load_fleet_file(fleet_file, settings)
    service = build_service(definition, settings)
    try:
        await service.aggregator.initialize()
        await service.aggregator.run_cycle()
    finally:
        await service.aggregator.stop()
    return service


def _fetch(server: str, path: str, params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    url = server.rstrip("/") + path
    try:
        response = httpx.get(url, params=params, timeout=get_settings().probe_timeout + 2)
    except httpx.HTTPError as e:
        raise CommandError(f"cannot reach fleetrouter at {server}: {e}", EXIT_UNREACHABLE)

    if response.status_code == 422:
        raise CommandError(str(response.json().get("detail", "invalid request")))
    if response.status_code != 200:
        raise CommandError(f"{url} returned HTTP {response.status_code}", EXIT_UNREACHABLE)
    return response.json()


def cmd_status(args: argparse.Namespace) -> int:
    if args.server:
        data = _fetch(args.server, "/api/fleet/snapshot")
    else:
        service = asyncio.run(_probe_once(args.fleet_file))
        view = service.current()
        data = snapshot_to_dict(view.snapshot, view.age_seconds)

    _emit(args, data, format_status(data))
    if data["summary"]["up"] == 0:
        _diagnose("no nodes reachable, routing will return remote fallback only")
        return EXIT_UNREACHABLE
    return EXIT_OK


def cmd_route(args: argparse.Namespace) -> int:
    if args.server:
        data = _fetch(
            args.server,
            f"/api/fleet/route/{args.node}",
            params={"hint": args.hint or ""},
        )
        nodes_up = _fetch(args.server, "/api/fleet/snapshot")["summary"]["up"]
    else:
        service = asyncio.run(_probe_once(args.fleet_file))
        try:
            decision = service.route(args.node, args.hint)
        except ValueError as e:
            raise CommandError(str(e))
        data = decision_to_dict(decision)
        nodes_up = service.current().snapshot.nodes_up

    _emit(args, data, format_decision(data))
    if nodes_up == 0:
        _diagnose("no nodes reachable, returning remote fallback only")
        return EXIT_UNREACHABLE
    if data["fallbackOnly"]:
        _diagnose(f"no local or LAN backend for {args.node}, using remote fallback")
    return EXIT_OK


def cmd_detect(args: argparse.Namespace) -> int:
    settings = get_settings()
    reading = asyncio.run(LocalGpuDetector(timeout=settings.gpu_query_timeout).detect())
    usable = reading.vram_gb if reading.counts_for_capacity else 0.0
    tier = select_model_tier(usable)

    data = {
        "gpuVendor": reading.vendor.value,
        "gpuName": reading.name,
        "vramGb": reading.vram_gb,
        "source": reading.source,
        "exact": reading.exact,
        "countsForCapacity": reading.counts_for_capacity,
        "hasCompileWorker": detect_compile_worker(),
        "tier": tier.name if tier else None,
        "primaryModel": tier.model if tier else None,
        "sidecarModel": tier.sidecar_model if tier else None,
        "fallbackModel": settings.remote_fallback_model,
    }

    lines = [
        f"GPU:      {reading.vendor.value} {reading.name or ''}".rstrip(),
        f"VRAM:     {reading.vram_gb:.1f}GB ({reading.source}"
        + ("" if reading.exact else ", estimated") + ")",
    ]
    if tier:
        lines.append(f"Tier:     {tier.name} ({tier.description})")
        lines.append(f"Model:    {tier.model}")
        if tier.sidecar_model:
            lines.append(f"Sidecar:  {tier.sidecar_model}")
    else:
        lines.append("Tier:     none (no local model, remote fallback only)")
    lines.append(f"Fallback: {settings.remote_fallback_model}")

    _emit(args, data, lines)
    return EXIT_OK


def cmd_serve(args: argparse.Namespace) -> int:
    os.environ["FLEET_FLEET_FILE"] = args.fleet_file
    if args.host:
        os.environ["FLEET_HOST"] = args.host
    if args.port:
        os.environ["FLEET_PORT"] = str(args.port)
    get_settings.cache_clear()

    # Validate before uvicorn starts so a bad file is one line, not a traceback
    load_fleet_file(args.fleet_file, get_settings())

    from fleetrouter.main import main as serve_main
    serve_main()
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    settings = get_settings()
    parser = argparse.ArgumentParser(
        prog="fleetrouter",
        description="Fleet health and model routing",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  fleetrouter status --fleet-file fleet.json
  fleetrouter route workstation-1 metered,min-tier=Medium
  fleetrouter --server http://orchestrator:8090 route workstation-1
  fleetrouter detect
""",
    )
    parser.add_argument("--fleet-file", default=settings.fleet_file,
                        help=f"Fleet definition file (default: {settings.fleet_file})")
    parser.add_argument("--server", default=None,
                        help="Query a running fleetrouter instead of probing directly")
    parser.add_argument("--json", action="store_true", default=False,
                        help="Print JSON instead of text")
    parser.add_argument("--log-level", default="WARNING",
                        help="Log level for diagnostics on stderr (default: WARNING)")

    sub = parser.add_subparsers(dest="command", required=True)

    status = sub.add_parser("status", help="Probe the fleet and print its state")
    status.set_defaults(func=cmd_status)

    route = sub.add_parser("route", help="Print the backend order for a node")
    route.add_argument("node", help="Requesting node name")
    route.add_argument("hint", nargs="?", default="",
                       help="Workload hint, e.g. 'metered' or 'min-tier=Medium'")
    route.set_defaults(func=cmd_route)

    detect = sub.add_parser("detect", help="Detect this machine's GPU and model tier")
    detect.set_defaults(func=cmd_detect)

    serve = sub.add_parser("serve", help="Run the HTTP service")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)
    serve.set_defaults(func=cmd_serve)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command != "serve":
        setup_logging(level=args.log_level, stream=sys.stderr)

    try:
        return args.func(args)
    except ConfigInvalid as e:
        _diagnose(f"invalid fleet configuration: {e}")
        return EXIT_CONFIG
    except CommandError as e:
        _diagnose(str(e))
        return e.exit_code
    except KeyboardInterrupt:
        return 130


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()

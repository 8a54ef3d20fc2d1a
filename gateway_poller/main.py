#!/usr/bin/env python3
"""
Gateway Poller CLI

Runs the poller service and exposes the scheduling and diagnostics
operations for on-demand use. Report commands print JSON to stdout and
exit non-zero when the operation failed or found problems.

Usage:
    gateway-poller run                       # Start the service
    gateway-poller run --dry-run             # Validate config and exit
    gateway-poller sync-config               # Apply config to the database
    gateway-poller repair                    # Start missing/overdue schedules
    gateway-poller validate                  # Report scheduling drift
    gateway-poller audit                     # Clean stale entries and locks
    gateway-poller status                    # Scheduling and health overview
    gateway-poller poll-once --gateway meter-1
    gateway-poller test-connection --host 192.168.1.50
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from gateway_poller.common.config import PollerConfig
from gateway_poller.common.exceptions import ConfigError, PollerError
from gateway_poller.common.logging_setup import LogContext, reconfigure_all
from gateway_poller.services.config.loader import load_config_file
from gateway_poller.services.device.modbus_client import ModbusClient
from gateway_poller.services.polling.service import PollerComponents, build_components, run_service
from gateway_poller.services.polling.worker import PollWorker

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2


def emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _load(args: argparse.Namespace, validate: bool = True) -> PollerConfig:
    config = load_config_file(args.config, validate=validate)
    if args.verbose:
        reconfigure_all("DEBUG", json_format=False)
    else:
        reconfigure_all(config.logging.level, config.logging.format == "json")
    return config


def _components(args: argparse.Namespace, sync: bool = True) -> PollerComponents:
    """Load config and sync it so the database reflects the file"""
    components = build_components(_load(args))
    if sync:
        components.entities.sync_config(components.config.gateways)
    return components


def _find_gateway(components: PollerComponents, name: str):
    gateway = components.entities.get_gateway_by_name(name)
    if gateway is None:
        emit({"success": False, "error": f"Unknown gateway: {name}"})
    return gateway


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------

def cmd_run(args: argparse.Namespace) -> int:
    config = _load(args)

    if args.dry_run:
        emit({"success": True, "gateways": len(config.gateways), "message": "configuration valid"})
        return EXIT_OK

    try:
        asyncio.run(run_service(config))
    except KeyboardInterrupt:
        pass
    return EXIT_OK


def cmd_sync_config(args: argparse.Namespace) -> int:
    components = build_components(_load(args))
    counts = components.entities.sync_config(components.config.gateways, apply_active=not args.keep_active)
    emit({"success": True, **counts})
    return EXIT_OK


def cmd_start(args: argparse.Namespace) -> int:
    components = _components(args)
    started = components.reliable.start_reliable_polling()
    emit({"success": started, "status": components.reliable.get_system_status()["summary"]})
    return EXIT_OK if started else EXIT_FAILURE


def cmd_stop_all(args: argparse.Namespace) -> int:
    components = _components(args, sync=False)
    removed = components.reliable.stop_all_polling()
    emit({"success": True, "schedules_cleared": removed})
    return EXIT_OK


def cmd_repair(args: argparse.Namespace) -> int:
    components = _components(args)
    report = components.reliable.ensure_active_gateways_polling()
    emit(report.to_dict())
    return EXIT_OK if not report.failed and not report.errors else EXIT_FAILURE


def cmd_validate(args: argparse.Namespace) -> int:
    components = _components(args, sync=False)
    report = components.reliable.validate_polling_integrity()
    emit(report.to_dict())
    return EXIT_OK if report.ok else EXIT_FAILURE


def cmd_audit(args: argparse.Namespace) -> int:
    components = _components(args, sync=False)
    report = components.reliable.audit_and_cleanup()
    emit(report.to_dict())
    return EXIT_OK if not report.errors else EXIT_FAILURE


def cmd_status(args: argparse.Namespace) -> int:
    components = _components(args, sync=False)
    status = components.reliable.get_system_status()
    status["database"] = components.entities.get_stats()
    emit(status)
    return EXIT_OK


def cmd_enable(args: argparse.Namespace) -> int:
    components = _components(args, sync=False)
    gateway = _find_gateway(components, args.gateway)
    if gateway is None:
        return EXIT_FAILURE
    components.reliable.enable_gateway(gateway.id)
    emit({"success": True, "gateway": gateway.name, "is_active": True})
    return EXIT_OK


def cmd_disable(args: argparse.Namespace) -> int:
    components = _components(args, sync=False)
    gateway = _find_gateway(components, args.gateway)
    if gateway is None:
        return EXIT_FAILURE
    components.reliable.disable_gateway(gateway.id)
    emit({"success": True, "gateway": gateway.name, "is_active": False})
    return EXIT_OK


async def _poll_all(components: PollerComponents) -> dict:
    sync = components.reliable.ensure_active_gateways_polling()
    worker = PollWorker(
        components.queue,
        components.entities,
        components.orchestrator,
        settings=components.config.worker,
    )
    processed = await worker.drain()
    await components.publisher.drain()
    return {"scheduled": sync.to_dict(), "processed": processed, "worker": worker.get_stats()}


def cmd_poll_once(args: argparse.Namespace) -> int:
    components = _components(args)

    if not args.gateway:
        summary = asyncio.run(_poll_all(components))
        emit(summary)
        return EXIT_OK if not summary["worker"]["failed"] else EXIT_FAILURE

    gateway = _find_gateway(components, args.gateway)
    if gateway is None:
        return EXIT_FAILURE
    result = asyncio.run(components.orchestrator.poll_gateway(gateway))
    emit(result.to_dict())
    return EXIT_OK if result.success else EXIT_FAILURE


def cmd_read_point(args: argparse.Namespace) -> int:
    components = _components(args)
    gateway = _find_gateway(components, args.gateway)
    if gateway is None:
        return EXIT_FAILURE

    point = next((p for p in gateway.data_points if p.label == args.label), None)
    if point is None:
        emit({"success": False, "error": f"Unknown data point {args.label} on {gateway.name}"})
        return EXIT_FAILURE

    try:
        sample = asyncio.run(components.orchestrator.sample_point(gateway, point))
    except PollerError as e:
        emit({"success": False, "error": e.message})
        return EXIT_FAILURE

    emit({"success": sample.error is None, "gateway": gateway.name, "label": point.label, **sample.to_dict()})
    return EXIT_OK if sample.error is None else EXIT_FAILURE


def cmd_test_connection(args: argparse.Namespace) -> int:
    if args.verbose:
        reconfigure_all("DEBUG", json_format=False)

    result = asyncio.run(ModbusClient.test_connection(
        host=args.host,
        port=args.port,
        unit_id=args.unit_id,
        test_register=args.register,
        timeout=args.timeout,
        function_code=args.function_code,
    ))
    emit(result.to_dict())
    return EXIT_OK if result.success else EXIT_FAILURE


# ----------------------------------------------------------------------
# Parser
# ----------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gateway-poller",
        description="Modbus TCP gateway poller",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config", "-c",
        type=str,
        default=None,
        help="Path to configuration file (default: $POLLER_CONFIG or /etc/gateway-poller/config.yaml)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (debug) logging",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run the poller service")
    run_parser.add_argument("--dry-run", action="store_true", help="Validate configuration and exit")
    run_parser.set_defaults(func=cmd_run)

    sync_parser = subparsers.add_parser("sync-config", help="Apply the config file to the database")
    sync_parser.add_argument(
        "--keep-active",
        action="store_true",
        help="Do not re-enable gateways disabled at runtime (circuit breaker)",
    )
    sync_parser.set_defaults(func=cmd_sync_config)

    subparsers.add_parser("start", help="Bootstrap scheduling for all active gateways").set_defaults(func=cmd_start)
    subparsers.add_parser("stop-all", help="Clear all schedule state").set_defaults(func=cmd_stop_all)
    subparsers.add_parser("repair", help="Start missing or overdue schedules").set_defaults(func=cmd_repair)
    subparsers.add_parser("validate", help="Report scheduling drift").set_defaults(func=cmd_validate)
    subparsers.add_parser("audit", help="Clean stale schedules, locks and stuck tasks").set_defaults(func=cmd_audit)
    subparsers.add_parser("status", help="Show scheduling and health status").set_defaults(func=cmd_status)

    for name, func, help_text in (
        ("enable", cmd_enable, "Re-enable a gateway and schedule it"),
        ("disable", cmd_disable, "Disable a gateway and clear its schedule"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--gateway", "-g", required=True, help="Gateway name")
        sub.set_defaults(func=func)

    poll_parser = subparsers.add_parser("poll-once", help="Poll now and print the result")
    poll_parser.add_argument("--gateway", "-g", help="Gateway name (default: every active gateway)")
    poll_parser.set_defaults(func=cmd_poll_once)

    read_parser = subparsers.add_parser("read-point", help="Read one data point without storing it")
    read_parser.add_argument("--gateway", "-g", required=True, help="Gateway name")
    read_parser.add_argument("--label", "-l", required=True, help="Data point label")
    read_parser.set_defaults(func=cmd_read_point)

    test_parser = subparsers.add_parser("test-connection", help="Probe a Modbus TCP endpoint")
    test_parser.add_argument("--host", required=True, help="Gateway host or IP")
    test_parser.add_argument("--port", type=int, default=502, help="TCP port (default: 502)")
    test_parser.add_argument("--unit-id", type=int, default=1, help="Modbus unit id (default: 1)")
    test_parser.add_argument("--register", type=int, default=1, help="1-based register to read (default: 1)")
    test_parser.add_argument("--function-code", type=int, choices=[3, 4], default=3, help="Read function (default: 3)")
    test_parser.add_argument("--timeout", type=float, default=5.0, help="Timeout in seconds (default: 5)")
    test_parser.set_defaults(func=cmd_test_connection)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        with LogContext(logging.getLogger("gateway_poller"), command=args.command):
            return args.func(args)
    except ConfigError as e:
        emit({"success": False, "error": e.message})
        return EXIT_CONFIG
    except PollerError as e:
        emit({"success": False, "error": e.message})
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())

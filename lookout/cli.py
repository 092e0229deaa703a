#!/usr/bin/env python3
"""Lookout CLI - machine presence from the terminal."""

import argparse
import asyncio
import logging
import sys

import uvicorn

from lookout.config import Settings, settings
from lookout.core.engine import PresenceEngine
from lookout.core.reconciler import PresenceReconciler
from lookout.core.status import describe_status
from lookout.errors import FetchFailure
from lookout.models.machine import ConnectionStatus, Machine, utc_now
from lookout.services.machine_api import MachineApiClient

STATUS_ICONS = {
    ConnectionStatus.ONLINE: "●",
    ConnectionStatus.UNSTABLE: "◐",
    ConnectionStatus.REACHABLE: "◌",
    ConnectionStatus.OFFLINE: "○",
}


def _print_machine(machine: Machine, config: Settings, selected: bool = False):
    icon = STATUS_ICONS.get(machine.connection_status, "?")
    marker = " *" if selected else ""
    print(f"  {icon} {machine.id} - {machine.label}{marker}")
    if machine.hostname:
        print(f"    Hostname: {machine.hostname}")
    print(f"    Status: {describe_status(machine, utc_now(), config.heartbeat_interval_seconds)}")


def _print_registry(reconciler: PresenceReconciler, config: Settings):
    buckets = reconciler.get_buckets()
    selected = reconciler.get_selected()

    if not buckets.active and not buckets.pending:
        print("No machines.")
        return

    if buckets.active:
        print(f"Machines ({len(buckets.active)}):\n")
        for machine in buckets.active:
            _print_machine(machine, config, selected=selected is not None and machine.id == selected.id)
        print()

    if buckets.pending:
        print(f"Awaiting adoption ({len(buckets.pending)}):\n")
        for machine in buckets.pending:
            _print_machine(machine, config)
        print()


def _build_config(args) -> Settings:
    overrides = {"show_archived": args.archived}
    if args.url:
        overrides["api_url"] = args.url
    if args.socket_url:
        overrides["socket_url"] = args.socket_url
    if args.token:
        overrides["auth_token"] = args.token
    return settings.model_copy(update=overrides)


async def cmd_machines(args):
    """List machines once over HTTP."""
    config = _build_config(args)
    client = MachineApiClient(
        config.api_url,
        token_provider=lambda: config.auth_token or None,
        timeout=config.request_timeout,
    )
    try:
        machines = await client.fetch_machines(include_archived=config.show_archived)
    except FetchFailure as e:
        print(f"✗ Cannot list machines from {config.api_url}: {e}")
        sys.exit(1)
    finally:
        await client.aclose()

    reconciler = PresenceReconciler(
        show_archived=config.show_archived,
        default_interval=config.heartbeat_interval_seconds,
    )
    reconciler.merge_snapshot(machines)
    _print_registry(reconciler, config)


async def cmd_watch(args):
    """Follow the registry until interrupted."""
    config = _build_config(args)
    engine = PresenceEngine(config)

    def on_change(reconciler: PresenceReconciler):
        print(f"--- {utc_now().strftime('%H:%M:%S')} ---")
        _print_registry(reconciler, config)

    def on_discovered(discovered):
        print(f"New machine discovered: {discovered.name or discovered.hostname or discovered.id} ({discovered.id})")

    engine.subscribe(on_change)
    engine.on_discovered(on_discovered)

    async with engine:
        print(f"Watching {config.api_url} (Ctrl-C to stop)")
        await asyncio.Event().wait()


def cmd_serve(args):
    """Run the local registry API."""
    # The app reads the module-level settings at startup
    settings.api_url = args.url or settings.api_url
    settings.socket_url = args.socket_url or settings.socket_url
    settings.auth_token = args.token or settings.auth_token
    settings.show_archived = args.archived or settings.show_archived

    print(f"Serving registry API on http://{settings.host}:{settings.port}")
    uvicorn.run("lookout.main:app", host=settings.host, port=settings.port)


def main():
    parser = argparse.ArgumentParser(
        description="Lookout CLI - live machine presence",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  lookout machines                 List machines once
  lookout machines --archived      Include archived machines
  lookout watch                    Follow presence changes
  lookout serve                    Run the local registry API
""",
    )
    parser.add_argument("--url", default=None, help=f"Machine API URL (default: {settings.api_url})")
    parser.add_argument("--socket-url", default=None, help=f"Push channel URL (default: {settings.socket_url})")
    parser.add_argument("--token", default=None, help="Session bearer token")
    parser.add_argument("--archived", action="store_true", help="Include archived machines")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("command", choices=["machines", "watch", "serve"], nargs="?", default="machines")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose or settings.debug else logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )

    if args.command == "serve":
        cmd_serve(args)
        return

    try:
        if args.command == "watch":
            asyncio.run(cmd_watch(args))
        else:
            asyncio.run(cmd_machines(args))
    except KeyboardInterrupt:
        print("\nGoodbye!")


if __name__ == "__main__":
    main()

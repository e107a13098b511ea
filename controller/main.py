#!/usr/bin/env python3
"""
Canopy Energy Controller - Main Entry Point

Runs one control loop per facility against the Supabase store, sends
actuation commands through the site device gateway and serves a health
endpoint.

Usage:
    python main.py                    # Use default config.yaml
    python main.py --config my.yaml   # Use custom config file
    python main.py --dry-run          # Validate config and exit
    python main.py --verbose          # Enable debug logging

Environment:
    SUPABASE_URL, SUPABASE_SERVICE_KEY - persistence and sensor feed
"""

import argparse
import asyncio
import logging
import os
import sys

from supabase import create_client

from common.config import ControllerSettings, load_controller_settings_file
from common.exceptions import ConfigurationError
from common.logging_setup import setup_logging
from services.actuation import HttpActuationClient
from services.sensors import SupabaseSensorFeed
from services.scheduling import ControlService
from storage.supabase_store import SupabaseStore

# Default configuration path
DEFAULT_CONFIG_PATH = "config.yaml"


def load_settings(config_path: str) -> ControllerSettings:
    """Load and validate controller settings, exiting on error"""
    try:
        return load_controller_settings_file(config_path)
    except ConfigurationError as e:
        print(f"Error: {e.message}")
        sys.exit(1)


def print_startup_banner(settings: ControllerSettings) -> None:
    """Print startup information"""
    print()
    print("=" * 60)
    print("  CANOPY ENERGY CONTROLLER")
    print("=" * 60)
    facilities = ", ".join(settings.facility_ids) or "all facilities in store"
    print(f"  Facilities: {facilities}")
    print(f"  Poll interval: {settings.control.poll_interval_s:.0f}s")
    print(f"  Conflict policy: {settings.control.conflict_policy.value}")
    print(f"  Device gateway: {settings.actuation.gateway_url}")
    print(f"  Health: http://127.0.0.1:{settings.health_port}/health")
    print("=" * 60)
    print()


async def main_async(settings: ControllerSettings, verbose: bool = False) -> None:
    """Build the service graph and run until a shutdown signal"""
    log_level = "DEBUG" if verbose else settings.log_level
    # Plain text in verbose/debug mode, JSON otherwise
    setup_logging("main", log_level=log_level, json_format=not verbose)
    logger = logging.getLogger("canopy.main")

    url = os.environ.get("SUPABASE_URL", "")
    key = os.environ.get("SUPABASE_SERVICE_KEY", "")
    if not url or not key:
        raise ConfigurationError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set")

    client = create_client(url, key)
    service = ControlService(
        settings,
        store=SupabaseStore(client),
        actuator=HttpActuationClient(settings.actuation),
        sensors=SupabaseSensorFeed(client),
    )

    logger.info("Starting Canopy Energy Controller")
    await service.run()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Canopy Energy Controller - demand-response control loops",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config", "-c",
        type=str,
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate configuration and exit without starting",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    args = parser.parse_args()

    settings = load_settings(args.config)
    print_startup_banner(settings)

    if args.dry_run:
        print("Dry run mode - configuration valid")
        sys.exit(0)

    try:
        asyncio.run(main_async(settings, verbose=args.verbose))
    except KeyboardInterrupt:
        print("\nStopped by user")
    except ConfigurationError as e:
        print(f"\nError: {e.message}")
        sys.exit(1)


if __name__ == "__main__":
    main()

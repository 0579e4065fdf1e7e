#!/usr/bin/env python3
"""
Meter Collector - Main Entry Point

Loads the configuration and runs the device service until shutdown.

Usage:
    meter-collector --config config/electric_meter.yaml
    meter-collector --config my.yaml --dry-run      # Print config and exit
    meter-collector --config my.yaml --log-level DEBUG

Exit codes:
    0 - clean shutdown (SIGINT / SIGTERM)
    1 - configuration error, or the link stayed down past the reconnect ceiling
"""

import argparse
import asyncio
import sys

import yaml

from meter_collector import __version__
from meter_collector.common.config import CollectorConfig, load_config_file
from meter_collector.common.exceptions import ConfigError
from meter_collector.common.logging_setup import configure_service_loggers, get_service_logger
from meter_collector.services.device.service import DeviceService

logger = get_service_logger("main")

DEFAULT_CONFIG_PATH = "config.yaml"


def print_config_summary(config: CollectorConfig) -> None:
    """Print a summary of the configuration."""
    print("\n" + "=" * 60)
    print(f"  METER COLLECTOR v{__version__}")
    print("=" * 60)
    print(f"\n  Service: {config.service.name}")
    print(f"  Channel: {config.channel.transport.value}://{config.channel.describe()}")
    print(f"  Strategy: {config.polling.strategy.value} every {config.polling.read_interval_ms}ms")
    print(f"  HTTP: {config.http.host}:{config.http.port}")
    print(f"\n  Devices ({len(config.devices)}):")
    for device in config.devices:
        print(
            f"    - [{device.id}] {device.name}: {device.format.value} "
            f"@{device.register_address} x{device.register_count} scale={device.scale}"
        )
    print("=" * 60 + "\n")


async def main_async(config: CollectorConfig) -> int:
    service = DeviceService(config)
    return await service.run()


def main(argv: list[str] | None = None) -> int:
    """Parse arguments, load configuration and run. Returns the exit code."""
    parser = argparse.ArgumentParser(
        description="Modbus meter collector"
    )
    parser.add_argument(
        "--config", "-c",
        type=str,
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {DEFAULT_CONFIG_PATH})"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print configuration and exit without polling"
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Override the configured log level (DEBUG, INFO, WARNING, ...)"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    args = parser.parse_args(argv)

    try:
        config = load_config_file(args.config)
    except ConfigError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    configure_service_loggers(
        log_level=(args.log_level or config.service.log_level).upper(),
        json_format=config.service.log_format == "json",
        log_file=config.service.log_file,
    )

    if args.dry_run:
        print_config_summary(config)
        print(yaml.safe_dump(config.to_dict(), sort_keys=False))
        print("Dry run mode - exiting without polling")
        return 0

    logger.info(f"Starting meter collector v{__version__} from {args.config}")

    try:
        return asyncio.run(main_async(config))
    except ConfigError as e:
        logger.error(e.message)
        return 1
    except OSError as e:
        logger.error(f"Failed to start: {e}")
        return 1
    except KeyboardInterrupt:
        return 0


def run() -> None:
    """Console script entry point"""
    sys.exit(main())


if __name__ == "__main__":
    run()

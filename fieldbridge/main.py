#!/usr/bin/env python3
"""
FieldBridge Gateway - Entry Point

Starts the device service for every configured device:
- Loads the gateway YAML config and the template catalog
- Validates devices against the known templates
- Runs polling, writes, watchdogs and aliases until stopped

Usage:
    fieldbridge                          # Start with default config
    fieldbridge --config my.yaml         # Use custom config file
    fieldbridge --dry-run                # Validate config and exit
    fieldbridge --verbose                # Enable debug logging
"""

import argparse
import asyncio
import os
import sys
from pathlib import Path

import yaml

from . import __version__
from .common.exceptions import ConfigError
from .common.templates import TemplateCatalog, load_template_catalog
from .common.validator import ConfigValidator

# Default configuration path
DEFAULT_CONFIG_PATH = "config.yaml"


def load_config(config_path: str) -> dict:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to configuration file

    Returns:
        Configuration dictionary
    """
    path = Path(config_path)
    if not path.exists():
        print(f"Error: Configuration file not found: {config_path}")
        sys.exit(1)

    try:
        with open(path, "r") as f:
            config = yaml.safe_load(f) or {}
        return config
    except (OSError, yaml.YAMLError) as e:
        print(f"Error loading configuration: {e}")
        sys.exit(1)


def resolve_templates_path(config: dict, config_path: str, override: str | None) -> Path:
    gateway = config.get("gateway", {}) or {}
    templates = Path(override or gateway.get("templates_path", "templates"))
    if not templates.is_absolute():
        templates = Path(config_path).parent / templates
    return templates


def load_templates(templates_path: Path) -> TemplateCatalog:
    try:
        return load_template_catalog(templates_path)
    except ConfigError as e:
        print(f"Error loading templates: {e}")
        sys.exit(1)


def validate_config(config: dict, catalog: TemplateCatalog) -> bool:
    """
    Validate the configuration.

    Args:
        config: Configuration dictionary
        catalog: Loaded templates, used to check template references

    Returns:
        True if configuration is valid
    """
    is_valid, errors = ConfigValidator().validate(config, set(catalog.ids()))
    if errors:
        print("Configuration errors:")
        for error in errors:
            print(f"  - {error}")
    return is_valid


def print_startup_banner(config: dict, catalog: TemplateCatalog):
    """Print startup information."""
    gateway = config.get("gateway", {}) or {}
    devices = config.get("devices", []) or []
    health_port = gateway.get("health_port", 8090)

    print()
    print("=" * 60)
    print(f"  FIELDBRIDGE GATEWAY v{__version__}")
    print("=" * 60)
    print()
    print(f"  Templates: {len(catalog)}")
    print(f"  Devices:   {len(devices)}")
    for device in devices:
        state = "" if device.get("enabled", True) else " (disabled)"
        print(
            f"    - {device.get('id', '?')}: {device.get('protocol', '?')} "
            f"/ {device.get('template_id') or device.get('template', '?')}{state}"
        )
    print()
    if health_port:
        print(f"  Health: http://127.0.0.1:{health_port}/health")
    else:
        print("  Health: disabled")
    print()
    print("=" * 60)
    print()


async def main_async(config_path: str, templates_path: Path):
    """
    Async main function that runs the device service.

    Args:
        config_path: Path to the gateway config file
        templates_path: Directory (or file) holding the templates
    """
    # Imported here so service loggers pick up the level chosen on the command line
    from .services.device.service import main as run_device_service

    await run_device_service(config_path=config_path, templates_path=str(templates_path))


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="FieldBridge - multi-protocol device gateway",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    fieldbridge                          # Start with default config
    fieldbridge --config my.yaml         # Use custom config file
    fieldbridge --templates ./templates  # Override the template location
    fieldbridge --dry-run                # Validate config and exit
    fieldbridge -v                       # Enable debug logging
        """
    )

    parser.add_argument(
        "--config", "-c",
        type=str,
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {DEFAULT_CONFIG_PATH})"
    )

    parser.add_argument(
        "--templates", "-t",
        type=str,
        default=None,
        help="Template file or directory (default: gateway.templates_path)"
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate configuration and exit without starting"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (debug) logging"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"FieldBridge v{__version__}"
    )

    args = parser.parse_args()

    if args.verbose:
        os.environ["FIELDBRIDGE_LOG_LEVEL"] = "DEBUG"
        os.environ.setdefault("FIELDBRIDGE_LOG_FORMAT", "text")

    # Load configuration and templates
    config = load_config(args.config)
    templates_path = resolve_templates_path(config, args.config, args.templates)
    catalog = load_templates(templates_path)

    # Invalid devices are skipped at startup; only a dry run fails on them
    is_valid = validate_config(config, catalog)

    print_startup_banner(config, catalog)

    # Dry run mode
    if args.dry_run:
        if not is_valid:
            print("Dry run mode - configuration has errors")
            sys.exit(1)
        print("Dry run mode - configuration valid")
        print("Exiting without starting devices")
        sys.exit(0)

    print("Starting devices...")
    print("Press Ctrl+C to stop")
    print()

    try:
        asyncio.run(main_async(args.config, templates_path))
    except KeyboardInterrupt:
        print("\nStopped by user")
    except Exception as e:
        print(f"\nFatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()

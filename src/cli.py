#!/usr/bin/env python3
"""CLI entry point for deploy-driver.

Noun-action subcommands:
- svc deploy:   deploy-driver svc deploy -n api -e test --force
- svc package:  deploy-driver svc package -n api -e test --diff
- env validate: deploy-driver env validate -e prod

Nouns:
- svc: Workload lifecycle (deploy/package/validate)
- env: Environment checks (validate)
"""

import logging
import sys

from common import get_version

# Noun commands (noun-action subcommands)
NOUN_COMMANDS = {
    "svc": "Workload lifecycle (deploy/package/validate)",
    "env": "Environment checks (validate)",
}


def dispatch_noun(noun: str, argv: list) -> int:
    """Dispatch to noun-specific CLI handler.

    Args:
        noun: The noun command (e.g., "svc", "env")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    from deployer.cli import ENV_VERBS, SVC_VERBS, dispatch_verb

    if noun == "svc":
        return dispatch_verb(noun, SVC_VERBS, argv)

    if noun == "env":
        return dispatch_verb(noun, ENV_VERBS, argv)

    print(f"Error: Noun '{noun}' not yet implemented")
    return 1


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def print_usage():
    """Print top-level usage showing noun commands."""
    print(f"deploy-driver {get_version()}")
    print()
    print("Usage: deploy-driver <noun> <action> [options]")
    print()
    print("Commands:")
    for noun, desc in NOUN_COMMANDS.items():
        print(f"  {noun:<12} {desc}")
    print()
    print("Run 'deploy-driver <noun> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  deploy-driver svc deploy -n api -e test")
    print("  deploy-driver svc deploy -n api -e test --force --tag v1.2.0")
    print("  deploy-driver svc package -n api -e test --diff")
    print("  deploy-driver env validate -e prod")


def main():
    """CLI entry point: dispatch to noun-action handlers."""
    if len(sys.argv) == 1:
        print_usage()
        return 0

    first_arg = sys.argv[1]
    if first_arg in NOUN_COMMANDS:
        return dispatch_noun(first_arg, sys.argv[2:])

    if first_arg == '--version':
        print(f"deploy-driver {get_version()}")
        return 0

    if first_arg in ('--help', '-h'):
        print_usage()
        return 0

    print(f"Error: Unknown command '{first_arg}'")
    print_usage()
    return 1


if __name__ == '__main__':
    sys.exit(main())

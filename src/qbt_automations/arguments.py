"""
Argument parsing for the qbt-automations command line
Provides server mode, client commands and local utility flags
"""

import os
import argparse
from pathlib import Path

from qbt_automations.__version__ import __version__, __description__
from qbt_automations.logging import get_logger


def smart_config_default() -> str:
    """
    Determine smart default for config directory

    Returns ./config if it exists (bare metal), otherwise /config (Docker)
    """
    local_config = Path('./config')
    if local_config.exists() and local_config.is_dir():
        return './config'
    return '/config'


def create_parser() -> argparse.ArgumentParser:
    """
    Create the qbt-automations argument parser

    Returns:
        Configured ArgumentParser
    """
    parser = argparse.ArgumentParser(
        prog='qbt-automations',
        description=f'qbt-automations - {__description__}',
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    # Common configuration arguments
    parser.add_argument(
        '--config-dir',
        type=Path,
        default=None,
        help=f'Path to configuration directory (default: {smart_config_default()} or CONFIG_DIR env var)'
    )

    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Evaluate rules and log intended actions without touching torrents'
    )

    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Set logging verbosity (default: from config or INFO)'
    )

    parser.add_argument(
        '--trace',
        action='store_true',
        help='Enable trace mode with detailed logging (module/function/line)'
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'qbt-automations v{__version__}'
    )

    # Server mode
    server = parser.add_argument_group('server mode')
    server.add_argument('--serve', action='store_true', help='Run the HTTP API server with the scan worker')
    server.add_argument('--server-host', help='Bind address (default: 0.0.0.0)')
    server.add_argument('--server-port', type=int, help='Bind port (default: 5000)')
    server.add_argument('--server-api-key', help='API key clients must present')
    server.add_argument('--server-workers', type=int, help='Gunicorn worker processes (default: 1)')
    server.add_argument('--scan-interval', type=float, help='Seconds between scheduled scans (default: 60)')

    # Client commands
    client = parser.add_argument_group('client commands')
    client.add_argument('--client-server-url', help='Server URL (default: http://localhost:5000)')
    client.add_argument('--client-api-key', help='API key for the server')
    client.add_argument('--apply', type=int, metavar='INSTANCE', help='Run the rules of an instance now')
    client.add_argument('--preview', type=int, metavar='INSTANCE',
                        help='Preview the rule in --rule-file against an instance')
    client.add_argument('--rule-file', type=Path, help='YAML or JSON file holding one rule (for --preview)')
    client.add_argument('--list-rules', type=int, metavar='INSTANCE', help='List the rules of an instance')
    client.add_argument('--activity', type=int, metavar='INSTANCE', help='Show recent automation activity')
    client.add_argument('--prune-activity', type=int, metavar='INSTANCE',
                        help='Delete automation activity older than --days')
    client.add_argument('--days', type=int, default=7, help='Age threshold for --prune-activity (default: 7)')
    client.add_argument('--limit', type=int, default=25, help='Max rows for --preview / --activity (default: 25)')
    client.add_argument('--offset', type=int, default=0, help='Skip rows for --preview (default: 0)')

    # Local utilities
    utility = parser.add_argument_group('utilities')
    utility.add_argument(
        '--validate',
        action='store_true',
        help='Validate config.yml and rules.yml without running'
    )
    utility.add_argument(
        '--import-rules',
        type=int,
        metavar='INSTANCE',
        help='Import rules.yml into the rule database of an instance'
    )

    parser.epilog = '''
Examples:
  # Run the server (scheduled scans + HTTP API)
  qbt-automations --serve

  # Apply the rules of instance 1 now
  qbt-automations --apply 1

  # Preview a rule before saving it
  qbt-automations --preview 1 --rule-file cleanup.yml

  # Show the last 50 automation events
  qbt-automations --activity 1 --limit 50

  # Validate configuration, then seed the rule database
  qbt-automations --validate
  qbt-automations --import-rules 1
    '''

    return parser


def process_args(args: argparse.Namespace) -> Path:
    """
    Process parsed arguments and set environment variables

    Args:
        args: Parsed arguments from argparse

    Returns:
        Path to configuration directory
    """
    if args.dry_run:
        os.environ['DRY_RUN'] = 'true'

    if args.log_level:
        os.environ['LOG_LEVEL'] = args.log_level

    if args.trace:
        os.environ['TRACE_MODE'] = 'true'

    if args.config_dir:
        config_dir = args.config_dir
    elif 'CONFIG_DIR' in os.environ:
        config_dir = Path(os.environ['CONFIG_DIR'])
    else:
        config_dir = Path(smart_config_default())

    return config_dir


def validate_config(config) -> bool:
    """
    Validate instances and rules.yml

    Returns:
        True if every seed rule is valid
    """
    from qbt_automations.conditions import validate_rule
    from qbt_automations.errors import RuleValidationError
    from qbt_automations.models import AutomationRule

    logger = get_logger(__name__)
    logger.info("Validating configuration and rules...")

    for instance in config.get_instances():
        logger.info(f"✓ Instance {instance['id']} ({instance['name']}): {instance['host']}")

    rules = config.get_seed_rules()
    if not rules:
        logger.warning("No rules defined in rules.yml")
        return True

    valid = True
    for i, data in enumerate(rules, 1):
        name = data.get('name', f'Rule {i}')
        try:
            validate_rule(AutomationRule.from_dict(data))
            logger.info(f"  ✓ '{name}'")
        except RuleValidationError as e:
            valid = False
            logger.error(f"  ✗ '{name}': {e.details.get('Problem')}")

    if valid:
        logger.info(f"\nValidation complete! {len(rules)} rule(s) are valid.")
    else:
        logger.error("\nValidation failed.")
    return valid


def import_rules(config, instance_id: int) -> int:
    """
    Import rules.yml into the rule database

    Returns:
        Number of rules created

    Raises:
        InstanceNotFoundError: If the instance is not configured
    """
    from qbt_automations.database import SQLiteDatabase
    from qbt_automations.errors import InstanceNotFoundError
    from qbt_automations.rule_store import RuleStore

    logger = get_logger(__name__)

    available = [instance['id'] for instance in config.get_instances()]
    if instance_id not in available:
        raise InstanceNotFoundError(instance_id, available)

    db = SQLiteDatabase(str(config.get_database_path()))
    try:
        store = RuleStore(db)
        created = [store.create_rule(instance_id, data) for data in config.get_seed_rules()]
    finally:
        db.close()

    for rule in created:
        logger.info(f"✓ Imported '{rule.name}' (id {rule.id})")
    logger.info(f"Imported {len(created)} rule(s) into instance {instance_id}")
    return len(created)


def handle_utility_args(args: argparse.Namespace, config) -> bool:
    """
    Handle utility arguments (--validate, --import-rules)

    Args:
        args: Parsed arguments
        config: Loaded configuration object

    Returns:
        True if a utility argument was handled (should exit), False otherwise
    """
    if args.validate:
        if not validate_config(config):
            raise SystemExit(1)
        return True

    if args.import_rules is not None:
        import_rules(config, args.import_rules)
        return True

    return False

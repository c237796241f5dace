#!/usr/bin/env python3
"""
qbt-automations CLI - Client-server architecture

Supports two modes:
1. Server mode (--serve): Runs HTTP API server with the scan worker
2. Client commands: Talk to a running server via HTTP API

Client commands: --apply, --preview, --list-rules, --activity, --prune-activity
Local utilities: --validate, --import-rules
"""

import sys
import requests
from typing import Any, Dict, Optional

from qbt_automations.arguments import create_parser, process_args, handle_utility_args
from qbt_automations.config import load_config, load_yaml_file, resolve_config, parse_int, parse_bool, ENV_VAR_MAP
from qbt_automations.errors import APIError, handle_errors
from qbt_automations.logging import setup_logging, get_logger
from qbt_automations.utils import format_bytes, format_duration

logger = None  # Set after logging is configured


def get_server_config(args, config_obj) -> dict:
    """
    Get server configuration from CLI args, env vars, or config file

    Returns:
        Dictionary with server configuration
    """
    return {
        'host': resolve_config(
            getattr(args, 'server_host', None),
            ENV_VAR_MAP['server.host'],
            config_obj.config,
            'server.host',
            default='0.0.0.0'
        ),
        'port': parse_int(resolve_config(
            getattr(args, 'server_port', None),
            ENV_VAR_MAP['server.port'],
            config_obj.config,
            'server.port',
            default=5000
        ), default=5000),
        'api_key': resolve_config(
            getattr(args, 'server_api_key', None),
            ENV_VAR_MAP['server.api_key'],
            config_obj.config,
            'server.api_key',
            default=None
        ),
        'workers': parse_int(resolve_config(
            getattr(args, 'server_workers', None),
            ENV_VAR_MAP['server.workers'],
            config_obj.config,
            'server.workers',
            default=1
        ), default=1),
        'scan_interval': float(resolve_config(
            getattr(args, 'scan_interval', None),
            ENV_VAR_MAP['engine.scan_interval'],
            config_obj.config,
            'engine.scan_interval',
            default=60
        ))
    }


def get_client_config(args, config_obj) -> dict:
    """
    Get client configuration from CLI args, env vars, or config file

    Returns:
        Dictionary with client configuration
    """
    return {
        'server_url': resolve_config(
            getattr(args, 'client_server_url', None),
            ENV_VAR_MAP['client.server_url'],
            config_obj.config,
            'client.server_url',
            default='http://localhost:5000'
        ),
        'api_key': resolve_config(
            getattr(args, 'client_api_key', None),
            ENV_VAR_MAP['client.api_key'],
            config_obj.config,
            'client.api_key',
            default=None
        )
    }


def run_server_mode(args, config_obj):
    """
    Run server mode - Start HTTP API server with scan worker

    Args:
        args: Parsed CLI arguments
        config_obj: Loaded configuration object
    """
    logger.info("=" * 60)
    logger.info("Starting qbt-automations server")
    logger.info("=" * 60)

    server_config = get_server_config(args, config_obj)

    if not server_config['api_key']:
        logger.error("Server API key is required. Set via:")
        logger.error("  - CLI: --server-api-key <key>")
        logger.error("  - Env: QBT_AUTOMATIONS_SERVER_API_KEY or QBT_AUTOMATIONS_SERVER_API_KEY_FILE")
        logger.error("  - Config: server.api_key in config.yml")
        sys.exit(1)

    # Clients are created lazily and connect on their first scan
    from qbt_automations.service import AutomationService
    service = AutomationService.from_config(config_obj)
    for instance in service.list_instances():
        logger.info(f"Instance {instance['id']} ({instance['name']}): {instance['host']} (will connect on first scan)")
    logger.info(f"Activity backend: {service.recorder.__class__.__name__}")

    from qbt_automations.worker import ScanWorker
    worker = ScanWorker(service=service, scan_interval=server_config['scan_interval'])
    worker.start()
    logger.info("Scan worker started")

    from qbt_automations.server import create_app, run_server
    app = create_app(
        automation_service=service,
        worker_instance=worker,
        api_key=server_config['api_key']
    )

    logger.info(f"Starting server on {server_config['host']}:{server_config['port']}")
    logger.info("Press Ctrl+C to stop")
    logger.info("=" * 60)

    log_http_access = parse_bool(config_obj.get('logging.http_access', False))

    try:
        run_server(
            app=app,
            host=server_config['host'],
            port=server_config['port'],
            workers=server_config['workers'],
            log_http_access=log_http_access
        )
    except KeyboardInterrupt:
        logger.info("\nShutting down...")
        worker.stop()
        service.close()
        logger.info("Server stopped")


def api_request(method: str, args, config_obj, path: str, params: Optional[Dict[str, Any]] = None,
                json: Optional[Dict[str, Any]] = None, timeout: float = 10) -> Dict[str, Any]:
    """
    Send a request to the server and return the decoded JSON body

    Raises:
        APIError: If the server answers with an error status
    """
    client_config = get_client_config(args, config_obj)

    if not client_config['api_key']:
        logger.error("Client API key is required. Set via:")
        logger.error("  - CLI: --client-api-key <key>")
        logger.error("  - Env: QBT_AUTOMATIONS_CLIENT_API_KEY or QBT_AUTOMATIONS_CLIENT_API_KEY_FILE")
        logger.error("  - Config: client.api_key in config.yml")
        sys.exit(1)

    server_url = client_config['server_url'].rstrip('/')
    query = {'key': client_config['api_key']}
    query.update(params or {})

    try:
        response = requests.request(method, f"{server_url}{path}", params=query, json=json, timeout=timeout)
    except requests.exceptions.ConnectionError:
        logger.error(f"Cannot connect to server at {server_url}")
        logger.error("Is the server running? Start with: qbt-automations --serve")
        sys.exit(1)
    except requests.exceptions.Timeout:
        logger.error(f"Connection to {server_url} timed out")
        sys.exit(1)

    if response.status_code == 401:
        logger.error("Authentication failed - check API key")
        sys.exit(1)

    if response.status_code >= 400:
        raise APIError(path, response.status_code, response.text)

    return response.json()


def apply_command(args, config_obj):
    """Run the rules of an instance now"""
    instance_id = args.apply
    logger.info(f"Applying rules on instance {instance_id}...")

    # A scan runs synchronously on the server
    result = api_request('POST', args, config_obj, f"/api/instances/{instance_id}/rules/apply", timeout=300)

    stats = result.get('stats', {})
    logger.info("✓ Scan completed")
    logger.info(f"  Torrents: {stats.get('total_torrents', 0)}")
    logger.info(f"  Rules matched: {stats.get('rules_matched', 0)}")
    logger.info(f"  Actions executed: {stats.get('actions_executed', 0)}")
    logger.info(f"  Deleted: {stats.get('deleted', 0)}")
    logger.info(f"  Errors: {stats.get('errors', 0)}")


def preview_command(args, config_obj):
    """Preview a rule file against an instance"""
    if not args.rule_file:
        logger.error("--preview requires --rule-file <path>")
        sys.exit(1)

    rule = load_yaml_file(args.rule_file)
    result = api_request(
        'POST', args, config_obj, f"/api/instances/{args.preview}/rules/preview",
        params={'limit': args.limit, 'offset': args.offset},
        json=rule,
        timeout=60
    )

    examples = result['examples']
    logger.info(f"\n'{rule.get('name', 'unnamed')}' matches {result['totalMatches']} torrent(s)\n")
    if not examples:
        return

    logger.info(f"{'Name':<50} {'Size':>10} {'Ratio':>6} {'Seeding':>10}  Actions")
    logger.info("-" * 100)
    for example in examples:
        actions = ', '.join(action['type'] for action in example.get('actions', [])) or '-'
        logger.info(
            f"{example['name'][:50]:<50} {format_bytes(example['size']):>10} "
            f"{example['ratio']:>6.2f} {format_duration(example['seedingTime']):>10}  {actions}"
        )


def list_rules_command(args, config_obj):
    """List the rules of an instance"""
    result = api_request('GET', args, config_obj, f"/api/instances/{args.list_rules}/rules")
    rules = result['rules']

    if not rules:
        logger.info("No rules defined")
        return

    logger.info(f"\nRules ({len(rules)} total, evaluated in order):\n")
    logger.info(f"{'ID':<6} {'Order':<7} {'Enabled':<9} {'Type':<11} {'Trackers':<25} {'Name'}")
    logger.info("-" * 90)

    for rule in rules:
        enabled = '✓' if rule.get('enabled', True) else '✗'
        kind = 'expression' if rule.get('conditions') else 'legacy'
        trackers = rule.get('trackerPattern') or '*'
        logger.info(
            f"{rule['id']:<6} {rule['sortOrder']:<7} {enabled:<9} {kind:<11} {trackers[:25]:<25} {rule['name']}"
        )


def activity_command(args, config_obj):
    """Show recent automation activity of an instance"""
    result = api_request(
        'GET', args, config_obj, f"/api/instances/{args.activity}/activity", params={'limit': args.limit}
    )
    records = result['activity']

    if not records:
        logger.info("No activity recorded")
        return

    logger.info(f"{'When':<27} {'Action':<22} {'Outcome':<8} {'Rule':<20} {'Torrent'}")
    logger.info("-" * 110)
    for record in records:
        logger.info(
            f"{record['createdAt']:<27} {record['action']:<22} {record['outcome']:<8} "
            f"{(record.get('ruleName') or '-')[:20]:<20} {record.get('torrentName', '')}"
        )
        if record.get('reason'):
            logger.info(f"{'':<27} reason: {record['reason']}")


def prune_activity_command(args, config_obj):
    """Delete old automation activity of an instance"""
    result = api_request(
        'DELETE', args, config_obj, f"/api/instances/{args.prune_activity}/activity", params={'days': args.days}
    )
    logger.info(f"✓ Deleted {result['deleted']} activity record(s) older than {args.days} day(s)")


@handle_errors
def main():
    """Main entry point for qbt-automations CLI"""
    global logger

    parser = create_parser()
    args = parser.parse_args()

    config_dir = process_args(args)

    config = load_config(config_dir)

    trace_mode = config.get_trace_mode()
    setup_logging(config, trace_mode)
    logger = get_logger(__name__)

    if handle_utility_args(args, config):
        sys.exit(0)

    if args.serve:
        run_server_mode(args, config)
    elif args.apply is not None:
        apply_command(args, config)
    elif args.preview is not None:
        preview_command(args, config)
    elif args.list_rules is not None:
        list_rules_command(args, config)
    elif args.activity is not None:
        activity_command(args, config)
    elif args.prune_activity is not None:
        prune_activity_command(args, config)
    else:
        parser.print_help()
        sys.exit(1)

    sys.exit(0)


if __name__ == '__main__':
    main()

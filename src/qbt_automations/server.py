"""
HTTP API Server - Flask application over the automation service

Provides REST API for:
- Rule CRUD, reorder, apply-now and preview per instance
- Reannounce settings and manual reannounce requests
- Automation and reannounce activity logs
- Health checks and statistics
- Authentication via API key
"""

import os
import secrets
import logging
from datetime import datetime, timezone
from functools import wraps

from flask import Flask, request, jsonify

from qbt_automations.errors import InstanceNotFoundError, QBittorrentError, RuleNotFoundError, RuleValidationError
from qbt_automations.config import parse_int
from qbt_automations.service import AutomationService
from qbt_automations.worker import ScanWorker
from qbt_automations.__version__ import __version__

logger = logging.getLogger(__name__)

# Global references (set by create_app)
service: AutomationService = None
worker: ScanWorker = None
api_key_config: str = None


def create_app(automation_service: AutomationService, worker_instance: ScanWorker, api_key: str) -> Flask:
    """
    Create and configure Flask application

    Args:
        automation_service: Automation service instance
        worker_instance: Scan worker instance
        api_key: API authentication key

    Returns:
        Configured Flask app
    """
    global service, worker, api_key_config

    service = automation_service
    worker = worker_instance
    api_key_config = api_key

    app = Flask(__name__)
    app.config['JSON_SORT_KEYS'] = False

    # Disable Flask's default logger (use our configured logger instead)
    app.logger.disabled = True
    logging.getLogger('werkzeug').setLevel(logging.WARNING)

    register_routes(app)

    logger.info("Flask application created")
    return app


def require_api_key(f):
    """
    Decorator for endpoints requiring API key authentication

    Checks for API key in:
    1. Query parameter: ?key=xxx
    2. Header: X-API-Key: xxx

    Returns 401 if missing or invalid.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        key = request.args.get('key') or request.headers.get('X-API-Key')

        # Constant-time comparison to prevent timing attacks
        if not key or not secrets.compare_digest(key, api_key_config):
            return jsonify({
                'error': 'Unauthorized',
                'message': 'Invalid or missing API key'
            }), 401

        return f(*args, **kwargs)

    return decorated_function


def map_errors(f):
    """
    Decorator translating service exceptions into JSON error responses

    RuleValidationError -> 400, RuleNotFoundError / InstanceNotFoundError -> 404,
    anything else -> 500.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except RuleValidationError as e:
            return error_response('Bad Request', e, 400)
        except (RuleNotFoundError, InstanceNotFoundError) as e:
            return error_response('Not Found', e, 404)
        except QBittorrentError as e:
            logger.error(f"{f.__name__} failed: {e.message}")
            return error_response('Internal Server Error', e, 500)
        except Exception as e:
            logger.error(f"Error in {f.__name__}: {e}", exc_info=True)
            return jsonify({
                'error': 'Internal Server Error',
                'message': str(e)
            }), 500

    return decorated_function


def error_response(error: str, exc: QBittorrentError, status: int):
    body = {'error': error, 'message': exc.message}
    body.update({'code': exc.code, 'details': exc.to_dict()['details']})
    return jsonify(body), status


def json_body() -> dict:
    """Request JSON object (empty dict when absent)"""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise RuleValidationError('(request)', 'Request body must be a JSON object')
    return data


def query_int(name: str, default: int) -> int:
    value = parse_int(request.args.get(name), default=-1)
    return default if value < 0 else value


def register_routes(app: Flask):
    """Register all API routes"""

    # ========================================================================
    # Instances
    # ========================================================================

    @app.route('/api/instances', methods=['GET'])
    @require_api_key
    def list_instances():
        """
        List configured qBittorrent instances (no credentials)

        Returns:
            200: List of instances
            401: Unauthorized
        """
        return jsonify({'instances': service.list_instances()}), 200

    # ========================================================================
    # Rules
    # ========================================================================

    @app.route('/api/instances/<int:instance_id>/rules', methods=['GET'])
    @require_api_key
    @map_errors
    def list_rules(instance_id: int):
        """
        List rules of an instance in evaluation order

        Returns:
            200: List of rules
            404: Unknown instance
        """
        rules = service.list_rules(instance_id)
        return jsonify({'rules': [rule.to_dict() for rule in rules]}), 200

    @app.route('/api/instances/<int:instance_id>/rules', methods=['POST'])
    @require_api_key
    @map_errors
    def create_rule(instance_id: int):
        """
        Create a rule

        Returns:
            201: Created rule
            400: Invalid rule
            404: Unknown instance
        """
        rule = service.create_rule(instance_id, json_body())
        logger.info(f"Rule created: {rule.name} (instance {instance_id}, id {rule.id})")
        return jsonify(rule.to_dict()), 201

    @app.route('/api/instances/<int:instance_id>/rules/<int:rule_id>', methods=['PUT'])
    @require_api_key
    @map_errors
    def update_rule(instance_id: int, rule_id: int):
        """
        Replace a rule

        Returns:
            200: Updated rule
            400: Invalid rule
            404: Unknown instance or rule
        """
        rule = service.update_rule(instance_id, rule_id, json_body())
        logger.info(f"Rule updated: {rule.name} (instance {instance_id}, id {rule_id})")
        return jsonify(rule.to_dict()), 200

    @app.route('/api/instances/<int:instance_id>/rules/<int:rule_id>', methods=['DELETE'])
    @require_api_key
    @map_errors
    def delete_rule(instance_id: int, rule_id: int):
        """
        Delete a rule

        Returns:
            200: Rule deleted
            404: Unknown instance or rule
        """
        service.delete_rule(instance_id, rule_id)
        logger.info(f"Rule deleted: instance {instance_id}, id {rule_id}")
        return jsonify({
            'id': rule_id,
            'message': 'Rule deleted successfully'
        }), 200

    @app.route('/api/instances/<int:instance_id>/rules/order', methods=['PUT'])
    @require_api_key
    @map_errors
    def reorder_rules(instance_id: int):
        """
        Reorder rules

        Body:
            {"ruleIds": [3, 1, 2]}

        Returns:
            200: Rules in their new order
            400: Invalid or duplicate ids
            404: Unknown instance or rule
        """
        rule_ids = json_body().get('ruleIds')
        if not isinstance(rule_ids, list):
            raise RuleValidationError('(order)', "'ruleIds' must be a list of rule ids")

        try:
            ordered = [int(rule_id) for rule_id in rule_ids]
        except (TypeError, ValueError):
            raise RuleValidationError('(order)', "'ruleIds' must contain integers")

        rules = service.reorder_rules(instance_id, ordered)
        return jsonify({'rules': [rule.to_dict() for rule in rules]}), 200

    @app.route('/api/instances/<int:instance_id>/rules/apply', methods=['POST'])
    @require_api_key
    @map_errors
    def apply_rules(instance_id: int):
        """
        Run a scan immediately

        Returns:
            200: Scan statistics
            404: Unknown instance
            409: A scan is already running
        """
        stats = service.apply_now(instance_id)
        if stats is None:
            return jsonify({
                'error': 'Conflict',
                'message': f'A scan is already running for instance {instance_id}'
            }), 409

        return jsonify({'instanceId': instance_id, 'stats': stats}), 200

    @app.route('/api/instances/<int:instance_id>/rules/preview', methods=['POST'])
    @require_api_key
    @map_errors
    def preview_rule(instance_id: int):
        """
        Preview which torrents a rule would act on

        Query Parameters:
            limit (optional): Max examples (default: 25)
            offset (optional): Pagination offset (default: 0)

        Returns:
            200: {'totalMatches', 'examples'}
            400: Invalid rule
            404: Unknown instance
        """
        result = service.preview(
            instance_id,
            json_body(),
            limit=query_int('limit', 25),
            offset=query_int('offset', 0)
        )
        return jsonify(result), 200

    # ========================================================================
    # Activity
    # ========================================================================

    @app.route('/api/instances/<int:instance_id>/activity', methods=['GET'])
    @require_api_key
    @map_errors
    def list_activity(instance_id: int):
        """
        List automation activity, newest first

        Query Parameters:
            limit (optional): Max results (default: 100)
        """
        records = service.list_activity(instance_id, limit=query_int('limit', 100))
        return jsonify({'activity': [record.to_dict() for record in records]}), 200

    @app.route('/api/instances/<int:instance_id>/activity', methods=['DELETE'])
    @require_api_key
    @map_errors
    def delete_activity(instance_id: int):
        """
        Delete automation activity older than N days

        Query Parameters:
            days (optional): Age threshold in days (default: 7, 0 deletes all)
        """
        deleted = service.delete_activity_older_than(instance_id, query_int('days', 7))
        return jsonify({'deleted': deleted}), 200

    # ========================================================================
    # Reannounce
    # ========================================================================

    @app.route('/api/instances/<int:instance_id>/reannounce/settings', methods=['GET'])
    @require_api_key
    @map_errors
    def get_reannounce_settings(instance_id: int):
        settings = service.get_reannounce_settings(instance_id)
        return jsonify(settings.to_dict()), 200

    @app.route('/api/instances/<int:instance_id>/reannounce/settings', methods=['PUT'])
    @require_api_key
    @map_errors
    def update_reannounce_settings(instance_id: int):
        """
        Replace reannounce settings

        Returns:
            200: Saved settings
            400: Invalid settings
            404: Unknown instance
        """
        settings = service.update_reannounce_settings(instance_id, json_body())
        logger.info(f"Reannounce settings updated for instance {instance_id} (enabled={settings.enabled})")
        return jsonify(settings.to_dict()), 200

    @app.route('/api/instances/<int:instance_id>/reannounce/request', methods=['POST'])
    @require_api_key
    @map_errors
    def request_reannounce(instance_id: int):
        """
        Manually request reannounce for torrents

        Body:
            {"hashes": ["abc...", ...]}

        Returns:
            202: Per-hash outcome ('queued', 'skipped' or 'not found')
        """
        hashes = json_body().get('hashes')
        if not isinstance(hashes, list) or not hashes:
            raise RuleValidationError('(reannounce)', "'hashes' must be a non-empty list")

        results = service.request_reannounce(instance_id, [str(h) for h in hashes])
        return jsonify({'results': results}), 202

    @app.route('/api/instances/<int:instance_id>/reannounce/activity', methods=['GET'])
    @require_api_key
    @map_errors
    def list_reannounce_activity(instance_id: int):
        records = service.list_reannounce_activity(instance_id, limit=query_int('limit', 100))
        return jsonify({'activity': [record.to_dict() for record in records]}), 200

    @app.route('/api/instances/<int:instance_id>/reannounce/activity', methods=['DELETE'])
    @require_api_key
    @map_errors
    def delete_reannounce_activity(instance_id: int):
        deleted = service.delete_reannounce_activity_older_than(instance_id, query_int('days', 7))
        return jsonify({'deleted': deleted}), 200

    # ========================================================================
    # Service
    # ========================================================================

    @app.route('/api/health', methods=['GET'])
    def health():
        """
        Health check endpoint (no authentication required)

        Returns:
            200: Service healthy
            503: Service unhealthy
        """
        errors = []

        if not service.recorder.health_check():
            errors.append("Activity backend not accessible")

        if not service.rule_store.db.health_check():
            errors.append("Rules database not accessible")

        if not worker.is_alive():
            errors.append("Scan worker thread not running")

        if errors:
            return jsonify({
                'status': 'unhealthy',
                'errors': errors,
                'timestamp': datetime.now(timezone.utc).isoformat()
            }), 503

        worker_status = worker.get_status()

        return jsonify({
            'status': 'healthy',
            'version': __version__,
            'instances': len(service.engines),
            'dry_run': service.dry_run,
            'worker': {
                'status': 'running' if worker_status['running'] else 'stopped',
                'last_pass_completed': worker_status['last_pass_completed']
            },
            'timestamp': datetime.now(timezone.utc).isoformat()
        }), 200

    @app.route('/api/stats', methods=['GET'])
    @require_api_key
    @map_errors
    def stats():
        """
        Get per-instance engine and scheduler status

        Returns:
            200: Statistics
            401: Unauthorized
        """
        status = service.get_status()
        status['worker'] = worker.get_status()
        status['activity_backend'] = service.recorder.__class__.__name__
        status['timestamp'] = datetime.now(timezone.utc).isoformat()
        return jsonify(status), 200

    @app.route('/api/version', methods=['GET'])
    def version():
        """
        Get version information (no authentication required)

        Returns:
            200: Version info
        """
        return jsonify({
            'version': __version__,
            'api_version': '1.0',
            'python_version': os.sys.version.split()[0]
        }), 200

    @app.errorhandler(404)
    def not_found(error):
        """Handle 404 errors"""
        return jsonify({
            'error': 'Not Found',
            'message': 'Endpoint not found'
        }), 404

    @app.errorhandler(500)
    def internal_error(error):
        """Handle 500 errors"""
        logger.error(f"Internal server error: {error}", exc_info=True)
        return jsonify({
            'error': 'Internal Server Error',
            'message': 'An unexpected error occurred'
        }), 500


def run_server(
    app: Flask,
    host: str = '0.0.0.0',
    port: int = 5000,
    workers: int = 1,
    log_http_access: bool = False
):
    """
    Run Flask app with Gunicorn in production mode

    Args:
        app: Flask application
        host: Bind address
        port: Bind port
        workers: Number of Gunicorn workers
        log_http_access: Enable HTTP access logging (default: False to suppress health checks)
    """
    from gunicorn.app.base import BaseApplication
    from gunicorn.glogging import Logger

    class FilteredLogger(Logger):
        """Gunicorn logger that drops /api/health requests unless access logging is on"""

        def access(self, resp, req, environ, request_time):
            if not log_http_access and environ.get('PATH_INFO') == '/api/health':
                return
            super().access(resp, req, environ, request_time)

    class StandaloneApplication(BaseApplication):
        def __init__(self, app, options=None):
            self.application = app
            self.options = options or {}
            super().__init__()

        def load_config(self):
            for key, value in self.options.items():
                if key in self.cfg.settings and value is not None:
                    self.cfg.set(key, value)

        def load(self):
            return self.application

    def post_fork(server, worker_process):
        """
        Gunicorn post-fork hook - threads do not survive the fork, so the
        scan worker and reannounce schedulers are restarted in each process
        """
        logger.info(f"Gunicorn worker {worker_process.pid} forked - restarting scan worker")

        from qbt_automations.server import worker as worker_instance

        if worker_instance.running:
            worker_instance.running = False
        for scheduler in worker_instance.service.schedulers.values():
            scheduler.running = False

        worker_instance.start()
        logger.info(f"Scan worker restarted in Gunicorn worker {worker_process.pid}")

    options = {
        'bind': f'{host}:{port}',
        'workers': workers,
        'worker_class': 'sync',
        'timeout': 120,
        'accesslog': '-',
        'errorlog': '-',
        'loglevel': 'warning',
        'logger_class': FilteredLogger,
        'preload_app': True,
        'post_fork': post_fork,
    }

    logger.info(f"Starting Gunicorn server on {host}:{port} with {workers} worker(s)")

    app_instance = StandaloneApplication(app, options)
    app_instance.run()

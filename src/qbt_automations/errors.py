"""
User-friendly error handling for qbt-automations
Provides clear, actionable error messages without Python stack traces
"""

import sys
from typing import Optional

from qbt_automations.logging import get_logger

logger = get_logger(__name__)


class QBittorrentError(Exception):
    """Base exception for all qbt-automations errors"""

    def __init__(self, code: str, message: str, details: Optional[dict] = None, fix: Optional[str] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        self.fix = fix
        super().__init__(self.format_error())

    def format_error(self) -> str:
        """Format error message for user display"""
        lines = [self.message]

        if self.details:
            for key, value in self.details.items():
                lines.append(f"  • {key}: {value}")

        if self.fix:
            lines.append(f"  • Fix: {self.fix}")

        return "\n".join(lines)

    def to_dict(self) -> dict:
        """Serialize for JSON error responses"""
        return {
            'code': self.code,
            'message': self.message,
            'details': {str(k): str(v) for k, v in self.details.items()},
            'fix': self.fix
        }


class AuthenticationError(QBittorrentError):
    """Authentication with qBittorrent failed"""

    def __init__(self, host: str, response_text: Optional[str] = None):
        details = {"Host": host}
        if response_text:
            details["Response"] = response_text

        super().__init__(
            code="AUTH-001",
            message="Cannot connect to qBittorrent",
            details=details,
            fix="Check the host, username and password of this instance in config.yml"
        )


class ConnectionError(QBittorrentError):
    """Cannot reach qBittorrent server"""

    def __init__(self, host: str, original_error: str):
        super().__init__(
            code="CONN-001",
            message="Cannot reach qBittorrent server",
            details={
                "Host": host,
                "Error": str(original_error)
            },
            fix="Check that qBittorrent is running and the host/port are correct"
        )


class APIError(QBittorrentError):
    """Request to the qbt-automations server failed"""

    def __init__(self, endpoint: str, status_code: int, response_text: Optional[str] = None):
        details = {
            "Endpoint": endpoint,
            "Status Code": status_code
        }
        if response_text:
            details["Response"] = response_text[:200]

        super().__init__(
            code="API-001",
            message="Server request failed",
            details=details,
            fix="Check the server URL and API key, and the server log for details"
        )


class ConfigurationError(QBittorrentError):
    """Configuration file error"""

    def __init__(self, file_path: str, reason: str):
        super().__init__(
            code="CFG-001",
            message="Cannot load configuration",
            details={
                "File": file_path,
                "Problem": reason
            },
            fix="Check that the configuration file exists and has valid YAML syntax"
        )


class RuleValidationError(QBittorrentError):
    """Rule configuration is invalid"""

    def __init__(self, rule_name: str, reason: str):
        super().__init__(
            code="RULE-001",
            message="Invalid rule configuration",
            details={
                "Rule": rule_name,
                "Problem": reason
            },
            fix="Correct the rule definition and submit it again"
        )


class RuleNotFoundError(QBittorrentError):
    """Rule does not exist for the instance"""

    def __init__(self, instance_id: int, rule_id: int):
        super().__init__(
            code="RULE-002",
            message="Rule not found",
            details={
                "Instance": instance_id,
                "Rule ID": rule_id
            },
            fix="List the rules of this instance to find valid IDs"
        )


class InstanceNotFoundError(QBittorrentError):
    """Instance is not configured"""

    def __init__(self, instance_id, available: Optional[list] = None):
        super().__init__(
            code="INST-001",
            message="Unknown qBittorrent instance",
            details={
                "Instance": instance_id,
                "Configured": ', '.join(str(i) for i in available) if available else "(none defined)"
            },
            fix="Add the instance to the 'instances' section of config.yml"
        )


def handle_errors(func):
    """Decorator for user-friendly error handling"""
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except QBittorrentError as e:
            logger.error(str(e))
            sys.exit(1)
        except KeyboardInterrupt:
            logger.info("\nOperation cancelled by user")
            sys.exit(0)
        except Exception as e:
            logger.error("Unexpected error occurred")
            logger.error(f"  • Error: {type(e).__name__}: {str(e)}")
            logger.error("  • Fix: Please report this issue with the error details above")
            logger.debug("Full stack trace:", exc_info=True)
            sys.exit(1)
    return wrapper

"""
Logging infrastructure for the rule loop service.

- JSON formatting for production
- Human-readable formatting for development
- Redaction of secrets and rule payloads
- Size-based log rotation
"""
from .config import configure_logging, get_logger, JSONFormatter, HumanReadableFormatter

__all__ = [
    "configure_logging",
    "get_logger",
    "JSONFormatter",
    "HumanReadableFormatter",
]

"""Common utilities and types for the reconciliation engine."""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger(__name__)


@dataclass
class OperationResult:
    """Result of a verification step (output check, endpoint probe)."""
    success: bool
    message: str = ''
    duration: float = 0.0
    details: dict = field(default_factory=dict)


def poll(
    check: Callable[[], tuple[bool, str]],
    timeout: float = 60,
    interval: float = 3,
    description: str = 'condition',
) -> tuple[bool, str]:
    """Call check until it succeeds or timeout expires.

    Args:
        check: Callable returning (done, message)
        timeout: Seconds to keep trying
        interval: Seconds between attempts
        description: Name used in log messages

    Returns:
        (success, message) from the last attempt
    """
    logger.debug(f"Waiting for {description}...")
    start = time.time()
    ok, message = check()
    while not ok and time.time() - start < timeout:
        logger.debug(f"{description} not ready ({message}), retrying in {interval}s...")
        time.sleep(interval)
        ok, message = check()
    if not ok:
        logger.error(f"Timeout waiting for {description}: {message}")
    return ok, message


def format_value(value: Any) -> str:
    """Render an attribute value for plan and output display."""
    if value is None:
        return 'null'
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, str):
        return f'"{value}"'
    if isinstance(value, (list, tuple)):
        return '[' + ', '.join(format_value(v) for v in value) + ']'
    if isinstance(value, dict):
        inner = ', '.join(f'{k} = {format_value(v)}' for k, v in value.items())
        return '{' + inner + '}'
    return str(value)

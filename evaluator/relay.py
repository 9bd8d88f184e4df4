"""
Maps execution outcomes and failures onto HTTP responses.
"""

import logging
from typing import Any, Dict, Tuple

from evaluator.models import Outcome
from evaluator.sandbox import SandboxError, SandboxLaunchError, SandboxTimeoutError
from evaluator.store import StoreUnavailableError

logger = logging.getLogger(__name__)

SENSITIVE_MARKERS = (
    'password', 'secret', 'token', 'credential',
    '/tmp', '/home', '/root', 'redis', 'container', 'docker',
)


def sanitize_error(error: str, production: bool = False) -> str:
    """
    Sanitize error messages for production.

    Args:
        error: Original error message
        production: Whether production masking applies

    Returns:
        Sanitized error message
    """
    if not production:
        return error

    # In production, don't expose internal details
    error_lower = error.lower()
    if any(marker in error_lower for marker in SENSITIVE_MARKERS):
        return "Execution failed"

    return error


def relay_outcome(outcome: Outcome, production: bool = False) -> Tuple[int, Dict[str, Any]]:
    """Response status and body for a worker outcome."""
    if outcome.ok:
        return 200, outcome.to_dict()

    if outcome.diagnostic is not None:
        logger.warning(f"Execution failed: {outcome.error} ({outcome.diagnostic!r})")
    return 500, {"error": sanitize_error(outcome.error or "Execution failed", production)}


def relay_error(error: Exception) -> Tuple[int, Dict[str, Any]]:
    """Response status and body for a failed evaluation."""
    if isinstance(error, SandboxTimeoutError):
        message = "Execution timed out"
    elif isinstance(error, SandboxLaunchError):
        message = "Failed to start sandbox"
    elif isinstance(error, StoreUnavailableError):
        message = "Script store unavailable"
    elif isinstance(error, SandboxError):
        message = "Sandbox error"
    else:
        message = "Internal error"

    logger.warning(f"Evaluation failed: {message}: {error}")
    return 500, {"error": message}

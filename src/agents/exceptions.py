"""
Agent Exceptions

Error types raised inside the multi-agent advisory engine.
"""

from typing import Optional


class AgentError(Exception):
    """Base class for errors raised by agents."""


class ExternalServiceError(AgentError):
    """
    The text-generation service could not be reached or answered with an error.

    Attributes:
        status_code: HTTP status returned by the service, if any
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PreferenceValidationError(AgentError, ValueError):
    """Structured preferences returned by the service were malformed."""

import logging
from typing import Any, List, Optional

from utils.logger import logger


class ResolutionError(Exception):
    """Base exception for entity resolution errors."""

    log_level = logging.ERROR

    def __init__(self, message: str, field: Optional[str] = None):
        """
        Initialize the resolution error.

        Args:
            message (str): Error message
            field (str, optional): Field being resolved when the error occurred
        """
        super().__init__(message)
        self.message = message
        self.field = field
        logger.log(self.log_level, f"{type(self).__name__}: {message}")


class ConfigurationError(ResolutionError):
    """Raised when a model, store or subflow is not registered."""
    pass


class NotFoundError(ResolutionError):
    """Raised when an entity id does not exist in its store."""

    log_level = logging.INFO


class AmbiguousMatchError(ResolutionError):
    """Raised when similar entities exist but none matches exactly."""

    log_level = logging.INFO

    def __init__(self, message: str, candidates: List[Any], field: Optional[str] = None):
        self.candidates = candidates
        super().__init__(message, field=field)


class ProviderError(ResolutionError):
    """Raised when the completion provider or entity store call fails."""

    log_level = logging.WARNING


class UserDeclinedError(ResolutionError):
    """Raised when the user declines creating an entity."""

    log_level = logging.INFO


class SubflowError(ResolutionError):
    """Raised when a subflow cannot be entered or the stack bound is exceeded."""
    pass


class WorkflowExecutionError(ResolutionError):
    """Raised when workflow execution fails."""
    pass

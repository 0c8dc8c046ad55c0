"""
Exceptions raised at the stage boundaries of the distribution pipeline.
"""

from typing import Any, Optional


class SDMError(Exception):
    """Base exception for the species distribution pipeline."""

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> dict:
        """Convert exception to dictionary for logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
        }


class OccurrenceFetchError(SDMError):
    """The occurrence service could not be queried or returned garbage."""


class EmptySelectionError(SDMError, ValueError):
    """A filter selected nothing that the next stage can work with."""


class LayerAlignmentError(SDMError):
    """Raster layers that must share a grid do not."""


class ModelFittingError(SDMError):
    """An algorithm failed to fit or evaluate."""

    def __init__(self, message: str, algorithm: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message, context)
        self.algorithm = algorithm
        self.context.setdefault("algorithm", algorithm)


class ConfigurationError(SDMError, ValueError):
    """Invalid pipeline configuration."""

"""Exception types raised across GeoSwitch.

The orchestrator maps these onto HTTP statuses: ``ParseError`` and
``ResolutionError`` become 400, ``ProvisionError`` becomes 502.
"""

from typing import List, Optional, Tuple


class GeoSwitchError(Exception):
    """Base class for all GeoSwitch errors."""


class ConfigError(GeoSwitchError, ValueError):
    """Invalid or unreadable routing configuration."""


class ParseError(GeoSwitchError):
    """Malformed or absent request intent."""


class ResolutionError(GeoSwitchError):
    """Requested exit name is not declared in the configuration."""

    def __init__(self, message: str, exit_name: Optional[str] = None):
        super().__init__(message)
        self.exit_name = exit_name


class ProvisionError(GeoSwitchError):
    """An exit handler could not be obtained or is not healthy."""

    def __init__(self, message: str, exit_name: Optional[str] = None, container_name: Optional[str] = None):
        super().__init__(message)
        self.exit_name = exit_name
        self.container_name = container_name


class ShutdownError(GeoSwitchError):
    """One or more resources failed to release during shutdown.

    Attributes:
        errors: (resource, exception) pairs, one per failed resource
    """

    def __init__(self, errors: List[Tuple[str, BaseException]]):
        self.errors = errors
        details = "; ".join(f"{resource}: {error}" for resource, error in errors)
        super().__init__(f"{len(errors)} resource(s) failed to shut down: {details}")

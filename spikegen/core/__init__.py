"""SpikeGen core — shared types, enums, and configuration.

Import the most commonly used types from here for convenience:

    from spikegen.core import Role, Connectivity, get_config
"""

from spikegen.core.config import SpikeGenConfig, get_config, set_config
from spikegen.core.types import (
    Connectivity,
    Role,
    Severity,
    SpanType,
    SpikeGenError,
    ValidationError,
)

__all__ = [
    "Connectivity",
    "Role",
    "Severity",
    "SpanType",
    "SpikeGenConfig",
    "SpikeGenError",
    "ValidationError",
    "get_config",
    "set_config",
]

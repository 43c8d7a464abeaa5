"""Global configuration for SpikeGen.

Manages default settings for the code generator and its backends.
Settings can be overridden via environment variables or explicit configuration.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


_DEFAULT_OUTPUT_DIR = Path("generated_code")


@dataclass
class SpikeGenConfig:
    """Top-level configuration for SpikeGen."""

    # Paths
    output_dir: Path = field(default_factory=lambda: _DEFAULT_OUTPUT_DIR)

    # Generation defaults
    default_backend: str = "cuda"
    default_precision: str = "float"

    # Per-kernel work-group sizes for SIMT backends
    neuron_update_block_size: int = 32
    presynaptic_update_block_size: int = 32
    postsynaptic_update_block_size: int = 32
    synapse_dynamics_block_size: int = 32
    init_block_size: int = 32
    init_sparse_block_size: int = 32
    pre_neuron_reset_block_size: int = 32
    pre_synapse_reset_block_size: int = 32

    # Logging
    log_level: str = "WARNING"

    def block_sizes(self) -> dict[str, int]:
        """Return the per-kernel block sizes keyed by backend preference name."""
        return {
            "neuron_update": self.neuron_update_block_size,
            "presynaptic_update": self.presynaptic_update_block_size,
            "postsynaptic_update": self.postsynaptic_update_block_size,
            "synapse_dynamics_update": self.synapse_dynamics_block_size,
            "initialize": self.init_block_size,
            "initialize_sparse": self.init_sparse_block_size,
            "pre_neuron_reset": self.pre_neuron_reset_block_size,
            "pre_synapse_reset": self.pre_synapse_reset_block_size,
        }

    def ensure_dirs(self) -> None:
        """Create the output directory if it does not exist."""
        self.output_dir.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_env(cls) -> SpikeGenConfig:
        """Build config from environment variables, falling back to defaults."""
        config = cls()

        if val := os.environ.get("SPIKEGEN_OUTPUT_DIR"):
            config.output_dir = Path(val)
        if val := os.environ.get("SPIKEGEN_BACKEND"):
            config.default_backend = val
        if val := os.environ.get("SPIKEGEN_PRECISION"):
            config.default_precision = val
        if val := os.environ.get("SPIKEGEN_LOG_LEVEL"):
            config.log_level = val.upper()
        if val := os.environ.get("SPIKEGEN_BLOCK_SIZE"):
            size = int(val)
            config.neuron_update_block_size = size
            config.presynaptic_update_block_size = size
            config.postsynaptic_update_block_size = size
            config.synapse_dynamics_block_size = size
            config.init_block_size = size
            config.init_sparse_block_size = size
            config.pre_neuron_reset_block_size = size
            config.pre_synapse_reset_block_size = size
        if val := os.environ.get("SPIKEGEN_NEURON_BLOCK_SIZE"):
            config.neuron_update_block_size = int(val)
        if val := os.environ.get("SPIKEGEN_SYNAPSE_BLOCK_SIZE"):
            config.presynaptic_update_block_size = int(val)

        return config


# Module-level singleton
_config: SpikeGenConfig | None = None


def get_config() -> SpikeGenConfig:
    """Return the global SpikeGen config, lazily initialized from env."""
    global _config
    if _config is None:
        _config = SpikeGenConfig.from_env()
    return _config


def set_config(config: SpikeGenConfig | None) -> None:
    """Override the global config (useful in tests). ``None`` resets it."""
    global _config
    _config = config

"""SpikeGen backends — code generation targets for merged models.

Usage:
    from spikegen.backends import create_backend

    backend = create_backend("cuda")
    launches = backend.gen_neuron_update(os, model_merged, sim_handler)
"""

from __future__ import annotations

from spikegen.backends.base import BackendBase, Kernel, Preferences
from spikegen.backends.cuda import CUDABackend
from spikegen.backends.opencl import OpenCLBackend
from spikegen.backends.simt import SIMTBackend
from spikegen.backends.single_thread_cpu import SingleThreadedCPUBackend
from spikegen.backends.strategies import (
    NoCompatibleStrategyError,
    PostSpan,
    PreSpan,
    PresynapticUpdateStrategy,
    StrategyRegistry,
)

BACKENDS: dict[str, type[BackendBase]] = {
    CUDABackend.name: CUDABackend,
    OpenCLBackend.name: OpenCLBackend,
    SingleThreadedCPUBackend.name: SingleThreadedCPUBackend,
}


def create_backend(
    name: str,
    preferences: Preferences | None = None,
    strategies: StrategyRegistry | None = None,
) -> BackendBase:
    """Instantiate the backend registered as ``name``.

    ``strategies`` only applies to SIMT backends; each backend gets its own
    registry, so adding a strategy to one never affects another.
    """
    try:
        cls = BACKENDS[name]
    except KeyError:
        raise ValueError(
            f"Unknown backend '{name}'. Available: {', '.join(sorted(BACKENDS))}"
        ) from None
    if issubclass(cls, SIMTBackend):
        return cls(preferences, strategies)
    return cls(preferences)


__all__ = [
    "BACKENDS",
    "BackendBase",
    "CUDABackend",
    "Kernel",
    "NoCompatibleStrategyError",
    "OpenCLBackend",
    "PostSpan",
    "PreSpan",
    "Preferences",
    "PresynapticUpdateStrategy",
    "SIMTBackend",
    "SingleThreadedCPUBackend",
    "StrategyRegistry",
    "create_backend",
]

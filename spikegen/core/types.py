"""Core data types for SpikeGen.

Enums and small records shared by the model, the merge orchestrator and the
backends. Every enum is a ``str`` enum so it serialises as its value.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Role(str, Enum):
    """Computation phase a merge pass targets.

    The value doubles as the prefix used in generated identifiers, e.g.
    ``MergedNeuronUpdateGroup0``.
    """

    NEURON_UPDATE = "NeuronUpdate"
    PRESYNAPTIC_UPDATE = "PresynapticUpdate"
    POSTSYNAPTIC_UPDATE = "PostsynapticUpdate"
    SYNAPSE_DYNAMICS = "SynapseDynamics"
    NEURON_INIT = "NeuronInit"
    SYNAPSE_DENSE_INIT = "SynapseDenseInit"
    SYNAPSE_CONNECTIVITY_INIT = "SynapseConnectivityInit"
    SYNAPSE_SPARSE_INIT = "SynapseSparseInit"
    NEURON_SPIKE_QUEUE_UPDATE = "NeuronSpikeQueueUpdate"
    SYNAPSE_DENDRITIC_DELAY_UPDATE = "SynapseDendriticDelayUpdate"


class Connectivity(str, Enum):
    """Storage layout of a projection's synaptic matrix."""

    DENSE = "dense"
    SPARSE = "sparse"


class SpanType(str, Enum):
    """Which side of a projection one presynaptic-update thread spans."""

    PRESYNAPTIC = "presynaptic"
    POSTSYNAPTIC = "postsynaptic"


class Severity(str, Enum):
    """Validation severity levels."""

    WARNING = "warning"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class SpikeGenError(Exception):
    """Base class for every fatal code-generation error."""


# ---------------------------------------------------------------------------
# Validation types
# ---------------------------------------------------------------------------


@dataclass
class ValidationError:
    """A validation error or warning produced by the model validator."""

    message: str
    entity: str = ""
    severity: Severity = Severity.ERROR

    @property
    def is_error(self) -> bool:
        return self.severity == Severity.ERROR

    def __str__(self) -> str:
        loc = f"'{self.entity}'" if self.entity else "model"
        return f"[{self.severity.value}] {loc}: {self.message}"

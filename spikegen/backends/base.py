"""Backend capability set shared by every code generation target.

A backend turns the merged groups of a model into kernel source. It owns the
parts that depend on the execution model (thread indexing, struct storage,
atomics, launch geometry) and calls back into caller-supplied handlers for the
model equations. Handlers never see the backend's syntax; the backend never
sees the model equations.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from spikegen.codegen.code_stream import CodeStream
from spikegen.codegen.dispatch import (
    GroupIdRange,
    KernelLaunch,
    launch_width,
    pad_size,
    partition_id_ranges,
)
from spikegen.codegen.substitutions import FunctionTemplate, Substitutions
from spikegen.core.config import SpikeGenConfig, get_config
from spikegen.core.types import Role

if TYPE_CHECKING:
    from spikegen.codegen.group_merged import GroupMerged, SynapseGroupMergedBase
    from spikegen.codegen.model_merged import ModelSpecMerged
    from spikegen.model.spec import ModelSpec

logger = logging.getLogger(__name__)


class Kernel(str, Enum):
    """Kernels a backend may emit; the value is the kernel's generated name."""

    NEURON_UPDATE = "updateNeuronsKernel"
    PRESYNAPTIC_UPDATE = "updatePresynapticKernel"
    POSTSYNAPTIC_UPDATE = "updatePostsynapticKernel"
    SYNAPSE_DYNAMICS_UPDATE = "updateSynapseDynamicsKernel"
    INITIALIZE = "initializeKernel"
    INITIALIZE_SPARSE = "initializeSparseKernel"
    PRE_NEURON_RESET = "preNeuronResetKernel"
    PRE_SYNAPSE_RESET = "preSynapseResetKernel"

    @property
    def preference_key(self) -> str:
        return self.name.lower()


ROLE_KERNELS: dict[Role, Kernel] = {
    Role.NEURON_UPDATE: Kernel.NEURON_UPDATE,
    Role.PRESYNAPTIC_UPDATE: Kernel.PRESYNAPTIC_UPDATE,
    Role.POSTSYNAPTIC_UPDATE: Kernel.POSTSYNAPTIC_UPDATE,
    Role.SYNAPSE_DYNAMICS: Kernel.SYNAPSE_DYNAMICS_UPDATE,
    Role.NEURON_INIT: Kernel.INITIALIZE,
    Role.SYNAPSE_DENSE_INIT: Kernel.INITIALIZE,
    Role.SYNAPSE_CONNECTIVITY_INIT: Kernel.INITIALIZE,
    Role.SYNAPSE_SPARSE_INIT: Kernel.INITIALIZE_SPARSE,
    Role.NEURON_SPIKE_QUEUE_UPDATE: Kernel.PRE_NEURON_RESET,
    Role.SYNAPSE_DENDRITIC_DELAY_UPDATE: Kernel.PRE_SYNAPSE_RESET,
}


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

GroupHandler = Callable[[CodeStream, Any, Substitutions], None]
EmitSpikeHandler = Callable[[CodeStream, Any, Substitutions], None]
NeuronSimHandler = Callable[[CodeStream, Any, Substitutions, EmitSpikeHandler, EmitSpikeHandler],
                            None]
# Returns the condition expression rather than writing it
ThresholdHandler = Callable[[Any, Substitutions], str]


@dataclass(frozen=True)
class SynapseUpdateHandlers:
    wum_thresh: ThresholdHandler
    wum_sim: GroupHandler
    wum_event: GroupHandler
    post_learn: GroupHandler
    synapse_dynamics: GroupHandler
    # Support code namespace opened around threshold, spike and event code
    presynaptic_namespace: Callable[[Any], str | None]


@dataclass(frozen=True)
class InitHandlers:
    neuron_init: GroupHandler
    synapse_dense_init: GroupHandler
    synapse_connectivity_init: GroupHandler
    synapse_sparse_init: GroupHandler


@dataclass
class Preferences:
    """Per-backend tuning, block sizes keyed by ``Kernel.preference_key``."""

    block_sizes: dict[str, int] = field(default_factory=lambda: get_config().block_sizes())

    @classmethod
    def from_config(cls, config: SpikeGenConfig | None = None) -> Preferences:
        config = config or get_config()
        return cls(block_sizes=config.block_sizes())


# ---------------------------------------------------------------------------
# Backend
# ---------------------------------------------------------------------------


class BackendBase(ABC):
    """Abstract code generation target."""

    name: str = ""
    var_prefix: str = ""
    rng_type: str = ""
    source_extension: str = ".cc"

    def __init__(self, preferences: Preferences | None = None) -> None:
        self.preferences = preferences or Preferences.from_config()

    # ------------------------------------------------------------------
    # Generation entry points
    # ------------------------------------------------------------------

    @abstractmethod
    def gen_neuron_update(self, os: CodeStream, model_merged: ModelSpecMerged,
                          sim_handler: NeuronSimHandler) -> list[KernelLaunch]:
        ...

    @abstractmethod
    def gen_synapse_update(self, os: CodeStream, model_merged: ModelSpecMerged,
                           handlers: SynapseUpdateHandlers) -> list[KernelLaunch]:
        ...

    @abstractmethod
    def gen_init(self, os: CodeStream, model_merged: ModelSpecMerged,
                 handlers: InitHandlers) -> list[KernelLaunch]:
        ...

    # ------------------------------------------------------------------
    # Hook points handed to handlers and strategies
    # ------------------------------------------------------------------

    @abstractmethod
    def gen_emit_spike(self, os: CodeStream, merged_group: Any, subs: Substitutions,
                       suffix: str) -> None:
        ...

    @abstractmethod
    def get_in_syn_update(self, target: str, value: str, precision: str) -> str:
        """Expression adding ``value`` into ``target``, atomically where threads race."""

    def get_functions(self, precision: str) -> Sequence[FunctionTemplate]:
        """Function templates available to every piece of model code."""
        return ()

    # ------------------------------------------------------------------
    # Work sizes
    # ------------------------------------------------------------------

    def get_kernel_block_size(self, kernel: Kernel) -> int:
        return self.preferences.block_sizes[kernel.preference_key]

    def get_granularity(self, role: Role) -> int:
        """Padding applied to each member's work within ``role``."""
        return 1

    @abstractmethod
    def get_num_presynaptic_update_threads(self, sg: Any) -> int:
        ...

    def get_num_threads(self, role: Role, entity: Any) -> int:
        """Unpadded number of threads one entity needs for ``role``."""
        if role in (Role.NEURON_UPDATE, Role.NEURON_INIT):
            return entity.num_neurons
        if role == Role.PRESYNAPTIC_UPDATE:
            return self.get_num_presynaptic_update_threads(entity)
        if role == Role.POSTSYNAPTIC_UPDATE:
            return entity.col_stride
        if role == Role.SYNAPSE_DYNAMICS:
            return entity.src.num_neurons * entity.row_stride
        if role == Role.SYNAPSE_DENSE_INIT:
            return entity.trg.num_neurons
        if role == Role.SYNAPSE_CONNECTIVITY_INIT:
            return entity.src.num_neurons
        if role == Role.SYNAPSE_SPARSE_INIT:
            return entity.row_stride
        # Queue and delay pointer rotation is one thread per member
        return 1

    def get_padded_size(self, role: Role, entity: Any) -> int:
        return pad_size(self.get_num_threads(role, entity), self.get_granularity(role))

    def partition(self, role: Role, merged_groups: Sequence[GroupMerged],
                  id_start: int = 0) -> list[GroupIdRange]:
        return partition_id_ranges(merged_groups, lambda g: self.get_num_threads(role, g),
                                   self.get_granularity(role), id_start)

    def make_launch(self, kernel: Kernel, ranges: Sequence[GroupIdRange]) -> KernelLaunch:
        total = ranges[-1].range.end if ranges else 0
        block_size = self.get_kernel_block_size(kernel)
        launch = KernelLaunch(kernel.value, tuple(ranges), total,
                              launch_width(total, block_size), block_size)
        logger.debug("%s: %d threads in %d merged groups, launched as %d",
                     kernel.value, total, len(ranges), launch.width)
        return launch

    def can_merge_presynaptic_update(self, a: Any, b: Any) -> bool:
        """Backend-specific presynaptic merge constraint beyond model structure."""
        return True

    # ------------------------------------------------------------------
    # Merged structs
    # ------------------------------------------------------------------

    def get_merged_group_field_type(self, type_name: str) -> str:
        return type_name

    def gen_merged_group_struct(self, os: CodeStream, merged_group: GroupMerged) -> None:
        """Struct declaration phase: one record type per merged group."""
        with os.block(f"struct {merged_group.struct_name}", trailer=";"):
            for f in merged_group.fields:
                os.line(f"{self.get_merged_group_field_type(f.type)} {f.name};")
        self._gen_merged_group_array(os, merged_group)
        os.blank()

    def gen_merged_struct_build(self, os: CodeStream, merged_group: GroupMerged) -> None:
        """Struct populate phase: one initialiser per member, in member order."""
        values = [[f.get_value(g, i) for f in merged_group.fields]
                  for i, g in enumerate(merged_group.groups)]
        self._gen_merged_struct_push(os, merged_group, values)
        os.blank()

    @abstractmethod
    def _gen_merged_group_array(self, os: CodeStream, merged_group: GroupMerged) -> None:
        ...

    @abstractmethod
    def _gen_merged_struct_push(self, os: CodeStream, merged_group: GroupMerged,
                                values: list[list[str]]) -> None:
        """Copy ``values``, one list of field values per member, into device storage."""

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def create_kernel_subs(self, model: ModelSpec, context: str) -> Substitutions:
        subs = Substitutions(functions=self.get_functions(model.precision),
                             precision=model.precision, context=context)
        subs.add_var_substitution("t", "t")
        subs.add_var_substitution("DT", model.scalar_expr(model.dt))
        return subs

    def add_in_syn_substitutions(self, subs: Substitutions, merged_group: SynapseGroupMergedBase,
                                 accumulator: str | None = None) -> None:
        """Bind ``$(addToInSyn, x)`` or ``$(addToInSynDelay, x, d)`` for one synapse."""
        sg = merged_group.archetype
        precision = merged_group.model.precision
        id_post = subs["id_post"]
        if sg.is_dendritic_delay_required:
            offset = merged_group.get_dendritic_delay_offset("$(1)")
            subs.add_func_substitution("addToInSynDelay", 2, self.get_in_syn_update(
                f"group->denDelay[{offset} + {id_post}]", "$(0)", precision))
        elif accumulator:
            subs.add_func_substitution("addToInSyn", 1, f"{accumulator} += $(0)")
        else:
            subs.add_func_substitution("addToInSyn", 1, self.get_in_syn_update(
                f"group->inSyn[{id_post}]", "$(0)", precision))

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"

"""Presynaptic update strategies for SIMT backends.

A strategy decides how the threads of the presynaptic update kernel map onto a
projection's synapses. Each backend instance holds its own ``StrategyRegistry``;
strategies added later take priority over earlier ones, so callers can put a
specialised strategy in front of the defaults.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator
from contextlib import ExitStack
from typing import TYPE_CHECKING

from spikegen.backends.base import Kernel
from spikegen.codegen.code_stream import CodeStream
from spikegen.codegen.substitutions import Substitutions
from spikegen.core.types import SpanType, SpikeGenError
from spikegen.model.spec import SynapseGroup

if TYPE_CHECKING:
    from spikegen.backends.base import GroupHandler, ThresholdHandler
    from spikegen.backends.simt import SIMTBackend
    from spikegen.codegen.group_merged import PresynapticUpdateGroupMerged


class NoCompatibleStrategyError(SpikeGenError):
    """Raised when no registered strategy can update a projection."""

    def __init__(self, entity: str) -> None:
        self.entity = entity
        super().__init__(
            f"No compatible presynaptic update strategy for synapse group '{entity}'")


class PresynapticUpdateStrategy(ABC):
    """One way of parallelising presynaptic spike propagation."""

    name: str = ""

    @abstractmethod
    def is_compatible(self, sg: SynapseGroup) -> bool:
        ...

    @abstractmethod
    def get_num_threads(self, sg: SynapseGroup) -> int:
        ...

    def should_accumulate_in_register(self, sg: SynapseGroup) -> bool:
        return False

    @abstractmethod
    def gen_code(
        self,
        os: CodeStream,
        backend: SIMTBackend,
        merged_group: PresynapticUpdateGroupMerged,
        pop_subs: Substitutions,
        true_spike: bool,
        thresh_handler: ThresholdHandler,
        sim_handler: GroupHandler,
    ) -> None:
        ...

    def __repr__(self) -> str:
        return f"<{type(self).__name__}>"


def _spike_source(sg: SynapseGroup, true_spike: bool) -> tuple[str, str, str]:
    """Array suffix, count slot and spike offset for a projection's source queue."""
    suffix = "" if true_spike else "Evnt"
    if sg.src.is_delay_required:
        return suffix, "preReadDelaySlot", "preReadDelayOffset + "
    return suffix, "0", ""


class PreSpan(PresynapticUpdateStrategy):
    """Each thread walks the row of one presynaptic spike. Sparse only."""

    name = "PreSpan"

    def is_compatible(self, sg: SynapseGroup) -> bool:
        return sg.span_type == SpanType.PRESYNAPTIC and sg.is_sparse

    def get_num_threads(self, sg: SynapseGroup) -> int:
        return sg.src.num_neurons * sg.threads_per_spike

    def gen_code(self, os, backend, merged_group, pop_subs, true_spike,
                 thresh_handler, sim_handler):
        sg = merged_group.archetype
        suffix, slot, offset = _spike_source(sg, true_spike)
        lid = pop_subs["id"]
        threads_per_spike = sg.threads_per_spike

        if threads_per_spike > 1:
            os.line(f"const unsigned int spike = {lid} / {threads_per_spike};")
            os.line(f"const unsigned int thread = {lid} % {threads_per_spike};")
        else:
            os.line(f"const unsigned int spike = {lid};")

        with os.block(f"if (spike < group->srcSpkCnt{suffix}[{slot}])"):
            os.line(f"const unsigned int preInd = group->srcSpk{suffix}[{offset}spike];")
            syn_subs = Substitutions(pop_subs)
            syn_subs.add_var_substitution("id_pre", "preInd")

            with ExitStack() as stack:
                if not true_spike:
                    stack.enter_context(os.block(f"if({thresh_handler(merged_group, syn_subs)})"))

                os.line("const unsigned int npost = group->rowLength[preInd];")
                start = "thread" if threads_per_spike > 1 else "0"
                with os.block(f"for(unsigned int i = {start}; i < npost; i += {threads_per_spike})"):
                    os.line("const unsigned int synAddress = (preInd * group->rowStride) + i;")
                    os.line("const unsigned int ipost = group->ind[synAddress];")
                    syn_subs.add_var_substitution("id_post", "ipost")
                    syn_subs.add_var_substitution("id_syn", "synAddress")
                    backend.add_in_syn_substitutions(syn_subs, merged_group)
                    sim_handler(os, merged_group, syn_subs)


class PostSpan(PresynapticUpdateStrategy):
    """Each thread owns one postsynaptic column; spikes are staged in shared memory."""

    name = "PostSpan"

    def is_compatible(self, sg: SynapseGroup) -> bool:
        return sg.span_type == SpanType.POSTSYNAPTIC

    def get_num_threads(self, sg: SynapseGroup) -> int:
        return sg.row_stride

    def should_accumulate_in_register(self, sg: SynapseGroup) -> bool:
        # One thread per target neuron, so nothing else writes its input
        return not sg.is_sparse and not sg.is_dendritic_delay_required

    def gen_code(self, os, backend, merged_group, pop_subs, true_spike,
                 thresh_handler, sim_handler):
        sg = merged_group.archetype
        suffix, slot, offset = _spike_source(sg, true_spike)
        lid = pop_subs["id"]
        block_size = backend.get_kernel_block_size(Kernel.PRESYNAPTIC_UPDATE)

        os.line(f"const unsigned int numSpikes = group->srcSpkCnt{suffix}[{slot}];")
        os.line(f"const unsigned int numSpikeBlocks = (numSpikes + {block_size - 1}) / {block_size};")
        with os.block("for (unsigned int r = 0; r < numSpikeBlocks; r++)"):
            os.line("const unsigned int numSpikesInBlock = (r == numSpikeBlocks - 1) "
                    f"? ((numSpikes - 1) % {block_size}) + 1 : {block_size};")
            backend.gen_shared_barrier(os)
            with os.block("if (localId < numSpikesInBlock)"):
                os.line(f"const unsigned int spk = group->srcSpk{suffix}[{offset}(r * {block_size}) + localId];")
                os.line(f"shSpk{suffix}[localId] = spk;")
                if sg.is_sparse:
                    os.line("shRowLength[localId] = group->rowLength[spk];")
            backend.gen_shared_barrier(os)

            os.comment("loop through all incoming spikes")
            with os.block("for (unsigned int j = 0; j < numSpikesInBlock; j++)"):
                os.comment("only work on existing neurons")
                with os.block(f"if ({lid} < group->rowStride)"):
                    os.line(f"const unsigned int synAddress = (shSpk{suffix}[j] * group->rowStride) + {lid};")
                    syn_subs = Substitutions(pop_subs)
                    syn_subs.add_var_substitution("id_pre", f"shSpk{suffix}[j]")
                    syn_subs.add_var_substitution("id_syn", "synAddress")

                    with ExitStack() as stack:
                        if not true_spike:
                            stack.enter_context(
                                os.block(f"if({thresh_handler(merged_group, syn_subs)})"))
                        if sg.is_sparse:
                            stack.enter_context(os.block(f"if ({lid} < shRowLength[j])"))
                            os.line("const unsigned int ipost = group->ind[synAddress];")
                            syn_subs.add_var_substitution("id_post", "ipost")
                        else:
                            syn_subs.add_var_substitution("id_post", lid)

                        accumulator = "linSyn" if self.should_accumulate_in_register(sg) else None
                        backend.add_in_syn_substitutions(syn_subs, merged_group, accumulator)
                        sim_handler(os, merged_group, syn_subs)


class StrategyRegistry:
    """Ordered set of strategies owned by one backend instance."""

    def __init__(self, strategies: Iterable[PresynapticUpdateStrategy] = ()) -> None:
        self._strategies: list[PresynapticUpdateStrategy] = list(strategies)

    @classmethod
    def default(cls) -> StrategyRegistry:
        return cls([PreSpan(), PostSpan()])

    def add(self, strategy: PresynapticUpdateStrategy) -> None:
        """Register ``strategy`` ahead of every strategy already present."""
        self._strategies.append(strategy)

    def select(self, sg: SynapseGroup) -> PresynapticUpdateStrategy:
        """Most recently added strategy compatible with ``sg``.

        Raises:
            NoCompatibleStrategyError: if none is.
        """
        for strategy in reversed(self._strategies):
            if strategy.is_compatible(sg):
                return strategy
        raise NoCompatibleStrategyError(sg.name)

    def __iter__(self) -> Iterator[PresynapticUpdateStrategy]:
        return iter(self._strategies)

    def __len__(self) -> int:
        return len(self._strategies)

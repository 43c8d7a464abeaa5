"""Shared code generation for SIMT (GPU) backends.

Every kernel file is emitted in the same five phases. The first three go to a
separate device stream which ``gen_program`` then places in the host file:

1. struct declarations, one record type per merged group;
2. start-ID tables for merged groups with more than one member;
3. kernel bodies: per merged group, an ID-range guard, a lookup of the owning
   member, a ``group`` pointer to its struct, then the handler;
4. struct-populate routines that copy one initialiser per member to the device;
5. host functions launching each kernel with its padded geometry.

Subclasses supply the syntax: kernel qualifiers, thread indexing, barriers,
atomics, and how merged structs and device code reach the device.
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from collections.abc import Callable, Sequence
from contextlib import ExitStack
from typing import Any

from spikegen.backends.base import (
    ROLE_KERNELS,
    BackendBase,
    InitHandlers,
    Kernel,
    NeuronSimHandler,
    Preferences,
    SynapseUpdateHandlers,
)
from spikegen.backends.strategies import PostSpan, PresynapticUpdateStrategy, StrategyRegistry
from spikegen.codegen.code_stream import CodeStream
from spikegen.codegen.dispatch import GroupIdRange, KernelLaunch
from spikegen.codegen.group_merged import GroupMerged
from spikegen.codegen.model_merged import ModelSpecMerged
from spikegen.codegen.substitutions import Substitutions
from spikegen.core.types import Role
from spikegen.model.spec import ModelSpec, SynapseGroup

logger = logging.getLogger(__name__)

GroupBody = Callable[[CodeStream, Any, Substitutions], None]


class SIMTBackend(BackendBase):
    """Backends running blocks of threads that share memory and barriers."""

    shared_prefix: str = ""
    group_pointer_prefix: str = ""
    constant_prefix: str = ""

    def __init__(self, preferences: Preferences | None = None,
                 strategies: StrategyRegistry | None = None) -> None:
        super().__init__(preferences)
        self.strategies = strategies if strategies is not None else StrategyRegistry.default()

    # ------------------------------------------------------------------
    # Syntax supplied by subclasses
    # ------------------------------------------------------------------

    @abstractmethod
    def gen_kernel_header(self, kernel: Kernel, params: list[str]) -> str:
        ...

    @abstractmethod
    def get_kernel_merged_params(self, merged_groups: Sequence[GroupMerged]) -> list[str]:
        ...

    @abstractmethod
    def gen_thread_ids(self, os: CodeStream, kernel: Kernel) -> None:
        """Declare ``id`` (global) and ``localId`` (within the block)."""

    @abstractmethod
    def gen_shared_barrier(self, os: CodeStream) -> None:
        ...

    @abstractmethod
    def get_atomic_add(self, type_name: str, memory: str = "global") -> str:
        """Name of the atomic add function for ``type_name`` in ``memory``."""

    @abstractmethod
    def gen_preamble(self, os: CodeStream, model: ModelSpec) -> None:
        ...

    @abstractmethod
    def gen_launch(self, os: CodeStream, launch: KernelLaunch,
                   merged_groups: Sequence[GroupMerged], time_arg: bool) -> None:
        ...

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    def get_granularity(self, role: Role) -> int:
        if role in (Role.NEURON_SPIKE_QUEUE_UPDATE, Role.SYNAPSE_DENDRITIC_DELAY_UPDATE):
            return 1
        return self.get_kernel_block_size(ROLE_KERNELS[role])

    def get_presynaptic_update_strategy(self, sg: SynapseGroup) -> PresynapticUpdateStrategy:
        return self.strategies.select(sg)

    def get_num_presynaptic_update_threads(self, sg: SynapseGroup) -> int:
        return self.get_presynaptic_update_strategy(sg).get_num_threads(sg)

    def can_merge_presynaptic_update(self, a: SynapseGroup, b: SynapseGroup) -> bool:
        return self.get_presynaptic_update_strategy(a) is self.get_presynaptic_update_strategy(b)

    def get_in_syn_update(self, target: str, value: str, precision: str) -> str:
        return f"{self.get_atomic_add(precision)}(&{target}, {value})"

    def gen_emit_spike(self, os: CodeStream, merged_group: Any, subs: Substitutions,
                       suffix: str) -> None:
        atomic = self.get_atomic_add("unsigned int", "shared")
        os.line(f"const unsigned int spk{suffix}Idx = {atomic}(&shSpk{suffix}Count, 1);")
        os.line(f"shSpk{suffix}[spk{suffix}Idx] = {subs['id']};")

    def shared_decl(self, type_name: str, name: str, size: int | None = None) -> str:
        array = f"[{size}]" if size is not None else ""
        return f"{self.shared_prefix} {type_name} {name}{array};"

    # ------------------------------------------------------------------
    # Merged struct storage
    # ------------------------------------------------------------------

    @staticmethod
    def merged_array_name(merged_group: GroupMerged) -> str:
        return f"d_merged{merged_group.prefix}Group{merged_group.index}"

    @staticmethod
    def start_id_table_name(merged_group: GroupMerged) -> str:
        return f"d_merged{merged_group.prefix}GroupStartID{merged_group.index}"

    def _gen_structs(self, os: CodeStream, merged_groups: Sequence[GroupMerged]) -> None:
        if merged_groups:
            os.comment("merged group structs")
        for mg in merged_groups:
            mg.gen_struct(os)

    def _gen_struct_builds(self, os: CodeStream, merged_groups: Sequence[GroupMerged]) -> None:
        if merged_groups:
            os.comment("merged group struct population")
        for mg in merged_groups:
            mg.gen_struct_build(os)

    def gen_program(self, os: CodeStream, program: str, device: CodeStream,
                    merged_groups: Sequence[GroupMerged],
                    launches: Sequence[tuple[KernelLaunch, Sequence[GroupMerged], bool]]) -> None:
        """Place the device code of one kernel file into the host stream ``os``.

        By default both share one translation unit: the kernels are copied in,
        followed by the struct-populate functions.
        """
        os.extend(device)
        self._gen_struct_builds(os, merged_groups)

    def _gen_start_id_tables(self, os: CodeStream, merged_groups: Sequence[GroupMerged],
                             ranges: Sequence[GroupIdRange]) -> None:
        emitted = False
        for mg, group_range in zip(merged_groups, ranges):
            if len(mg) > 1:
                starts = ", ".join(str(s) for s in group_range.member_starts)
                os.line(f"{self.constant_prefix} unsigned int "
                        f"{self.start_id_table_name(mg)}[] = {{{starts}}};")
                emitted = True
        if emitted:
            os.blank()

    # ------------------------------------------------------------------
    # Kernel body helpers
    # ------------------------------------------------------------------

    def _gen_range_guard(self, group_range: GroupIdRange) -> str:
        start, end = group_range.range.start, group_range.range.end
        if start == 0:
            return f"if(id < {end})"
        return f"if(id >= {start} && id < {end})"

    def _gen_parallel_group(self, os: CodeStream, kernel_subs: Substitutions,
                            merged_groups: Sequence[GroupMerged],
                            ranges: Sequence[GroupIdRange], handler: GroupBody) -> None:
        """Kernel body phase for one role: guard, member lookup, handler."""
        for mg, group_range in zip(merged_groups, ranges):
            os.comment(f"merged{mg.index}")
            with os.block(self._gen_range_guard(group_range)):
                pointer = f"{self.group_pointer_prefix}struct {mg.struct_name} *group"
                array = self.merged_array_name(mg)
                if len(mg) == 1:
                    os.line(f"{pointer} = &{array}[0];")
                    os.line(f"const unsigned int lid = id - {group_range.range.start};")
                else:
                    table = self.start_id_table_name(mg)
                    os.comment("find member whose ID range contains id")
                    os.line("unsigned int lo = 0;")
                    os.line(f"unsigned int hi = {len(mg)};")
                    with os.block("while(lo < hi)"):
                        os.line("const unsigned int mid = (lo + hi) / 2;")
                        with os.block(f"if(id < {table}[mid])"):
                            os.line("hi = mid;")
                        with os.block("else"):
                            os.line("lo = mid + 1;")
                    os.line(f"{pointer} = &{array}[lo - 1];")
                    os.line(f"const unsigned int lid = id - {table}[lo - 1];")

                pop_subs = Substitutions(kernel_subs)
                pop_subs.add_var_substitution("id", "lid")
                handler(os, mg, pop_subs)

    def _gen_per_member(self, os: CodeStream, merged_groups: Sequence[GroupMerged],
                        ranges: Sequence[GroupIdRange],
                        body: Callable[[CodeStream, Any], None]) -> None:
        """One thread per member, used by the queue and delay pointer rotation kernels."""
        for mg, group_range in zip(merged_groups, ranges):
            os.comment(f"merged{mg.index}")
            with os.block(self._gen_range_guard(group_range)):
                os.line(f"{self.group_pointer_prefix}struct {mg.struct_name} *group = "
                        f"&{self.merged_array_name(mg)}[id - {group_range.range.start}];")
                body(os, mg)

    def _kernel_params(self, merged_groups: Sequence[GroupMerged], model: ModelSpec,
                       time_arg: bool) -> list[str]:
        params = self.get_kernel_merged_params(merged_groups)
        if time_arg:
            params.append(f"{model.time_precision} t")
        return params

    # ------------------------------------------------------------------
    # Neuron update
    # ------------------------------------------------------------------

    def gen_neuron_update(self, os: CodeStream, model_merged: ModelSpecMerged,
                          sim_handler: NeuronSimHandler) -> list[KernelLaunch]:
        model = model_merged.model
        queue_groups = model_merged.neuron_spike_queue_update_groups
        update_groups = model_merged.neuron_update_groups
        queue_ranges = self.partition(Role.NEURON_SPIKE_QUEUE_UPDATE, queue_groups)
        update_ranges = self.partition(Role.NEURON_UPDATE, update_groups)

        device = CodeStream()
        self.gen_preamble(device, model)
        self._gen_structs(device, [*queue_groups, *update_groups])
        self._gen_start_id_tables(device, update_groups, update_ranges)

        launches: list[tuple[KernelLaunch, Sequence[GroupMerged], bool]] = []
        if queue_groups:
            kernel = Kernel.PRE_NEURON_RESET
            with device.block(self.gen_kernel_header(
                    kernel, self._kernel_params(queue_groups, model, False))):
                self.gen_thread_ids(device, kernel)
                self._gen_per_member(device, queue_groups, queue_ranges, self._gen_spike_queue_update)
            device.blank()
            launches.append((self.make_launch(kernel, queue_ranges), queue_groups, False))

        if update_groups:
            kernel = Kernel.NEURON_UPDATE
            block_size = self.get_kernel_block_size(kernel)
            with device.block(self.gen_kernel_header(
                    kernel, self._kernel_params(update_groups, model, True))):
                self.gen_thread_ids(device, kernel)
                kernel_subs = self.create_kernel_subs(model, kernel.value)

                if any(mg.archetype.is_spike_event_required for mg in update_groups):
                    device.line(self.shared_decl("unsigned int", "shSpkEvnt", block_size))
                    device.line(self.shared_decl("unsigned int", "shPosSpkEvnt"))
                    device.line(self.shared_decl("unsigned int", "shSpkEvntCount"))
                    with device.block("if (localId == 1)"):
                        device.line("shSpkEvntCount = 0;")
                if any(mg.archetype.model.threshold_condition_code for mg in update_groups):
                    device.line(self.shared_decl("unsigned int", "shSpk", block_size))
                    device.line(self.shared_decl("unsigned int", "shPosSpk"))
                    device.line(self.shared_decl("unsigned int", "shSpkCount"))
                    with device.block("if (localId == 0)"):
                        device.line("shSpkCount = 0;")
                self.gen_shared_barrier(device)
                device.blank()

                self._gen_parallel_group(
                    device, kernel_subs, update_groups, update_ranges,
                    lambda os, mg, subs: self._gen_neuron_update_group(os, mg, subs, sim_handler))
            device.blank()
            launches.append((self.make_launch(kernel, update_ranges), update_groups, True))

        self.gen_program(os, "neuronUpdate", device, [*queue_groups, *update_groups], launches)
        with os.block(f"void updateNeurons({model.time_precision} t)"):
            for launch, groups, time_arg in launches:
                self.gen_launch(os, launch, groups, time_arg)
        return [launch for launch, _, _ in launches]

    def _gen_spike_queue_update(self, os: CodeStream, merged_group: Any) -> None:
        merged_group.gen_queue_rotation(os)
        merged_group.gen_spike_count_reset(os)

    def _gen_neuron_update_group(self, os: CodeStream, mg: Any, pop_subs: Substitutions,
                                 sim_handler: NeuronSimHandler) -> None:
        ng = mg.archetype
        lid = pop_subs["id"]
        if ng.is_delay_required:
            os.line(f"const unsigned int readDelayOffset = {mg.get_prev_queue_offset()};")
            os.line(f"const unsigned int writeDelayOffset = {mg.get_current_queue_offset()};")
        if ng.is_sim_rng_required:
            pop_subs.add_var_substitution("rng", f"&group->rng[{lid}]")

        with os.block(f"if({lid} < group->numNeurons)"):
            sim_handler(os, mg, pop_subs,
                        lambda os, mg, subs: self.gen_emit_spike(os, mg, subs, ""),
                        lambda os, mg, subs: self.gen_emit_spike(os, mg, subs, "Evnt"))
        self.gen_shared_barrier(os)

        atomic = self.get_atomic_add("unsigned int")
        has_threshold = bool(ng.model.threshold_condition_code)
        if ng.is_spike_event_required:
            slot = "*group->spkQuePtr" if ng.is_delay_required else "0"
            with os.block("if (localId == 1)"):
                with os.block("if (shSpkEvntCount > 0)"):
                    os.line(f"shPosSpkEvnt = {atomic}(&group->spkCntEvnt[{slot}], shSpkEvntCount);")
            self.gen_shared_barrier(os)
        if has_threshold:
            slot = ("*group->spkQuePtr" if ng.is_delay_required and ng.is_true_spike_required
                    else "0")
            with os.block("if (localId == 0)"):
                with os.block("if (shSpkCount > 0)"):
                    os.line(f"shPosSpk = {atomic}(&group->spkCnt[{slot}], shSpkCount);")
            self.gen_shared_barrier(os)

        queue_offset = "writeDelayOffset + " if ng.is_delay_required else ""
        if ng.is_spike_event_required:
            with os.block("if (localId < shSpkEvntCount)"):
                os.line(f"group->spkEvnt[{queue_offset}shPosSpkEvnt + localId] = "
                        "shSpkEvnt[localId];")
        if has_threshold:
            true_offset = queue_offset if ng.is_true_spike_required else ""
            with os.block("if (localId < shSpkCount)"):
                os.line("const unsigned int n = shSpk[localId];")
                os.line(f"group->spk[{true_offset}shPosSpk + localId] = n;")
                if ng.spike_time_required:
                    os.line(f"group->sT[{queue_offset}n] = t;")

    # ------------------------------------------------------------------
    # Synapse update
    # ------------------------------------------------------------------

    def gen_synapse_update(self, os: CodeStream, model_merged: ModelSpecMerged,
                           handlers: SynapseUpdateHandlers) -> list[KernelLaunch]:
        model = model_merged.model
        delay_groups = model_merged.synapse_dendritic_delay_update_groups
        pre_groups = model_merged.presynaptic_update_groups
        post_groups = model_merged.postsynaptic_update_groups
        dynamics_groups = model_merged.synapse_dynamics_groups

        delay_ranges = self.partition(Role.SYNAPSE_DENDRITIC_DELAY_UPDATE, delay_groups)
        pre_ranges = self.partition(Role.PRESYNAPTIC_UPDATE, pre_groups)
        post_ranges = self.partition(Role.POSTSYNAPTIC_UPDATE, post_groups)
        dynamics_ranges = self.partition(Role.SYNAPSE_DYNAMICS, dynamics_groups)

        device = CodeStream()
        self.gen_preamble(device, model)
        self._gen_structs(device, [*delay_groups, *pre_groups, *post_groups, *dynamics_groups])
        self._gen_start_id_tables(device, pre_groups, pre_ranges)
        self._gen_start_id_tables(device, post_groups, post_ranges)
        self._gen_start_id_tables(device, dynamics_groups, dynamics_ranges)

        launches: list[tuple[KernelLaunch, Sequence[GroupMerged], bool]] = []

        if delay_groups:
            kernel = Kernel.PRE_SYNAPSE_RESET
            with device.block(self.gen_kernel_header(
                    kernel, self._kernel_params(delay_groups, model, False))):
                self.gen_thread_ids(device, kernel)
                self._gen_per_member(device, delay_groups, delay_ranges,
                                     lambda os, mg: mg.gen_pointer_rotation(os))
            device.blank()
            launches.append((self.make_launch(kernel, delay_ranges), delay_groups, False))

        if dynamics_groups:
            kernel = Kernel.SYNAPSE_DYNAMICS_UPDATE
            with device.block(self.gen_kernel_header(
                    kernel, self._kernel_params(dynamics_groups, model, True))):
                self.gen_thread_ids(device, kernel)
                kernel_subs = self.create_kernel_subs(model, kernel.value)
                self._gen_parallel_group(
                    device, kernel_subs, dynamics_groups, dynamics_ranges,
                    lambda os, mg, subs: self._gen_synapse_dynamics_group(
                        os, mg, subs, handlers))
            device.blank()
            launches.append((self.make_launch(kernel, dynamics_ranges), dynamics_groups, True))

        if pre_groups:
            kernel = Kernel.PRESYNAPTIC_UPDATE
            block_size = self.get_kernel_block_size(kernel)
            with device.block(self.gen_kernel_header(
                    kernel, self._kernel_params(pre_groups, model, True))):
                self.gen_thread_ids(device, kernel)
                kernel_subs = self.create_kernel_subs(model, kernel.value)

                post_span = [mg for mg in pre_groups
                             if isinstance(self.get_presynaptic_update_strategy(mg.archetype),
                                           PostSpan)]
                if any(mg.archetype.is_true_spike_required for mg in post_span):
                    device.line(self.shared_decl("unsigned int", "shSpk", block_size))
                if any(mg.archetype.is_spike_event_required for mg in post_span):
                    device.line(self.shared_decl("unsigned int", "shSpkEvnt", block_size))
                if any(mg.archetype.is_sparse for mg in post_span):
                    device.line(self.shared_decl("unsigned int", "shRowLength", block_size))
                device.blank()

                self._gen_parallel_group(
                    device, kernel_subs, pre_groups, pre_ranges,
                    lambda os, mg, subs: self._gen_presynaptic_update_group(
                        os, mg, subs, handlers))
            device.blank()
            launches.append((self.make_launch(kernel, pre_ranges), pre_groups, True))

        if post_groups:
            kernel = Kernel.POSTSYNAPTIC_UPDATE
            block_size = self.get_kernel_block_size(kernel)
            with device.block(self.gen_kernel_header(
                    kernel, self._kernel_params(post_groups, model, True))):
                self.gen_thread_ids(device, kernel)
                kernel_subs = self.create_kernel_subs(model, kernel.value)
                device.line(self.shared_decl("unsigned int", "shSpk", block_size))
                if any(mg.archetype.is_sparse for mg in post_groups):
                    device.line(self.shared_decl("unsigned int", "shColLength", block_size))
                device.blank()

                self._gen_parallel_group(
                    device, kernel_subs, post_groups, post_ranges,
                    lambda os, mg, subs: self._gen_postsynaptic_update_group(
                        os, mg, subs, handlers))
            device.blank()
            launches.append((self.make_launch(kernel, post_ranges), post_groups, True))

        self.gen_program(os, "synapseUpdate", device,
                         [*delay_groups, *pre_groups, *post_groups, *dynamics_groups], launches)
        with os.block(f"void updateSynapses({model.time_precision} t)"):
            for launch, groups, time_arg in launches:
                self.gen_launch(os, launch, groups, time_arg)
        return [launch for launch, _, _ in launches]

    def _gen_presynaptic_delay_offsets(self, os: CodeStream, mg: Any) -> None:
        if mg.archetype.src.is_delay_required:
            os.line(f"const unsigned int preReadDelaySlot = "
                    f"{mg.get_presynaptic_axonal_delay_slot()};")
            os.line("const unsigned int preReadDelayOffset = "
                    "preReadDelaySlot * group->numSrcNeurons;")

    def _gen_presynaptic_update_group(self, os: CodeStream, mg: Any, pop_subs: Substitutions,
                                      handlers: SynapseUpdateHandlers) -> None:
        sg = mg.archetype
        strategy = self.get_presynaptic_update_strategy(sg)
        logger.debug("Using '%s' presynaptic update strategy for merged group %d",
                     strategy.name, mg.index)

        self._gen_presynaptic_delay_offsets(os, mg)
        namespace = handlers.presynaptic_namespace(mg)
        register = strategy.should_accumulate_in_register(sg)
        if register:
            os.line(f"{mg.model.precision} linSyn = 0;")

        if sg.is_spike_event_required:
            with os.scope():
                _gen_using_namespace(os, namespace)
                strategy.gen_code(os, self, mg, pop_subs, False,
                                  handlers.wum_thresh, handlers.wum_event)
        if sg.is_true_spike_required:
            with os.scope():
                _gen_using_namespace(os, namespace)
                strategy.gen_code(os, self, mg, pop_subs, True,
                                  handlers.wum_thresh, handlers.wum_sim)

        if register:
            lid = pop_subs["id"]
            os.comment("only do this for existing neurons")
            with os.block(f"if ({lid} < group->numTrgNeurons)"):
                os.line(f"group->inSyn[{lid}] += linSyn;")

    def _gen_postsynaptic_update_group(self, os: CodeStream, mg: Any, pop_subs: Substitutions,
                                       handlers: SynapseUpdateHandlers) -> None:
        sg = mg.archetype
        lid = pop_subs["id"]
        block_size = self.get_kernel_block_size(Kernel.POSTSYNAPTIC_UPDATE)

        trg_queued = sg.trg.is_delay_required and sg.trg.is_true_spike_required
        if sg.trg.is_delay_required:
            os.line(f"const unsigned int postReadDelaySlot = "
                    f"{mg.get_postsynaptic_back_prop_delay_slot()};")
            os.line("const unsigned int postReadDelayOffset = "
                    "postReadDelaySlot * group->numTrgNeurons;")
        os.line("const unsigned int numSpikes = "
                f"group->trgSpkCnt[{'postReadDelaySlot' if trg_queued else '0'}];")
        os.line(f"const unsigned int numSpikeBlocks = (numSpikes + {block_size - 1}) / {block_size};")

        with os.block("for (unsigned int r = 0; r < numSpikeBlocks; r++)"):
            os.line("const unsigned int numSpikesInBlock = (r == numSpikeBlocks - 1) "
                    f"? ((numSpikes - 1) % {block_size}) + 1 : {block_size};")
            with os.block("if (localId < numSpikesInBlock)"):
                offset = "postReadDelayOffset + " if trg_queued else ""
                os.line(f"const unsigned int spk = group->trgSpk[{offset}(r * {block_size}) + localId];")
                os.line("shSpk[localId] = spk;")
                if sg.is_sparse:
                    os.line("shColLength[localId] = group->colLength[spk];")
            self.gen_shared_barrier(os)

            os.comment("only work on existing neurons")
            with os.block(f"if ({lid} < group->colStride)"):
                os.comment("loop through all incoming spikes for learning")
                with os.block("for (unsigned int j = 0; j < numSpikesInBlock; j++)"):
                    syn_subs = Substitutions(pop_subs)
                    with ExitStack() as stack:
                        if sg.is_sparse:
                            stack.enter_context(os.block(f"if ({lid} < shColLength[j])"))
                            os.line("const unsigned int synAddress = "
                                    f"group->remap[(shSpk[j] * group->colStride) + {lid}];")
                            os.line("const unsigned int ipre = synAddress / group->rowStride;")
                            syn_subs.add_var_substitution("id_pre", "ipre")
                        else:
                            os.line("const unsigned int synAddress = "
                                    f"({lid} * group->rowStride) + shSpk[j];")
                            syn_subs.add_var_substitution("id_pre", lid)
                        syn_subs.add_var_substitution("id_post", "shSpk[j]")
                        syn_subs.add_var_substitution("id_syn", "synAddress")
                        handlers.post_learn(os, mg, syn_subs)
            self.gen_shared_barrier(os)

    def _gen_synapse_dynamics_group(self, os: CodeStream, mg: Any, pop_subs: Substitutions,
                                    handlers: SynapseUpdateHandlers) -> None:
        sg = mg.archetype
        lid = pop_subs["id"]
        self._gen_presynaptic_delay_offsets(os, mg)
        with os.block(f"if ({lid} < (group->numSrcNeurons * group->rowStride))"):
            syn_subs = Substitutions(pop_subs)
            with ExitStack() as stack:
                if sg.is_sparse:
                    os.line(f"const unsigned int row = {lid} / group->rowStride;")
                    os.line(f"const unsigned int col = {lid} % group->rowStride;")
                    stack.enter_context(os.block("if (col < group->rowLength[row])"))
                    syn_subs.add_var_substitution("id_pre", "row")
                    syn_subs.add_var_substitution("id_post", f"group->ind[{lid}]")
                else:
                    syn_subs.add_var_substitution("id_pre", f"({lid} / group->rowStride)")
                    syn_subs.add_var_substitution("id_post", f"({lid} % group->rowStride)")
                syn_subs.add_var_substitution("id_syn", lid)
                self.add_in_syn_substitutions(syn_subs, mg)
                handlers.synapse_dynamics(os, mg, syn_subs)

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    def gen_init(self, os: CodeStream, model_merged: ModelSpecMerged,
                 handlers: InitHandlers) -> list[KernelLaunch]:
        model = model_merged.model
        neuron_groups = model_merged.neuron_init_groups
        dense_groups = model_merged.synapse_dense_init_groups
        conn_groups = model_merged.synapse_connectivity_init_groups
        sparse_groups = model_merged.synapse_sparse_init_groups

        # Neuron, dense and connectivity init share one ID space
        neuron_ranges = self.partition(Role.NEURON_INIT, neuron_groups)
        dense_ranges = self.partition(Role.SYNAPSE_DENSE_INIT, dense_groups,
                                      _end_of(neuron_ranges))
        conn_ranges = self.partition(Role.SYNAPSE_CONNECTIVITY_INIT, conn_groups,
                                     _end_of(dense_ranges, _end_of(neuron_ranges)))
        sparse_ranges = self.partition(Role.SYNAPSE_SPARSE_INIT, sparse_groups)
        init_groups = [*neuron_groups, *dense_groups, *conn_groups]
        init_ranges = [*neuron_ranges, *dense_ranges, *conn_ranges]

        device = CodeStream()
        self.gen_preamble(device, model)
        self._gen_structs(device, [*init_groups, *sparse_groups])
        self._gen_start_id_tables(device, init_groups, init_ranges)
        self._gen_start_id_tables(device, sparse_groups, sparse_ranges)

        launches: list[tuple[KernelLaunch, Sequence[GroupMerged], bool]] = []
        if init_groups:
            kernel = Kernel.INITIALIZE
            with device.block(self.gen_kernel_header(
                    kernel, self._kernel_params(init_groups, model, False))):
                self.gen_thread_ids(device, kernel)
                kernel_subs = self.create_kernel_subs(model, kernel.value)
                self._gen_parallel_group(
                    device, kernel_subs, neuron_groups, neuron_ranges,
                    lambda os, mg, subs: self._gen_neuron_init_group(os, mg, subs, handlers))
                self._gen_parallel_group(
                    device, kernel_subs, dense_groups, dense_ranges,
                    lambda os, mg, subs: self._gen_dense_init_group(os, mg, subs, handlers))
                self._gen_parallel_group(
                    device, kernel_subs, conn_groups, conn_ranges,
                    lambda os, mg, subs: self._gen_connectivity_init_group(
                        os, mg, subs, handlers))
            device.blank()
            launches.append((self.make_launch(kernel, init_ranges), init_groups, False))

        if sparse_groups:
            kernel = Kernel.INITIALIZE_SPARSE
            with device.block(self.gen_kernel_header(
                    kernel, self._kernel_params(sparse_groups, model, False))):
                self.gen_thread_ids(device, kernel)
                kernel_subs = self.create_kernel_subs(model, kernel.value)
                device.line(self.shared_decl("unsigned int", "shRowLength",
                                         self.get_kernel_block_size(kernel)))
                device.blank()
                self._gen_parallel_group(
                    device, kernel_subs, sparse_groups, sparse_ranges,
                    lambda os, mg, subs: self._gen_sparse_init_group(os, mg, subs, handlers))
            device.blank()
            launches.append((self.make_launch(kernel, sparse_ranges), sparse_groups, False))

        self.gen_program(os, "init", device, [*init_groups, *sparse_groups], launches)
        with os.block("void initialize()"):
            for launch, groups, time_arg in launches:
                if launch.kernel == Kernel.INITIALIZE.value:
                    self.gen_launch(os, launch, groups, time_arg)
        with os.block("void initializeSparse()"):
            for launch, groups, time_arg in launches:
                if launch.kernel == Kernel.INITIALIZE_SPARSE.value:
                    self.gen_launch(os, launch, groups, time_arg)
        return [launch for launch, _, _ in launches]

    def _gen_neuron_init_group(self, os: CodeStream, mg: Any, pop_subs: Substitutions,
                               handlers: InitHandlers) -> None:
        ng = mg.archetype
        lid = pop_subs["id"]
        slots = ng.num_delay_slots
        true_slots = slots if ng.is_delay_required and ng.is_true_spike_required else 1
        event_slots = slots if ng.is_delay_required else 1

        with os.block(f"if({lid} < group->numNeurons)"):
            with os.block(f"if({lid} == 0)"):
                _gen_zero_counts(os, "spkCnt", true_slots)
                if ng.is_spike_event_required:
                    _gen_zero_counts(os, "spkCntEvnt", event_slots)
            _gen_zero_queue(os, "spk", true_slots, lid, "0")
            if ng.is_spike_event_required:
                _gen_zero_queue(os, "spkEvnt", event_slots, lid, "0")
            if ng.spike_time_required:
                _gen_zero_queue(os, "sT", event_slots, lid, "-TIME_MAX")
            if ng.is_init_rng_required:
                pop_subs.add_var_substitution("rng", f"&group->rng[{lid}]")
            handlers.neuron_init(os, mg, pop_subs)

    def _gen_dense_init_group(self, os: CodeStream, mg: Any, pop_subs: Substitutions,
                              handlers: InitHandlers) -> None:
        lid = pop_subs["id"]
        with os.block(f"if({lid} < group->numTrgNeurons)"):
            if mg.has_field("rng"):
                pop_subs.add_var_substitution("rng", f"&group->rng[{lid}]")
            with os.block("for(unsigned int i = 0; i < group->numSrcNeurons; i++)"):
                syn_subs = Substitutions(pop_subs)
                syn_subs.add_var_substitution("id_pre", "i")
                syn_subs.add_var_substitution("id_post", lid)
                syn_subs.add_var_substitution("id_syn", f"(i * group->rowStride) + {lid}")
                handlers.synapse_dense_init(os, mg, syn_subs)

    def _gen_connectivity_init_group(self, os: CodeStream, mg: Any, pop_subs: Substitutions,
                                     handlers: InitHandlers) -> None:
        lid = pop_subs["id"]
        with os.block(f"if({lid} < group->numSrcNeurons)"):
            os.line(f"group->rowLength[{lid}] = 0;")
            if mg.has_field("rng"):
                pop_subs.add_var_substitution("rng", f"&group->rng[{lid}]")
            pop_subs.add_var_substitution("id_pre", lid)
            pop_subs.add_func_substitution(
                "addSynapse", 1,
                f"group->ind[({lid} * group->rowStride) + (group->rowLength[{lid}]++)] = $(0)")
            pop_subs.add_func_substitution("endRow", 0, "break")
            handlers.synapse_connectivity_init(os, mg, pop_subs)

    def _gen_sparse_init_group(self, os: CodeStream, mg: Any, pop_subs: Substitutions,
                               handlers: InitHandlers) -> None:
        sg = mg.archetype
        lid = pop_subs["id"]
        block_size = self.get_kernel_block_size(Kernel.INITIALIZE_SPARSE)
        if mg.has_field("rng"):
            pop_subs.add_var_substitution("rng", f"&group->rng[{lid}]")

        os.line(f"const unsigned int numBlocks = (group->numSrcNeurons + {block_size - 1}) "
                f"/ {block_size};")
        with os.block("for(unsigned int r = 0; r < numBlocks; r++)"):
            os.line("const unsigned int numRowsInBlock = (r == numBlocks - 1) "
                    f"? ((group->numSrcNeurons - 1) % {block_size}) + 1 : {block_size};")
            self.gen_shared_barrier(os)
            with os.block("if (localId < numRowsInBlock)"):
                os.line(f"shRowLength[localId] = group->rowLength[(r * {block_size}) + localId];")
            self.gen_shared_barrier(os)

            with os.block("for(unsigned int i = 0; i < numRowsInBlock; i++)"):
                with os.block(f"if({lid} < shRowLength[i])"):
                    os.line(f"const unsigned int idx = ((r * {block_size}) + i) * "
                            f"group->rowStride + {lid};")
                    syn_subs = Substitutions(pop_subs)
                    syn_subs.add_var_substitution("id_pre", f"((r * {block_size}) + i)")
                    syn_subs.add_var_substitution("id_post", "group->ind[idx]")
                    syn_subs.add_var_substitution("id_syn", "idx")
                    handlers.synapse_sparse_init(os, mg, syn_subs)

                    if sg.wu_model.learn_post_code:
                        atomic = self.get_atomic_add("unsigned int")
                        os.line("const unsigned int postIndex = group->ind[idx];")
                        os.line(f"const unsigned int colLocation = "
                                f"{atomic}(&group->colLength[postIndex], 1);")
                        os.line("const unsigned int colMajorIndex = "
                                "(postIndex * group->colStride) + colLocation;")
                        os.line("group->remap[colMajorIndex] = idx;")


def _gen_using_namespace(os: CodeStream, namespace: str | None) -> None:
    if namespace:
        os.line(f"using namespace {namespace};")


def _end_of(ranges: Sequence[GroupIdRange], default: int = 0) -> int:
    return ranges[-1].range.end if ranges else default


def _gen_zero_counts(os: CodeStream, field: str, slots: int) -> None:
    if slots > 1:
        with os.block(f"for(unsigned int d = 0; d < {slots}; d++)"):
            os.line(f"group->{field}[d] = 0;")
    else:
        os.line(f"group->{field}[0] = 0;")


def _gen_zero_queue(os: CodeStream, field: str, slots: int, lid: str, value: str) -> None:
    if slots > 1:
        with os.block(f"for(unsigned int d = 0; d < {slots}; d++)"):
            os.line(f"group->{field}[(d * group->numNeurons) + {lid}] = {value};")
    else:
        os.line(f"group->{field}[{lid}] = {value};")

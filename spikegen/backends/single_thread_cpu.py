"""Single-threaded CPU backend.

Every "kernel" becomes a host function that loops over the members of each
merged group and over their neurons or synapses. ID ranges are still
partitioned, with a granularity of one, so generation reports stay comparable
with the GPU backends.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from contextlib import ExitStack
from typing import Any

from spikegen.backends.base import (
    BackendBase,
    InitHandlers,
    Kernel,
    NeuronSimHandler,
    SynapseUpdateHandlers,
)
from spikegen.codegen.code_stream import CodeStream
from spikegen.codegen.dispatch import KernelLaunch
from spikegen.codegen.group_merged import GroupMerged
from spikegen.codegen.model_merged import ModelSpecMerged
from spikegen.codegen.substitutions import FunctionTemplate, Substitutions
from spikegen.core.types import Role
from spikegen.model.spec import ModelSpec, SynapseGroup


class SingleThreadedCPUBackend(BackendBase):
    """Plain C++ run on one host thread."""

    name = "single_threaded_cpu"
    var_prefix = ""
    rng_type = "std::mt19937"
    source_extension = ".cc"

    def get_functions(self, precision: str) -> Sequence[FunctionTemplate]:
        return (
            FunctionTemplate("gennrand_uniform", 0,
                             f"std::uniform_real_distribution<{precision}>(0, 1)($(rng))"),
            FunctionTemplate("gennrand_normal", 0,
                             f"std::normal_distribution<{precision}>(0, 1)($(rng))"),
            FunctionTemplate("gennrand_exponential", 0,
                             f"std::exponential_distribution<{precision}>(1)($(rng))"),
            FunctionTemplate("gennrand_log_normal", 2,
                             f"std::lognormal_distribution<{precision}>($(0), $(1))($(rng))"),
        )

    def get_kernel_block_size(self, kernel: Kernel) -> int:
        return 1

    def get_num_presynaptic_update_threads(self, sg: SynapseGroup) -> int:
        return sg.src.num_neurons

    def get_in_syn_update(self, target: str, value: str, precision: str) -> str:
        return f"{target} += {value}"

    def gen_emit_spike(self, os: CodeStream, merged_group: Any, subs: Substitutions,
                       suffix: str) -> None:
        ng = merged_group.archetype
        queued = ng.is_delay_required and (bool(suffix) or ng.is_true_spike_required)
        offset = "writeDelayOffset + " if queued else ""
        slot = "*group->spkQuePtr" if queued else "0"
        os.line(f"group->spk{suffix}[{offset}group->spkCnt{suffix}[{slot}]++] = {subs['id']};")
        if not suffix and ng.spike_time_required:
            time_offset = "writeDelayOffset + " if ng.is_delay_required else ""
            os.line(f"group->sT[{time_offset}{subs['id']}] = t;")

    # ------------------------------------------------------------------
    # Merged struct storage
    # ------------------------------------------------------------------

    @staticmethod
    def merged_array_name(merged_group: GroupMerged) -> str:
        return f"merged{merged_group.prefix}Group{merged_group.index}"

    def _gen_merged_group_array(self, os: CodeStream, merged_group: GroupMerged) -> None:
        os.line(f"static {merged_group.struct_name} "
                f"{self.merged_array_name(merged_group)}[{len(merged_group)}];")

    def _gen_merged_struct_push(self, os: CodeStream, merged_group: GroupMerged,
                                values: list[list[str]]) -> None:
        array = self.merged_array_name(merged_group)
        with os.block(f"void push{merged_group.struct_name}ToDevice()"):
            for i, row in enumerate(values):
                os.line(f"{array}[{i}] = {{{', '.join(row)}}};")

    def _gen_structs(self, os: CodeStream, merged_groups: Sequence[GroupMerged]) -> None:
        for mg in merged_groups:
            mg.gen_struct(os)
        for mg in merged_groups:
            mg.gen_struct_build(os)

    def _gen_preamble(self, os: CodeStream, model: ModelSpec) -> None:
        os.line('#include "definitions.h"')
        os.line('#include "supportCode.h"')
        os.line("#include <cfloat>")
        os.line("#include <random>")
        os.blank()
        max_time = "DBL_MAX" if model.time_precision == "double" else "FLT_MAX"
        os.line(f"#define TIME_MAX {max_time}")
        os.blank()

    def _gen_member_loop(self, os: CodeStream, merged_groups: Sequence[GroupMerged],
                         body: Callable[[CodeStream, Any], None]) -> None:
        """Loop over the members of every merged group, binding ``group``."""
        for mg in merged_groups:
            os.comment(f"merged{mg.index}")
            with os.block(f"for(unsigned int g = 0; g < {len(mg)}; g++)"):
                os.line(f"{mg.struct_name} *group = &{self.merged_array_name(mg)}[g];")
                body(os, mg)

    def _launch(self, kernel: Kernel, role: Role,
                merged_groups: Sequence[GroupMerged]) -> KernelLaunch:
        return self.make_launch(kernel, self.partition(role, merged_groups))

    # ------------------------------------------------------------------
    # Neuron update
    # ------------------------------------------------------------------

    def gen_neuron_update(self, os: CodeStream, model_merged: ModelSpecMerged,
                          sim_handler: NeuronSimHandler) -> list[KernelLaunch]:
        model = model_merged.model
        queue_groups = model_merged.neuron_spike_queue_update_groups
        update_groups = model_merged.neuron_update_groups

        self._gen_preamble(os, model)
        self._gen_structs(os, [*queue_groups, *update_groups])

        with os.block(f"void updateNeurons({model.time_precision} t)"):
            self._gen_member_loop(os, queue_groups, self._gen_spike_queue_update)

            kernel_subs = self.create_kernel_subs(model, Kernel.NEURON_UPDATE.value)

            def gen_group(os: CodeStream, mg: Any) -> None:
                ng = mg.archetype
                if ng.is_delay_required:
                    os.line(f"const unsigned int readDelayOffset = {mg.get_prev_queue_offset()};")
                    os.line("const unsigned int writeDelayOffset = "
                            f"{mg.get_current_queue_offset()};")
                with os.block("for(unsigned int i = 0; i < group->numNeurons; i++)"):
                    pop_subs = Substitutions(kernel_subs)
                    pop_subs.add_var_substitution("id", "i")
                    if ng.is_sim_rng_required:
                        pop_subs.add_var_substitution("rng", "*group->rng")
                    sim_handler(os, mg, pop_subs,
                                lambda os, mg, subs: self.gen_emit_spike(os, mg, subs, ""),
                                lambda os, mg, subs: self.gen_emit_spike(os, mg, subs, "Evnt"))

            self._gen_member_loop(os, update_groups, gen_group)

        launches = []
        if queue_groups:
            launches.append(self._launch(Kernel.PRE_NEURON_RESET,
                                         Role.NEURON_SPIKE_QUEUE_UPDATE, queue_groups))
        if update_groups:
            launches.append(self._launch(Kernel.NEURON_UPDATE, Role.NEURON_UPDATE, update_groups))
        return launches

    def _gen_spike_queue_update(self, os: CodeStream, mg: Any) -> None:
        mg.gen_queue_rotation(os)
        mg.gen_spike_count_reset(os)

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

        self._gen_preamble(os, model)
        self._gen_structs(os, [*delay_groups, *pre_groups, *post_groups, *dynamics_groups])

        with os.block(f"void updateSynapses({model.time_precision} t)"):
            self._gen_member_loop(os, delay_groups, lambda os, mg: mg.gen_pointer_rotation(os))

            dynamics_subs = self.create_kernel_subs(model, Kernel.SYNAPSE_DYNAMICS_UPDATE.value)
            self._gen_member_loop(os, dynamics_groups, lambda os, mg: self._gen_synapse_dynamics(
                os, mg, dynamics_subs, handlers))

            pre_subs = self.create_kernel_subs(model, Kernel.PRESYNAPTIC_UPDATE.value)

            def gen_presynaptic(os: CodeStream, mg: Any) -> None:
                self._gen_presynaptic_delay_offsets(os, mg)
                if mg.archetype.is_spike_event_required:
                    self._gen_presynaptic_update(os, mg, pre_subs, False, handlers)
                if mg.archetype.is_true_spike_required:
                    self._gen_presynaptic_update(os, mg, pre_subs, True, handlers)

            self._gen_member_loop(os, pre_groups, gen_presynaptic)

            post_subs = self.create_kernel_subs(model, Kernel.POSTSYNAPTIC_UPDATE.value)
            self._gen_member_loop(os, post_groups, lambda os, mg: self._gen_postsynaptic_update(
                os, mg, post_subs, handlers))

        launches = []
        for kernel, role, groups in (
                (Kernel.PRE_SYNAPSE_RESET, Role.SYNAPSE_DENDRITIC_DELAY_UPDATE, delay_groups),
                (Kernel.SYNAPSE_DYNAMICS_UPDATE, Role.SYNAPSE_DYNAMICS, dynamics_groups),
                (Kernel.PRESYNAPTIC_UPDATE, Role.PRESYNAPTIC_UPDATE, pre_groups),
                (Kernel.POSTSYNAPTIC_UPDATE, Role.POSTSYNAPTIC_UPDATE, post_groups)):
            if groups:
                launches.append(self._launch(kernel, role, groups))
        return launches

    def _gen_presynaptic_delay_offsets(self, os: CodeStream, mg: Any) -> None:
        if mg.archetype.src.is_delay_required:
            os.line(f"const unsigned int preReadDelaySlot = "
                    f"{mg.get_presynaptic_axonal_delay_slot()};")
            os.line("const unsigned int preReadDelayOffset = "
                    "preReadDelaySlot * group->numSrcNeurons;")

    def _gen_presynaptic_update(self, os: CodeStream, mg: Any, kernel_subs: Substitutions,
                                true_spike: bool, handlers: SynapseUpdateHandlers) -> None:
        sg = mg.archetype
        suffix = "" if true_spike else "Evnt"
        delayed = sg.src.is_delay_required
        slot = "preReadDelaySlot" if delayed else "0"
        offset = "preReadDelayOffset + " if delayed else ""
        sim = handlers.wum_sim if true_spike else handlers.wum_event

        os.comment("process presynaptic spikes" if true_spike else "process presynaptic events")
        with os.block(f"for(unsigned int i = 0; i < group->srcSpkCnt{suffix}[{slot}]; i++)"):
            os.line(f"const unsigned int ipre = group->srcSpk{suffix}[{offset}i];")
            namespace = handlers.presynaptic_namespace(mg)
            if namespace:
                os.line(f"using namespace {namespace};")
            syn_subs = Substitutions(kernel_subs)
            syn_subs.add_var_substitution("id_pre", "ipre")
            with ExitStack() as stack:
                if not true_spike:
                    stack.enter_context(os.block(f"if({handlers.wum_thresh(mg, syn_subs)})"))
                if sg.is_sparse:
                    stack.enter_context(os.block(
                        "for(unsigned int j = 0; j < group->rowLength[ipre]; j++)"))
                    os.line("const unsigned int synAddress = (ipre * group->rowStride) + j;")
                    os.line("const unsigned int ipost = group->ind[synAddress];")
                else:
                    stack.enter_context(os.block(
                        "for(unsigned int ipost = 0; ipost < group->numTrgNeurons; ipost++)"))
                    os.line("const unsigned int synAddress = (ipre * group->rowStride) + ipost;")
                syn_subs.add_var_substitution("id_post", "ipost")
                syn_subs.add_var_substitution("id_syn", "synAddress")
                self.add_in_syn_substitutions(syn_subs, mg)
                sim(os, mg, syn_subs)

    def _gen_postsynaptic_update(self, os: CodeStream, mg: Any, kernel_subs: Substitutions,
                                 handlers: SynapseUpdateHandlers) -> None:
        sg = mg.archetype
        queued = sg.trg.is_delay_required and sg.trg.is_true_spike_required
        if sg.trg.is_delay_required:
            os.line(f"const unsigned int postReadDelaySlot = "
                    f"{mg.get_postsynaptic_back_prop_delay_slot()};")
            os.line("const unsigned int postReadDelayOffset = "
                    "postReadDelaySlot * group->numTrgNeurons;")
        slot = "postReadDelaySlot" if queued else "0"
        offset = "postReadDelayOffset + " if queued else ""

        with os.block(f"for(unsigned int j = 0; j < group->trgSpkCnt[{slot}]; j++)"):
            os.line(f"const unsigned int ipost = group->trgSpk[{offset}j];")
            syn_subs = Substitutions(kernel_subs)
            syn_subs.add_var_substitution("id_post", "ipost")
            with ExitStack() as stack:
                if sg.is_sparse:
                    stack.enter_context(os.block(
                        "for(unsigned int i = 0; i < group->colLength[ipost]; i++)"))
                    os.line("const unsigned int synAddress = "
                            "group->remap[(ipost * group->colStride) + i];")
                    os.line("const unsigned int ipre = synAddress / group->rowStride;")
                else:
                    stack.enter_context(os.block(
                        "for(unsigned int ipre = 0; ipre < group->numSrcNeurons; ipre++)"))
                    os.line("const unsigned int synAddress = (ipre * group->rowStride) + ipost;")
                syn_subs.add_var_substitution("id_pre", "ipre")
                syn_subs.add_var_substitution("id_syn", "synAddress")
                handlers.post_learn(os, mg, syn_subs)

    def _gen_synapse_dynamics(self, os: CodeStream, mg: Any, kernel_subs: Substitutions,
                              handlers: SynapseUpdateHandlers) -> None:
        sg = mg.archetype
        self._gen_presynaptic_delay_offsets(os, mg)
        with os.block("for(unsigned int i = 0; i < group->numSrcNeurons; i++)"):
            row_length = "group->rowLength[i]" if sg.is_sparse else "group->rowStride"
            with os.block(f"for(unsigned int j = 0; j < {row_length}; j++)"):
                os.line("const unsigned int synAddress = (i * group->rowStride) + j;")
                syn_subs = Substitutions(kernel_subs)
                syn_subs.add_var_substitution("id_pre", "i")
                syn_subs.add_var_substitution(
                    "id_post", "group->ind[synAddress]" if sg.is_sparse else "j")
                syn_subs.add_var_substitution("id_syn", "synAddress")
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

        self._gen_preamble(os, model)
        self._gen_structs(os, [*neuron_groups, *dense_groups, *conn_groups, *sparse_groups])

        kernel_subs = self.create_kernel_subs(model, Kernel.INITIALIZE.value)
        with os.block("void initialize()"):
            self._gen_member_loop(os, neuron_groups, lambda os, mg: self._gen_neuron_init(
                os, mg, kernel_subs, handlers))
            self._gen_member_loop(os, dense_groups, lambda os, mg: self._gen_dense_init(
                os, mg, kernel_subs, handlers))
            self._gen_member_loop(os, conn_groups, lambda os, mg: self._gen_connectivity_init(
                os, mg, kernel_subs, handlers))

        sparse_subs = self.create_kernel_subs(model, Kernel.INITIALIZE_SPARSE.value)
        with os.block("void initializeSparse()"):
            self._gen_member_loop(os, sparse_groups, lambda os, mg: self._gen_sparse_init(
                os, mg, sparse_subs, handlers))

        launches = []
        init_ranges = self.partition(Role.NEURON_INIT, neuron_groups)
        for role, groups in ((Role.SYNAPSE_DENSE_INIT, dense_groups),
                             (Role.SYNAPSE_CONNECTIVITY_INIT, conn_groups)):
            id_start = init_ranges[-1].range.end if init_ranges else 0
            init_ranges.extend(self.partition(role, groups, id_start))
        if init_ranges:
            launches.append(self.make_launch(Kernel.INITIALIZE, init_ranges))
        if sparse_groups:
            launches.append(self._launch(Kernel.INITIALIZE_SPARSE, Role.SYNAPSE_SPARSE_INIT,
                                         sparse_groups))
        return launches

    def _gen_neuron_init(self, os: CodeStream, mg: Any, kernel_subs: Substitutions,
                         handlers: InitHandlers) -> None:
        ng = mg.archetype
        true_slots = (ng.num_delay_slots if ng.is_delay_required and ng.is_true_spike_required
                      else 1)
        event_slots = ng.num_delay_slots
        with os.block(f"for(unsigned int d = 0; d < {true_slots}; d++)"):
            os.line("group->spkCnt[d] = 0;")
        with os.block(f"for(unsigned int i = 0; i < group->numNeurons * {true_slots}; i++)"):
            os.line("group->spk[i] = 0;")
        if ng.is_spike_event_required:
            with os.block(f"for(unsigned int d = 0; d < {event_slots}; d++)"):
                os.line("group->spkCntEvnt[d] = 0;")
            with os.block(f"for(unsigned int i = 0; i < group->numNeurons * {event_slots}; i++)"):
                os.line("group->spkEvnt[i] = 0;")
        if ng.spike_time_required:
            with os.block(f"for(unsigned int i = 0; i < group->numNeurons * {event_slots}; i++)"):
                os.line("group->sT[i] = -TIME_MAX;")

        with os.block("for(unsigned int i = 0; i < group->numNeurons; i++)"):
            pop_subs = Substitutions(kernel_subs)
            pop_subs.add_var_substitution("id", "i")
            if ng.is_init_rng_required:
                pop_subs.add_var_substitution("rng", "*group->rng")
            handlers.neuron_init(os, mg, pop_subs)

    def _gen_dense_init(self, os: CodeStream, mg: Any, kernel_subs: Substitutions,
                        handlers: InitHandlers) -> None:
        with os.block("for(unsigned int i = 0; i < group->numSrcNeurons; i++)"):
            with os.block("for(unsigned int j = 0; j < group->numTrgNeurons; j++)"):
                syn_subs = Substitutions(kernel_subs)
                syn_subs.add_var_substitution("id_pre", "i")
                syn_subs.add_var_substitution("id_post", "j")
                syn_subs.add_var_substitution("id_syn", "(i * group->rowStride) + j")
                if mg.has_field("rng"):
                    syn_subs.add_var_substitution("rng", "*group->rng")
                handlers.synapse_dense_init(os, mg, syn_subs)

    def _gen_connectivity_init(self, os: CodeStream, mg: Any, kernel_subs: Substitutions,
                               handlers: InitHandlers) -> None:
        with os.block("for(unsigned int i = 0; i < group->numSrcNeurons; i++)"):
            os.line("group->rowLength[i] = 0;")
            row_subs = Substitutions(kernel_subs)
            row_subs.add_var_substitution("id_pre", "i")
            if mg.has_field("rng"):
                row_subs.add_var_substitution("rng", "*group->rng")
            row_subs.add_func_substitution(
                "addSynapse", 1,
                "group->ind[(i * group->rowStride) + (group->rowLength[i]++)] = $(0)")
            row_subs.add_func_substitution("endRow", 0, "break")
            handlers.synapse_connectivity_init(os, mg, row_subs)

    def _gen_sparse_init(self, os: CodeStream, mg: Any, kernel_subs: Substitutions,
                         handlers: InitHandlers) -> None:
        sg = mg.archetype
        if sg.wu_model.learn_post_code:
            with os.block("for(unsigned int j = 0; j < group->numTrgNeurons; j++)"):
                os.line("group->colLength[j] = 0;")
        with os.block("for(unsigned int i = 0; i < group->numSrcNeurons; i++)"):
            with os.block("for(unsigned int j = 0; j < group->rowLength[i]; j++)"):
                os.line("const unsigned int idx = (i * group->rowStride) + j;")
                syn_subs = Substitutions(kernel_subs)
                syn_subs.add_var_substitution("id_pre", "i")
                syn_subs.add_var_substitution("id_post", "group->ind[idx]")
                syn_subs.add_var_substitution("id_syn", "idx")
                if mg.has_field("rng"):
                    syn_subs.add_var_substitution("rng", "*group->rng")
                handlers.synapse_sparse_init(os, mg, syn_subs)

                if sg.wu_model.learn_post_code:
                    os.line("const unsigned int postIndex = group->ind[idx];")
                    os.line("const unsigned int colMajorIndex = "
                            "(postIndex * group->colStride) + group->colLength[postIndex]++;")
                    os.line("group->remap[colMajorIndex] = idx;")

"""Model-wide merging of entities into merged groups, one collection per role.

``ModelSpecMerged`` is built once per generation run. Construction classifies
every neuron and synapse group for each of the ten roles and registers every
entity's support code; afterwards it is read-only.

The compatibility predicates below compare only what fixes the layout of a
merged struct and the text of the generated code: equation templates, variable
lists, initialiser snippets and feature flags. Parameter values never take
part; members that disagree on one get a struct field for it instead.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any

from spikegen.codegen.code_stream import CodeStream
from spikegen.codegen.group_merged import (
    GroupMerged,
    NeuronInitGroupMerged,
    NeuronSpikeQueueUpdateGroupMerged,
    NeuronUpdateGroupMerged,
    PostsynapticUpdateGroupMerged,
    PresynapticUpdateGroupMerged,
    SynapseConnectivityInitGroupMerged,
    SynapseDendriticDelayUpdateGroupMerged,
    SynapseDenseInitGroupMerged,
    SynapseDynamicsGroupMerged,
    SynapseSparseInitGroupMerged,
    referenced_neuron_vars,
    sorted_current_sources,
    sorted_in_syn,
)
from spikegen.codegen.merge import create_merged_groups
from spikegen.codegen.support_code import SupportCodeMerged
from spikegen.core.types import Role
from spikegen.model.spec import ModelSpec, NeuronGroup, SynapseGroup, Var, VarInit

if TYPE_CHECKING:
    from spikegen.backends.base import BackendBase

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Compatibility keys
# ---------------------------------------------------------------------------


def _var_init_key(vars: Sequence[Var], get_initialiser: Callable[[str], VarInit]) -> tuple:
    """Initialiser snippet and parameter names per variable, never the values."""
    return tuple((v, get_initialiser(v.name).code,
                  tuple(sorted(get_initialiser(v.name).params))) for v in vars)


def _queue_key(ng: NeuronGroup) -> tuple:
    return (ng.is_delay_required, ng.num_delay_slots, ng.is_true_spike_required,
            ng.is_spike_event_required)


def _neuron_var_refs(sg: SynapseGroup) -> tuple:
    return (tuple(referenced_neuron_vars(sg, "_pre")),
            tuple(referenced_neuron_vars(sg, "_post")))


def can_merge_neuron_update(a: NeuronGroup, b: NeuronGroup) -> bool:
    return (a.model == b.model
            and _queue_key(a) == _queue_key(b)
            and a.spike_time_required == b.spike_time_required
            and [(sg.wu_model.event_threshold_condition_code, sg.wu_model.sim_support_code,
                  sg.wu_model.param_names) for sg in a.spike_event_conditions]
            == [(sg.wu_model.event_threshold_condition_code, sg.wu_model.sim_support_code,
                 sg.wu_model.param_names) for sg in b.spike_event_conditions]
            and [(sg.ps_model, sg.max_dendritic_delay_timesteps) for sg in sorted_in_syn(a)]
            == [(sg.ps_model, sg.max_dendritic_delay_timesteps) for sg in sorted_in_syn(b)]
            and [cs.model for cs in sorted_current_sources(a)]
            == [cs.model for cs in sorted_current_sources(b)])


def can_merge_neuron_init(a: NeuronGroup, b: NeuronGroup) -> bool:
    def in_syn_key(ng: NeuronGroup) -> list:
        return [(sg.max_dendritic_delay_timesteps,
                 _var_init_key(sg.ps_model.vars, sg.get_ps_var_initialiser))
                for sg in sorted_in_syn(ng)]

    def cs_key(ng: NeuronGroup) -> list:
        return [_var_init_key(cs.model.vars, cs.get_var_initialiser)
                for cs in sorted_current_sources(ng)]

    return (_var_init_key(a.model.vars, a.get_var_initialiser)
            == _var_init_key(b.model.vars, b.get_var_initialiser)
            and _queue_key(a) == _queue_key(b)
            and a.spike_time_required == b.spike_time_required
            and in_syn_key(a) == in_syn_key(b)
            and cs_key(a) == cs_key(b))


def can_merge_neuron_spike_queue_update(a: NeuronGroup, b: NeuronGroup) -> bool:
    return _queue_key(a) == _queue_key(b)


def can_merge_weight_update(a: SynapseGroup, b: SynapseGroup) -> bool:
    """Shared test for every role that runs weight update model code."""
    return (a.wu_model == b.wu_model
            and a.connectivity == b.connectivity
            and a.span_type == b.span_type
            and a.threads_per_spike == b.threads_per_spike
            and a.delay_steps == b.delay_steps
            and a.back_prop_delay_steps == b.back_prop_delay_steps
            and _queue_key(a.src) == _queue_key(b.src)
            and _queue_key(a.trg) == _queue_key(b.trg)
            and a.max_dendritic_delay_timesteps == b.max_dendritic_delay_timesteps
            and _neuron_var_refs(a) == _neuron_var_refs(b))


def can_merge_synapse_dense_init(a: SynapseGroup, b: SynapseGroup) -> bool:
    return (_var_init_key(a.wu_model.vars, a.get_wu_var_initialiser)
            == _var_init_key(b.wu_model.vars, b.get_wu_var_initialiser))


def can_merge_synapse_connectivity_init(a: SynapseGroup, b: SynapseGroup) -> bool:
    ca, cb = a.connectivity_initialiser, b.connectivity_initialiser
    return (ca is not None and cb is not None
            and ca.row_build_code == cb.row_build_code
            and sorted(ca.params) == sorted(cb.params))


def can_merge_synapse_sparse_init(a: SynapseGroup, b: SynapseGroup) -> bool:
    return (_var_init_key(a.wu_model.vars, a.get_wu_var_initialiser)
            == _var_init_key(b.wu_model.vars, b.get_wu_var_initialiser)
            and bool(a.wu_model.learn_post_code) == bool(b.wu_model.learn_post_code)
            and bool(a.wu_model.synapse_dynamics_code) == bool(b.wu_model.synapse_dynamics_code))


def can_merge_synapse_dendritic_delay_update(a: SynapseGroup, b: SynapseGroup) -> bool:
    return a.max_dendritic_delay_timesteps == b.max_dendritic_delay_timesteps


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class ModelSpecMerged:
    """Merged groups for every role of one finalized model."""

    def __init__(self, model: ModelSpec, backend: BackendBase) -> None:
        if not model.is_finalized:
            model.finalize()
        self._model = model
        self._backend = backend
        self._merged: dict[Role, list[GroupMerged]] = {}

        neurons = model.neuron_groups
        synapses = model.synapse_groups

        def merge(role: Role, store: Sequence[Any], filter_fn: Callable[[Any], bool],
                  can_merge: Callable[[Any, Any], bool], factory: Callable[..., GroupMerged]) -> None:
            self._merged[role] = create_merged_groups(store, role, filter_fn, can_merge,
                                                      factory, model, backend)

        merge(Role.NEURON_UPDATE, neurons, lambda ng: True,
              can_merge_neuron_update, NeuronUpdateGroupMerged)
        merge(Role.PRESYNAPTIC_UPDATE, synapses,
              lambda sg: sg.is_true_spike_required or sg.is_spike_event_required,
              lambda a, b: (can_merge_weight_update(a, b)
                            and backend.can_merge_presynaptic_update(a, b)),
              PresynapticUpdateGroupMerged)
        merge(Role.POSTSYNAPTIC_UPDATE, synapses, lambda sg: bool(sg.wu_model.learn_post_code),
              can_merge_weight_update, PostsynapticUpdateGroupMerged)
        merge(Role.SYNAPSE_DYNAMICS, synapses,
              lambda sg: bool(sg.wu_model.synapse_dynamics_code),
              can_merge_weight_update, SynapseDynamicsGroupMerged)
        merge(Role.NEURON_INIT, neurons, lambda ng: True,
              can_merge_neuron_init, NeuronInitGroupMerged)
        merge(Role.SYNAPSE_DENSE_INIT, synapses,
              lambda sg: not sg.is_sparse and sg.is_wu_var_init_required,
              can_merge_synapse_dense_init, SynapseDenseInitGroupMerged)
        merge(Role.SYNAPSE_CONNECTIVITY_INIT, synapses,
              lambda sg: sg.is_sparse_connectivity_init_required,
              can_merge_synapse_connectivity_init, SynapseConnectivityInitGroupMerged)
        merge(Role.SYNAPSE_SPARSE_INIT, synapses, lambda sg: sg.is_sparse_init_required,
              can_merge_synapse_sparse_init, SynapseSparseInitGroupMerged)
        merge(Role.NEURON_SPIKE_QUEUE_UPDATE, neurons, lambda ng: True,
              can_merge_neuron_spike_queue_update, NeuronSpikeQueueUpdateGroupMerged)
        merge(Role.SYNAPSE_DENDRITIC_DELAY_UPDATE, synapses,
              lambda sg: sg.is_dendritic_delay_required,
              can_merge_synapse_dendritic_delay_update, SynapseDendriticDelayUpdateGroupMerged)

        # Support code
        self._neuron_update_support_code = SupportCodeMerged("NeuronUpdateSupportCode")
        self._postsynaptic_dynamics_support_code = SupportCodeMerged(
            "PostsynapticDynamicsSupportCode")
        self._presynaptic_update_support_code = SupportCodeMerged("PresynapticUpdateSupportCode")
        self._postsynaptic_update_support_code = SupportCodeMerged("PostsynapticUpdateSupportCode")
        self._synapse_dynamics_support_code = SupportCodeMerged("SynapseDynamicsSupportCode")

        for ng in neurons:
            self._neuron_update_support_code.add_support_code(ng.model.support_code)
        for sg in synapses:
            wum = sg.wu_model
            self._postsynaptic_dynamics_support_code.add_support_code(sg.ps_model.support_code)
            if sg.is_true_spike_required or sg.is_spike_event_required:
                self._presynaptic_update_support_code.add_support_code(wum.sim_support_code)
            if wum.learn_post_code:
                self._postsynaptic_update_support_code.add_support_code(
                    wum.learn_post_support_code)
            if wum.synapse_dynamics_code:
                self._synapse_dynamics_support_code.add_support_code(
                    wum.synapse_dynamics_support_code)

        logger.info("Merged model '%s': %s", model.name,
                    ", ".join(f"{role.value}={len(groups)}"
                              for role, groups in self._merged.items()))

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    @property
    def model(self) -> ModelSpec:
        return self._model

    @property
    def backend(self) -> BackendBase:
        return self._backend

    def get_merged_groups(self, role: Role) -> list[GroupMerged]:
        return list(self._merged[role])

    def items(self) -> list[tuple[Role, list[GroupMerged]]]:
        """Every role with its merged groups, in role declaration order."""
        return [(role, list(self._merged[role])) for role in Role]

    @property
    def neuron_update_groups(self) -> list[NeuronUpdateGroupMerged]:
        return self.get_merged_groups(Role.NEURON_UPDATE)  # type: ignore[return-value]

    @property
    def presynaptic_update_groups(self) -> list[PresynapticUpdateGroupMerged]:
        return self.get_merged_groups(Role.PRESYNAPTIC_UPDATE)  # type: ignore[return-value]

    @property
    def postsynaptic_update_groups(self) -> list[PostsynapticUpdateGroupMerged]:
        return self.get_merged_groups(Role.POSTSYNAPTIC_UPDATE)  # type: ignore[return-value]

    @property
    def synapse_dynamics_groups(self) -> list[SynapseDynamicsGroupMerged]:
        return self.get_merged_groups(Role.SYNAPSE_DYNAMICS)  # type: ignore[return-value]

    @property
    def neuron_init_groups(self) -> list[NeuronInitGroupMerged]:
        return self.get_merged_groups(Role.NEURON_INIT)  # type: ignore[return-value]

    @property
    def synapse_dense_init_groups(self) -> list[SynapseDenseInitGroupMerged]:
        return self.get_merged_groups(Role.SYNAPSE_DENSE_INIT)  # type: ignore[return-value]

    @property
    def synapse_connectivity_init_groups(self) -> list[SynapseConnectivityInitGroupMerged]:
        return self.get_merged_groups(Role.SYNAPSE_CONNECTIVITY_INIT)  # type: ignore[return-value]

    @property
    def synapse_sparse_init_groups(self) -> list[SynapseSparseInitGroupMerged]:
        return self.get_merged_groups(Role.SYNAPSE_SPARSE_INIT)  # type: ignore[return-value]

    @property
    def neuron_spike_queue_update_groups(self) -> list[NeuronSpikeQueueUpdateGroupMerged]:
        return self.get_merged_groups(Role.NEURON_SPIKE_QUEUE_UPDATE)  # type: ignore[return-value]

    @property
    def synapse_dendritic_delay_update_groups(self) -> list[SynapseDendriticDelayUpdateGroupMerged]:
        return self.get_merged_groups(  # type: ignore[return-value]
            Role.SYNAPSE_DENDRITIC_DELAY_UPDATE)

    # ------------------------------------------------------------------
    # Support code
    # ------------------------------------------------------------------

    def gen_neuron_update_support_code(self, os: CodeStream) -> None:
        self._neuron_update_support_code.gen(os, self._model.precision)

    def gen_postsynaptic_dynamics_support_code(self, os: CodeStream) -> None:
        self._postsynaptic_dynamics_support_code.gen(os, self._model.precision)

    def gen_presynaptic_update_support_code(self, os: CodeStream) -> None:
        self._presynaptic_update_support_code.gen(os, self._model.precision)

    def gen_postsynaptic_update_support_code(self, os: CodeStream) -> None:
        self._postsynaptic_update_support_code.gen(os, self._model.precision)

    def gen_synapse_dynamics_support_code(self, os: CodeStream) -> None:
        self._synapse_dynamics_support_code.gen(os, self._model.precision)

    def get_neuron_update_support_code_namespace(self, code: str) -> str:
        return self._neuron_update_support_code.get_support_code_namespace(code)

    def get_postsynaptic_dynamics_support_code_namespace(self, code: str) -> str:
        return self._postsynaptic_dynamics_support_code.get_support_code_namespace(code)

    def get_presynaptic_update_support_code_namespace(self, code: str) -> str:
        return self._presynaptic_update_support_code.get_support_code_namespace(code)

    def get_postsynaptic_update_support_code_namespace(self, code: str) -> str:
        return self._postsynaptic_update_support_code.get_support_code_namespace(code)

    def get_synapse_dynamics_support_code_namespace(self, code: str) -> str:
        return self._synapse_dynamics_support_code.get_support_code_namespace(code)

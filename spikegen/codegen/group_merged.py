"""Merged group data model.

A merged group is an ordered set of entities that share one generated struct
type and one block of kernel code for a given role. The first member is the
archetype: code is generated from it, while everything that can differ between
members (array pointers, sizes, parameter values that are not identical across
members) becomes a field of the struct, with one struct instance per member.

Members are held as indices into the model's entity store, never as copies.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from spikegen.codegen.code_stream import CodeStream
from spikegen.core.types import Role
from spikegen.model.spec import (
    CurrentSource,
    ModelSpec,
    NeuronGroup,
    SynapseGroup,
    Var,
    VarInit,
)

if TYPE_CHECKING:
    from spikegen.backends.base import BackendBase

G = TypeVar("G")


@dataclass(frozen=True)
class StructField:
    """One field of a merged group struct.

    ``get_value(entity, position)`` returns the host-side expression used to
    populate the field for the member at ``position``.
    """

    type: str
    name: str
    get_value: Callable[[Any, int], str]

    @property
    def is_pointer(self) -> bool:
        return self.type.rstrip().endswith("*")


def sorted_in_syn(ng: NeuronGroup) -> list[SynapseGroup]:
    """Incoming projections in the order merged members are aligned on."""
    return sorted(ng.in_syn, key=lambda sg: (sg.ps_model.name, sg.max_dendritic_delay_timesteps,
                                             sg.name))


def sorted_current_sources(ng: NeuronGroup) -> list[CurrentSource]:
    return sorted(ng.current_sources, key=lambda cs: (cs.model.name, cs.name))


def referenced_neuron_vars(sg: SynapseGroup, suffix: str) -> list[Var]:
    """Presynaptic (``_pre``) or postsynaptic (``_post``) neuron vars used by WU code."""
    ng = sg.src if suffix == "_pre" else sg.trg
    wum = sg.wu_model
    code = "\n".join((wum.sim_code, wum.event_code, wum.event_threshold_condition_code,
                      wum.learn_post_code, wum.synapse_dynamics_code))
    return [v for v in ng.model.vars if f"$({v.name}{suffix})" in code]


def _host_literal(value: float) -> str:
    return repr(float(value))


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


class GroupMerged(Generic[G]):
    """Common state of every merged group, independent of role."""

    def __init__(
        self,
        index: int,
        role: Role,
        store: Sequence[G],
        member_indices: tuple[int, ...],
        model: ModelSpec,
        backend: BackendBase,
    ) -> None:
        if not member_indices:
            raise ValueError("A merged group needs at least one member")
        self._index = index
        self._role = role
        self._store = store
        self._member_indices = member_indices
        self._model = model
        self._backend = backend
        self._fields: list[StructField] = []
        self._field_names: set[str] = set()

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    @property
    def index(self) -> int:
        return self._index

    @property
    def role(self) -> Role:
        return self._role

    @property
    def prefix(self) -> str:
        return self._role.value

    @property
    def struct_name(self) -> str:
        return f"Merged{self.prefix}Group{self._index}"

    @property
    def member_indices(self) -> tuple[int, ...]:
        return self._member_indices

    @property
    def groups(self) -> tuple[G, ...]:
        return tuple(self._store[i] for i in self._member_indices)

    @property
    def archetype(self) -> G:
        return self._store[self._member_indices[0]]

    @property
    def model(self) -> ModelSpec:
        return self._model

    @property
    def fields(self) -> tuple[StructField, ...]:
        return tuple(self._fields)

    def __len__(self) -> int:
        return len(self._member_indices)

    def __repr__(self) -> str:
        names = ", ".join(getattr(g, "name", str(g)) for g in self.groups)
        return f"<{self.struct_name} [{names}]>"

    # ------------------------------------------------------------------
    # Struct emission (delegated to the backend)
    # ------------------------------------------------------------------

    def gen_struct(self, os: CodeStream) -> None:
        self._backend.gen_merged_group_struct(os, self)

    def gen_struct_build(self, os: CodeStream) -> None:
        self._backend.gen_merged_struct_build(os, self)

    # ------------------------------------------------------------------
    # Field helpers
    # ------------------------------------------------------------------

    def add_field(self, type_name: str, name: str, get_value: Callable[[Any, int], str]) -> None:
        if name in self._field_names:
            raise ValueError(f"Duplicate field '{name}' in {self.struct_name}")
        self._field_names.add(name)
        self._fields.append(StructField(self._model.resolve_type(type_name), name, get_value))

    def add_pointer_field(self, type_name: str, name: str, array_prefix: str,
                          get_owner: Callable[[Any], Any] | None = None) -> None:
        """Add a pointer to the device array ``<var prefix><array_prefix><owner name>``."""
        var_prefix = self._backend.var_prefix
        owner = get_owner or (lambda g: g)
        self.add_field(type_name + "*", name,
                       lambda g, _: f"{var_prefix}{array_prefix}{owner(g).name}")

    def add_var_fields(self, vars: Sequence[Var], get_owner: Callable[[Any], Any] | None = None,
                       suffix: str = "", owner_suffix: str = "") -> None:
        """Pointer fields for model state variables, named ``<var><suffix>``."""
        var_prefix = self._backend.var_prefix
        owner = get_owner or (lambda g: g)
        for v in vars:
            self.add_field(v.type + "*", v.name + suffix,
                           lambda g, _, n=v.name: f"{var_prefix}{n}{owner(g).name}{owner_suffix}")

    def has_field(self, name: str) -> bool:
        return name in self._field_names

    def is_param_heterogeneous(self, get_params: Callable[[G], Mapping[str, float]],
                               name: str) -> bool:
        """True when members disagree on the value of parameter ``name``."""
        values = {get_params(g).get(name) for g in self.groups}
        return len(values) > 1

    def add_heterogeneous_params(
        self,
        param_names: Sequence[str],
        get_params: Callable[[G], Mapping[str, float]],
        suffix: str = "",
    ) -> dict[str, str]:
        """Add a field per member-varying parameter.

        Returns a mapping from parameter name to the kernel-side expression of
        its field, suitable for ``Substitutions.add_param_value_substitution``.
        """
        heterogeneous: dict[str, str] = {}
        for name in param_names:
            if self.is_param_heterogeneous(get_params, name):
                field_name = name + suffix
                self.add_field("scalar", field_name,
                               lambda g, _, n=name: _host_literal(get_params(g)[n]))
                heterogeneous[name] = f"group->{field_name}"
        return heterogeneous

    def add_var_init_params(
        self,
        vars: Sequence[Var],
        get_initialiser: Callable[[G, str], VarInit],
        suffix: str = "",
    ) -> dict[str, dict[str, str]]:
        """Heterogeneous var-initialiser parameters, per variable."""
        result: dict[str, dict[str, str]] = {}
        for v in vars:
            archetype_init = get_initialiser(self.archetype, v.name)
            result[v.name] = self.add_heterogeneous_params(
                list(archetype_init.params),
                lambda g, n=v.name: get_initialiser(g, n).params,
                suffix=v.name + suffix,
            )
        return result


# ---------------------------------------------------------------------------
# Neuron groups
# ---------------------------------------------------------------------------


class NeuronGroupMergedBase(GroupMerged[NeuronGroup]):
    """Fields shared by neuron update and neuron initialisation."""

    def __init__(self, index: int, role: Role, store: Sequence[NeuronGroup],
                 member_indices: tuple[int, ...], model: ModelSpec, backend: BackendBase,
                 init: bool) -> None:
        super().__init__(index, role, store, member_indices, model, backend)
        arch = self.archetype

        self.add_field("unsigned int", "numNeurons", lambda g, _: str(g.num_neurons))
        self.add_pointer_field("unsigned int", "spkCnt", "glbSpkCnt")
        self.add_pointer_field("unsigned int", "spk", "glbSpk")
        if arch.is_spike_event_required:
            self.add_pointer_field("unsigned int", "spkCntEvnt", "glbSpkCntEvnt")
            self.add_pointer_field("unsigned int", "spkEvnt", "glbSpkEvnt")
        if arch.is_delay_required:
            self.add_pointer_field("volatile unsigned int", "spkQuePtr", "spkQuePtr")
        if arch.spike_time_required:
            self.add_pointer_field(model.time_precision, "sT", "sT")
        if (init and arch.is_init_rng_required) or (not init and arch.is_sim_rng_required):
            self.add_pointer_field(backend.rng_type, "rng", "rng")

        # Model variables
        if init:
            init_vars = [v for v in arch.model.vars if arch.get_var_initialiser(v.name).code]
            self.add_var_fields(init_vars)
            self.var_init_params = self.add_var_init_params(
                init_vars, lambda g, n: g.get_var_initialiser(n))
            self.param_fields: dict[str, str] = {}
        else:
            self.add_var_fields(arch.model.vars)
            self.param_fields = self.add_heterogeneous_params(arch.model.param_names,
                                                              lambda g: g.params)
            self.var_init_params = {}

        # Weight update parameters of outgoing spike-like event conditions
        self.event_threshold_param_fields: list[dict[str, str]] = []
        if not init:
            for j, sg in enumerate(arch.spike_event_conditions):
                self.event_threshold_param_fields.append(self.add_heterogeneous_params(
                    sg.wu_model.param_names,
                    lambda g, j=j: g.spike_event_conditions[j].wu_params,
                    suffix=f"EventThresh{j}"))

        # Incoming postsynaptic models, aligned by sorted position
        self.in_syn_param_fields: list[dict[str, str]] = []
        self.in_syn_var_init_params: list[dict[str, dict[str, str]]] = []
        for i, sg in enumerate(sorted_in_syn(arch)):
            get_sg: Callable[[NeuronGroup], SynapseGroup] = (
                lambda g, i=i: sorted_in_syn(g)[i])
            self.add_pointer_field("scalar", f"inSynInSyn{i}", "inSyn", get_sg)
            if sg.is_dendritic_delay_required:
                self.add_pointer_field("scalar", f"denDelayInSyn{i}", "denDelay", get_sg)
                self.add_pointer_field("volatile unsigned int", f"denDelayPtrInSyn{i}",
                                       "denDelayPtr", get_sg)
            if init:
                ps_vars = [v for v in sg.ps_model.vars if sg.get_ps_var_initialiser(v.name).code]
                self.add_var_fields(ps_vars, get_sg, suffix=f"InSyn{i}")
                self.in_syn_var_init_params.append(self.add_var_init_params(
                    ps_vars, lambda g, n, i=i: sorted_in_syn(g)[i].get_ps_var_initialiser(n),
                    suffix=f"InSyn{i}"))
            else:
                self.add_var_fields(sg.ps_model.vars, get_sg, suffix=f"InSyn{i}")
                self.in_syn_param_fields.append(self.add_heterogeneous_params(
                    sg.ps_model.param_names, lambda g, i=i: sorted_in_syn(g)[i].ps_params,
                    suffix=f"InSyn{i}"))

        # Current sources, aligned by sorted position
        self.cs_param_fields: list[dict[str, str]] = []
        self.cs_var_init_params: list[dict[str, dict[str, str]]] = []
        for i, cs in enumerate(sorted_current_sources(arch)):
            get_cs: Callable[[NeuronGroup], CurrentSource] = (
                lambda g, i=i: sorted_current_sources(g)[i])
            if init:
                cs_vars = [v for v in cs.model.vars if cs.get_var_initialiser(v.name).code]
                self.add_var_fields(cs_vars, get_cs, suffix=f"CS{i}")
                self.cs_var_init_params.append(self.add_var_init_params(
                    cs_vars, lambda g, n, i=i: sorted_current_sources(g)[i].get_var_initialiser(n),
                    suffix=f"CS{i}"))
            else:
                self.add_var_fields(cs.model.vars, get_cs, suffix=f"CS{i}")
                self.cs_param_fields.append(self.add_heterogeneous_params(
                    cs.model.param_names, lambda g, i=i: sorted_current_sources(g)[i].params,
                    suffix=f"CS{i}"))

    @property
    def in_syn(self) -> list[SynapseGroup]:
        """The archetype's incoming projections in aligned order."""
        return sorted_in_syn(self.archetype)

    @property
    def current_sources(self) -> list[CurrentSource]:
        return sorted_current_sources(self.archetype)

    def get_current_queue_offset(self) -> str:
        return "(*group->spkQuePtr * group->numNeurons)"

    def get_prev_queue_offset(self) -> str:
        slots = self.archetype.num_delay_slots
        return f"(((*group->spkQuePtr + {slots - 1}) % {slots}) * group->numNeurons)"


class NeuronUpdateGroupMerged(NeuronGroupMergedBase):
    def __init__(self, index: int, role: Role, store: Sequence[NeuronGroup],
                 member_indices: tuple[int, ...], model: ModelSpec,
                 backend: BackendBase) -> None:
        super().__init__(index, role, store, member_indices, model, backend, init=False)


class NeuronInitGroupMerged(NeuronGroupMergedBase):
    def __init__(self, index: int, role: Role, store: Sequence[NeuronGroup],
                 member_indices: tuple[int, ...], model: ModelSpec,
                 backend: BackendBase) -> None:
        super().__init__(index, role, store, member_indices, model, backend, init=True)


class NeuronSpikeQueueUpdateGroupMerged(GroupMerged[NeuronGroup]):
    """Rotates spike queues and zeroes spike counts once per timestep."""

    def __init__(self, index: int, role: Role, store: Sequence[NeuronGroup],
                 member_indices: tuple[int, ...], model: ModelSpec,
                 backend: BackendBase) -> None:
        super().__init__(index, role, store, member_indices, model, backend)
        arch = self.archetype
        if arch.is_delay_required:
            self.add_pointer_field("volatile unsigned int", "spkQuePtr", "spkQuePtr")
        self.add_pointer_field("unsigned int", "spkCnt", "glbSpkCnt")
        if arch.is_spike_event_required:
            self.add_pointer_field("unsigned int", "spkCntEvnt", "glbSpkCntEvnt")

    def gen_queue_rotation(self, os: CodeStream) -> None:
        slots = self.archetype.num_delay_slots
        if self.archetype.is_delay_required:
            os.line(f"*group->spkQuePtr = (*group->spkQuePtr + 1) % {slots};")

    def gen_spike_count_reset(self, os: CodeStream) -> None:
        arch = self.archetype
        if arch.is_delay_required:
            if arch.is_spike_event_required:
                os.line("group->spkCntEvnt[*group->spkQuePtr] = 0;")
            if arch.is_true_spike_required:
                os.line("group->spkCnt[*group->spkQuePtr] = 0;")
            else:
                os.line("group->spkCnt[0] = 0;")
        else:
            if arch.is_spike_event_required:
                os.line("group->spkCntEvnt[0] = 0;")
            os.line("group->spkCnt[0] = 0;")


# ---------------------------------------------------------------------------
# Synapse groups
# ---------------------------------------------------------------------------


class SynapseGroupMergedBase(GroupMerged[SynapseGroup]):
    """Fields shared by every synapse role; role-specific ones are switched on the role."""

    def __init__(self, index: int, role: Role, store: Sequence[SynapseGroup],
                 member_indices: tuple[int, ...], model: ModelSpec,
                 backend: BackendBase) -> None:
        super().__init__(index, role, store, member_indices, model, backend)
        arch = self.archetype
        update = role in (Role.PRESYNAPTIC_UPDATE, Role.POSTSYNAPTIC_UPDATE, Role.SYNAPSE_DYNAMICS)

        self.add_field("unsigned int", "rowStride", lambda g, _: str(g.row_stride))
        self.add_field("unsigned int", "numSrcNeurons", lambda g, _: str(g.src.num_neurons))
        self.add_field("unsigned int", "numTrgNeurons", lambda g, _: str(g.trg.num_neurons))

        if role == Role.POSTSYNAPTIC_UPDATE or (role == Role.SYNAPSE_SPARSE_INIT
                                                and arch.wu_model.learn_post_code):
            self.add_field("unsigned int", "colStride", lambda g, _: str(g.col_stride))

        src = lambda g: g.src  # noqa: E731
        trg = lambda g: g.trg  # noqa: E731

        if update:
            if arch.src.is_delay_required:
                self.add_pointer_field("volatile unsigned int", "srcSpkQuePtr", "spkQuePtr", src)
            if arch.trg.is_delay_required:
                self.add_pointer_field("volatile unsigned int", "trgSpkQuePtr", "spkQuePtr", trg)

        if role == Role.PRESYNAPTIC_UPDATE:
            if arch.is_true_spike_required:
                self.add_pointer_field("unsigned int", "srcSpkCnt", "glbSpkCnt", src)
                self.add_pointer_field("unsigned int", "srcSpk", "glbSpk", src)
            if arch.is_spike_event_required:
                self.add_pointer_field("unsigned int", "srcSpkCntEvnt", "glbSpkCntEvnt", src)
                self.add_pointer_field("unsigned int", "srcSpkEvnt", "glbSpkEvnt", src)
        elif role == Role.POSTSYNAPTIC_UPDATE:
            self.add_pointer_field("unsigned int", "trgSpkCnt", "glbSpkCnt", trg)
            self.add_pointer_field("unsigned int", "trgSpk", "glbSpk", trg)

        if role in (Role.PRESYNAPTIC_UPDATE, Role.SYNAPSE_DYNAMICS):
            self.add_pointer_field("scalar", "inSyn", "inSyn")
            if arch.is_dendritic_delay_required:
                self.add_pointer_field("scalar", "denDelay", "denDelay")
                self.add_pointer_field("volatile unsigned int", "denDelayPtr", "denDelayPtr")
        elif role == Role.SYNAPSE_DENDRITIC_DELAY_UPDATE:
            self.add_pointer_field("volatile unsigned int", "denDelayPtr", "denDelayPtr")

        if arch.is_sparse and role not in (Role.SYNAPSE_DENSE_INIT,
                                           Role.SYNAPSE_DENDRITIC_DELAY_UPDATE):
            self.add_pointer_field("unsigned int", "rowLength", "rowLength")
            self.add_pointer_field("unsigned int", "ind", "ind")
            if role == Role.POSTSYNAPTIC_UPDATE or (role == Role.SYNAPSE_SPARSE_INIT
                                                    and arch.wu_model.learn_post_code):
                self.add_pointer_field("unsigned int", "colLength", "colLength")
                self.add_pointer_field("unsigned int", "remap", "remap")

        self.param_fields: dict[str, str] = {}
        self.var_init_params: dict[str, dict[str, str]] = {}
        self.connectivity_param_fields: dict[str, str] = {}

        if update:
            self.add_var_fields(arch.wu_model.vars)
            for v in referenced_neuron_vars(arch, "_pre"):
                self.add_var_fields([v], src, suffix="Pre")
            for v in referenced_neuron_vars(arch, "_post"):
                self.add_var_fields([v], trg, suffix="Post")
            self.param_fields = self.add_heterogeneous_params(arch.wu_model.param_names,
                                                              lambda g: g.wu_params)
        elif role in (Role.SYNAPSE_DENSE_INIT, Role.SYNAPSE_SPARSE_INIT):
            init_vars = [v for v in arch.wu_model.vars if arch.get_wu_var_initialiser(v.name).code]
            self.add_var_fields(init_vars)
            self.var_init_params = self.add_var_init_params(
                init_vars, lambda g, n: g.get_wu_var_initialiser(n))
        elif role == Role.SYNAPSE_CONNECTIVITY_INIT:
            conn = arch.connectivity_initialiser
            if conn is not None:
                self.connectivity_param_fields = self.add_heterogeneous_params(
                    list(conn.params), lambda g: g.connectivity_initialiser.params,
                    suffix="Conn")
                if conn.is_rng_required:
                    self.add_pointer_field(backend.rng_type, "rng", "rng")

        if role in (Role.SYNAPSE_DENSE_INIT, Role.SYNAPSE_SPARSE_INIT) and arch.is_wu_init_rng_required:
            self.add_pointer_field(backend.rng_type, "rng", "rng")

    # ------------------------------------------------------------------
    # Queue helpers
    # ------------------------------------------------------------------

    def get_presynaptic_axonal_delay_slot(self) -> str:
        arch = self.archetype
        slots = arch.src.num_delay_slots
        if arch.delay_steps == 0:
            return "(*group->srcSpkQuePtr)"
        return f"((*group->srcSpkQuePtr + {slots - arch.delay_steps}) % {slots})"

    def get_postsynaptic_back_prop_delay_slot(self) -> str:
        arch = self.archetype
        slots = arch.trg.num_delay_slots
        if arch.back_prop_delay_steps == 0:
            return "(*group->trgSpkQuePtr)"
        return f"((*group->trgSpkQuePtr + {slots - arch.back_prop_delay_steps}) % {slots})"

    def get_dendritic_delay_offset(self, offset: str = "") -> str:
        max_delay = self.archetype.max_dendritic_delay_timesteps
        if offset:
            return (f"(((*group->denDelayPtr + {offset}) % {max_delay}) "
                    "* group->numTrgNeurons)")
        return "(*group->denDelayPtr * group->numTrgNeurons)"


class PresynapticUpdateGroupMerged(SynapseGroupMergedBase):
    pass


class PostsynapticUpdateGroupMerged(SynapseGroupMergedBase):
    pass


class SynapseDynamicsGroupMerged(SynapseGroupMergedBase):
    pass


class SynapseDenseInitGroupMerged(SynapseGroupMergedBase):
    pass


class SynapseConnectivityInitGroupMerged(SynapseGroupMergedBase):
    pass


class SynapseSparseInitGroupMerged(SynapseGroupMergedBase):
    pass


class SynapseDendriticDelayUpdateGroupMerged(GroupMerged[SynapseGroup]):
    """Advances the dendritic delay ring buffer pointer once per timestep."""

    def __init__(self, index: int, role: Role, store: Sequence[SynapseGroup],
                 member_indices: tuple[int, ...], model: ModelSpec,
                 backend: BackendBase) -> None:
        super().__init__(index, role, store, member_indices, model, backend)
        self.add_pointer_field("volatile unsigned int", "denDelayPtr", "denDelayPtr")

    def gen_pointer_rotation(self, os: CodeStream) -> None:
        max_delay = self.archetype.max_dendritic_delay_timesteps
        os.line(f"*group->denDelayPtr = (*group->denDelayPtr + 1) % {max_delay};")

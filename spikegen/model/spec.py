"""Entity data model for SpikeGen.

A ``ModelSpec`` owns every user-declared population (``NeuronGroup``),
projection (``SynapseGroup``) and current source. Equation templates
(``NeuronModel``, ``WeightUpdateModel`` ...) are frozen dataclasses so two
entities share a template whenever the templates compare equal.

Once ``ModelSpec.finalize()`` has run, the entity stores are fixed, name-ordered
tuples. Everything downstream refers to entities by their position in these
stores and never copies them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from spikegen.core.types import Connectivity, SpanType, SpikeGenError

logger = logging.getLogger(__name__)

_RNG_TOKEN = "$(gennrand"


class ModelError(SpikeGenError):
    """Raised when a model description cannot be assembled."""


class ModelFinalizedError(ModelError):
    """Raised when a finalized model is modified."""


# ---------------------------------------------------------------------------
# Equation templates
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Var:
    """A typed state variable. ``scalar`` resolves to the model precision."""

    name: str
    type: str = "scalar"


@dataclass(frozen=True)
class VarInit:
    """Initialisation snippet for one variable.

    ``code`` assigns ``$(value)`` and may reference snippet parameters as
    ``$(name)``. Parameter values are per-entity, so two initialisers with the
    same code but different parameters still merge.
    """

    code: str = ""
    params: dict[str, float] = field(default_factory=dict)

    @classmethod
    def constant(cls, value: float) -> VarInit:
        return cls(code="$(value) = $(constant);", params={"constant": value})

    @property
    def is_rng_required(self) -> bool:
        return _RNG_TOKEN in self.code


@dataclass(frozen=True)
class NeuronModel:
    """Equations describing one kind of neuron."""

    name: str
    vars: tuple[Var, ...] = ()
    param_names: tuple[str, ...] = ()
    sim_code: str = ""
    threshold_condition_code: str = ""
    reset_code: str = ""
    support_code: str = ""
    # (name, type, initial value expression)
    additional_input_vars: tuple[tuple[str, str, str], ...] = ()
    auto_refractory_required: bool = False


@dataclass(frozen=True)
class PostsynapticModel:
    """Equations converting accumulated synaptic input into neuron input."""

    name: str
    vars: tuple[Var, ...] = ()
    param_names: tuple[str, ...] = ()
    apply_input_code: str = ""
    decay_code: str = ""
    support_code: str = ""


@dataclass(frozen=True)
class WeightUpdateModel:
    """Equations run per synapse on spikes, events, and every timestep."""

    name: str
    vars: tuple[Var, ...] = ()
    param_names: tuple[str, ...] = ()
    sim_code: str = ""
    event_code: str = ""
    event_threshold_condition_code: str = ""
    learn_post_code: str = ""
    synapse_dynamics_code: str = ""
    sim_support_code: str = ""
    learn_post_support_code: str = ""
    synapse_dynamics_support_code: str = ""


@dataclass(frozen=True)
class CurrentSourceModel:
    """Equations injecting current into a neuron population."""

    name: str
    vars: tuple[Var, ...] = ()
    param_names: tuple[str, ...] = ()
    injection_code: str = ""


@dataclass(frozen=True)
class ConnectivityInit:
    """Row-building snippet for sparse connectivity.

    ``row_build_code`` runs once per presynaptic neuron and calls
    ``$(addSynapse, j)`` for each target and ``$(endRow)`` when done.
    """

    row_build_code: str = ""
    params: dict[str, float] = field(default_factory=dict)

    @property
    def is_rng_required(self) -> bool:
        return _RNG_TOKEN in self.row_build_code


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


@dataclass(eq=False)
class NeuronGroup:
    """A population of identical neurons."""

    name: str
    num_neurons: int
    model: NeuronModel
    params: dict[str, float] = field(default_factory=dict)
    var_initialisers: dict[str, VarInit] = field(default_factory=dict)
    spike_time_required: bool = False

    # Derived by ModelSpec.finalize()
    num_delay_slots: int = field(default=1, init=False)
    in_syn: tuple[SynapseGroup, ...] = field(default=(), init=False)
    out_syn: tuple[SynapseGroup, ...] = field(default=(), init=False)
    current_sources: tuple[CurrentSource, ...] = field(default=(), init=False)

    @property
    def is_delay_required(self) -> bool:
        return self.num_delay_slots > 1

    @property
    def is_true_spike_required(self) -> bool:
        """True spikes are queued when any projection consumes them with delay."""
        return (any(sg.is_true_spike_required for sg in self.out_syn)
                or any(sg.wu_model.learn_post_code for sg in self.in_syn))

    @property
    def is_spike_event_required(self) -> bool:
        return any(sg.is_spike_event_required for sg in self.out_syn)

    @property
    def is_sim_rng_required(self) -> bool:
        return _RNG_TOKEN in self.model.sim_code

    @property
    def is_init_rng_required(self) -> bool:
        return (any(v.is_rng_required for v in self.var_initialisers.values())
                or any(v.is_rng_required for sg in self.in_syn
                       for v in sg.ps_var_initialisers.values()))

    @property
    def spike_event_conditions(self) -> list[SynapseGroup]:
        """Outgoing projections whose event threshold feeds this population's event test.

        Ordered by threshold code so populations with the same set of
        conditions line up position by position.
        """
        return sorted((sg for sg in self.out_syn if sg.is_spike_event_required),
                      key=lambda sg: (sg.wu_model.event_threshold_condition_code,
                                      sg.wu_model.sim_support_code, sg.name))

    def get_var_initialiser(self, var_name: str) -> VarInit:
        return self.var_initialisers.get(var_name, VarInit())


@dataclass(eq=False)
class SynapseGroup:
    """A projection between two neuron populations."""

    name: str
    source: str
    target: str
    wu_model: WeightUpdateModel
    ps_model: PostsynapticModel
    connectivity: Connectivity = Connectivity.DENSE
    span_type: SpanType = SpanType.POSTSYNAPTIC
    delay_steps: int = 0
    back_prop_delay_steps: int = 0
    max_connections: int | None = None
    max_source_connections: int | None = None
    max_dendritic_delay_timesteps: int = 1
    threads_per_spike: int = 1
    wu_params: dict[str, float] = field(default_factory=dict)
    wu_var_initialisers: dict[str, VarInit] = field(default_factory=dict)
    ps_params: dict[str, float] = field(default_factory=dict)
    ps_var_initialisers: dict[str, VarInit] = field(default_factory=dict)
    connectivity_initialiser: ConnectivityInit | None = None

    # Derived by ModelSpec.finalize()
    src: NeuronGroup = field(default=None, init=False, repr=False)  # type: ignore[assignment]
    trg: NeuronGroup = field(default=None, init=False, repr=False)  # type: ignore[assignment]

    @property
    def is_sparse(self) -> bool:
        return self.connectivity == Connectivity.SPARSE

    @property
    def row_stride(self) -> int:
        """Maximum synapses per row: the dense row length or the sparse row bound."""
        if self.is_sparse and self.max_connections is not None:
            return self.max_connections
        return self.trg.num_neurons

    @property
    def col_stride(self) -> int:
        if self.is_sparse and self.max_source_connections is not None:
            return self.max_source_connections
        return self.src.num_neurons

    @property
    def is_true_spike_required(self) -> bool:
        return bool(self.wu_model.sim_code)

    @property
    def is_spike_event_required(self) -> bool:
        return bool(self.wu_model.event_code)

    @property
    def is_dendritic_delay_required(self) -> bool:
        return self.max_dendritic_delay_timesteps > 1

    @property
    def is_wu_var_init_required(self) -> bool:
        return any(self.get_wu_var_initialiser(v.name).code for v in self.wu_model.vars)

    @property
    def is_sparse_connectivity_init_required(self) -> bool:
        return (self.is_sparse and self.connectivity_initialiser is not None
                and bool(self.connectivity_initialiser.row_build_code))

    @property
    def is_sparse_init_required(self) -> bool:
        """Sparse projections need a second init pass once their rows exist."""
        return self.is_sparse and (self.is_wu_var_init_required
                                   or bool(self.wu_model.learn_post_code)
                                   or bool(self.wu_model.synapse_dynamics_code))

    @property
    def is_wu_init_rng_required(self) -> bool:
        return any(v.is_rng_required for v in self.wu_var_initialisers.values())

    def get_wu_var_initialiser(self, var_name: str) -> VarInit:
        return self.wu_var_initialisers.get(var_name, VarInit())

    def get_ps_var_initialiser(self, var_name: str) -> VarInit:
        return self.ps_var_initialisers.get(var_name, VarInit())


@dataclass(eq=False)
class CurrentSource:
    """A current injected into a target neuron population."""

    name: str
    model: CurrentSourceModel
    target: str
    params: dict[str, float] = field(default_factory=dict)
    var_initialisers: dict[str, VarInit] = field(default_factory=dict)

    trg: NeuronGroup = field(default=None, init=False, repr=False)  # type: ignore[assignment]

    def get_var_initialiser(self, var_name: str) -> VarInit:
        return self.var_initialisers.get(var_name, VarInit())


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------


class ModelSpec:
    """Owner of every entity in one network description.

    Usage:
        model = ModelSpec("izhikevich", precision="float", dt=0.1)
        exc = model.add_neuron_population("Exc", 800, izk, {"a": 0.02, ...})
        model.add_synapse_population("ExcExc", "Exc", "Exc", static, exp_curr)
        model.finalize()
    """

    def __init__(
        self,
        name: str,
        precision: str = "float",
        time_precision: str | None = None,
        dt: float = 0.1,
    ) -> None:
        self.name = name
        self.precision = precision
        self.time_precision = time_precision or precision
        self.dt = dt
        self._neuron_groups: dict[str, NeuronGroup] = {}
        self._synapse_groups: dict[str, SynapseGroup] = {}
        self._current_sources: dict[str, CurrentSource] = {}
        self._finalized = False

    # ------------------------------------------------------------------
    # Building
    # ------------------------------------------------------------------

    def add_neuron_population(
        self,
        name: str,
        num_neurons: int,
        model: NeuronModel,
        params: dict[str, float] | None = None,
        var_initialisers: dict[str, VarInit] | None = None,
        **kwargs: Any,
    ) -> NeuronGroup:
        self._check_not_finalized()
        self._check_unique(name)
        ng = NeuronGroup(name=name, num_neurons=num_neurons, model=model,
                         params=dict(params or {}),
                         var_initialisers=dict(var_initialisers or {}), **kwargs)
        self._neuron_groups[name] = ng
        return ng

    def add_synapse_population(
        self,
        name: str,
        source: str,
        target: str,
        wu_model: WeightUpdateModel,
        ps_model: PostsynapticModel,
        **kwargs: Any,
    ) -> SynapseGroup:
        self._check_not_finalized()
        self._check_unique(name)
        sg = SynapseGroup(name=name, source=source, target=target,
                          wu_model=wu_model, ps_model=ps_model, **kwargs)
        self._synapse_groups[name] = sg
        return sg

    def add_current_source(
        self,
        name: str,
        model: CurrentSourceModel,
        target: str,
        params: dict[str, float] | None = None,
        var_initialisers: dict[str, VarInit] | None = None,
    ) -> CurrentSource:
        self._check_not_finalized()
        self._check_unique(name)
        cs = CurrentSource(name=name, model=model, target=target,
                           params=dict(params or {}),
                           var_initialisers=dict(var_initialisers or {}))
        self._current_sources[name] = cs
        return cs

    def finalize(self) -> None:
        """Resolve links between entities and freeze the model."""
        if self._finalized:
            return

        for sg in self._synapse_groups.values():
            sg.src = self._resolve_neuron_group(sg.source, sg.name)
            sg.trg = self._resolve_neuron_group(sg.target, sg.name)
        for cs in self._current_sources.values():
            cs.trg = self._resolve_neuron_group(cs.target, cs.name)

        for ng in self.neuron_groups:
            ng.in_syn = tuple(sg for sg in self.synapse_groups if sg.trg is ng)
            ng.out_syn = tuple(sg for sg in self.synapse_groups if sg.src is ng)
            ng.current_sources = tuple(cs for cs in self.current_sources if cs.trg is ng)

            # Spike queue must hold the longest axonal or back-propagation delay
            slots = [sg.delay_steps + 1 for sg in ng.out_syn]
            slots.extend(sg.back_prop_delay_steps + 1 for sg in ng.in_syn)
            ng.num_delay_slots = max(slots, default=1)

        self._finalized = True
        logger.info(
            "Finalized model '%s': %d neuron groups, %d synapse groups, %d current sources",
            self.name, len(self._neuron_groups), len(self._synapse_groups),
            len(self._current_sources),
        )

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    @property
    def is_finalized(self) -> bool:
        return self._finalized

    @property
    def neuron_groups(self) -> tuple[NeuronGroup, ...]:
        """Neuron groups ordered by name."""
        return tuple(self._neuron_groups[k] for k in sorted(self._neuron_groups))

    @property
    def synapse_groups(self) -> tuple[SynapseGroup, ...]:
        """Synapse groups ordered by name."""
        return tuple(self._synapse_groups[k] for k in sorted(self._synapse_groups))

    @property
    def current_sources(self) -> tuple[CurrentSource, ...]:
        return tuple(self._current_sources[k] for k in sorted(self._current_sources))

    def get_neuron_group(self, name: str) -> NeuronGroup | None:
        return self._neuron_groups.get(name)

    def get_synapse_group(self, name: str) -> SynapseGroup | None:
        return self._synapse_groups.get(name)

    def resolve_type(self, type_name: str) -> str:
        """Map the ``scalar`` placeholder, or a pointer to it, onto the model precision."""
        base = type_name.rstrip("*").rstrip()
        if base == "scalar":
            return self.precision + type_name[len(base):]
        return type_name

    def scalar_expr(self, value: float) -> str:
        """Format a literal in the model precision."""
        text = repr(float(value))
        return text + "f" if self.precision == "float" else text

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_not_finalized(self) -> None:
        if self._finalized:
            raise ModelFinalizedError(f"Model '{self.name}' is finalized and cannot be modified")

    def _check_unique(self, name: str) -> None:
        if (name in self._neuron_groups or name in self._synapse_groups
                or name in self._current_sources):
            raise ModelError(f"Duplicate entity name: '{name}'")

    def _resolve_neuron_group(self, name: str, referrer: str) -> NeuronGroup:
        ng = self._neuron_groups.get(name)
        if ng is None:
            raise ModelError(f"'{referrer}' references unknown neuron group '{name}'")
        return ng

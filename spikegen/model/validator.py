"""Semantic validator for SpikeGen models.

Checks an assembled (not necessarily finalized) ModelSpec for issues that
would otherwise surface as confusing failures during code generation:
- Non-positive population sizes and delays
- Projections and current sources targeting unknown populations
- Missing parameter values
- Initialisers for variables the model does not declare
- Sparse projections without the information needed to build them
- Delays that nothing consumes
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from spikegen.core.types import Severity, SpanType, ValidationError
from spikegen.model.spec import ModelSpec, SynapseGroup, Var


def validate_model(model: ModelSpec) -> list[ValidationError]:
    """Run all validation passes on a model.

    Returns a list of ValidationError objects (may be empty if valid).
    """
    errors: list[ValidationError] = []

    _validate_neuron_groups(model, errors)
    _validate_synapse_groups(model, errors)
    _validate_current_sources(model, errors)

    return errors


def _validate_neuron_groups(model: ModelSpec, errors: list[ValidationError]) -> None:
    for ng in model.neuron_groups:
        if ng.num_neurons <= 0:
            errors.append(ValidationError(
                f"population size must be positive, got {ng.num_neurons}", ng.name))

        _check_params(ng.model.param_names, ng.params, "neuron", ng.name, errors)
        _check_initialisers(ng.model.vars, ng.var_initialisers, "neuron", ng.name, errors)

        if not ng.model.threshold_condition_code:
            errors.append(ValidationError(
                f"neuron model '{ng.model.name}' has no threshold condition and never spikes",
                ng.name, Severity.WARNING))


def _validate_synapse_groups(model: ModelSpec, errors: list[ValidationError]) -> None:
    for sg in model.synapse_groups:
        for role, name in (("source", sg.source), ("target", sg.target)):
            if model.get_neuron_group(name) is None:
                errors.append(ValidationError(f"unknown {role} population '{name}'", sg.name))

        wu = sg.wu_model
        _check_params(wu.param_names, sg.wu_params, "weight update", sg.name, errors)
        _check_params(sg.ps_model.param_names, sg.ps_params, "postsynaptic", sg.name, errors)
        _check_initialisers(wu.vars, sg.wu_var_initialisers, "weight update", sg.name, errors)
        _check_initialisers(sg.ps_model.vars, sg.ps_var_initialisers, "postsynaptic",
                            sg.name, errors)

        for option in ("delay_steps", "back_prop_delay_steps"):
            if getattr(sg, option) < 0:
                errors.append(ValidationError(
                    f"{option} must not be negative, got {getattr(sg, option)}", sg.name))
        if sg.max_dendritic_delay_timesteps < 1:
            errors.append(ValidationError(
                "max_dendritic_delay_timesteps must be at least 1", sg.name))
        if sg.threads_per_spike < 1:
            errors.append(ValidationError("threads_per_spike must be at least 1", sg.name))

        if sg.delay_steps > 0 and not wu.sim_code and not wu.event_code:
            errors.append(ValidationError(
                "axonal delay is set but the weight update model reacts to no spikes",
                sg.name, Severity.WARNING))

        _validate_connectivity(sg, errors)


def _validate_connectivity(sg: SynapseGroup, errors: list[ValidationError]) -> None:
    if sg.is_sparse:
        for option in ("max_connections", "max_source_connections"):
            value = getattr(sg, option)
            if value is not None and value <= 0:
                errors.append(ValidationError(
                    f"{option} must be positive, got {value}", sg.name))
        if sg.max_connections is None:
            errors.append(ValidationError(
                "sparse projection without max_connections is sized as dense rows",
                sg.name, Severity.WARNING))
        if sg.connectivity_initialiser is None:
            errors.append(ValidationError(
                "sparse projection has no connectivity initialiser; rows must be "
                "supplied externally", sg.name, Severity.WARNING))
        else:
            _check_functions(sg.connectivity_initialiser.row_build_code,
                             ("addSynapse", "endRow"), "connectivity initialiser",
                             sg.name, errors)
    else:
        if sg.connectivity_initialiser is not None:
            errors.append(ValidationError(
                "connectivity initialiser is ignored for dense projections",
                sg.name, Severity.WARNING))
        if sg.span_type == SpanType.PRESYNAPTIC:
            errors.append(ValidationError(
                "presynaptic span is only supported by built-in strategies for sparse "
                "projections", sg.name, Severity.WARNING))


def _validate_current_sources(model: ModelSpec, errors: list[ValidationError]) -> None:
    for cs in model.current_sources:
        if model.get_neuron_group(cs.target) is None:
            errors.append(ValidationError(f"unknown target population '{cs.target}'", cs.name))
        _check_params(cs.model.param_names, cs.params, "current source", cs.name, errors)
        _check_initialisers(cs.model.vars, cs.var_initialisers, "current source",
                            cs.name, errors)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _check_params(
    names: Iterable[str],
    values: Mapping[str, float],
    kind: str,
    owner: str,
    errors: list[ValidationError],
) -> None:
    names = tuple(names)
    for name in names:
        if name not in values:
            errors.append(ValidationError(f"missing {kind} parameter '{name}'", owner))
    for name in values:
        if name not in names:
            errors.append(ValidationError(
                f"unused {kind} parameter '{name}'", owner, Severity.WARNING))


def _check_initialisers(
    vars: Iterable[Var],
    initialisers: Mapping[str, object],
    kind: str,
    owner: str,
    errors: list[ValidationError],
) -> None:
    declared = {v.name for v in vars}
    for name in initialisers:
        if name not in declared:
            errors.append(ValidationError(
                f"initialiser for undeclared {kind} variable '{name}'", owner))


def _check_functions(
    code: str,
    functions: Iterable[str],
    kind: str,
    owner: str,
    errors: list[ValidationError],
) -> None:
    for name in functions:
        if f"$({name}" not in code:
            errors.append(ValidationError(
                f"{kind} never calls $({name})", owner, Severity.WARNING))

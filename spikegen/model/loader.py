"""Load a model description from JSON.

The file declares equation templates once, under ``models``, and refers to
them by name from each population:

    {
      "name": "izhikevich",
      "precision": "float",
      "dt": 0.1,
      "models": {
        "neuron": {"Izhikevich": {"vars": ["V", "U"], "param_names": ["a", "b", "c", "d"],
                                  "sim_code": "...", "threshold_condition_code": "$(V) >= 29.99"}},
        "postsynaptic": {"DeltaCurr": {"apply_input_code": "$(Isyn) += $(inSyn); $(inSyn) = 0;"}},
        "weight_update": {"StaticPulse": {"vars": ["g"], "sim_code": "$(addToInSyn, $(g));"}}
      },
      "neuron_populations": [
        {"name": "Exc", "size": 800, "model": "Izhikevich",
         "params": {"a": 0.02, "b": 0.2, "c": -65.0, "d": 8.0},
         "var_init": {"V": -65.0, "U": {"code": "$(value) = $(b) * -65.0;", "params": {"b": 0.2}}}}
      ],
      "synapse_populations": [
        {"name": "ExcExc", "source": "Exc", "target": "Exc",
         "weight_update": {"model": "StaticPulse", "var_init": {"g": 0.5}},
         "postsynaptic": {"model": "DeltaCurr"}}
      ]
    }

The returned model is not finalized, so it can still be validated.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from spikegen.core.config import get_config
from spikegen.core.types import Connectivity, SpanType
from spikegen.model.spec import (
    ConnectivityInit,
    CurrentSourceModel,
    ModelError,
    ModelSpec,
    NeuronModel,
    PostsynapticModel,
    Var,
    VarInit,
    WeightUpdateModel,
)

logger = logging.getLogger(__name__)


class ModelLoadError(ModelError):
    """Raised when a model description file is malformed."""


_TEMPLATE_KINDS = {
    "neuron": NeuronModel,
    "postsynaptic": PostsynapticModel,
    "weight_update": WeightUpdateModel,
    "current_source": CurrentSourceModel,
}

_SYNAPSE_OPTIONS = (
    "delay_steps",
    "back_prop_delay_steps",
    "max_connections",
    "max_source_connections",
    "max_dendritic_delay_timesteps",
    "threads_per_spike",
)


def load_model(path: str | Path) -> ModelSpec:
    """Read a JSON model description from ``path``."""
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ModelLoadError(f"Model file not found: {path}") from None
    except json.JSONDecodeError as exc:
        raise ModelLoadError(f"{path} is not valid JSON: {exc}") from exc

    model = model_from_dict(data)
    logger.info("Loaded model '%s' from %s", model.name, path)
    return model


def model_from_dict(data: dict[str, Any]) -> ModelSpec:
    """Build an unfinalized ``ModelSpec`` from a parsed description."""
    if not isinstance(data, dict):
        raise ModelLoadError("Model description must be a JSON object")

    model = ModelSpec(
        name=_require(data, "name", "model"),
        precision=data.get("precision", get_config().default_precision),
        time_precision=data.get("time_precision"),
        dt=data.get("dt", 0.1),
    )
    templates = _load_templates(data.get("models", {}))

    for entry in data.get("neuron_populations", []):
        name = _require(entry, "name", "neuron population")
        model.add_neuron_population(
            name,
            _require(entry, "size", name),
            _template(templates, "neuron", _require(entry, "model", name), name),
            params=entry.get("params", {}),
            var_initialisers=_load_var_inits(entry.get("var_init", {}), name),
            spike_time_required=entry.get("spike_time_required", False),
        )

    for entry in data.get("synapse_populations", []):
        name = _require(entry, "name", "synapse population")
        wu = _require(entry, "weight_update", name)
        ps = _require(entry, "postsynaptic", name)
        options = {key: entry[key] for key in _SYNAPSE_OPTIONS if key in entry}
        try:
            options["connectivity"] = Connectivity(entry.get("connectivity", "dense"))
            options["span_type"] = SpanType(entry.get("span_type", "postsynaptic"))
        except ValueError as exc:
            raise ModelLoadError(f"'{name}': {exc}") from None
        if "connectivity_init" in entry:
            conn = entry["connectivity_init"]
            options["connectivity_initialiser"] = ConnectivityInit(
                row_build_code=conn.get("code", ""), params=dict(conn.get("params", {})))

        model.add_synapse_population(
            name,
            _require(entry, "source", name),
            _require(entry, "target", name),
            _template(templates, "weight_update", _require(wu, "model", name), name),
            _template(templates, "postsynaptic", _require(ps, "model", name), name),
            wu_params=wu.get("params", {}),
            wu_var_initialisers=_load_var_inits(wu.get("var_init", {}), name),
            ps_params=ps.get("params", {}),
            ps_var_initialisers=_load_var_inits(ps.get("var_init", {}), name),
            **options,
        )

    for entry in data.get("current_sources", []):
        name = _require(entry, "name", "current source")
        model.add_current_source(
            name,
            _template(templates, "current_source", _require(entry, "model", name), name),
            _require(entry, "target", name),
            params=entry.get("params", {}),
            var_initialisers=_load_var_inits(entry.get("var_init", {}), name),
        )

    return model


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _require(entry: dict[str, Any], key: str, owner: str) -> Any:
    try:
        return entry[key]
    except KeyError:
        raise ModelLoadError(f"{owner} is missing required key '{key}'") from None


def _load_templates(sections: dict[str, Any]) -> dict[str, dict[str, Any]]:
    templates: dict[str, dict[str, Any]] = {}
    for kind, entries in sections.items():
        cls = _TEMPLATE_KINDS.get(kind)
        if cls is None:
            raise ModelLoadError(
                f"Unknown model kind '{kind}' (expected one of {sorted(_TEMPLATE_KINDS)})")
        templates[kind] = {name: _build_template(cls, name, body)
                           for name, body in entries.items()}
    return templates


def _build_template(cls: type, name: str, body: dict[str, Any]) -> Any:
    fields = dict(body)
    if "vars" in fields:
        fields["vars"] = tuple(_load_var(v) for v in fields["vars"])
    if "param_names" in fields:
        fields["param_names"] = tuple(fields["param_names"])
    if "additional_input_vars" in fields:
        fields["additional_input_vars"] = tuple(
            tuple(v) for v in fields["additional_input_vars"])
    try:
        return cls(name=name, **fields)
    except TypeError as exc:
        raise ModelLoadError(f"Model '{name}': {exc}") from None


def _load_var(value: str | dict[str, str]) -> Var:
    if isinstance(value, str):
        return Var(value)
    return Var(value["name"], value.get("type", "scalar"))


def _load_var_inits(entries: dict[str, Any], owner: str) -> dict[str, VarInit]:
    inits: dict[str, VarInit] = {}
    for var_name, value in entries.items():
        if isinstance(value, (int, float)):
            inits[var_name] = VarInit.constant(value)
        elif isinstance(value, dict):
            inits[var_name] = VarInit(code=value.get("code", ""),
                                      params=dict(value.get("params", {})))
        else:
            raise ModelLoadError(
                f"'{owner}': initialiser for '{var_name}' must be a number or an object")
    return inits


def _template(templates: dict[str, dict[str, Any]], kind: str, name: str, owner: str) -> Any:
    try:
        return templates[kind][name]
    except KeyError:
        raise ModelLoadError(f"'{owner}' uses undeclared {kind} model '{name}'") from None

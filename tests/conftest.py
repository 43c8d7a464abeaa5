"""Shared fixtures: equation templates and small networks built from them."""

from __future__ import annotations

import json
from types import SimpleNamespace

import pytest

from spikegen.core.config import SpikeGenConfig, set_config
from spikegen.core.types import Connectivity, SpanType
from spikegen.model.spec import (
    ConnectivityInit,
    CurrentSourceModel,
    ModelSpec,
    NeuronModel,
    PostsynapticModel,
    Var,
    VarInit,
    WeightUpdateModel,
)

IZHIKEVICH = NeuronModel(
    name="Izhikevich",
    vars=(Var("V"), Var("U")),
    param_names=("a", "b", "c", "d"),
    sim_code=(
        "$(V) += 0.5 * (0.04 * $(V) * $(V) + 5.0 * $(V) + 140.0 - $(U) + $(Isyn)) * $(DT);\n"
        "$(U) += $(a) * ($(b) * $(V) - $(U)) * $(DT);"
    ),
    threshold_condition_code="$(V) >= 29.99",
    reset_code="$(V) = $(c);\n$(U) += $(d);",
)

POISSON = NeuronModel(
    name="Poisson",
    vars=(Var("timeStepToSpike"),),
    param_names=("isi",),
    sim_code=(
        "if($(timeStepToSpike) <= 0.0) {\n"
        "    $(timeStepToSpike) += $(isi) * $(gennrand_exponential);\n"
        "}\n"
        "$(timeStepToSpike) -= 1.0;"
    ),
    threshold_condition_code="$(timeStepToSpike) <= 0.0",
)

LIF_SUPPORT = "SUPPORT_CODE_FUNC scalar clampV(scalar v) { return v > 0.0 ? 0.0 : v; }"

LIF = NeuronModel(
    name="LIF",
    vars=(Var("V"),),
    param_names=("tau",),
    sim_code="$(V) = clampV($(V) + ($(Isyn) - $(V)) / $(tau) * $(DT));",
    threshold_condition_code="$(V) >= -50.0",
    reset_code="$(V) = -60.0;",
    support_code=LIF_SUPPORT,
)

DELTA_CURR = PostsynapticModel(
    name="DeltaCurr",
    apply_input_code="$(Isyn) += $(inSyn);\n$(inSyn) = 0;",
)

EXP_CURR = PostsynapticModel(
    name="ExpCurr",
    param_names=("expDecay",),
    apply_input_code="$(Isyn) += $(inSyn);",
    decay_code="$(inSyn) *= $(expDecay);",
)

STATIC_PULSE = WeightUpdateModel(
    name="StaticPulse",
    vars=(Var("g"),),
    sim_code="$(addToInSyn, $(g));",
)

GRADED = WeightUpdateModel(
    name="StaticGraded",
    vars=(Var("g"),),
    param_names=("Epre",),
    event_code="$(addToInSyn, $(g) * $(V_pre));",
    event_threshold_condition_code="$(V_pre) > $(Epre)",
)

LEARNING = WeightUpdateModel(
    name="PostLearn",
    vars=(Var("g"),),
    param_names=("rate",),
    sim_code="$(addToInSynDelay, $(g), 2);",
    learn_post_code="$(g) += $(rate) * $(V_post);",
)

CONTINUOUS = WeightUpdateModel(
    name="Continuous",
    vars=(Var("g"),),
    synapse_dynamics_code="$(addToInSyn, $(g) * $(DT));",
)

DC = CurrentSourceModel(
    name="DC",
    param_names=("amp",),
    injection_code="$(injectCurrent, $(amp));",
)

ONE_TO_ONE = ConnectivityInit(
    row_build_code="$(addSynapse, $(id_pre) % $(num_post));\n$(endRow);",
)

EXC_PARAMS = {"a": 0.02, "b": 0.2, "c": -65.0, "d": 8.0}
INH_PARAMS = {"a": 0.1, "b": 0.2, "c": -65.0, "d": 2.0}


@pytest.fixture(autouse=True)
def default_config():
    """Every test starts from the built-in defaults, whatever the environment says."""
    set_config(SpikeGenConfig())
    yield
    set_config(None)


def build_izhikevich_network(precision: str = "float", delay_steps: int = 0) -> ModelSpec:
    """800 excitatory and 200 inhibitory neurons, all-to-all dense projections."""
    model = ModelSpec("izhikevich", precision=precision, dt=0.1)
    for name, size, params in (("Exc", 800, EXC_PARAMS), ("Inh", 200, INH_PARAMS)):
        model.add_neuron_population(
            name, size, IZHIKEVICH, params,
            {"V": VarInit.constant(-65.0), "U": VarInit.constant(params["b"] * -65.0)},
        )
    for src in ("Exc", "Inh"):
        for trg in ("Exc", "Inh"):
            weight = 0.5 if src == "Exc" else -1.0
            model.add_synapse_population(
                f"{src}{trg}", src, trg, STATIC_PULSE, DELTA_CURR,
                wu_var_initialisers={"g": VarInit.constant(weight)},
                delay_steps=delay_steps,
            )
    return model


def build_feature_network() -> ModelSpec:
    """A network exercising every role: events, learning, dynamics, sparse and delays."""
    model = ModelSpec("features", precision="float", dt=0.5)
    model.add_neuron_population("Stim", 100, POISSON, {"isi": 10.0},
                                {"timeStepToSpike": VarInit.constant(0.0)})
    model.add_neuron_population("Pre", 50, LIF, {"tau": 20.0}, {"V": VarInit.constant(-60.0)})
    model.add_neuron_population("Post", 60, LIF, {"tau": 10.0}, {"V": VarInit.constant(-60.0)},
                                spike_time_required=True)
    model.add_synapse_population(
        "StimPre", "Stim", "Pre", STATIC_PULSE, EXP_CURR,
        connectivity=Connectivity.SPARSE, span_type=SpanType.PRESYNAPTIC,
        max_connections=1, connectivity_initialiser=ONE_TO_ONE,
        wu_var_initialisers={"g": VarInit.constant(1.0)}, ps_params={"expDecay": 0.9},
        delay_steps=3,
    )
    model.add_synapse_population(
        "PrePost", "Pre", "Post", LEARNING, DELTA_CURR,
        connectivity=Connectivity.SPARSE, max_connections=8, max_source_connections=8,
        connectivity_initialiser=ONE_TO_ONE, wu_params={"rate": 0.01},
        wu_var_initialisers={"g": VarInit(code="$(value) = $(gennrand_uniform) * $(scale);",
                                          params={"scale": 0.1})},
        max_dendritic_delay_timesteps=4,
    )
    model.add_synapse_population(
        "PostPre", "Post", "Pre", GRADED, DELTA_CURR,
        wu_params={"Epre": -55.0}, wu_var_initialisers={"g": VarInit.constant(0.2)},
    )
    model.add_synapse_population(
        "PreGap", "Pre", "Pre", CONTINUOUS, DELTA_CURR,
        wu_var_initialisers={"g": VarInit.constant(0.01)},
    )
    model.add_current_source("Bias", DC, "Post", {"amp": 0.5})
    return model


@pytest.fixture
def templates() -> SimpleNamespace:
    """Equation templates and connectivity snippets shared by the tests."""
    return SimpleNamespace(
        izhikevich=IZHIKEVICH, poisson=POISSON, lif=LIF, delta_curr=DELTA_CURR,
        exp_curr=EXP_CURR, static_pulse=STATIC_PULSE, graded=GRADED, learning=LEARNING,
        continuous=CONTINUOUS, dc=DC, one_to_one=ONE_TO_ONE,
        exc_params=dict(EXC_PARAMS), inh_params=dict(INH_PARAMS),
    )


@pytest.fixture
def make_izhikevich_network():
    return build_izhikevich_network


@pytest.fixture
def izhikevich_network() -> ModelSpec:
    return build_izhikevich_network()


@pytest.fixture
def feature_network() -> ModelSpec:
    return build_feature_network()


@pytest.fixture
def model_description() -> dict:
    """JSON-ready description of a small two-population network."""
    return {
        "name": "balanced",
        "precision": "float",
        "dt": 0.1,
        "models": {
            "neuron": {
                "Izhikevich": {
                    "vars": ["V", "U"],
                    "param_names": ["a", "b", "c", "d"],
                    "sim_code": IZHIKEVICH.sim_code,
                    "threshold_condition_code": IZHIKEVICH.threshold_condition_code,
                    "reset_code": IZHIKEVICH.reset_code,
                },
            },
            "postsynaptic": {
                "DeltaCurr": {"apply_input_code": DELTA_CURR.apply_input_code},
            },
            "weight_update": {
                "StaticPulse": {"vars": [{"name": "g", "type": "scalar"}],
                                "sim_code": STATIC_PULSE.sim_code},
            },
            "current_source": {
                "DC": {"param_names": ["amp"], "injection_code": DC.injection_code},
            },
        },
        "neuron_populations": [
            {"name": "Exc", "size": 800, "model": "Izhikevich", "params": EXC_PARAMS,
             "var_init": {"V": -65.0, "U": {"code": "$(value) = $(b) * -65.0;",
                                            "params": {"b": 0.2}}}},
            {"name": "Inh", "size": 200, "model": "Izhikevich", "params": INH_PARAMS,
             "var_init": {"V": -65.0, "U": -13.0}},
        ],
        "synapse_populations": [
            {"name": "ExcInh", "source": "Exc", "target": "Inh",
             "weight_update": {"model": "StaticPulse", "var_init": {"g": 0.5}},
             "postsynaptic": {"model": "DeltaCurr"}},
            {"name": "InhExc", "source": "Inh", "target": "Exc",
             "connectivity": "sparse", "max_connections": 20,
             "connectivity_init": {"code": ONE_TO_ONE.row_build_code},
             "weight_update": {"model": "StaticPulse", "var_init": {"g": -1.0}},
             "postsynaptic": {"model": "DeltaCurr"}},
        ],
        "current_sources": [
            {"name": "Drive", "model": "DC", "target": "Exc", "params": {"amp": 4.0}},
        ],
    }


@pytest.fixture
def model_file(tmp_path, model_description):
    path = tmp_path / "balanced.json"
    path.write_text(json.dumps(model_description), encoding="utf-8")
    return path


@pytest.fixture
def make_feature_network():
    return build_feature_network

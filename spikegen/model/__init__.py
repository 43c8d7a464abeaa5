"""SpikeGen model — entities, JSON loading and validation.

Usage:
    from spikegen.model import load_model, validate_model

    model = load_model("network.json")
    errors = validate_model(model)
    model.finalize()
"""

from spikegen.model.loader import ModelLoadError, load_model, model_from_dict
from spikegen.model.spec import (
    ConnectivityInit,
    CurrentSource,
    CurrentSourceModel,
    ModelError,
    ModelFinalizedError,
    ModelSpec,
    NeuronGroup,
    NeuronModel,
    PostsynapticModel,
    SynapseGroup,
    Var,
    VarInit,
    WeightUpdateModel,
)
from spikegen.model.validator import validate_model

__all__ = [
    "ConnectivityInit",
    "CurrentSource",
    "CurrentSourceModel",
    "ModelError",
    "ModelFinalizedError",
    "ModelLoadError",
    "ModelSpec",
    "NeuronGroup",
    "NeuronModel",
    "PostsynapticModel",
    "SynapseGroup",
    "Var",
    "VarInit",
    "WeightUpdateModel",
    "load_model",
    "model_from_dict",
    "validate_model",
]

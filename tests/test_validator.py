"""Tests for the model validator."""

import pytest

from spikegen.core.types import Connectivity, Severity, SpanType, ValidationError
from spikegen.model.spec import ModelSpec, NeuronModel, Var, VarInit
from spikegen.model.validator import validate_model


def _messages(errors, severity=None):
    return [e.message for e in errors if severity is None or e.severity == severity]


@pytest.fixture
def model(templates):
    model = ModelSpec("checked")
    model.add_neuron_population("A", 10, templates.izhikevich, templates.exc_params)
    model.add_neuron_population("B", 10, templates.izhikevich, templates.inh_params)
    return model


class TestValidModels:
    def test_izhikevich_network_is_clean(self, izhikevich_network):
        assert validate_model(izhikevich_network) == []

    def test_feature_network_has_no_errors(self, feature_network):
        assert not any(e.is_error for e in validate_model(feature_network))


class TestNeuronGroups:
    def test_non_positive_size(self, model, templates):
        model.add_neuron_population("Empty", 0, templates.izhikevich, templates.exc_params)
        errors = validate_model(model)
        assert errors[0].entity == "Empty"
        assert "population size must be positive, got 0" in errors[0].message

    def test_missing_parameter(self, model, templates):
        params = dict(templates.exc_params)
        del params["d"]
        model.add_neuron_population("C", 10, templates.izhikevich, params)
        assert "missing neuron parameter 'd'" in _messages(validate_model(model), Severity.ERROR)

    def test_unused_parameter_is_a_warning(self, model, templates):
        model.add_neuron_population("C", 10, templates.izhikevich,
                                    {**templates.exc_params, "e": 1.0})
        assert _messages(validate_model(model), Severity.WARNING) == [
            "unused neuron parameter 'e'"]

    def test_initialiser_for_undeclared_variable(self, model, templates):
        model.add_neuron_population("C", 10, templates.izhikevich, templates.exc_params,
                                    {"W": VarInit.constant(0.0)})
        assert "initialiser for undeclared neuron variable 'W'" in _messages(
            validate_model(model), Severity.ERROR)

    def test_missing_threshold(self, model):
        silent = NeuronModel(name="Silent", vars=(Var("V"),), sim_code="$(V) *= 0.9;")
        model.add_neuron_population("C", 10, silent)
        warnings = [e for e in validate_model(model) if not e.is_error]
        assert len(warnings) == 1
        assert warnings[0].entity == "C"
        assert "never spikes" in warnings[0].message


class TestSynapseGroups:
    def test_unknown_populations(self, model, templates):
        model.add_synapse_population("XB", "X", "B", templates.static_pulse, templates.delta_curr)
        assert _messages(validate_model(model)) == ["unknown source population 'X'"]

    def test_missing_weight_update_parameter(self, model, templates):
        model.add_synapse_population("AB", "A", "B", templates.graded, templates.delta_curr)
        assert _messages(validate_model(model)) == ["missing weight update parameter 'Epre'"]

    def test_negative_delay(self, model, templates):
        model.add_synapse_population("AB", "A", "B", templates.static_pulse,
                                     templates.delta_curr, delay_steps=-1)
        assert "delay_steps must not be negative, got -1" in _messages(validate_model(model))

    def test_delay_without_spike_code(self, model, templates):
        model.add_synapse_population("AB", "A", "B", templates.continuous,
                                     templates.delta_curr, delay_steps=2)
        warnings = _messages(validate_model(model), Severity.WARNING)
        assert warnings == ["axonal delay is set but the weight update model reacts to no spikes"]

    def test_sparse_without_max_connections(self, model, templates):
        model.add_synapse_population("AB", "A", "B", templates.static_pulse,
                                     templates.delta_curr, connectivity=Connectivity.SPARSE,
                                     connectivity_initialiser=templates.one_to_one)
        assert _messages(validate_model(model), Severity.WARNING) == [
            "sparse projection without max_connections is sized as dense rows"]

    def test_sparse_without_initialiser(self, model, templates):
        model.add_synapse_population("AB", "A", "B", templates.static_pulse,
                                     templates.delta_curr, connectivity=Connectivity.SPARSE,
                                     max_connections=4)
        warnings = _messages(validate_model(model), Severity.WARNING)
        assert len(warnings) == 1
        assert warnings[0].startswith("sparse projection has no connectivity initialiser")

    def test_dense_connectivity_initialiser_ignored(self, model, templates):
        model.add_synapse_population("AB", "A", "B", templates.static_pulse,
                                     templates.delta_curr,
                                     connectivity_initialiser=templates.one_to_one)
        assert _messages(validate_model(model), Severity.WARNING) == [
            "connectivity initialiser is ignored for dense projections"]

    def test_dense_presynaptic_span(self, model, templates):
        model.add_synapse_population("AB", "A", "B", templates.static_pulse,
                                     templates.delta_curr, span_type=SpanType.PRESYNAPTIC)
        warnings = _messages(validate_model(model), Severity.WARNING)
        assert len(warnings) == 1
        assert "presynaptic span" in warnings[0]


class TestCurrentSources:
    def test_unknown_target_and_missing_param(self, model, templates):
        model.add_current_source("Drive", templates.dc, "Nowhere")
        assert _messages(validate_model(model)) == [
            "unknown target population 'Nowhere'", "missing current source parameter 'amp'"]


class TestValidationError:
    def test_str(self):
        assert str(ValidationError("bad", "X")) == "[error] 'X': bad"
        assert str(ValidationError("odd", severity=Severity.WARNING)) == "[warning] model: odd"

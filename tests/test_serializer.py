"""Tests for the merged model serializer."""

import json

import pytest

from spikegen.backends import create_backend
from spikegen.codegen.generate_all import generate_all
from spikegen.codegen.model_merged import ModelSpecMerged
from spikegen.codegen.serializer import serialize_merged_to_dict, serialize_merged_to_json
from spikegen.core.types import Role


@pytest.fixture
def merged(izhikevich_network):
    return ModelSpecMerged(izhikevich_network, create_backend("cuda"))


class TestSerializeMerged:
    def test_top_level_keys(self, merged):
        data = serialize_merged_to_dict(merged)
        assert set(data) == {"model", "backend", "roles"}
        assert data["model"] == "izhikevich"
        assert data["backend"] == "cuda"

    def test_every_role_is_listed(self, merged):
        roles = serialize_merged_to_dict(merged)["roles"]
        assert list(roles) == [role.value for role in Role]
        assert roles["PostsynapticUpdate"] == []

    def test_merged_group_entry(self, merged):
        entry = serialize_merged_to_dict(merged)["roles"]["NeuronUpdate"][0]
        assert entry["index"] == 0
        assert entry["struct"] == "MergedNeuronUpdateGroup0"
        assert entry["archetype"] == "Inh"
        assert entry["members"] == ["Inh", "Exc"]
        assert {"type": "float*", "name": "V"} in entry["fields"]

    def test_launches_only_with_report(self, merged, izhikevich_network):
        assert "launches" not in serialize_merged_to_dict(merged)
        _, report = generate_all(izhikevich_network, merged.backend, model_merged=merged)
        data = serialize_merged_to_dict(merged, report)
        assert [d["kernel"] for d in data["launches"]] == [
            launch.kernel for launch in report.launches]

    def test_json_round_trip(self, merged, izhikevich_network):
        _, report = generate_all(izhikevich_network, merged.backend, model_merged=merged)
        data = json.loads(serialize_merged_to_json(merged, report))
        assert data["roles"]["PresynapticUpdate"][0]["members"] == [
            "InhInh", "InhExc", "ExcInh", "ExcExc"]
        neuron = next(d for d in data["launches"] if d["kernel"] == "updateNeuronsKernel")
        assert neuron["total"] == 1024
        assert neuron["ranges"][0]["member_starts"] == [0, 224]

"""Tests for whole-model generation and file output."""

import logging

import pytest

from spikegen.backends import create_backend
from spikegen.codegen.generate_all import SUPPORT_CODE_HEADER, generate_all, write_files
from spikegen.codegen.model_merged import ModelSpecMerged
from spikegen.codegen.substitutions import UnresolvedNameError
from spikegen.core.config import SpikeGenConfig, get_config, set_config
from spikegen.model.spec import ModelSpec, NeuronModel, Var


class TestFiles:
    @pytest.mark.parametrize("backend_name, ext", [
        ("cuda", ".cu"),
        ("opencl", ".cc"),
        ("single_threaded_cpu", ".cc"),
    ])
    def test_file_names(self, izhikevich_network, backend_name, ext):
        files, report = generate_all(izhikevich_network, create_backend(backend_name))
        assert set(files) == {f"neuronUpdate{ext}", f"synapseUpdate{ext}", f"init{ext}",
                              SUPPORT_CODE_HEADER}
        assert report.backend == backend_name

    def test_support_header_without_support_code(self, izhikevich_network):
        files, _ = generate_all(izhikevich_network, create_backend("cuda"))
        header = files[SUPPORT_CODE_HEADER]
        assert header.startswith("#pragma once")
        assert "namespace" not in header

    def test_write_files(self, izhikevich_network, tmp_path):
        out = tmp_path / "out"
        files, _ = generate_all(izhikevich_network, create_backend("cuda"), output_dir=out)
        assert sorted(p.name for p in out.iterdir()) == sorted(files)
        assert (out / "neuronUpdate.cu").read_text(encoding="utf-8") == files["neuronUpdate.cu"]

    def test_write_files_creates_nested_directories(self, tmp_path):
        target = tmp_path / "a" / "b"
        write_files({"x.cc": "int x;\n"}, target)
        assert (target / "x.cc").read_text(encoding="utf-8") == "int x;\n"

    def test_write_files_defaults_to_configured_output_dir(self, tmp_path):
        set_config(SpikeGenConfig(output_dir=tmp_path / "configured"))
        path = write_files({"x.cc": "int x;\n"})
        assert path == tmp_path / "configured"
        assert (path / "x.cc").read_text(encoding="utf-8") == "int x;\n"

    def test_explicit_dir_leaves_configured_dir_alone(self, tmp_path):
        set_config(SpikeGenConfig(output_dir=tmp_path / "configured"))
        write_files({"x.cc": "int x;\n"}, tmp_path / "explicit")
        assert (tmp_path / "explicit" / "x.cc").is_file()
        assert not (tmp_path / "configured").exists()
        assert get_config().output_dir == tmp_path / "configured"

    def test_reuses_existing_merge(self, izhikevich_network):
        backend = create_backend("cuda")
        merged = ModelSpecMerged(izhikevich_network, backend)
        files, _ = generate_all(izhikevich_network, backend, model_merged=merged)
        assert "updateNeuronsKernel" in files["neuronUpdate.cu"]


class TestReport:
    def test_simt_launch_totals(self, izhikevich_network):
        _, report = generate_all(izhikevich_network, create_backend("cuda"))
        totals = {launch.kernel: launch.total for launch in report.launches}
        assert totals == {
            "preNeuronResetKernel": 2,
            "updateNeuronsKernel": 1024,
            "updatePresynapticKernel": 2048,
            "initializeKernel": 3072,
        }

    def test_init_ranges_follow_each_other(self, izhikevich_network):
        _, report = generate_all(izhikevich_network, create_backend("cuda"))
        ranges = report.get("initializeKernel").ranges
        assert [(r.range.start, r.range.end) for r in ranges] == [(0, 1024), (1024, 3072)]

    def test_to_dict(self, izhikevich_network):
        _, report = generate_all(izhikevich_network, create_backend("opencl"))
        data = report.to_dict()
        assert data["backend"] == "opencl"
        neuron = next(d for d in data["launches"] if d["kernel"] == "updateNeuronsKernel")
        assert neuron["ranges"][0]["member_starts"] == (0, 224)


class TestDeterminism:
    @pytest.mark.parametrize("backend_name", ["cuda", "opencl", "single_threaded_cpu"])
    def test_identical_models_give_identical_output(self, make_izhikevich_network,
                                                    backend_name):
        first, _ = generate_all(make_izhikevich_network(), create_backend(backend_name))
        second, _ = generate_all(make_izhikevich_network(), create_backend(backend_name))
        assert first == second

    def test_feature_network_is_stable(self, make_feature_network):
        first, _ = generate_all(make_feature_network(), create_backend("cuda"))
        second, _ = generate_all(make_feature_network(), create_backend("cuda"))
        assert first == second


class TestErrors:
    def test_unbound_name_in_sim_code(self):
        broken = NeuronModel(name="Broken", vars=(Var("V"),),
                             sim_code="$(V) += $(undefined);",
                             threshold_condition_code="$(V) > 1.0")
        model = ModelSpec("broken")
        model.add_neuron_population("A", 10, broken, {})
        with pytest.raises(UnresolvedNameError) as excinfo:
            generate_all(model, create_backend("cuda"))
        assert excinfo.value.name == "undefined"
        assert "A : simCode" in str(excinfo.value)

    def test_missing_threshold_warns_once(self, caplog):
        silent = NeuronModel(name="Silent", vars=(Var("V"),), sim_code="$(V) *= 0.9;")
        model = ModelSpec("silent")
        model.add_neuron_population("A", 10, silent, {})
        model.add_neuron_population("B", 20, silent, {})
        with caplog.at_level(logging.WARNING, logger="spikegen.codegen.generate_neuron_update"):
            files, _ = generate_all(model, create_backend("cuda"))
        warnings = [r for r in caplog.records if "no threshold condition" in r.getMessage()]
        assert len(warnings) == 1
        assert "shSpkCount" not in files["neuronUpdate.cu"]


class TestSupportCode:
    def test_shared_support_code_is_emitted_once(self, feature_network):
        files, _ = generate_all(feature_network, create_backend("cuda"))
        header = files[SUPPORT_CODE_HEADER]
        assert "namespace NeuronUpdateSupportCode0" in header
        assert "NeuronUpdateSupportCode1" not in header
        assert "using namespace NeuronUpdateSupportCode0;" in files["neuronUpdate.cu"]

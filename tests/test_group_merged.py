"""Tests for merged group struct layout and field values."""

import pytest

from spikegen.backends import create_backend
from spikegen.codegen.code_stream import CodeStream
from spikegen.codegen.group_merged import (
    NeuronUpdateGroupMerged,
    referenced_neuron_vars,
    sorted_in_syn,
)
from spikegen.codegen.model_merged import ModelSpecMerged
from spikegen.core.types import Role


def _values(mg, field_name):
    field = next(f for f in mg.fields if f.name == field_name)
    return [field.get_value(g, i) for i, g in enumerate(mg.groups)]


class TestNeuronUpdateStruct:
    @pytest.fixture
    def mg(self, izhikevich_network):
        return ModelSpecMerged(izhikevich_network, create_backend("cuda")).neuron_update_groups[0]

    def test_field_order(self, mg):
        names = [f.name for f in mg.fields]
        assert names[:3] == ["numNeurons", "spkCnt", "spk"]
        assert names.index("V") < names.index("U") < names.index("a")
        assert "inSynInSyn0" in names
        assert "inSynInSyn1" in names

    def test_field_types_resolve_scalar(self, mg):
        types = {f.name: f.type for f in mg.fields}
        assert types["V"] == "float*"
        assert types["a"] == "float"
        assert types["numNeurons"] == "unsigned int"

    def test_field_values_follow_member_order(self, mg):
        assert _values(mg, "numNeurons") == ["200", "800"]
        assert _values(mg, "spk") == ["d_glbSpkInh", "d_glbSpkExc"]
        assert _values(mg, "V") == ["d_VInh", "d_VExc"]
        assert _values(mg, "a") == ["0.1", "0.02"]

    def test_incoming_projections_are_aligned(self, mg):
        # Exc and Inh both receive from Exc and Inh; position i is the same source
        assert _values(mg, "inSynInSyn0") == ["d_inSynExcInh", "d_inSynExcExc"]
        assert _values(mg, "inSynInSyn1") == ["d_inSynInhInh", "d_inSynInhExc"]

    def test_cpu_backend_uses_host_arrays(self, izhikevich_network):
        merged = ModelSpecMerged(izhikevich_network, create_backend("single_threaded_cpu"))
        assert _values(merged.neuron_update_groups[0], "spkCnt") == ["glbSpkCntInh",
                                                                     "glbSpkCntExc"]

    def test_pointer_detection(self, mg):
        fields = {f.name: f for f in mg.fields}
        assert fields["V"].is_pointer
        assert not fields["numNeurons"].is_pointer

    def test_duplicate_field_rejected(self, mg):
        with pytest.raises(ValueError, match="Duplicate field"):
            mg.add_field("unsigned int", "numNeurons", lambda g, _: "0")

    def test_len_and_repr(self, mg):
        assert len(mg) == 2
        assert repr(mg) == "<MergedNeuronUpdateGroup0 [Inh, Exc]>"

    def test_gen_struct_delegates_to_backend(self, mg):
        os = CodeStream()
        mg.gen_struct(os)
        text = os.getvalue()
        assert "struct MergedNeuronUpdateGroup0" in text
        assert "    float* V;" in text
        assert "__device__ __constant__ MergedNeuronUpdateGroup0 " \
               "d_mergedNeuronUpdateGroup0[2];" in text

    def test_gen_struct_build_lists_one_row_per_member(self, mg):
        os = CodeStream()
        mg.gen_struct_build(os)
        text = os.getvalue()
        assert "void pushMergedNeuronUpdateGroup0ToDevice()" in text
        assert text.index("{200, d_glbSpkCntInh") < text.index("{800, d_glbSpkCntExc")
        assert "cudaMemcpyToSymbol(d_mergedNeuronUpdateGroup0, group, " \
               "sizeof(MergedNeuronUpdateGroup0) * 2)" in text


class TestConstruction:
    def test_empty_member_list_rejected(self, izhikevich_network):
        izhikevich_network.finalize()
        with pytest.raises(ValueError, match="at least one member"):
            NeuronUpdateGroupMerged(0, Role.NEURON_UPDATE, izhikevich_network.neuron_groups,
                                    (), izhikevich_network, create_backend("cuda"))

    def test_members_are_store_references(self, izhikevich_network):
        izhikevich_network.finalize()
        store = izhikevich_network.neuron_groups
        mg = NeuronUpdateGroupMerged(3, Role.NEURON_UPDATE, store, (0,), izhikevich_network,
                                     create_backend("cuda"))
        assert mg.archetype is store[0]
        assert mg.member_indices == (0,)
        assert mg.struct_name == "MergedNeuronUpdateGroup3"


class TestSynapseStruct:
    @pytest.fixture
    def merged(self, feature_network):
        return ModelSpecMerged(feature_network, create_backend("cuda"))

    def test_delayed_source_gets_queue_pointer(self, merged):
        stim_pre = next(mg for mg in merged.presynaptic_update_groups
                        if mg.archetype.name == "StimPre")
        assert stim_pre.has_field("srcSpkQuePtr")
        assert stim_pre.get_presynaptic_axonal_delay_slot() == "((*group->srcSpkQuePtr + 1) % 4)"

    def test_dendritic_delay_fields(self, merged):
        pre_post = next(mg for mg in merged.presynaptic_update_groups
                        if mg.archetype.name == "PrePost")
        assert pre_post.has_field("denDelay")
        assert pre_post.has_field("denDelayPtr")
        assert pre_post.get_dendritic_delay_offset() == \
            "(*group->denDelayPtr * group->numTrgNeurons)"
        assert pre_post.get_dendritic_delay_offset("2") == \
            "(((*group->denDelayPtr + 2) % 4) * group->numTrgNeurons)"

    def test_event_projection_reads_presynaptic_variables(self, merged):
        post_pre = next(mg for mg in merged.presynaptic_update_groups
                        if mg.archetype.name == "PostPre")
        assert post_pre.has_field("srcSpkCntEvnt")
        assert post_pre.has_field("VPre")
        assert not post_pre.has_field("srcSpkCnt")
        assert post_pre.param_fields == {}

    def test_connectivity_init_fields(self, merged):
        conn = merged.synapse_connectivity_init_groups[0]
        assert conn.has_field("rowLength")
        assert conn.has_field("ind")
        assert not conn.has_field("rng")

    def test_sparse_init_rng(self, merged):
        rng_groups = [mg for mg in merged.synapse_sparse_init_groups if mg.has_field("rng")]
        assert [mg.archetype.name for mg in rng_groups] == ["PrePost"]

    def test_referenced_neuron_vars(self, feature_network):
        feature_network.finalize()
        post_pre = feature_network.get_synapse_group("PostPre")
        assert [v.name for v in referenced_neuron_vars(post_pre, "_pre")] == ["V"]
        assert referenced_neuron_vars(post_pre, "_post") == []

    def test_sorted_in_syn(self, feature_network):
        feature_network.finalize()
        pre = feature_network.get_neuron_group("Pre")
        assert [sg.name for sg in sorted_in_syn(pre)] == ["PostPre", "PreGap", "StimPre"]

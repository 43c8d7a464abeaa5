"""Tests for the model-wide merge of every role."""

import logging

import pytest

from spikegen.backends import BACKENDS, create_backend
from spikegen.codegen.model_merged import (
    ModelSpecMerged,
    can_merge_neuron_init,
    can_merge_neuron_spike_queue_update,
    can_merge_neuron_update,
    can_merge_synapse_connectivity_init,
    can_merge_synapse_dendritic_delay_update,
    can_merge_synapse_dense_init,
    can_merge_synapse_sparse_init,
    can_merge_weight_update,
)
from spikegen.core.types import Role
from spikegen.model.spec import ModelSpec, NeuronModel, Var, VarInit


def _names(mg):
    return [g.name for g in mg.groups]


class TestIzhikevichNetwork:
    """Two populations that differ only in parameter values."""

    @pytest.fixture
    def merged(self, izhikevich_network):
        return ModelSpecMerged(izhikevich_network, create_backend("cuda"))

    def test_finalizes_the_model(self, izhikevich_network):
        assert not izhikevich_network.is_finalized
        ModelSpecMerged(izhikevich_network, create_backend("cuda"))
        assert izhikevich_network.is_finalized

    def test_populations_merge_despite_different_parameters(self, merged):
        groups = merged.neuron_update_groups
        assert len(groups) == 1
        # Items are classified from the back of the name-ordered store
        assert _names(groups[0]) == ["Inh", "Exc"]
        assert groups[0].archetype.name == "Inh"

    def test_differing_parameters_become_fields(self, merged):
        mg = merged.neuron_update_groups[0]
        assert mg.param_fields == {"a": "group->a", "d": "group->d"}
        assert mg.has_field("a")
        assert mg.has_field("d")
        assert not mg.has_field("b")
        assert not mg.has_field("c")

    def test_projections_merge_into_one_group_per_role(self, merged):
        pre = merged.presynaptic_update_groups
        assert len(pre) == 1
        assert _names(pre[0]) == ["InhInh", "InhExc", "ExcInh", "ExcExc"]
        assert len(merged.synapse_dense_init_groups) == 1
        assert merged.synapse_dense_init_groups[0].has_field("constantg")

    def test_roles_without_work_are_empty(self, merged):
        assert merged.postsynaptic_update_groups == []
        assert merged.synapse_dynamics_groups == []
        assert merged.synapse_connectivity_init_groups == []
        assert merged.synapse_sparse_init_groups == []
        assert merged.synapse_dendritic_delay_update_groups == []

    def test_items_cover_every_role_in_order(self, merged):
        assert [role for role, _ in merged.items()] == list(Role)

    def test_struct_names(self, merged):
        assert merged.neuron_update_groups[0].struct_name == "MergedNeuronUpdateGroup0"
        assert merged.neuron_init_groups[0].struct_name == "MergedNeuronInitGroup0"

    def test_merge_is_deterministic(self, make_izhikevich_network):
        first = ModelSpecMerged(make_izhikevich_network(), create_backend("cuda"))
        second = ModelSpecMerged(make_izhikevich_network(), create_backend("cuda"))
        for (role, a), (_, b) in zip(first.items(), second.items()):
            assert [_names(mg) for mg in a] == [_names(mg) for mg in b], role
            assert [[f.name for f in mg.fields] for mg in a] == \
                [[f.name for f in mg.fields] for mg in b]

    def test_merge_logs_summary(self, izhikevich_network, caplog):
        with caplog.at_level(logging.INFO, logger="spikegen.codegen.model_merged"):
            ModelSpecMerged(izhikevich_network, create_backend("cuda"))
        assert "NeuronUpdate=1" in caplog.text


class TestStructuralDifferences:
    """Anything that changes generated code keeps entities apart."""

    def test_different_models_do_not_merge(self, templates):
        model = ModelSpec("mixed")
        model.add_neuron_population("A", 10, templates.izhikevich, templates.exc_params)
        model.add_neuron_population("B", 10, templates.lif, {"tau": 20.0})
        merged = ModelSpecMerged(model, create_backend("cuda"))
        assert len(merged.neuron_update_groups) == 2

    def test_equal_templates_merge(self, templates):
        twin = NeuronModel(name="Izhikevich", vars=(Var("V"), Var("U")),
                           param_names=("a", "b", "c", "d"),
                           sim_code=templates.izhikevich.sim_code,
                           threshold_condition_code="$(V) >= 29.99",
                           reset_code=templates.izhikevich.reset_code)
        model = ModelSpec("twins")
        model.add_neuron_population("A", 10, templates.izhikevich, templates.exc_params)
        model.add_neuron_population("B", 10, twin, templates.exc_params)
        merged = ModelSpecMerged(model, create_backend("cuda"))
        assert len(merged.neuron_update_groups) == 1

    def test_delay_splits_queue_groups(self, templates):
        model = ModelSpec("delays")
        for name in ("A", "B", "C"):
            model.add_neuron_population(name, 10, templates.izhikevich, templates.exc_params)
        model.add_synapse_population("AC", "A", "C", templates.static_pulse,
                                     templates.delta_curr, delay_steps=5)
        model.finalize()
        a, b, c = model.neuron_groups
        assert a.num_delay_slots == 6
        assert not can_merge_neuron_update(a, b)

        merged = ModelSpecMerged(model, create_backend("cuda"))
        queue = merged.neuron_spike_queue_update_groups
        assert sorted(len(mg) for mg in queue) == [1, 2]

    def test_weight_update_merge_needs_same_delay(self, templates):
        model = ModelSpec("syn")
        model.add_neuron_population("A", 10, templates.izhikevich, templates.exc_params)
        model.add_synapse_population("S1", "A", "A", templates.static_pulse,
                                     templates.delta_curr, delay_steps=1)
        model.add_synapse_population("S2", "A", "A", templates.static_pulse,
                                     templates.delta_curr, delay_steps=2)
        model.finalize()
        s1, s2 = model.synapse_groups
        assert not can_merge_weight_update(s1, s2)
        assert can_merge_weight_update(s1, s1)

    def test_initialiser_code_splits_init_groups(self, templates):
        model = ModelSpec("init")
        model.add_neuron_population("A", 10, templates.izhikevich, templates.exc_params,
                                    {"V": VarInit.constant(-65.0)})
        model.add_neuron_population("B", 10, templates.izhikevich, templates.exc_params,
                                    {"V": VarInit("$(value) = $(gennrand_uniform);")})
        merged = ModelSpecMerged(model, create_backend("cuda"))
        assert len(merged.neuron_update_groups) == 1
        assert len(merged.neuron_init_groups) == 2

    def test_initialiser_values_do_not_split(self, templates):
        model = ModelSpec("init")
        for name, v in (("A", -65.0), ("B", -70.0)):
            model.add_neuron_population(name, 10, templates.izhikevich, templates.exc_params,
                                        {"V": VarInit.constant(v)})
        merged = ModelSpecMerged(model, create_backend("cuda"))
        groups = merged.neuron_init_groups
        assert len(groups) == 1
        assert groups[0].var_init_params == {"V": {"constant": "group->constantV"}}


class TestFeatureNetwork:
    """Every role is populated by a network using events, learning and delays."""

    @pytest.fixture
    def merged(self, feature_network):
        return ModelSpecMerged(feature_network, create_backend("cuda"))

    def test_group_counts(self, merged):
        counts = {role: len(groups) for role, groups in merged.items()}
        assert counts == {
            Role.NEURON_UPDATE: 3,
            Role.PRESYNAPTIC_UPDATE: 3,
            Role.POSTSYNAPTIC_UPDATE: 1,
            Role.SYNAPSE_DYNAMICS: 1,
            Role.NEURON_INIT: 3,
            Role.SYNAPSE_DENSE_INIT: 1,
            Role.SYNAPSE_CONNECTIVITY_INIT: 1,
            Role.SYNAPSE_SPARSE_INIT: 2,
            Role.NEURON_SPIKE_QUEUE_UPDATE: 3,
            Role.SYNAPSE_DENDRITIC_DELAY_UPDATE: 1,
        }

    def test_role_membership(self, merged):
        assert _names(merged.postsynaptic_update_groups[0]) == ["PrePost"]
        assert _names(merged.synapse_dynamics_groups[0]) == ["PreGap"]
        assert _names(merged.synapse_dense_init_groups[0]) == ["PreGap", "PostPre"]
        assert _names(merged.synapse_connectivity_init_groups[0]) == ["StimPre", "PrePost"]
        assert _names(merged.synapse_dendritic_delay_update_groups[0]) == ["PrePost"]

    def test_neighbour_fields(self, merged):
        post = merged.postsynaptic_update_groups[0]
        for name in ("colStride", "colLength", "remap", "trgSpkCnt", "trgSpk", "VPost", "g"):
            assert post.has_field(name), name

    def test_support_code_is_deduplicated(self, merged):
        # Pre and Post share the LIF support code
        namespace = merged.get_neuron_update_support_code_namespace(
            merged.model.get_neuron_group("Pre").model.support_code)
        assert namespace == "NeuronUpdateSupportCode0"


def _role_rules(backend):
    """Store, filter and compatibility test of every role, stated independently."""
    return {
        Role.NEURON_UPDATE: ("neuron_groups", lambda ng: True, can_merge_neuron_update),
        Role.PRESYNAPTIC_UPDATE: (
            "synapse_groups",
            lambda sg: sg.is_true_spike_required or sg.is_spike_event_required,
            lambda a, b: can_merge_weight_update(a, b) and backend.can_merge_presynaptic_update(a, b)),
        Role.POSTSYNAPTIC_UPDATE: ("synapse_groups", lambda sg: bool(sg.wu_model.learn_post_code),
                                   can_merge_weight_update),
        Role.SYNAPSE_DYNAMICS: ("synapse_groups",
                                lambda sg: bool(sg.wu_model.synapse_dynamics_code),
                                can_merge_weight_update),
        Role.NEURON_INIT: ("neuron_groups", lambda ng: True, can_merge_neuron_init),
        Role.SYNAPSE_DENSE_INIT: ("synapse_groups",
                                  lambda sg: not sg.is_sparse and sg.is_wu_var_init_required,
                                  can_merge_synapse_dense_init),
        Role.SYNAPSE_CONNECTIVITY_INIT: ("synapse_groups",
                                         lambda sg: sg.is_sparse_connectivity_init_required,
                                         can_merge_synapse_connectivity_init),
        Role.SYNAPSE_SPARSE_INIT: ("synapse_groups", lambda sg: sg.is_sparse_init_required,
                                   can_merge_synapse_sparse_init),
        Role.NEURON_SPIKE_QUEUE_UPDATE: ("neuron_groups", lambda ng: True,
                                         can_merge_neuron_spike_queue_update),
        Role.SYNAPSE_DENDRITIC_DELAY_UPDATE: ("synapse_groups",
                                              lambda sg: sg.is_dendritic_delay_required,
                                              can_merge_synapse_dendritic_delay_update),
    }


class TestPartitionInvariants:
    """Every role's merged groups partition its filtered store into compatible classes."""

    @pytest.mark.parametrize("backend_name", sorted(BACKENDS))
    @pytest.mark.parametrize("network", ["izhikevich_network", "feature_network"])
    def test_partition_is_complete_and_compatible(self, request, network, backend_name):
        model = request.getfixturevalue(network)
        backend = create_backend(backend_name)
        merged = ModelSpecMerged(model, backend)
        rules = _role_rules(backend)
        assert [role for role, _ in merged.items()] == list(Role)

        for role, groups in merged.items():
            store_name, keep, can_merge = rules[role]
            expected = sorted(g.name for g in getattr(model, store_name) if keep(g))
            members = sorted(g.name for mg in groups for g in mg.groups)
            assert members == expected, role
            for mg in groups:
                assert len(mg) > 0, role
                for member in mg.groups:
                    assert can_merge(mg.archetype, member), (role, member.name)

    @pytest.mark.parametrize("backend_name", sorted(BACKENDS))
    def test_archetypes_of_distinct_groups_are_incompatible(self, feature_network, backend_name):
        backend = create_backend(backend_name)
        merged = ModelSpecMerged(feature_network, backend)
        rules = _role_rules(backend)
        for role, groups in merged.items():
            _, _, can_merge = rules[role]
            archetypes = [mg.archetype for mg in groups]
            for i, a in enumerate(archetypes):
                for b in archetypes[i + 1:]:
                    assert not can_merge(b, a), (role, a.name, b.name)

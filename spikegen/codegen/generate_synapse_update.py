"""Weight update handlers for the synapse update kernels."""

from __future__ import annotations

from typing import TYPE_CHECKING

from spikegen.backends.base import SynapseUpdateHandlers
from spikegen.codegen.code_gen_utils import finalise_code, gen_code_in_namespace, get_param_values
from spikegen.codegen.code_stream import CodeStream
from spikegen.codegen.group_merged import SynapseGroupMergedBase, referenced_neuron_vars
from spikegen.codegen.model_merged import ModelSpecMerged
from spikegen.codegen.substitutions import Substitutions

if TYPE_CHECKING:
    from spikegen.backends.base import BackendBase
    from spikegen.codegen.dispatch import KernelLaunch


def gen_synapse_update(os: CodeStream, backend: BackendBase,
                       model_merged: ModelSpecMerged) -> list[KernelLaunch]:
    """Emit the synapse update source and return its kernel launches."""
    return backend.gen_synapse_update(os, model_merged,
                                      create_synapse_update_handlers(model_merged))


def _wu_subs(mg: SynapseGroupMergedBase, subs: Substitutions,
             with_vars: bool = True) -> Substitutions:
    """Bind weight update params, and synapse and neuron variables, for one synapse.

    Synapse variables are indexed by ``$(id_syn)``, presynaptic neuron variables
    ``$(V_pre)`` by ``$(id_pre)`` and postsynaptic ones ``$(V_post)`` by ``$(id_post)``.
    """
    sg = mg.archetype
    wu = sg.wu_model
    wu_subs = Substitutions(subs)
    wu_subs.add_param_value_substitution(get_param_values(wu.param_names, sg.wu_params, sg.name),
                                         heterogeneous=mg.param_fields)
    id_pre = subs["id_pre"]
    for v in referenced_neuron_vars(sg, "_pre"):
        wu_subs.add_var_substitution(f"{v.name}_pre", f"group->{v.name}Pre[{id_pre}]")
    if with_vars:
        id_syn = subs["id_syn"]
        id_post = subs["id_post"]
        for v in wu.vars:
            wu_subs.add_var_substitution(v.name, f"group->{v.name}[{id_syn}]")
        for v in referenced_neuron_vars(sg, "_post"):
            wu_subs.add_var_substitution(f"{v.name}_post", f"group->{v.name}Post[{id_post}]")
    return wu_subs


def create_synapse_update_handlers(model_merged: ModelSpecMerged) -> SynapseUpdateHandlers:

    def wum_thresh(mg: SynapseGroupMergedBase, subs: Substitutions) -> str:
        # Evaluated once per presynaptic event, before any synapse is chosen
        return finalise_code(mg.archetype.wu_model.event_threshold_condition_code,
                             _wu_subs(mg, subs, with_vars=False),
                             f"{mg.archetype.name} : eventThresholdConditionCode")

    def wum_sim(os: CodeStream, mg: SynapseGroupMergedBase, subs: Substitutions) -> None:
        os.line(finalise_code(mg.archetype.wu_model.sim_code, _wu_subs(mg, subs),
                              f"{mg.archetype.name} : simCode"))

    def wum_event(os: CodeStream, mg: SynapseGroupMergedBase, subs: Substitutions) -> None:
        os.line(finalise_code(mg.archetype.wu_model.event_code, _wu_subs(mg, subs),
                              f"{mg.archetype.name} : eventCode"))

    def post_learn(os: CodeStream, mg: SynapseGroupMergedBase, subs: Substitutions) -> None:
        wu = mg.archetype.wu_model
        namespace = (model_merged.get_postsynaptic_update_support_code_namespace(
            wu.learn_post_support_code) if wu.learn_post_support_code else None)
        code = finalise_code(wu.learn_post_code, _wu_subs(mg, subs),
                             f"{mg.archetype.name} : learnPostCode")
        gen_code_in_namespace(os, code, namespace)

    def synapse_dynamics(os: CodeStream, mg: SynapseGroupMergedBase,
                         subs: Substitutions) -> None:
        sg = mg.archetype
        wu = sg.wu_model
        dynamics_subs = _wu_subs(mg, subs)
        if sg.is_dendritic_delay_required:
            # $(addToInSyn, x) becomes a zero-delay $(addToInSynDelay, x, 0)
            dynamics_subs.add_func_substitution("addToInSyn", 1, "$(addToInSynDelay, $(0), 0)")
        namespace = (model_merged.get_synapse_dynamics_support_code_namespace(
            wu.synapse_dynamics_support_code) if wu.synapse_dynamics_support_code else None)
        code = finalise_code(wu.synapse_dynamics_code, dynamics_subs,
                             f"{sg.name} : synapseDynamicsCode")
        gen_code_in_namespace(os, code, namespace)

    def presynaptic_namespace(mg: SynapseGroupMergedBase) -> str | None:
        support_code = mg.archetype.wu_model.sim_support_code
        if not support_code:
            return None
        return model_merged.get_presynaptic_update_support_code_namespace(support_code)

    return SynapseUpdateHandlers(
        wum_thresh=wum_thresh,
        wum_sim=wum_sim,
        wum_event=wum_event,
        post_learn=post_learn,
        synapse_dynamics=synapse_dynamics,
        presynaptic_namespace=presynaptic_namespace,
    )

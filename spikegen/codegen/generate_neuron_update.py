"""Neuron update handlers.

The backend owns the kernel skeleton; the handler below writes the body for one
neuron: load state into registers, gather synaptic input and injected current,
run the model equations, test for spikes and events, write state back, and
decay the postsynaptic models.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from spikegen.codegen.code_gen_utils import finalise_code, gen_code_in_namespace, get_param_values
from spikegen.codegen.code_stream import CodeStream
from spikegen.codegen.group_merged import NeuronUpdateGroupMerged
from spikegen.codegen.model_merged import ModelSpecMerged
from spikegen.codegen.substitutions import Substitutions

if TYPE_CHECKING:
    from spikegen.backends.base import BackendBase, EmitSpikeHandler, NeuronSimHandler
    from spikegen.codegen.dispatch import KernelLaunch

logger = logging.getLogger(__name__)


def gen_neuron_update(os: CodeStream, backend: BackendBase,
                      model_merged: ModelSpecMerged) -> list[KernelLaunch]:
    """Emit the neuron update source and return its kernel launches."""
    return backend.gen_neuron_update(os, model_merged, create_neuron_sim_handler(model_merged))


def create_neuron_sim_handler(model_merged: ModelSpecMerged) -> NeuronSimHandler:
    warned: set[str] = set()

    def sim_handler(os: CodeStream, mg: NeuronUpdateGroupMerged, pop_subs: Substitutions,
                    emit_true_spike: EmitSpikeHandler,
                    emit_spike_event: EmitSpikeHandler) -> None:
        model = mg.model
        ng = mg.archetype
        nm = ng.model
        lid = pop_subs["id"]

        # Neuron state into registers
        for v in nm.vars:
            os.line(f"{model.resolve_type(v.type)} l{v.name} = group->{v.name}[{lid}];")
        if ng.spike_time_required:
            offset = "readDelayOffset + " if ng.is_delay_required else ""
            os.line(f"const {model.time_precision} lsT = group->sT[{offset}{lid}];")
        os.blank()

        subs = Substitutions(pop_subs)
        subs.add_var_name_substitution([v.name for v in nm.vars], dest_prefix="l")
        subs.add_param_value_substitution(get_param_values(nm.param_names, ng.params, ng.name),
                                          heterogeneous=mg.param_fields)
        subs.add_var_substitution("Isyn", "Isyn")
        if ng.spike_time_required:
            subs.add_var_substitution("sT", "lsT")

        os.line(f"{model.precision} Isyn = 0;")
        for name, type_name, value in nm.additional_input_vars:
            os.line(f"{model.resolve_type(type_name)} {name} = {value};")
            subs.add_var_substitution(name, name)

        for i in range(len(mg.in_syn)):
            _gen_apply_input(os, model_merged, mg, subs, i)

        for i, cs in enumerate(mg.current_sources):
            os.comment(f"current source {i}")
            with os.scope():
                for v in cs.model.vars:
                    os.line(f"{model.resolve_type(v.type)} lcs{v.name} = "
                            f"group->{v.name}CS{i}[{lid}];")
                cs_subs = Substitutions(subs)
                cs_subs.add_func_substitution("injectCurrent", 1, "Isyn += $(0)")
                cs_subs.add_var_name_substitution([v.name for v in cs.model.vars],
                                                  dest_prefix="lcs")
                cs_subs.add_param_value_substitution(
                    get_param_values(cs.model.param_names, cs.params, cs.name),
                    heterogeneous=mg.cs_param_fields[i])
                os.line(finalise_code(cs.model.injection_code, cs_subs,
                                      f"{cs.name} : injectionCode"))
                for v in cs.model.vars:
                    os.line(f"group->{v.name}CS{i}[{lid}] = lcs{v.name};")

        namespace = (model_merged.get_neuron_update_support_code_namespace(nm.support_code)
                     if nm.support_code else None)

        threshold = ""
        if nm.threshold_condition_code:
            os.comment("test whether spike condition was fulfilled previously")
            threshold = finalise_code(nm.threshold_condition_code, subs,
                                      f"{ng.name} : thresholdConditionCode")
            if nm.auto_refractory_required:
                os.line(f"const bool oldSpike = ({threshold});")
        elif nm.name not in warned:
            warned.add(nm.name)
            logger.warning("Neuron model '%s' used by '%s' has no threshold condition; "
                           "it will never spike", nm.name, ng.name)

        os.comment("calculate membrane potential")
        gen_code_in_namespace(os, finalise_code(nm.sim_code, subs, f"{ng.name} : simCode"),
                              namespace)

        if ng.is_spike_event_required:
            _gen_spike_event_test(os, model_merged, mg, subs)
            os.comment("register a spike-like event")
            with os.block("if (spikeLikeEvent)"):
                emit_spike_event(os, mg, subs)

        if threshold:
            os.comment("test for and register a true spike")
            condition = (f"({threshold}) && !(oldSpike)" if nm.auto_refractory_required
                         else threshold)
            with os.block(f"if ({condition})"):
                emit_true_spike(os, mg, subs)
                if nm.reset_code:
                    os.comment("spike reset code")
                    gen_code_in_namespace(
                        os, finalise_code(nm.reset_code, subs, f"{ng.name} : resetCode"),
                        namespace)

        # Neuron state back to global memory
        for v in nm.vars:
            os.line(f"group->{v.name}[{lid}] = l{v.name};")

        for i in range(len(mg.in_syn)):
            _gen_decay(os, model_merged, mg, subs, i)

    return sim_handler


def _in_syn_subs(mg: NeuronUpdateGroupMerged, subs: Substitutions, i: int) -> Substitutions:
    sg = mg.in_syn[i]
    ps = sg.ps_model
    in_syn_subs = Substitutions(subs)
    in_syn_subs.add_var_substitution("inSyn", f"linSyn{i}")
    in_syn_subs.add_var_name_substitution([v.name for v in ps.vars], dest_prefix="lps",
                                          dest_suffix=str(i))
    in_syn_subs.add_param_value_substitution(
        get_param_values(ps.param_names, sg.ps_params, sg.name),
        heterogeneous=mg.in_syn_param_fields[i])
    return in_syn_subs


def _ps_namespace(model_merged: ModelSpecMerged, support_code: str) -> str | None:
    if not support_code:
        return None
    return model_merged.get_postsynaptic_dynamics_support_code_namespace(support_code)


def _gen_apply_input(os: CodeStream, model_merged: ModelSpecMerged,
                     mg: NeuronUpdateGroupMerged, subs: Substitutions, i: int) -> None:
    sg = mg.in_syn[i]
    ps = sg.ps_model
    model = mg.model
    lid = subs["id"]

    os.comment("pull inSyn values in a coalesced access")
    os.line(f"{model.precision} linSyn{i} = group->inSynInSyn{i}[{lid}];")
    if sg.is_dendritic_delay_required:
        os.line(f"const unsigned int denDelayIdx{i} = "
                f"(*group->denDelayPtrInSyn{i} * group->numNeurons) + {lid};")
        os.line(f"linSyn{i} += group->denDelayInSyn{i}[denDelayIdx{i}];")
        os.line(f"group->denDelayInSyn{i}[denDelayIdx{i}] = {model.scalar_expr(0.0)};")
    for v in ps.vars:
        os.line(f"{model.resolve_type(v.type)} lps{v.name}{i} = "
                f"group->{v.name}InSyn{i}[{lid}];")

    code = finalise_code(ps.apply_input_code, _in_syn_subs(mg, subs, i),
                         f"{sg.name} : applyInputCode")
    gen_code_in_namespace(os, code, _ps_namespace(model_merged, ps.support_code))


def _gen_decay(os: CodeStream, model_merged: ModelSpecMerged,
               mg: NeuronUpdateGroupMerged, subs: Substitutions, i: int) -> None:
    sg = mg.in_syn[i]
    ps = sg.ps_model
    lid = subs["id"]

    os.comment("the post-synaptic dynamics")
    code = finalise_code(ps.decay_code, _in_syn_subs(mg, subs, i), f"{sg.name} : decayCode")
    gen_code_in_namespace(os, code, _ps_namespace(model_merged, ps.support_code))
    os.line(f"group->inSynInSyn{i}[{lid}] = linSyn{i};")
    for v in ps.vars:
        os.line(f"group->{v.name}InSyn{i}[{lid}] = lps{v.name}{i};")


def _gen_spike_event_test(os: CodeStream, model_merged: ModelSpecMerged,
                          mg: NeuronUpdateGroupMerged, subs: Substitutions) -> None:
    """OR together the event threshold of every outgoing projection that needs one."""
    ng = mg.archetype
    os.line("bool spikeLikeEvent = false;")
    for j, sg in enumerate(ng.spike_event_conditions):
        wu = sg.wu_model
        event_subs = Substitutions(subs)
        event_subs.add_var_name_substitution([v.name for v in ng.model.vars], dest_prefix="l",
                                             source_suffix="_pre")
        event_subs.add_param_value_substitution(
            get_param_values(wu.param_names, sg.wu_params, sg.name),
            heterogeneous=mg.event_threshold_param_fields[j])
        code = finalise_code(wu.event_threshold_condition_code, event_subs,
                             f"{ng.name} : eventThresholdConditionCode")
        namespace = (model_merged.get_presynaptic_update_support_code_namespace(
            wu.sim_support_code) if wu.sim_support_code else None)
        gen_code_in_namespace(os, f"spikeLikeEvent |= ({code});", namespace)

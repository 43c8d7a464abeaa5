"""Initialisation handlers: variable initialiser snippets and sparse row building."""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING

from spikegen.backends.base import InitHandlers
from spikegen.codegen.code_gen_utils import CodeGenerationError, finalise_code
from spikegen.codegen.code_stream import CodeStream
from spikegen.codegen.group_merged import NeuronInitGroupMerged, SynapseGroupMergedBase
from spikegen.codegen.model_merged import ModelSpecMerged
from spikegen.codegen.substitutions import Substitutions
from spikegen.model.spec import VarInit

if TYPE_CHECKING:
    from spikegen.backends.base import BackendBase
    from spikegen.codegen.dispatch import KernelLaunch


def gen_init(os: CodeStream, backend: BackendBase,
             model_merged: ModelSpecMerged) -> list[KernelLaunch]:
    """Emit the initialisation source and return its kernel launches."""
    return backend.gen_init(os, model_merged, create_init_handlers())


def gen_var_init(os: CodeStream, init: VarInit, target: str,
                 heterogeneous: Mapping[str, str], subs: Substitutions, context: str) -> None:
    """Run one initialiser snippet with ``$(value)`` bound to ``target``."""
    with os.scope():
        var_subs = Substitutions(subs)
        var_subs.add_var_substitution("value", target)
        var_subs.add_param_value_substitution(init.params, heterogeneous=heterogeneous)
        os.line(finalise_code(init.code, var_subs, context))


def _neuron_init(os: CodeStream, mg: NeuronInitGroupMerged, subs: Substitutions) -> None:
    ng = mg.archetype
    lid = subs["id"]
    zero = mg.model.scalar_expr(0.0)

    for name, params in mg.var_init_params.items():
        gen_var_init(os, ng.get_var_initialiser(name), f"group->{name}[{lid}]", params, subs,
                     f"{ng.name} : {name} initialiser")

    for i, sg in enumerate(mg.in_syn):
        os.line(f"group->inSynInSyn{i}[{lid}] = {zero};")
        if sg.is_dendritic_delay_required:
            with os.block(f"for (unsigned int d = 0; d < {sg.max_dendritic_delay_timesteps}; d++)"):
                os.line(f"group->denDelayInSyn{i}[(d * group->numNeurons) + {lid}] = {zero};")
        for name, params in mg.in_syn_var_init_params[i].items():
            gen_var_init(os, sg.get_ps_var_initialiser(name), f"group->{name}InSyn{i}[{lid}]",
                         params, subs, f"{sg.name} : {name} initialiser")

    for i, cs in enumerate(mg.current_sources):
        for name, params in mg.cs_var_init_params[i].items():
            gen_var_init(os, cs.get_var_initialiser(name), f"group->{name}CS{i}[{lid}]",
                         params, subs, f"{cs.name} : {name} initialiser")


def _synapse_var_init(os: CodeStream, mg: SynapseGroupMergedBase, subs: Substitutions) -> None:
    sg = mg.archetype
    id_syn = subs["id_syn"]
    for name, params in mg.var_init_params.items():
        gen_var_init(os, sg.get_wu_var_initialiser(name), f"group->{name}[{id_syn}]", params,
                     subs, f"{sg.name} : {name} initialiser")


def _connectivity_init(os: CodeStream, mg: SynapseGroupMergedBase, subs: Substitutions) -> None:
    sg = mg.archetype
    conn = sg.connectivity_initialiser
    if conn is None:
        raise CodeGenerationError(f"'{sg.name}' has no connectivity initialiser")

    row_subs = Substitutions(subs)
    row_subs.add_var_substitution("num_pre", "group->numSrcNeurons")
    row_subs.add_var_substitution("num_post", "group->numTrgNeurons")
    row_subs.add_param_value_substitution(conn.params,
                                          heterogeneous=mg.connectivity_param_fields)
    code = finalise_code(conn.row_build_code, row_subs, f"{sg.name} : rowBuildCode")
    os.comment("build sparse connectivity")
    with os.block("while(true)"):
        os.line(code)


def create_init_handlers() -> InitHandlers:
    return InitHandlers(
        neuron_init=_neuron_init,
        synapse_dense_init=_synapse_var_init,
        synapse_connectivity_init=_connectivity_init,
        synapse_sparse_init=_synapse_var_init,
    )

"""SpikeGen code generation — merging, binding and dispatch shared by every backend.

Usage:
    from spikegen.codegen import ModelSpecMerged
    from spikegen.codegen.generate_all import generate_all

    model_merged = ModelSpecMerged(model, backend)
    files, report = generate_all(model, backend, model_merged=model_merged)
"""

from spikegen.codegen.code_stream import CodeStream
from spikegen.codegen.dispatch import GenerationReport, GroupIdRange, IdRange, KernelLaunch
from spikegen.codegen.merge import create_merged_groups, merge_groups
from spikegen.codegen.model_merged import ModelSpecMerged
from spikegen.codegen.substitutions import Substitutions, UnresolvedNameError
from spikegen.codegen.support_code import SupportCodeError, SupportCodeMerged

__all__ = [
    "CodeStream",
    "GenerationReport",
    "GroupIdRange",
    "IdRange",
    "KernelLaunch",
    "ModelSpecMerged",
    "Substitutions",
    "SupportCodeError",
    "SupportCodeMerged",
    "UnresolvedNameError",
    "create_merged_groups",
    "merge_groups",
]

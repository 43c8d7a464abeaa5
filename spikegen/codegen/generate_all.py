"""Drive a backend over a whole model and collect the generated sources.

Usage:
    from spikegen.backends import create_backend
    from spikegen.codegen.generate_all import generate_all

    files, report = generate_all(model, create_backend("cuda"), output_dir="generated_code")
"""

from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path

from spikegen.backends.base import BackendBase
from spikegen.codegen.code_stream import CodeStream
from spikegen.codegen.dispatch import GenerationReport
from spikegen.codegen.generate_init import gen_init
from spikegen.codegen.generate_neuron_update import gen_neuron_update
from spikegen.codegen.generate_synapse_update import gen_synapse_update
from spikegen.codegen.model_merged import ModelSpecMerged
from spikegen.core.config import get_config
from spikegen.model.spec import ModelSpec

logger = logging.getLogger(__name__)

SUPPORT_CODE_HEADER = "supportCode.h"


def gen_support_code(os: CodeStream, model_merged: ModelSpecMerged) -> None:
    """Every deduplicated support code namespace, in one header."""
    os.line("#pragma once")
    os.blank()
    os.comment("neuron update")
    model_merged.gen_neuron_update_support_code(os)
    os.comment("postsynaptic dynamics")
    model_merged.gen_postsynaptic_dynamics_support_code(os)
    os.comment("presynaptic update")
    model_merged.gen_presynaptic_update_support_code(os)
    os.comment("postsynaptic update")
    model_merged.gen_postsynaptic_update_support_code(os)
    os.comment("synapse dynamics")
    model_merged.gen_synapse_dynamics_support_code(os)


def generate_all(
    model: ModelSpec,
    backend: BackendBase,
    output_dir: str | Path | None = None,
    model_merged: ModelSpecMerged | None = None,
) -> tuple[dict[str, str], GenerationReport]:
    """Generate every source file for ``model``.

    Returns ``{filename: text}`` and the report of every kernel launch. When
    ``output_dir`` is given the files are also written there. Output depends
    only on the model and backend, so repeated runs are byte-identical.
    """
    model_merged = model_merged or ModelSpecMerged(model, backend)
    report = GenerationReport(backend.name)
    files: dict[str, str] = {}

    for stem, generate in (("neuronUpdate", gen_neuron_update),
                           ("synapseUpdate", gen_synapse_update),
                           ("init", gen_init)):
        os = CodeStream()
        for launch in generate(os, backend, model_merged):
            report.add(launch)
        files[stem + backend.source_extension] = os.getvalue()

    os = CodeStream()
    gen_support_code(os, model_merged)
    files[SUPPORT_CODE_HEADER] = os.getvalue()

    logger.info("Generated %d files for model '%s' with the %s backend (%d kernels)",
                len(files), model.name, backend.name, len(report.launches))

    if output_dir is not None:
        write_files(files, output_dir)
    return files, report


def write_files(files: dict[str, str], output_dir: str | Path | None = None) -> Path:
    """Write ``files`` into ``output_dir``, or the configured output directory if it is None."""
    config = get_config()
    if output_dir is not None:
        config = replace(config, output_dir=Path(output_dir))
    config.ensure_dirs()
    path = config.output_dir
    for name in sorted(files):
        # newline="" keeps "\n" on every platform
        with open(path / name, "w", encoding="utf-8", newline="") as f:
            f.write(files[name])
        logger.debug("Wrote %s", path / name)
    logger.info("Wrote %d files to %s", len(files), path)
    return path

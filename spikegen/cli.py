"""SpikeGen CLI — kernel code generator for spiking neural network models.

Usage:
    spikegen validate <model.json>
    spikegen merge <model.json> [--backend <name>] [--output <summary.json>]
    spikegen generate <model.json> [--backend <name>] [--output-dir <dir>] [--report <report.json>]
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from spikegen.core.config import get_config
from spikegen.core.types import SpikeGenError

__version__ = "0.1.0"

console = Console()
err_console = Console(stderr=True)


def create_parser() -> argparse.ArgumentParser:
    config = get_config()
    parser = argparse.ArgumentParser(
        prog="spikegen",
        description="SpikeGen: kernel code generator for spiking neural network models",
        epilog="Describe the network once. Generate CUDA, OpenCL or CPU code from it.",
    )
    parser.add_argument("--version", action="version", version=f"spikegen {__version__}")
    parser.add_argument(
        "--log-level",
        type=str,
        default=config.log_level,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # --- validate ---
    validate_parser = subparsers.add_parser("validate", help="Check a model description")
    validate_parser.add_argument("model_file", type=str, help="Path to model JSON")

    # --- merge ---
    merge_parser = subparsers.add_parser(
        "merge", help="Show how populations and projections are merged for a backend"
    )
    merge_parser.add_argument("model_file", type=str, help="Path to model JSON")
    merge_parser.add_argument(
        "--backend", "-b", type=str, default=config.default_backend, help="Target backend"
    )
    merge_parser.add_argument(
        "--output", "-o", type=str, default=None, help="Write the merge summary as JSON"
    )

    # --- generate ---
    generate_parser = subparsers.add_parser("generate", help="Generate kernel source code")
    generate_parser.add_argument("model_file", type=str, help="Path to model JSON")
    generate_parser.add_argument(
        "--backend", "-b", type=str, default=config.default_backend, help="Target backend"
    )
    generate_parser.add_argument(
        "--output-dir", "-o", type=str, default=str(config.output_dir),
        help="Directory for generated sources",
    )
    generate_parser.add_argument(
        "--report", type=str, default=None,
        help="Write merged groups and kernel launches as JSON",
    )

    return parser


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _load_and_validate(model_file: str):
    """Load a model and report validation problems. Returns None on errors."""
    from spikegen.model.loader import load_model
    from spikegen.model.validator import validate_model

    model = load_model(model_file)
    errors = validate_model(model)
    for e in errors:
        if e.is_error:
            err_console.print(f"  [red]{escape(str(e))}[/red]", highlight=False)
        else:
            console.print(f"  [yellow]{escape(str(e))}[/yellow]", highlight=False)
    if any(e.is_error for e in errors):
        return None
    model.finalize()
    return model


def cmd_validate(args: argparse.Namespace) -> int:
    """Check a model description without generating code."""
    model = _load_and_validate(args.model_file)
    if model is None:
        return 1

    console.print(
        f"Model '{model.name}' is valid: {len(model.neuron_groups)} neuron groups, "
        f"{len(model.synapse_groups)} synapse groups, "
        f"{len(model.current_sources)} current sources",
        highlight=False,
    )
    return 0


def cmd_merge(args: argparse.Namespace) -> int:
    """Print the merged groups of every role and the launch geometry of every kernel."""
    from spikegen.backends import create_backend
    from spikegen.codegen.generate_all import generate_all
    from spikegen.codegen.model_merged import ModelSpecMerged
    from spikegen.codegen.serializer import serialize_merged_to_json

    model = _load_and_validate(args.model_file)
    if model is None:
        return 1

    backend = create_backend(args.backend)
    model_merged = ModelSpecMerged(model, backend)
    _, report = generate_all(model, backend, model_merged=model_merged)

    groups_table = Table(title=f"Merged groups ({backend.name})")
    groups_table.add_column("Role")
    groups_table.add_column("#", justify="right")
    groups_table.add_column("Members")
    groups_table.add_column("Fields", justify="right")
    for role, merged_groups in model_merged.items():
        for mg in merged_groups:
            groups_table.add_row(role.value, str(mg.index),
                                 ", ".join(g.name for g in mg.groups), str(len(mg.fields)))
    console.print(groups_table)

    launch_table = Table(title="Kernel launches")
    launch_table.add_column("Kernel")
    launch_table.add_column("Groups", justify="right")
    launch_table.add_column("IDs", justify="right")
    launch_table.add_column("Width", justify="right")
    launch_table.add_column("Block", justify="right")
    for launch in report.launches:
        launch_table.add_row(launch.kernel, str(len(launch.ranges)), str(launch.total),
                             str(launch.width), str(launch.block_size))
    console.print(launch_table)

    if args.output:
        Path(args.output).write_text(serialize_merged_to_json(model_merged, report),
                                     encoding="utf-8")
        console.print(f"Merge summary written to: {args.output}", highlight=False)
    return 0


def cmd_generate(args: argparse.Namespace) -> int:
    """Generate every source file for a model into the output directory."""
    from spikegen.backends import create_backend
    from spikegen.codegen.generate_all import generate_all
    from spikegen.codegen.model_merged import ModelSpecMerged
    from spikegen.codegen.serializer import serialize_merged_to_json

    model = _load_and_validate(args.model_file)
    if model is None:
        return 1

    backend = create_backend(args.backend)
    model_merged = ModelSpecMerged(model, backend)
    files, report = generate_all(model, backend, output_dir=args.output_dir,
                                 model_merged=model_merged)

    console.print(f"Generated '{model.name}' for {backend.name}:", highlight=False)
    for name in sorted(files):
        console.print(f"  {Path(args.output_dir) / name}", highlight=False)

    if args.report:
        Path(args.report).write_text(serialize_merged_to_json(model_merged, report),
                                     encoding="utf-8")
        console.print(f"Report written to: {args.report}", highlight=False)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    setup_logging(args.log_level)

    dispatch = {
        "validate": cmd_validate,
        "merge": cmd_merge,
        "generate": cmd_generate,
    }

    try:
        return dispatch[args.command](args)
    except (SpikeGenError, ValueError) as exc:
        err_console.print(f"Error: {exc}", highlight=False, markup=False)
        return 1


if __name__ == "__main__":
    sys.exit(main())

"""Helpers shared by the code generation handlers."""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from spikegen.codegen.code_stream import CodeStream
from spikegen.codegen.substitutions import (
    Substitutions,
    check_unreplaced_variables,
    ensure_ftype,
)
from spikegen.core.types import SpikeGenError


class CodeGenerationError(SpikeGenError):
    """Raised when an entity cannot be turned into code."""


def get_param_values(names: Iterable[str], values: Mapping[str, float],
                     owner: str) -> dict[str, float]:
    """Values of ``names`` in declaration order.

    Raises:
        CodeGenerationError: if ``owner`` gives no value for one of them.
    """
    result: dict[str, float] = {}
    for name in names:
        try:
            result[name] = values[name]
        except KeyError:
            raise CodeGenerationError(
                f"'{owner}' has no value for parameter '{name}'") from None
    return result


def finalise_code(code: str, subs: Substitutions, context: str) -> str:
    """Substitute, fix literal precision and fail on anything left unbound."""
    code = ensure_ftype(subs.apply(code), subs.precision)
    check_unreplaced_variables(code, context)
    return code


def gen_code_in_namespace(os: CodeStream, code: str, namespace: str | None) -> None:
    """Emit ``code``, inside its own scope with ``namespace`` open if given."""
    if namespace:
        with os.scope():
            os.line(f"using namespace {namespace};")
            os.line(code)
    else:
        os.line(code)

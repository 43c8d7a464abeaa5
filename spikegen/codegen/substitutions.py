"""Binding chain used to thread names through nested handlers.

A ``Substitutions`` instance maps ``$(name)`` tokens to target expressions and
``$(func, a, b)`` calls to function templates. Each instance may have a parent;
lookups and ``apply`` search from the child towards the root, so a child can
override a name locally without touching its parent.

    kernel = Substitutions(precision="float")
    kernel.add_var_substitution("t", "t")
    pop = Substitutions(kernel)
    pop.add_var_substitution("id", "lid")
    pop.apply("$(V) += $(t) * $(id);")
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass

from spikegen.core.types import SpikeGenError

_TOKEN_RE = re.compile(r"\$\(\s*([A-Za-z_]\w*)")
_FLOAT_RE = re.compile(
    r"(?<![\w.])((?:\d+\.\d*|\.\d+)(?:[eE][+-]?\d+)?|\d+[eE][+-]?\d+)(?![\w.])"
)
_FLOAT_SUFFIX_RE = re.compile(
    r"(?<![\w.])((?:\d+\.\d*|\.\d+)(?:[eE][+-]?\d+)?|\d+[eE][+-]?\d+)[fF](?![\w.])"
)


class UnresolvedNameError(SpikeGenError):
    """Raised when a name has no binding anywhere in the substitution chain."""

    def __init__(self, name: str, context: str = "") -> None:
        self.name = name
        self.context = context
        where = f" in {context}" if context else ""
        super().__init__(f"Unresolved name '$({name})'{where}")


@dataclass(frozen=True)
class FunctionTemplate:
    """A ``$(name, arg0, ...)`` call rewritten to ``template``.

    Arguments are referenced in the template as ``$(0)``, ``$(1)`` ...
    Templates with no arguments are written ``$(name)`` in code.
    """

    name: str
    num_args: int
    template: str


class Substitutions:
    """One link of the binding chain."""

    def __init__(
        self,
        parent: Substitutions | None = None,
        functions: Iterable[FunctionTemplate] = (),
        precision: str | None = None,
        context: str = "",
    ) -> None:
        self._parent = parent
        self._vars: dict[str, str] = {}
        self._funcs: dict[str, FunctionTemplate] = {f.name: f for f in functions}
        self._precision = precision or (parent.precision if parent else "float")
        self._context = context or (parent.context if parent else "")

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def parent(self) -> Substitutions | None:
        return self._parent

    @property
    def precision(self) -> str:
        return self._precision

    @property
    def context(self) -> str:
        return self._context

    # ------------------------------------------------------------------
    # Binding
    # ------------------------------------------------------------------

    def add_var_substitution(self, name: str, value: str, allow_override: bool = False) -> None:
        """Bind ``$(name)`` at this level.

        Re-binding a name already bound at this same level is an error unless
        ``allow_override`` is set; shadowing a parent's binding is always allowed.
        """
        if name in self._vars and not allow_override:
            raise ValueError(f"'{name}' already has a substitution at this level")
        self._vars[name] = value

    def add_func_substitution(self, name: str, num_args: int, template: str,
                              allow_override: bool = False) -> None:
        if name in self._funcs and not allow_override:
            raise ValueError(f"Function '{name}' already has a substitution at this level")
        self._funcs[name] = FunctionTemplate(name, num_args, template)

    def add_var_name_substitution(
        self,
        names: Iterable[str],
        dest_prefix: str = "",
        dest_suffix: str = "",
        source_suffix: str = "",
    ) -> None:
        """Bind ``$(<name><source_suffix>)`` to ``<dest_prefix><name><dest_suffix>``."""
        for name in names:
            self.add_var_substitution(name + source_suffix, dest_prefix + name + dest_suffix)

    def add_param_value_substitution(
        self,
        values: Mapping[str, float],
        source_suffix: str = "",
        heterogeneous: Mapping[str, str] | None = None,
    ) -> None:
        """Bind parameters either to literals or, where listed, to runtime fields."""
        heterogeneous = heterogeneous or {}
        for name, value in values.items():
            if name in heterogeneous:
                self.add_var_substitution(name + source_suffix, heterogeneous[name])
            else:
                self.add_var_substitution(name + source_suffix, format_literal(value))

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def has_var_substitution(self, name: str) -> bool:
        return any(name in level._vars for level in self._chain())

    def get_var_substitution(self, name: str) -> str:
        for level in self._chain():
            if name in level._vars:
                return level._vars[name]
        raise UnresolvedNameError(name, self._context)

    def __getitem__(self, name: str) -> str:
        return self.get_var_substitution(name)

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------

    def apply(self, code: str) -> str:
        """Rewrite every bound token in ``code``, child bindings first.

        Functions are expanded across the whole chain before any names, so a
        template may refer to names bound further down the chain.
        """
        for level in self._chain():
            for func in level._funcs.values():
                code = _apply_function(code, func)
        for level in self._chain():
            for name, value in level._vars.items():
                code = code.replace(f"$({name})", value)
        return code

    def _chain(self) -> Iterator[Substitutions]:
        level: Substitutions | None = self
        while level is not None:
            yield level
            level = level._parent


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def format_literal(value: float) -> str:
    """Format a parameter value so it can be pasted into any expression."""
    if isinstance(value, bool):
        return "true" if value else "false"
    text = repr(float(value))
    return f"({text})" if text.startswith("-") else text


def check_unreplaced_variables(code: str, context: str) -> None:
    """Fail on the first ``$(...)`` token left after substitution."""
    match = _TOKEN_RE.search(code)
    if match is not None:
        raise UnresolvedNameError(match.group(1), context)


def ensure_ftype(code: str, precision: str) -> str:
    """Make floating point literals match ``precision``.

    In single precision every literal gains an ``f`` suffix, in double
    precision existing suffixes are stripped.
    """
    if precision == "float":
        return _FLOAT_RE.sub(lambda m: m.group(1) + "f", code)
    return _FLOAT_SUFFIX_RE.sub(lambda m: m.group(1), code)


def _apply_function(code: str, func: FunctionTemplate) -> str:
    """Expand every call of ``func`` in ``code``."""
    if func.num_args == 0:
        return code.replace(f"$({func.name})", func.template)

    opener = f"$({func.name},"
    result: list[str] = []
    pos = 0
    while True:
        start = code.find(opener, pos)
        if start < 0:
            result.append(code[pos:])
            break
        args, end = _split_args(code, start + len(opener))
        if len(args) != func.num_args:
            raise ValueError(
                f"Function '{func.name}' expects {func.num_args} arguments, got {len(args)}"
            )
        expansion = func.template
        for i, arg in enumerate(args):
            expansion = expansion.replace(f"$({i})", arg)
        result.append(code[pos:start])
        result.append(expansion)
        pos = end
    return "".join(result)


def _split_args(code: str, pos: int) -> tuple[list[str], int]:
    """Split comma separated arguments up to the matching ``)``.

    Returns the stripped arguments and the index just past the ``)``.
    """
    depth = 0
    args: list[str] = []
    current: list[str] = []
    for i in range(pos, len(code)):
        ch = code[i]
        if ch == "(":
            depth += 1
        elif ch == ")":
            if depth == 0:
                args.append("".join(current).strip())
                return args, i + 1
            depth -= 1
        elif ch == "," and depth == 0:
            args.append("".join(current).strip())
            current = []
            continue
        current.append(ch)
    raise ValueError(f"Unterminated function call in code: {code[pos:pos + 40]!r}")

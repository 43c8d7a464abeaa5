"""Deduplication of user-supplied support code.

Many populations carry identical helper functions. Each distinct fragment is
emitted once, wrapped in its own namespace, and code that needs it opens
``using namespace <name>;``.
"""

from __future__ import annotations

import logging

from spikegen.codegen.code_stream import CodeStream
from spikegen.codegen.substitutions import ensure_ftype
from spikegen.core.types import SpikeGenError

logger = logging.getLogger(__name__)


class SupportCodeError(SpikeGenError):
    """Raised when a namespace is requested for a fragment never registered."""


class SupportCodeMerged:
    """Unique support code fragments, keyed by their exact text.

    Namespaces are ``<prefix><n>`` where ``n`` is the fragment's
    first-encounter position.
    """

    def __init__(self, namespace_prefix: str) -> None:
        self._prefix = namespace_prefix
        self._fragments: dict[str, str] = {}

    def add_support_code(self, code: str) -> None:
        """Register ``code``; repeated or empty fragments are ignored."""
        if code and code not in self._fragments:
            namespace = f"{self._prefix}{len(self._fragments)}"
            self._fragments[code] = namespace
            logger.debug("Registered support code namespace %s", namespace)

    def gen(self, os: CodeStream, precision: str) -> None:
        """Emit every fragment in first-encounter order."""
        for code, namespace in self._fragments.items():
            with os.block(f"namespace {namespace}", trailer=f"  // namespace {namespace}"):
                os.line(ensure_ftype(code, precision))
            os.blank()

    def get_support_code_namespace(self, code: str) -> str:
        try:
            return self._fragments[code]
        except KeyError:
            raise SupportCodeError(
                f"Support code was never registered with '{self._prefix}': {code[:60]!r}"
            ) from None

    def __contains__(self, code: str) -> bool:
        return code in self._fragments

    def __len__(self) -> int:
        return len(self._fragments)

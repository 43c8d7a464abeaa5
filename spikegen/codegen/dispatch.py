"""Thread-ID range partitioning and launch geometry.

Every parallel kernel runs one flat range of thread IDs. Each merged group
owns a contiguous slice of that range, and inside a slice each member owns a
sub-slice padded to the backend's granularity, so one block never straddles
two members.

    ranges = partition_id_ranges(groups, backend.get_num_threads_for, 32)
    width = launch_width(ranges[-1].range.end, 32)
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import asdict, dataclass, field
from typing import Any


def ceil_divide(numerator: int, denominator: int) -> int:
    return (numerator + denominator - 1) // denominator


def pad_size(size: int, block_size: int) -> int:
    """Round ``size`` up to a multiple of ``block_size``."""
    if block_size <= 0:
        raise ValueError(f"Block size must be positive, got {block_size}")
    return ceil_divide(size, block_size) * block_size


@dataclass(frozen=True)
class IdRange:
    """Half-open range ``[start, end)`` of thread IDs."""

    start: int
    end: int

    @property
    def size(self) -> int:
        return self.end - self.start

    def __contains__(self, thread_id: int) -> bool:
        return self.start <= thread_id < self.end


@dataclass(frozen=True)
class GroupIdRange:
    """The slice of a kernel's ID space owned by one merged group.

    ``member_starts[i]`` is the first ID of member ``i`` within the kernel.
    """

    merged_index: int
    range: IdRange
    member_starts: tuple[int, ...]
    prefix: str = ""

    def member_for_id(self, thread_id: int) -> int:
        """Position of the member whose sub-slice contains ``thread_id``.

        Host-side reference model of the upper-bound search that SIMT kernels
        run over ``member_starts`` (their start-ID table): the member is
        ``lo - 1``. Members of size zero own no IDs, so a shared start resolves
        to the last member holding it.
        """
        if thread_id not in self.range:
            raise ValueError(f"Thread {thread_id} is outside {self.range}")
        lo, hi = 0, len(self.member_starts)
        while lo < hi:
            mid = (lo + hi) // 2
            if thread_id < self.member_starts[mid]:
                hi = mid
            else:
                lo = mid + 1
        return lo - 1


def partition_id_ranges(
    merged_groups: Sequence[Any],
    get_num_threads: Callable[[Any], int],
    granularity: int,
    id_start: int = 0,
) -> list[GroupIdRange]:
    """Assign contiguous, non-overlapping ID ranges to ``merged_groups`` in order.

    ``get_num_threads(entity)`` gives the unpadded work of one member.
    """
    result: list[GroupIdRange] = []
    cursor = id_start
    for mg in merged_groups:
        start = cursor
        member_starts: list[int] = []
        for g in mg.groups:
            member_starts.append(cursor)
            cursor += pad_size(get_num_threads(g), granularity)
        result.append(GroupIdRange(mg.index, IdRange(start, cursor), tuple(member_starts),
                                   getattr(mg, "prefix", "")))
    return result


def launch_width(total: int, block_size: int) -> int:
    """Launch-level padding of a kernel's concatenated ID total."""
    return pad_size(total, block_size)


@dataclass(frozen=True)
class KernelLaunch:
    """Geometry of one emitted kernel."""

    kernel: str
    ranges: tuple[GroupIdRange, ...]
    total: int
    width: int
    block_size: int

    @property
    def num_blocks(self) -> int:
        return ceil_divide(self.width, self.block_size) if self.width else 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class GenerationReport:
    """Every kernel launch emitted during one generation run."""

    backend: str
    launches: list[KernelLaunch] = field(default_factory=list)

    def add(self, launch: KernelLaunch) -> None:
        self.launches.append(launch)

    def get(self, kernel: str) -> KernelLaunch | None:
        for launch in self.launches:
            if launch.kernel == kernel:
                return launch
        return None

    def to_dict(self) -> dict[str, Any]:
        return {"backend": self.backend, "launches": [launch.to_dict() for launch in self.launches]}

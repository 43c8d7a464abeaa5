"""CUDA backend.

Merged structs live in ``__device__ __constant__`` arrays filled with
``cudaMemcpyToSymbol``, so kernels take no pointer arguments.
"""

from __future__ import annotations

from collections.abc import Sequence

from spikegen.backends.base import Kernel
from spikegen.backends.simt import SIMTBackend
from spikegen.codegen.code_stream import CodeStream
from spikegen.codegen.dispatch import KernelLaunch
from spikegen.codegen.group_merged import GroupMerged
from spikegen.codegen.substitutions import FunctionTemplate
from spikegen.model.spec import ModelSpec


class CUDABackend(SIMTBackend):
    """NVIDIA GPUs through the CUDA runtime API."""

    name = "cuda"
    var_prefix = "d_"
    rng_type = "curandState"
    source_extension = ".cu"

    shared_prefix = "__shared__"
    constant_prefix = "__device__ __constant__"

    def get_functions(self, precision: str) -> Sequence[FunctionTemplate]:
        suffix = "_double" if precision == "double" else ""
        return (
            FunctionTemplate("gennrand_uniform", 0, f"curand_uniform{suffix}($(rng))"),
            FunctionTemplate("gennrand_normal", 0, f"curand_normal{suffix}($(rng))"),
            FunctionTemplate("gennrand_exponential", 0,
                             f"(-log(curand_uniform{suffix}($(rng))))"),
            FunctionTemplate("gennrand_log_normal", 2,
                             f"curand_log_normal{suffix}($(rng), $(0), $(1))"),
        )

    # ------------------------------------------------------------------
    # Syntax
    # ------------------------------------------------------------------

    def gen_kernel_header(self, kernel: Kernel, params: list[str]) -> str:
        return f'extern "C" __global__ void {kernel.value}({", ".join(params)})'

    def get_kernel_merged_params(self, merged_groups: Sequence[GroupMerged]) -> list[str]:
        return []

    def gen_thread_ids(self, os: CodeStream, kernel: Kernel) -> None:
        block_size = self.get_kernel_block_size(kernel)
        os.line(f"const unsigned int id = {block_size} * blockIdx.x + threadIdx.x;")
        os.line("const unsigned int localId = threadIdx.x;")

    def gen_shared_barrier(self, os: CodeStream) -> None:
        os.line("__syncthreads();")

    def get_atomic_add(self, type_name: str, memory: str = "global") -> str:
        return "atomicAdd"

    def gen_preamble(self, os: CodeStream, model: ModelSpec) -> None:
        os.line('#include "definitions.h"')
        os.line('#include "supportCode.h"')
        os.line("#include <cfloat>")
        os.line("#include <curand_kernel.h>")
        os.blank()
        max_time = "DBL_MAX" if model.time_precision == "double" else "FLT_MAX"
        os.line(f"#define TIME_MAX {max_time}")
        os.blank()

    def gen_launch(self, os: CodeStream, launch: KernelLaunch,
                   merged_groups: Sequence[GroupMerged], time_arg: bool) -> None:
        if launch.total == 0:
            return
        with os.scope():
            os.line(f"const dim3 threads({launch.block_size}, 1);")
            os.line(f"const dim3 grid({launch.num_blocks}, 1);")
            os.line(f"{launch.kernel}<<<grid, threads>>>({'t' if time_arg else ''});")
            os.line("CHECK_CUDA_ERRORS(cudaPeekAtLastError());")

    # ------------------------------------------------------------------
    # Merged struct storage
    # ------------------------------------------------------------------

    def _gen_merged_group_array(self, os: CodeStream, merged_group: GroupMerged) -> None:
        os.line(f"__device__ __constant__ {merged_group.struct_name} "
                f"{self.merged_array_name(merged_group)}[{len(merged_group)}];")

    def _gen_merged_struct_push(self, os: CodeStream, merged_group: GroupMerged,
                                values: list[list[str]]) -> None:
        struct = merged_group.struct_name
        with os.block(f"void push{struct}ToDevice()"):
            with os.block(f"const {struct} group[] =", trailer=";"):
                for i, row in enumerate(values):
                    separator = "," if i < len(values) - 1 else ""
                    os.line("{" + ", ".join(row) + "}" + separator)
            os.line(f"CHECK_CUDA_ERRORS(cudaMemcpyToSymbol("
                    f"{self.merged_array_name(merged_group)}, group, "
                    f"sizeof({struct}) * {len(values)}));")

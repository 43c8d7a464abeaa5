"""OpenCL backend.

Device code is embedded in the host file as a raw string literal and compiled
at run time by a generated ``build<Program>Program()`` function. Merged struct
arrays are ``cl::Buffer`` objects bound once to every kernel as ``__global``
pointer arguments. Each merged group gets a small set-up kernel that writes one
member's struct on the device, since host code cannot build structs holding
device pointers.
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


class OpenCLBackend(SIMTBackend):
    """GPUs and accelerators through OpenCL 1.2 and the C++ wrapper."""

    name = "opencl"
    var_prefix = "d_"
    rng_type = "clrngLfsr113Stream"
    source_extension = ".cc"
    build_options = "-cl-std=CL1.2 -I clRNG/include"

    shared_prefix = "__local"
    group_pointer_prefix = "__global "
    constant_prefix = "__constant"

    def get_functions(self, precision: str) -> Sequence[FunctionTemplate]:
        return (
            FunctionTemplate("gennrand_uniform", 0, "clrngLfsr113RandomU01($(rng))"),
            FunctionTemplate("gennrand_normal", 0, "normalDistLfsr113($(rng))"),
            FunctionTemplate("gennrand_exponential", 0, "exponentialDistLfsr113($(rng))"),
            FunctionTemplate("gennrand_log_normal", 2,
                             "exp($(0) + ($(1) * normalDistLfsr113($(rng))))"),
        )

    # ------------------------------------------------------------------
    # Syntax
    # ------------------------------------------------------------------

    def gen_kernel_header(self, kernel: Kernel, params: list[str]) -> str:
        block_size = self.get_kernel_block_size(kernel)
        return (f"__attribute__((reqd_work_group_size({block_size}, 1, 1)))\n"
                f"__kernel void {kernel.value}({', '.join(params)})")

    def get_kernel_merged_params(self, merged_groups: Sequence[GroupMerged]) -> list[str]:
        return [f"__global struct {mg.struct_name} *{self.merged_array_name(mg)}"
                for mg in merged_groups]

    def gen_thread_ids(self, os: CodeStream, kernel: Kernel) -> None:
        os.line("const unsigned int id = get_global_id(0);")
        os.line("const unsigned int localId = get_local_id(0);")

    def gen_shared_barrier(self, os: CodeStream) -> None:
        os.line("barrier(CLK_LOCAL_MEM_FENCE);")

    def get_atomic_add(self, type_name: str, memory: str = "global") -> str:
        if type_name in ("float", "double"):
            return f"atomic_add_f_{memory}"
        return "atomic_add"

    def get_merged_group_field_type(self, type_name: str) -> str:
        if type_name.rstrip().endswith("*"):
            return f"__global {type_name}"
        return type_name

    def gen_preamble(self, os: CodeStream, model: ModelSpec) -> None:
        os.line('#include "supportCode.h"')
        os.line('#include "clRNG/lfsr113.clh"')
        os.blank()
        if model.precision == "double" or model.time_precision == "double":
            os.line("#pragma OPENCL EXTENSION cl_khr_fp64 : enable")
            os.line("#pragma OPENCL EXTENSION cl_khr_int64_base_atomics : enable")
        max_time = "DBL_MAX" if model.time_precision == "double" else "FLT_MAX"
        os.line(f"#define TIME_MAX {max_time}")
        os.blank()
        for memory in ("global", "local"):
            self._gen_float_atomic_add(os, model.precision, memory)

        uniform = "clrngLfsr113RandomU01(rng)"
        with os.block(f"inline {model.precision} normalDistLfsr113(clrngLfsr113Stream *rng)"):
            os.line(f"const {model.precision} u1 = {uniform};")
            os.line(f"const {model.precision} u2 = {uniform};")
            os.line("return sqrt(-2 * log(u1)) * cospi(2 * u2);")
        with os.block(f"inline {model.precision} exponentialDistLfsr113(clrngLfsr113Stream *rng)"):
            os.line(f"return -log({uniform});")
        os.blank()

    def _gen_float_atomic_add(self, os: CodeStream, precision: str, memory: str) -> None:
        """Compare-and-swap based floating point atomic add."""
        if precision == "double":
            int_type, cmpxchg = "ulong", "atom_cmpxchg"
        else:
            int_type, cmpxchg = "unsigned int", "atomic_cmpxchg"
        qualifier = f"__{memory}"
        with os.block(f"inline void atomic_add_f_{memory}(volatile {qualifier} {precision} "
                      f"*source, const {precision} operand)"):
            os.line(f"union {{ {int_type} intVal; {precision} floatVal; }} newVal;")
            os.line(f"union {{ {int_type} intVal; {precision} floatVal; }} prevVal;")
            with os.block("do", trailer=(
                    f" while ({cmpxchg}((volatile {qualifier} {int_type}*)source, "
                    "prevVal.intVal, newVal.intVal) != prevVal.intVal);")):
                os.line("prevVal.floatVal = *source;")
                os.line("newVal.floatVal = prevVal.floatVal + operand;")
        os.blank()

    def gen_launch(self, os: CodeStream, launch: KernelLaunch,
                   merged_groups: Sequence[GroupMerged], time_arg: bool) -> None:
        if launch.total == 0:
            return
        kernel = f"{launch.kernel}Obj"
        with os.scope():
            if time_arg:
                os.line(f"CHECK_OPENCL_ERRORS({kernel}.setArg({len(merged_groups)}, t));")
            os.line(f"const cl::NDRange globalWorkSize({launch.width}, 1);")
            os.line(f"const cl::NDRange localWorkSize({launch.block_size}, 1);")
            os.line(f"CHECK_OPENCL_ERRORS(commandQueue.enqueueNDRangeKernel({kernel}, "
                    "cl::NullRange, globalWorkSize, localWorkSize));")

    # ------------------------------------------------------------------
    # Program embedding
    # ------------------------------------------------------------------

    def gen_program(self, os: CodeStream, program: str, device: CodeStream,
                    merged_groups: Sequence[GroupMerged],
                    launches: Sequence[tuple[KernelLaunch, Sequence[GroupMerged], bool]]) -> None:
        os.line('#include "definitions.h"')
        os.blank()
        os.comment("host copies of merged group structs, used to size their buffers")
        for mg in merged_groups:
            with os.block(f"struct {mg.struct_name}", trailer=";"):
                for f in mg.fields:
                    os.line(f"{f.type} {f.name};")
            os.line(f"cl::Buffer {self.merged_array_name(mg)};")
            os.line(f"cl::Kernel set{mg.struct_name}KernelObj;")
            os.blank()

        os.line(f"cl::Program {program}Program;")
        for launch, _, _ in launches:
            os.line(f"cl::Kernel {launch.kernel}Obj;")
        os.blank()
        os.line(f"const char* {program}Src = "
                + "\n".join(f'R"({part})"' for part in split_source(device.getvalue()))
                + ";")
        os.blank()
        self._gen_struct_builds(os, merged_groups)

        with os.block(f"void build{program[0].upper()}{program[1:]}Program()"):
            os.comment("build program")
            os.line(f"{program}Program = cl::Program(clContext, {program}Src);")
            with os.block(f'if ({program}Program.build("{self.build_options}") != CL_SUCCESS)'):
                os.line('throw std::runtime_error("Compile error:" + '
                        f"{program}Program.getBuildInfo<CL_PROGRAM_BUILD_LOG>(clDevice));")
            os.blank()
            os.comment("configure merged struct buffers and kernels")
            for mg in merged_groups:
                struct = mg.struct_name
                os.line(f'set{struct}KernelObj = cl::Kernel({program}Program, "set{struct}Kernel");')
                os.line(f"push{struct}ToDevice();")
            for launch, groups, _ in launches:
                kernel = f"{launch.kernel}Obj"
                os.line(f'{kernel} = cl::Kernel({program}Program, "{launch.kernel}");')
                for arg, mg in enumerate(groups):
                    os.line(f"CHECK_OPENCL_ERRORS({kernel}.setArg({arg}, "
                            f"{self.merged_array_name(mg)}));")
        os.blank()

    # ------------------------------------------------------------------
    # Merged struct storage
    # ------------------------------------------------------------------

    def _gen_merged_group_array(self, os: CodeStream, merged_group: GroupMerged) -> None:
        struct = merged_group.struct_name
        params = [f"__global struct {struct} *group", "unsigned int idx"]
        params.extend(f"{self.get_merged_group_field_type(f.type)} {f.name}"
                      for f in merged_group.fields)
        with os.block(f"__kernel void set{struct}Kernel({', '.join(params)})"):
            for f in merged_group.fields:
                os.line(f"group[idx].{f.name} = {f.name};")

    def _gen_merged_struct_push(self, os: CodeStream, merged_group: GroupMerged,
                                values: list[list[str]]) -> None:
        struct = merged_group.struct_name
        array = self.merged_array_name(merged_group)
        kernel = f"set{struct}KernelObj"
        with os.block(f"void push{struct}ToDevice()"):
            os.line(f"{array} = cl::Buffer(clContext, CL_MEM_READ_WRITE, "
                    f"sizeof({struct}) * {len(values)});")
            os.line(f"CHECK_OPENCL_ERRORS({kernel}.setArg(0, {array}));")
            for i, row in enumerate(values):
                os.comment(merged_group.groups[i].name)
                os.line(f"CHECK_OPENCL_ERRORS({kernel}.setArg(1, {i}u));")
                for arg, value in enumerate(row, start=2):
                    os.line(f"CHECK_OPENCL_ERRORS({kernel}.setArg({arg}, {value}));")
                os.line(f"CHECK_OPENCL_ERRORS(commandQueue.enqueueNDRangeKernel({kernel}, "
                        "cl::NullRange, cl::NDRange(1)));")


def split_source(text: str, part_length: int = 5000) -> list[str]:
    """Split ``text`` on line boundaries into parts of at most ``part_length`` characters.

    Compilers cap the length of a single string literal. A line longer than
    ``part_length`` becomes a part of its own.
    """
    parts: list[str] = []
    current = ""
    for line in text.splitlines(keepends=True):
        if current and len(current) + len(line) > part_length:
            parts.append(current)
            current = ""
        current += line
    if current or not parts:
        parts.append(current)
    return parts

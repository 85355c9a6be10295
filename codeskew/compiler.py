"""
Turns a :class:`~codeskew.preprocessor.SourceMap` into compute pipelines.

The compilation unit is the hoisted extensions, the generated prelude and the
preprocessed source, in that order. Every function carrying both the
``@compute`` and ``@workgroup_size`` attributes becomes a pipeline.
"""

import re
import time
from dataclasses import dataclass
from typing import Optional

import wgpu

from .preprocessor import GpuCompilationError, strip_comments
from .utils import logger

re_token = re.compile(r"\w+|[^\s\w]")
re_location = re.compile(r":(\d+):(\d+)")
re_size = re.compile(r"(0[xX][0-9a-fA-F]+|[0-9]+)[ui]?")

PRELUDE_TYPES = """
struct Time { frame: uint, elapsed: float, delta: float }
struct Mouse { pos: uint2, click: int }
struct DispatchInfo { id: uint }
"""

PRELUDE_HELPERS = """
fn keyDown(keycode: uint) -> bool {
    return ((_keyboard[keycode / 128u][(keycode % 128u) / 32u] >> (keycode % 32u)) & 1u) == 1u;
}

fn assert(index: int, success: bool) {
    if (!success) {
        atomicAdd(&_assert_counts[index], 1u);
    }
}

fn passStore(pass_index: int, coord: int2, value: float4) {
    textureStore(pass_out, coord, pass_index, value);
}

fn passLoad(pass_index: int, coord: int2, lod: int) -> float4 {
    return textureLoad(pass_in, coord, pass_index, lod);
}

fn passSampleLevelBilinearRepeat(pass_index: int, uv: float2, lod: float) -> float4 {
    return textureSampleLevel(pass_in, bilinear_repeat, fract(uv), pass_index, lod);
}
"""


def make_prelude(bindings, user_data=None) -> str:
    """Generate the WGSL that precedes every shader: type aliases, the
    built-in structs, the binding declarations and the helper functions.
    """
    lines = []
    for alias, type in (("int", "i32"), ("uint", "u32"), ("float", "f32")):
        lines.append(f"alias {alias} = {type};")
    for alias, type in (("int", "i32"), ("uint", "u32"), ("float", "f32"), ("bool", "bool")):
        for n in range(2, 5):
            lines.append(f"alias {alias}{n} = vec{n}<{type}>;")
    for n in range(2, 5):
        for m in range(2, 5):
            lines.append(f"alias float{n}x{m} = mat{n}x{m}<f32>;")

    lines.append(PRELUDE_TYPES)

    lines.append("struct Custom {")
    for name in bindings.custom_names:
        lines.append(f"    {name}: float,")
    lines.append("};")

    if not user_data:
        user_data = {"_dummy": [0]}
    lines.append("struct Data {")
    for name, values in user_data.items():
        lines.append(f"    {name}: array<u32,{len(values)}>,")
    lines.append("};")

    lines.append(bindings.to_wgsl())
    lines.append(PRELUDE_HELPERS)
    return "\n".join(lines) + "\n"


def _parse_size(arg: str) -> int:
    match = re_size.fullmatch(arg)
    if match is None:
        # an override or expression, we can't evaluate it here
        return 1
    literal = match.group(1)
    if literal[:2].lower() == "0x":
        return int(literal[2:], 16)
    return int(literal)


def _read_arguments(tokens, i):
    """Read the parenthesized group starting at ``tokens[i]``.
    Returns the top level arguments as strings and the index after the group.
    """
    depth = 0
    args, current = [], []
    while i < len(tokens):
        token = tokens[i]
        i += 1
        if token == "(":
            depth += 1
            if depth == 1:
                continue
        elif token == ")":
            depth -= 1
            if depth == 0:
                break
        elif token == "," and depth == 1:
            args.append("".join(current))
            current = []
            continue
        current.append(token)
    args.append("".join(current))
    return [arg for arg in args if arg], i


def find_entry_points(wgsl: str) -> list[tuple[str, tuple[int, int, int]]]:
    """Find the compute entry points of a WGSL module with their workgroup size.

    The attributes must directly precede the ``fn`` keyword, in any order.
    Missing workgroup dimensions default to 1, so do dimensions that aren't
    integer literals.
    """
    tokens = re_token.findall(strip_comments(wgsl))
    entry_points = []
    attributes = {}
    i = 0
    while i < len(tokens):
        token = tokens[i]
        if token == "@" and i + 1 < len(tokens):
            name = tokens[i + 1]
            i += 2
            args = []
            if i < len(tokens) and tokens[i] == "(":
                args, i = _read_arguments(tokens, i)
            attributes[name] = args
            continue
        if token == "fn" and i + 1 < len(tokens):
            if "compute" in attributes and "workgroup_size" in attributes:
                size = [_parse_size(arg) for arg in attributes["workgroup_size"][:3]]
                size += [1] * (3 - len(size))
                entry_points.append((tokens[i + 1], tuple(size)))
            i += 2
        else:
            i += 1
        attributes = {}
    return entry_points


@dataclass
class ComputePipeline:
    """A compiled entry point together with its dispatch settings."""

    name: str
    pipeline: object
    workgroup_size: tuple[int, int, int]
    workgroup_count: Optional[tuple[int, int, int]] = None
    dispatch_once: bool = False
    dispatch_count: int = 1

    def get_workgroup_count(self, width: int, height: int) -> tuple[int, int, int]:
        if self.workgroup_count is not None:
            return tuple(self.workgroup_count)
        x, y = max(self.workgroup_size[0], 1), max(self.workgroup_size[1], 1)
        return (-(-width // x), -(-height // y), 1)


class Compiler:
    """
    Builds compute pipelines on a device, using the layout of the given bindings.
    Parameters:
        device (wgpu.GPUDevice): the device to create the shader module and pipelines on.
        bindings (Bindings): provides the pipeline layout and the binding declarations of the prelude.
    """

    def __init__(self, device, bindings):
        self._device = device
        self._bindings = bindings

    def compile(self, source_map) -> list[ComputePipeline]:
        """Compile all entry points of a SourceMap.

        Raises GpuCompilationError, with the line mapped back to the input,
        when the device rejects the shader.
        """
        start = time.perf_counter()
        header = source_map.extensions + make_prelude(
            self._bindings, source_map.user_data
        )
        wgsl = header + source_map.source
        entry_points = find_entry_points(wgsl)
        if not entry_points:
            logger.warning("Shader has no compute entry points.")

        try:
            module = self._device.create_shader_module(label="codeskew", code=wgsl)
            pipelines = []
            for name, workgroup_size in entry_points:
                pipeline = self._device.create_compute_pipeline(
                    label=f"Compute Pipeline - {name}",
                    layout=self._bindings.pipeline_layout,
                    compute={"module": module, "entry_point": name},
                )
                pipelines.append(
                    ComputePipeline(
                        name=name,
                        pipeline=pipeline,
                        workgroup_size=workgroup_size,
                        workgroup_count=source_map.workgroup_count.get(name),
                        dispatch_once=source_map.dispatch_once.get(name, False),
                        dispatch_count=source_map.dispatch_count.get(name, 1),
                    )
                )
        except wgpu.GPUError as e:
            message = str(e).strip()
            match = re_location.search(message)
            line = 0
            if match is not None:
                line = source_map.map_line(int(match.group(1)), header.count("\n"))
            raise GpuCompilationError(message, line) from e

        logger.info(
            f"Compiled {len(pipelines)} compute pipelines in {time.perf_counter() - start:.3f}s"
        )
        return pipelines

import asyncio

import pytest
import wgpu

from codeskew.bindings import Bindings
from codeskew.compiler import (
    ComputePipeline,
    Compiler,
    find_entry_points,
    make_prelude,
)
from codeskew.includes import DictIncludeResolver
from codeskew.preprocessor import GpuCompilationError, preprocess


class FakeDevice:
    """Records shader modules and pipelines, optionally failing like wgpu does."""

    def __init__(self, error=None, fail_on=None):
        self.modules = []
        self.pipelines = []
        self.error = error
        self.fail_on = fail_on

    def create_shader_module(self, label="", code=""):
        if self.error is not None and self.fail_on is None:
            raise self.error
        self.modules.append(code)
        return ("module", len(self.modules))

    def create_compute_pipeline(self, label="", layout=None, compute=None):
        if self.error is not None and compute["entry_point"] == self.fail_on:
            raise self.error
        self.pipelines.append(compute["entry_point"])
        return ("pipeline", compute["entry_point"])


def source_map(shader, includes=None):
    return asyncio.run(
        preprocess(shader, include_resolver=DictIncludeResolver(includes))
    )


def test_entry_points():
    wgsl = """
    @compute @workgroup_size(8, 8, 1)
    fn a(@builtin(global_invocation_id) id: vec3u) {}

    fn helper() -> f32 { return 1.0; }

    @compute @workgroup_size(1,1,1)
    fn b() {}
    """
    assert find_entry_points(wgsl) == [("a", (8, 8, 1)), ("b", (1, 1, 1))]


def test_entry_points_attribute_order_and_defaults():
    wgsl = """
    @workgroup_size(16) @compute fn reversed() {}
    @compute
    @workgroup_size(4u, 2i)
    fn suffixed() {}
    @compute @workgroup_size(WG_X, 8, min(2, 3)) fn constants() {}
    @compute @workgroup_size(64,) fn trailing() {}
    @compute @workgroup_size(0x10, 2) fn hex() {}
    """
    assert find_entry_points(wgsl) == [
        ("reversed", (16, 1, 1)),
        ("suffixed", (4, 2, 1)),
        ("constants", (1, 8, 1)),
        ("trailing", (64, 1, 1)),
        ("hex", (16, 2, 1)),
    ]


def test_entry_points_need_both_attributes():
    wgsl = """
    @compute fn no_size() {}
    @workgroup_size(8, 8) fn no_compute() {}
    @vertex fn vs() -> @builtin(position) vec4f { return vec4f(); }
    @compute @workgroup_size(8, 8) fn main_image() {}
    """
    assert find_entry_points(wgsl) == [("main_image", (8, 8, 1))]


def test_entry_points_attributes_must_precede_fn():
    # attributes belong to the next declaration only
    wgsl = """
    @compute @workgroup_size(8, 8)
    const X = 1;
    fn not_an_entry() {}
    @compute @must_use @workgroup_size(2, 2) fn entry() {}
    """
    assert find_entry_points(wgsl) == [("entry", (2, 2, 1))]


def test_entry_points_ignore_comments():
    wgsl = """
    // @compute @workgroup_size(8, 8) fn commented() {}
    /* @compute @workgroup_size(8, 8)
       fn block() {} */
    @compute /* inline */ @workgroup_size(/* x */ 32) // trailing
    fn real() {}
    """
    assert find_entry_points(wgsl) == [("real", (32, 1, 1))]


def test_entry_points_order_independent_extraction():
    a = "@compute @workgroup_size(8,8,1) fn a() {}\n"
    b = "@compute @workgroup_size(1,1,1) fn b() {}\n"
    first = dict(find_entry_points(a + "fn x() {}\n" + b))
    second = dict(find_entry_points(b + a))
    assert first == second == {"a": (8, 8, 1), "b": (1, 1, 1)}


def test_prelude():
    bindings = Bindings(64, 32)
    bindings.set_custom_floats(["speed", "zoom"], [1.0, 2.0])
    prelude = make_prelude(bindings, {"counts": [1, 2, 3], "ids": [4]})

    assert "alias int = i32;" in prelude
    assert "alias uint3 = vec3<u32>;" in prelude
    assert "alias bool4 = vec4<bool>;" in prelude
    assert "alias float4x3 = mat4x3<f32>;" in prelude
    assert "struct Time { frame: uint, elapsed: float, delta: float }" in prelude
    assert "struct Mouse { pos: uint2, click: int }" in prelude
    assert "struct DispatchInfo { id: uint }" in prelude
    assert "struct Custom {\n    speed: float,\n    zoom: float,\n};" in prelude
    assert "struct Data {\n    counts: array<u32,3>,\n    ids: array<u32,1>,\n};" in prelude
    assert bindings.to_wgsl() in prelude
    for helper in ("keyDown", "assert", "passStore", "passLoad", "passSampleLevelBilinearRepeat"):
        assert f"fn {helper}(" in prelude
    # the prelude has no entry points of its own
    assert find_entry_points(prelude) == []


def test_prelude_defaults():
    prelude = make_prelude(Bindings(8, 8), {})
    assert "struct Custom {\n    _dummy: float,\n};" in prelude
    assert "struct Data {\n    _dummy: array<u32,1>,\n};" in prelude


def test_prelude_follows_bindings():
    bindings = Bindings(8, 8)
    before = make_prelude(bindings, {"_dummy": [0]})
    bindings.set_custom_floats(["a"], [0.5])
    after = make_prelude(bindings, {"_dummy": [0]})
    assert before != after
    assert "    a: float," in after


def test_workgroup_count():
    pipeline = ComputePipeline("main", None, (16, 16, 1))
    assert pipeline.get_workgroup_count(800, 450) == (50, 29, 1)
    assert pipeline.get_workgroup_count(16, 16) == (1, 1, 1)

    pipeline = ComputePipeline("main", None, (8, 8, 1), workgroup_count=(3, 2, 1))
    assert pipeline.get_workgroup_count(800, 450) == (3, 2, 1)


def test_compile():
    device = FakeDevice()
    shader = """
#dispatch_once init
#dispatch_count step 3
#workgroup_count init 1 1 1
@compute @workgroup_size(64) fn init() {}
@compute @workgroup_size(8, 8) fn step() {}
@compute @workgroup_size(16, 16) fn main_image() {}
"""
    pipelines = Compiler(device, Bindings(64, 64)).compile(source_map(shader))

    # one shared module for all entry points
    assert len(device.modules) == 1
    assert device.pipelines == ["init", "step", "main_image"]
    init, step, image = pipelines
    assert (init.workgroup_size, init.workgroup_count, init.dispatch_once) == ((64, 1, 1), (1, 1, 1), True)
    assert (step.dispatch_count, step.dispatch_once, step.workgroup_count) == (3, False, None)
    assert (image.dispatch_count, image.dispatch_once) == (1, False)
    assert image.pipeline == ("pipeline", "main_image")


def test_compile_unit_layout():
    device = FakeDevice()
    bindings = Bindings(8, 8)
    source = source_map("enable f16;\n#data t u32 1,2\nfn f() {}\n")
    Compiler(device, bindings).compile(source)

    wgsl = device.modules[0]
    assert wgsl.startswith("enable f16;\n")
    assert wgsl.endswith("fn f() {}\n")
    assert make_prelude(bindings, {"t": [1, 2]}) in wgsl


def test_compile_without_entry_points(caplog):
    device = FakeDevice()
    with caplog.at_level("WARNING", logger="codeskew"):
        pipelines = Compiler(device, Bindings(8, 8)).compile(source_map("fn f() {}"))
    assert pipelines == []
    assert "no compute entry points" in caplog.text


def test_compile_error_maps_lines():
    bindings = Bindings(8, 8)
    shader = "#define N 1\n\n#include \"lib\"\nfn f() {\n    let x = nope;\n}\n"
    source = source_map(shader, {"lib": "fn g() {}\nfn h() {}"})
    offset = (source.extensions + make_prelude(bindings, source.user_data)).count("\n")

    # the bad line is the fifth line of the source, after the two included lines
    error = wgpu.GPUValidationError(
        f"Shader '' parsing error: no definition in scope for identifier: 'nope'\n"
        f"   ┌─ wgsl:{offset + 5}:13\n"
    )
    with pytest.raises(GpuCompilationError) as e:
        Compiler(FakeDevice(error=error), bindings).compile(source)
    assert e.value.line == 5
    assert "nope" in e.value.summary

    error = wgpu.GPUValidationError(f"error at wgsl:{offset + 3}:1")
    with pytest.raises(GpuCompilationError) as e:
        Compiler(FakeDevice(error=error), bindings).compile(source)
    assert e.value.line == 3

    # errors inside the prelude or without a location are not attributed to a line
    for message in ("wgsl:2:1 bad alias", "Validation Error"):
        with pytest.raises(GpuCompilationError) as e:
            Compiler(FakeDevice(error=wgpu.GPUValidationError(message)), bindings).compile(source)
        assert e.value.line == 0


def test_compile_error_in_pipeline():
    shader = "@compute @workgroup_size(8) fn a() {}\n@compute @workgroup_size(8) fn b() {}\n"
    device = FakeDevice(error=wgpu.GPUValidationError("bad pipeline"), fail_on="b")
    with pytest.raises(GpuCompilationError):
        Compiler(device, Bindings(8, 8)).compile(source_map(shader))


def test_compile_is_deterministic():
    shader = "@compute @workgroup_size(8, 4) fn a() {}\n@compute @workgroup_size(2) fn b() {}\n"
    first_device, second_device = FakeDevice(), FakeDevice()
    bindings = Bindings(8, 8)
    first = Compiler(first_device, bindings).compile(source_map(shader))
    second = Compiler(second_device, bindings).compile(source_map(shader))

    assert [(p.name, p.workgroup_size) for p in first] == [
        (p.name, p.workgroup_size) for p in second
    ]
    assert first_device.modules == second_device.modules

import asyncio
import concurrent.futures
import os
import time

import numpy as np
import wgpu

from .bindings import DEFAULT_STORAGE_SIZE, DISPATCH_STRIDE, MAX_DISPATCH_COUNT, Bindings
from .blit import Blitter
from .compiler import Compiler
from .preprocessor import GpuCompilationError, SourceMap, preprocess, report_error
from .utils import logger

# browser keyCodes, which is what shaders written for compute.toys expect
KEYCODES = {
    "Backspace": 8,
    "Tab": 9,
    "Enter": 13,
    "Shift": 16,
    "Control": 17,
    "Alt": 18,
    "Escape": 27,
    " ": 32,
    "PageUp": 33,
    "PageDown": 34,
    "End": 35,
    "Home": 36,
    "ArrowLeft": 37,
    "ArrowUp": 38,
    "ArrowRight": 39,
    "ArrowDown": 40,
    "Delete": 46,
}


def keycode_from_key(key: str):
    """Translate the ``key`` of a key event to a keycode, or None if it has none."""
    if key in KEYCODES:
        return KEYCODES[key]
    if len(key) == 1 and key.isalnum() and ord(key.upper()) < 256:
        return ord(key.upper())
    return None


def _run_sync(coro):
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    # inside a running loop (e.g. a canvas event handler), use a loop of our own
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


class ComputeToy:
    """Runs compute shaders written for `compute.toys <https://compute.toys/>`_.

    Parameters:
        shader_code (str): The shader to load. Can also be loaded later with :meth:`load_shader`.
        resolution (tuple): The size of the screen texture in (width, height). Defaults to (800, 450).
        include_resolver (IncludeResolver): Resolves ``#include`` directives. Defaults to the packaged includes with an online fallback.
        on_error (callable): Called with ``(summary, line)`` for every error in the shader. Defaults to logging it.
        pass_f32 (bool): Use 32 bit float pass textures. Default is False.
        storage_size (int): The size in bytes of each of the two storage buffers.
        title (str): The title of the window. Defaults to "codeskew".

    Every entry point marked ``@compute @workgroup_size(...)`` is dispatched once per frame,
    in source order, with enough workgroups to cover the screen. The shader writes its output
    to the ``screen`` storage texture.

    The preprocessor supports the following directives:

    * ``#define NAME VALUE``: word based macro substitution. ``SCREEN_WIDTH``, ``SCREEN_HEIGHT`` and ``STRING_MAX_LEN`` are predefined.
    * ``#include "path"`` or ``#include <name>``: include a file, ``<string>`` also enables string literals.
    * ``#storage NAME TYPE``: declare a read-write storage buffer (at most two).
    * ``#workgroup_count ENTRY X Y Z``: dispatch a fixed number of workgroups.
    * ``#dispatch_once ENTRY``: only dispatch on the first frame after compiling.
    * ``#dispatch_count ENTRY N``: dispatch N times per frame, ``dispatch.id`` holds the index.
    * ``#assert PREDICATE``: count the threads for which the predicate fails.
    * ``#data NAME u32 VALUES``: a table of constants, available as ``data.NAME``.

    Some built-in bindings are available in the shader:

    * ``time``: ``frame``, ``elapsed`` and ``delta`` (seconds)
    * ``mouse``: ``pos`` in pixels and ``click``
    * ``custom``: one float per name given to :meth:`set_custom_floats`
    * ``screen``: the output texture
    * ``pass_in``/``pass_out``: four layers that persist between dispatches, see ``passLoad`` and ``passStore``
    * ``channel0``/``channel1``: textures loaded with :meth:`load_channel`
    * ``nearest``, ``bilinear``, ``nearest_repeat``, ``bilinear_repeat``: samplers

    Use ``keyDown(keycode)`` to query the keyboard.
    """

    def __init__(
        self,
        shader_code: str = None,
        resolution=(800, 450),
        include_resolver=None,
        on_error=None,
        pass_f32: bool = False,
        storage_size: int = DEFAULT_STORAGE_SIZE,
        title: str = "codeskew",
    ) -> None:
        self.title = title
        self._include_resolver = include_resolver
        self._on_error = on_error or report_error
        self._shader_code = None
        self._shader_path = None
        self._watch = False

        device_features = []
        if pass_f32:
            device_features.append(wgpu.FeatureName.float32_filterable)
        self._device = self._request_device(device_features)

        self.bindings = Bindings(
            *resolution, pass_f32=pass_f32, storage_size=storage_size
        )
        self.bindings.init_gpu(self._device)

        self.source = SourceMap()
        self.compute_pipelines = []
        self._frames_since_compile = 0
        self._canvas = None

        if shader_code is not None:
            self.load_shader(shader_code)

    @property
    def resolution(self):
        """The resolution of the screen texture as a tuple (width, height) in pixels."""
        return self.bindings.width, self.bindings.height

    @property
    def device(self) -> wgpu.GPUDevice:
        return self._device

    def _request_device(self, features) -> wgpu.GPUDevice:
        """
        returns the default device if no features are required
        otherwise requests a new device with the required features
        """
        if not features:
            return wgpu.utils.get_default_device()

        return wgpu.gpu.request_adapter_sync(
            power_preference="high-performance"
        ).request_device_sync(required_features=features)

    @classmethod
    def from_file(cls, path, **kwargs):
        """Builds a `ComputeToy` from a shader file. Includes are also looked up next to the file."""
        toy = cls(**kwargs)
        toy.load_file(path)
        return toy

    def load_file(self, path) -> bool:
        """Load a shader file, see :meth:`load_shader`. The file is watched by ``show(watch=True)``."""
        if self._include_resolver is None:
            # imported here to keep the resolvers out of the way when no file is involved
            from .includes import (
                ChainIncludeResolver,
                FileIncludeResolver,
                default_include_resolver,
            )

            self._include_resolver = ChainIncludeResolver(
                FileIncludeResolver(os.path.dirname(os.path.abspath(path))),
                default_include_resolver(),
            )
        with open(path, "r", encoding="utf-8") as f:
            shader_code = f.read()
        self._shader_path = path
        self._shader_mtime = os.path.getmtime(path)
        return self.load_shader(shader_code)

    async def preprocess(self, shader: str):
        """Preprocess shader text for the current resolution. Returns a SourceMap or None."""
        width, height = self.resolution
        defines = {"SCREEN_WIDTH": width, "SCREEN_HEIGHT": height}
        return await preprocess(
            shader,
            defines,
            include_resolver=self._include_resolver,
            on_error=self._on_error,
        )

    def compile(self, source_map: SourceMap) -> bool:
        """
        Build the pipelines of a SourceMap and install them. On failure the error is reported
        and the previously installed pipelines stay active.
        Returns True on success.
        """
        compiler = Compiler(self._device, self.bindings)
        try:
            pipelines = compiler.compile(source_map)
        except GpuCompilationError as e:
            self._on_error(e.summary, e.line)
            return False

        for pipeline in pipelines:
            if pipeline.dispatch_count > MAX_DISPATCH_COUNT:
                logger.warning(
                    f"Dispatch count of {pipeline.name} is limited to {MAX_DISPATCH_COUNT}"
                )
                pipeline.dispatch_count = MAX_DISPATCH_COUNT

        self.bindings.set_user_data(source_map.user_data)
        self.source = source_map
        self.compute_pipelines = pipelines
        self._frames_since_compile = 0
        return True

    def load_shader(self, shader_code: str) -> bool:
        """Preprocess and compile shader text. Returns True when the new shader is installed."""
        self._shader_code = shader_code
        source_map = _run_sync(self.preprocess(shader_code))
        if source_map is None:
            return False
        return self.compile(source_map)

    def set_custom_floats(self, names, values):
        """
        Set the fields of the ``custom`` uniform. Changing the names recompiles the shader,
        if that fails the previous names and values are restored.
        Returns True unless the recompile failed.
        """
        names = list(names)
        previous_names = self.bindings.custom_names
        changed = names != previous_names
        if not changed or self._shader_code is None:
            self.bindings.set_custom_floats(names, values)
            return True

        previous_values = [self.bindings.custom[name] for name in previous_names]
        self.bindings.set_custom_floats(names, values)
        if self.compile(self.source):
            return True
        # the installed pipelines still expect the previous Custom struct
        self.bindings.set_custom_floats(previous_names, previous_values)
        return False

    def set_time_elapsed(self, t: float):
        self.bindings.time["elapsed"] = t

    def set_mouse_pos(self, x: float, y: float):
        """Set the mouse position, in [0, 1] relative to the screen. Only applied while clicked."""
        if self.bindings.mouse["click"] == 1:
            width, height = self.resolution
            self.bindings.mouse["pos"] = (int(x * width), int(y * height))

    def set_mouse_click(self, click: bool):
        self.bindings.mouse["click"] = 1 if click else 0

    def set_keydown(self, keycode: int, down: bool):
        self.bindings.set_keydown(keycode, down)

    def load_channel(self, index: int, data):
        """Load an image (a PIL image or uint8 array) into ``channel0`` or ``channel1``."""
        self.bindings.load_channel(index, data)

    def write_storage(self, index: int, data):
        """Upload data into storage buffer ``index``, as declared with ``#storage``."""
        self.bindings.write_storage(index, data)

    def resize(self, width: int, height: int):
        """Resize the screen, this resets the toy and recompiles the shader."""
        if (int(width), int(height)) == self.resolution:
            return
        self.bindings.resize(width, height)
        self.reset()
        if self._shader_code is not None:
            # SCREEN_WIDTH and SCREEN_HEIGHT changed
            self.load_shader(self._shader_code)

    def reset(self):
        """Clear storage buffers and pass textures and restart time at 0."""
        self.bindings.reset()
        self.bindings.time["frame"] = 0
        self.bindings.time["elapsed"] = 0.0
        self.bindings.time["delta"] = 0.0
        self._frames_since_compile = 0
        if hasattr(self, "_last_time"):
            del self._last_time

    def _encode_frame(self) -> wgpu.GPUCommandBuffer:
        self.bindings.stage(self._device.queue)
        command_encoder: wgpu.GPUCommandEncoder = self._device.create_command_encoder()
        command_encoder.clear_buffer(self.bindings.assert_buffer)

        width, height = self.resolution
        for pipeline in self.compute_pipelines:
            if pipeline.dispatch_once and self._frames_since_compile > 0:
                continue
            workgroup_count = pipeline.get_workgroup_count(width, height)
            for dispatch_id in range(pipeline.dispatch_count):
                compute_pass = command_encoder.begin_compute_pass(
                    label=f"{pipeline.name} {dispatch_id}"
                )
                compute_pass.set_pipeline(pipeline.pipeline)
                compute_pass.set_bind_group(
                    0, self.bindings.bind_group, [dispatch_id * DISPATCH_STRIDE]
                )
                compute_pass.dispatch_workgroups(*workgroup_count)
                compute_pass.end()
                self.bindings.copy_pass_textures(command_encoder)

        return command_encoder.finish()

    def _after_frame(self):
        self._frames_since_compile += 1
        self.bindings.time["frame"] = (self.bindings.time["frame"] + 1) % 2**32

    def render(self):
        """Dispatch one frame of all installed pipelines."""
        self._device.queue.submit([self._encode_frame()])
        self._after_frame()

    def check_assertions(self) -> list:
        """
        Report every ``#assert`` that failed during the last frame to the error sink.
        Returns the lines of the failed assertions.
        """
        counts = self.bindings.read_assertions()
        width, height = self.resolution
        failed = []
        for index, line in enumerate(self.source.assert_map):
            if counts[index] > 0:
                percent = 100 * counts[index] / (width * height)
                self._on_error(f"Assertion failed in {percent:.2f}% of threads", line)
                failed.append(line)
        return failed

    def snapshot(
        self,
        time_float: float = None,
        time_delta: float = 0.0167,
        frame: int = None,
        mouse_pos: tuple = None,
    ) -> np.ndarray:
        """
        Renders one frame and returns the screen, you can set the uniforms manually via the parameters.

        Parameters:
            time_float (float): Value for ``time.elapsed``. (Default keeps the current value)
            time_delta (float): Value for ``time.delta``. (Default is 0.0167)
            frame (int): Value for ``time.frame``. (Default keeps the current value)
            mouse_pos (tuple(int)): The mouse position in pixels. (Default keeps the current value)
        Returns:
            screen (np.ndarray): (height, width, 4) uint8 rgba array.
        """
        if time_float is not None:
            self.bindings.time["elapsed"] = time_float
        if frame is not None:
            self.bindings.time["frame"] = frame
        if mouse_pos is not None:
            self.bindings.mouse["pos"] = tuple(int(v) for v in mouse_pos)
        self.bindings.time["delta"] = time_delta
        self.render()
        screen = np.nan_to_num(self.bindings.read_screen().astype(np.float32))
        return (np.clip(screen, 0.0, 1.0) * 255 + 0.5).astype(np.uint8)

    def _prepare_canvas(self):
        # imported here, a window backend is only needed to show the toy
        from rendercanvas.auto import RenderCanvas

        self._canvas = RenderCanvas(title=self.title, size=self.resolution, max_fps=60)
        self._present_context = self._canvas.get_context("wgpu")
        self._format = self._present_context.get_preferred_format(
            adapter=self._device.adapter
        )
        self._present_context.configure(device=self._device, format=self._format)

        self._blitter = Blitter(self._device, self._format)

    def _bind_events(self):
        def on_resize(event):
            ratio = event.get("pixel_ratio", 1)
            w, h = int(event["width"] * ratio), int(event["height"] * ratio)
            if w > 0 and h > 0:
                self.resize(w, h)

        def on_mouse_move(event):
            w, h = self._canvas.get_logical_size()
            self.set_mouse_pos(event["x"] / w, event["y"] / h)

        def on_mouse_down(event):
            if event["button"] == 1 or 1 in event["buttons"]:
                self.set_mouse_click(True)
                on_mouse_move(event)

        def on_mouse_up(event):
            if event["button"] == 1:
                self.set_mouse_click(False)

        def on_key(event):
            keycode = keycode_from_key(event["key"])
            if keycode is not None:
                self.set_keydown(keycode, event["event_type"] == "key_down")

        self._canvas.add_event_handler(on_resize, "resize")
        self._canvas.add_event_handler(on_mouse_move, "pointer_move")
        self._canvas.add_event_handler(on_mouse_down, "pointer_down")
        self._canvas.add_event_handler(on_mouse_up, "pointer_up")
        self._canvas.add_event_handler(on_key, "key_down", "key_up")

    def _update(self):
        now = time.perf_counter()
        if not hasattr(self, "_last_time"):
            self._last_time = now

        time_delta = now - self._last_time
        self._last_time = now
        self.bindings.time["delta"] = time_delta
        self.bindings.time["elapsed"] += time_delta

    def _reload_if_changed(self):
        try:
            mtime = os.path.getmtime(self._shader_path)
        except OSError:
            return
        if mtime != self._shader_mtime:
            self._shader_mtime = mtime
            logger.info(f"Reloading {self._shader_path}")
            with open(self._shader_path, "r", encoding="utf-8") as f:
                self.load_shader(f.read())

    def _draw_frame(self):
        if self._watch and self._shader_path is not None:
            self._reload_if_changed()
        self._update()

        current_texture = self._present_context.get_current_texture()
        command_buffers = [
            self._encode_frame(),
            self._blitter.blit(self.bindings.screen_texture, current_texture),
        ]
        self._device.queue.submit(command_buffers)
        self._after_frame()
        if self.source.assert_map:
            self.check_assertions()
        self._canvas.request_draw()

    def show(self, watch: bool = False):
        """Open a window and run the toy. With ``watch``, a toy loaded with :meth:`from_file` reloads when the file changes."""
        from rendercanvas.auto import loop

        self._watch = watch
        if self._canvas is None:
            self._prepare_canvas()
            self._bind_events()
        self._canvas.request_draw(self._draw_frame)
        loop.run()

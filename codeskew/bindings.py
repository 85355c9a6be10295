import re

import numpy as np
import wgpu

from .preprocessor import NUM_ASSERT_COUNTERS
from .utils import UniformArray

NUM_CHANNELS = 2
NUM_PASSES = 4
MAX_DISPATCH_COUNT = 64
# dynamic uniform offsets must be aligned to 256 bytes
DISPATCH_STRIDE = 256
DEFAULT_STORAGE_SIZE = 16 * 1024 * 1024
SCREEN_FORMAT = wgpu.TextureFormat.rgba16float

re_identifier = re.compile(r"[A-Za-z_]\w*")


def channel_data(data) -> np.ndarray:
    """
    Normalize image data for a channel texture to a contiguous (height, width, 4) uint8 array.
    Accepts anything numpy can convert, e.g. a PIL image or a memoryview.
    """
    data = np.ascontiguousarray(data)
    if data.dtype != np.uint8:
        raise TypeError(f"Channel data must be uint8, got {data.dtype}")

    # if channel dimension is missing, it's a greyscale texture
    if len(data.shape) == 2:
        data = np.reshape(data, data.shape + (1,))
    if len(data.shape) != 3 or data.shape[2] not in (1, 3, 4):
        raise ValueError(f"Can't use data of shape {data.shape} as channel texture")
    # greyscale textures become just red while green and blue remain 0s
    if data.shape[2] == 1:
        data = np.stack(
            [
                data[:, :, 0],
                np.zeros_like(data[:, :, 0]),
                np.zeros_like(data[:, :, 0]),
            ],
            axis=-1,
        )
    # if alpha channel is not given, it's filled with max value (255)
    if data.shape[2] == 3:
        data = np.concatenate(
            [data, np.full(data.shape[:2] + (1,), 255, dtype=np.uint8)],
            axis=2,
        )
    return np.ascontiguousarray(data)


class Bindings:
    """
    The resources shared by every compute pipeline of a toy, all in bind group 0.

    Bindings 0 and 1 are left for the ``#storage`` directive. The host side state
    (time, mouse, keyboard, custom uniforms and data tables) can be used without a device,
    the GPU objects are created by :meth:`init_gpu`.

    Parameters:
        width (int): width of the screen texture.
        height (int): height of the screen texture.
        pass_f32 (bool): use rgba32float pass textures instead of rgba16float. Requires the float32-filterable feature.
        storage_size (int): size in bytes of each of the two storage buffers.
    """

    def __init__(
        self,
        width: int,
        height: int,
        pass_f32: bool = False,
        storage_size: int = DEFAULT_STORAGE_SIZE,
    ):
        self.width = int(width)
        self.height = int(height)
        self.pass_format = (
            wgpu.TextureFormat.rgba32float if pass_f32 else wgpu.TextureFormat.rgba16float
        )
        self.storage_size = storage_size

        # set by init_gpu, the host side state below works without them
        self._device = None
        self.bind_group_layout = None
        self.pipeline_layout = None
        self.bind_group = None

        self.time = UniformArray(("frame", "I", 1), ("elapsed", "f", 1), ("delta", "f", 1))
        self.mouse = UniformArray(("pos", "I", 2), ("click", "i", 1))
        self.keyboard = UniformArray(("keys", "I", 8))
        self.custom_names = []
        self.custom = None
        self.set_custom_floats([], [])
        self.user_data = {"_dummy": [0]}
        self._channels = [None] * NUM_CHANNELS

    # host side

    def set_custom_floats(self, names, values):
        """Set the fields of the ``Custom`` uniform struct."""
        names, values = list(names), [float(v) for v in values]
        if len(names) != len(values):
            raise ValueError("Need exactly one value per custom uniform name.")
        for name in names:
            if not re_identifier.fullmatch(name):
                raise ValueError(f"Custom uniform name {name!r} is not an identifier.")
        if not names:
            # WGSL does not allow empty structs
            names, values = ["_dummy"], [0.0]
        resized = names != self.custom_names
        if resized:
            self.custom_names = names
            self.custom = UniformArray(*[(name, "f", 1) for name in names])
        for name, value in zip(names, values):
            self.custom[name] = value
        if resized and self._device is not None:
            self._custom_buffer = self._create_uniform_buffer(self.custom, "custom")
            self.update_bind_group()

    def set_user_data(self, user_data):
        """Replace the ``#data`` tables backing the ``Data`` struct."""
        user_data = {name: list(values) for name, values in user_data.items()}
        if not user_data:
            user_data = {"_dummy": [0]}
        self.user_data = user_data
        if self._device is not None:
            self._data_buffer = self._create_data_buffer()
            self.update_bind_group()

    def set_keydown(self, keycode: int, down: bool):
        if not 0 <= keycode < 256:
            raise ValueError(f"Keycode must be in [0, 256), got {keycode}")
        keys = self.keyboard["keys"]
        word, bit = divmod(keycode, 32)
        if down:
            keys[word] |= 1 << bit
        else:
            keys[word] &= ~(1 << bit)
        self.keyboard["keys"] = keys

    def to_wgsl(self) -> str:
        """The declarations of all bindings, to be included in the prelude."""
        pass_format = self.pass_format
        return f"""
@group(0) @binding(2) var<uniform> time: Time;
@group(0) @binding(3) var<uniform> mouse: Mouse;
@group(0) @binding(4) var<uniform> _keyboard: array<vec4<u32>,2>;
@group(0) @binding(5) var<uniform> custom: Custom;
@group(0) @binding(6) var<storage,read> data: Data;
@group(0) @binding(7) var<storage,read_write> _assert_counts: array<atomic<u32>,{NUM_ASSERT_COUNTERS}>;
@group(0) @binding(8) var<uniform> dispatch: DispatchInfo;
@group(0) @binding(9) var screen: texture_storage_2d<{SCREEN_FORMAT},write>;
@group(0) @binding(10) var pass_in: texture_2d_array<f32>;
@group(0) @binding(11) var pass_out: texture_storage_2d_array<{pass_format},write>;
@group(0) @binding(12) var channel0: texture_2d<f32>;
@group(0) @binding(13) var channel1: texture_2d<f32>;
@group(0) @binding(14) var nearest: sampler;
@group(0) @binding(15) var bilinear: sampler;
@group(0) @binding(16) var nearest_repeat: sampler;
@group(0) @binding(17) var bilinear_repeat: sampler;
"""

    # gpu side

    def init_gpu(self, device: wgpu.GPUDevice):
        """Create every buffer, texture and sampler plus the layouts and the bind group."""
        self._device = device

        self._create_storage_buffers()
        self._time_buffer = self._create_uniform_buffer(self.time, "time")
        self._mouse_buffer = self._create_uniform_buffer(self.mouse, "mouse")
        self._keyboard_buffer = self._create_uniform_buffer(self.keyboard, "keyboard")
        self._custom_buffer = self._create_uniform_buffer(self.custom, "custom")
        self._data_buffer = self._create_data_buffer()
        self.assert_buffer = device.create_buffer(
            label="assert counts",
            size=4 * NUM_ASSERT_COUNTERS,
            usage=wgpu.BufferUsage.STORAGE
            | wgpu.BufferUsage.COPY_SRC
            | wgpu.BufferUsage.COPY_DST,
        )

        # one dispatch id per 256 byte slot, selected with a dynamic offset
        dispatch_ids = np.zeros(MAX_DISPATCH_COUNT * DISPATCH_STRIDE // 4, np.uint32)
        dispatch_ids[:: DISPATCH_STRIDE // 4] = np.arange(MAX_DISPATCH_COUNT)
        self._dispatch_buffer = device.create_buffer_with_data(
            data=dispatch_ids, usage=wgpu.BufferUsage.UNIFORM
        )

        self._create_textures()
        self._channel_textures = [
            self._create_channel_texture(data) for data in self._channels
        ]

        def make_sampler(filter, address_mode):
            return device.create_sampler(
                address_mode_u=address_mode,
                address_mode_v=address_mode,
                address_mode_w=address_mode,
                mag_filter=filter,
                min_filter=filter,
            )

        self._samplers = [
            make_sampler(wgpu.FilterMode.nearest, wgpu.AddressMode.clamp_to_edge),
            make_sampler(wgpu.FilterMode.linear, wgpu.AddressMode.clamp_to_edge),
            make_sampler(wgpu.FilterMode.nearest, wgpu.AddressMode.repeat),
            make_sampler(wgpu.FilterMode.linear, wgpu.AddressMode.repeat),
        ]

        self.bind_group_layout = device.create_bind_group_layout(
            label="codeskew bindings", entries=self._binding_layout()
        )
        self.pipeline_layout = device.create_pipeline_layout(
            bind_group_layouts=[self.bind_group_layout]
        )
        self.update_bind_group()

    def reset(self):
        """Replace the storage buffers and textures by zeroed ones, the host state is kept."""
        if self._device is None:
            return
        self._create_storage_buffers()
        self._create_textures()
        self.update_bind_group()

    def _create_storage_buffers(self):
        self._storage_buffers = [
            self._device.create_buffer(
                label=f"storage{i + 1}",
                size=self.storage_size,
                usage=wgpu.BufferUsage.STORAGE | wgpu.BufferUsage.COPY_DST,
            )
            for i in range(2)
        ]

    def _create_uniform_buffer(self, uniform: UniformArray, label: str):
        return self._device.create_buffer(
            label=label,
            size=uniform.nbytes,
            usage=wgpu.BufferUsage.UNIFORM | wgpu.BufferUsage.COPY_DST,
        )

    def _create_data_buffer(self):
        data = np.concatenate(
            [np.asarray(values, dtype=np.uint32) for values in self.user_data.values()]
        )
        return self._device.create_buffer_with_data(
            data=data, usage=wgpu.BufferUsage.STORAGE
        )

    def _create_textures(self):
        self.screen_texture = self._device.create_texture(
            label="screen",
            size=(self.width, self.height, 1),
            format=SCREEN_FORMAT,
            usage=wgpu.TextureUsage.STORAGE_BINDING
            | wgpu.TextureUsage.TEXTURE_BINDING
            | wgpu.TextureUsage.COPY_SRC,
        )
        self._pass_in = self._device.create_texture(
            label="pass_in",
            size=(self.width, self.height, NUM_PASSES),
            format=self.pass_format,
            usage=wgpu.TextureUsage.TEXTURE_BINDING | wgpu.TextureUsage.COPY_DST,
        )
        self._pass_out = self._device.create_texture(
            label="pass_out",
            size=(self.width, self.height, NUM_PASSES),
            format=self.pass_format,
            usage=wgpu.TextureUsage.STORAGE_BINDING | wgpu.TextureUsage.COPY_SRC,
        )

    def _create_channel_texture(self, data=None):
        if data is None:
            data = np.zeros((1, 1, 4), dtype=np.uint8)
        texture = self._device.create_texture(
            size=(data.shape[1], data.shape[0], 1),
            format=wgpu.TextureFormat.rgba8unorm_srgb,
            usage=wgpu.TextureUsage.TEXTURE_BINDING | wgpu.TextureUsage.COPY_DST,
        )
        self._device.queue.write_texture(
            destination={"texture": texture},
            data=data,
            data_layout={
                "bytes_per_row": data.strides[0],
                "rows_per_image": data.shape[0],
            },
            size=texture.size,
        )
        return texture

    def load_channel(self, index: int, data):
        """Use image data as ``channel0`` or ``channel1``."""
        if index not in range(NUM_CHANNELS):
            raise ValueError(f"Channel {index} does not exist")
        data = channel_data(data)
        self._channels[index] = data
        if self._device is not None:
            self._channel_textures[index] = self._create_channel_texture(data)
            self.update_bind_group()

    def write_storage(self, index: int, data):
        """Upload data to the start of storage buffer ``index`` (0 or 1)."""
        if index not in (0, 1):
            raise ValueError("Only storage buffers 0 and 1 exist")
        data = np.ascontiguousarray(data)
        if data.nbytes > self.storage_size:
            raise ValueError(
                f"Can't write {data.nbytes} bytes to a storage buffer of {self.storage_size} bytes"
            )
        self._device.queue.write_buffer(self._storage_buffers[index], 0, data)

    def resize(self, width: int, height: int):
        self.width, self.height = int(width), int(height)
        if self._device is not None:
            self._create_textures()
            self.update_bind_group()

    def _binding_layout(self):
        compute = wgpu.ShaderStage.COMPUTE

        def buffer(binding, type, **kwargs):
            return {
                "binding": binding,
                "visibility": compute,
                "buffer": {"type": type, **kwargs},
            }

        def texture(binding, view_dimension):
            return {
                "binding": binding,
                "visibility": compute,
                "texture": {
                    "sample_type": wgpu.TextureSampleType.float,
                    "view_dimension": view_dimension,
                },
            }

        def storage_texture(binding, format, view_dimension):
            return {
                "binding": binding,
                "visibility": compute,
                "storage_texture": {
                    "access": wgpu.StorageTextureAccess.write_only,
                    "format": format,
                    "view_dimension": view_dimension,
                },
            }

        layout = [
            buffer(0, wgpu.BufferBindingType.storage),
            buffer(1, wgpu.BufferBindingType.storage),
            buffer(2, wgpu.BufferBindingType.uniform),
            buffer(3, wgpu.BufferBindingType.uniform),
            buffer(4, wgpu.BufferBindingType.uniform),
            buffer(5, wgpu.BufferBindingType.uniform),
            buffer(6, wgpu.BufferBindingType.read_only_storage),
            buffer(7, wgpu.BufferBindingType.storage),
            buffer(8, wgpu.BufferBindingType.uniform, has_dynamic_offset=True),
            storage_texture(9, SCREEN_FORMAT, wgpu.TextureViewDimension.d2),
            texture(10, wgpu.TextureViewDimension.d2_array),
            storage_texture(11, self.pass_format, wgpu.TextureViewDimension.d2_array),
            texture(12, wgpu.TextureViewDimension.d2),
            texture(13, wgpu.TextureViewDimension.d2),
        ]
        for binding in range(14, 18):
            layout.append(
                {
                    "binding": binding,
                    "visibility": compute,
                    "sampler": {"type": wgpu.SamplerBindingType.filtering},
                }
            )
        return layout

    def update_bind_group(self):
        """(Re)create the bind group, needed whenever a resource is replaced."""

        def buffer(binding, buffer, size=None):
            return {
                "binding": binding,
                "resource": {
                    "buffer": buffer,
                    "offset": 0,
                    "size": buffer.size if size is None else size,
                },
            }

        entries = [
            buffer(0, self._storage_buffers[0]),
            buffer(1, self._storage_buffers[1]),
            buffer(2, self._time_buffer),
            buffer(3, self._mouse_buffer),
            buffer(4, self._keyboard_buffer),
            buffer(5, self._custom_buffer),
            buffer(6, self._data_buffer),
            buffer(7, self.assert_buffer),
            buffer(8, self._dispatch_buffer, size=16),
            {"binding": 9, "resource": self.screen_texture.create_view()},
            {
                "binding": 10,
                "resource": self._pass_in.create_view(
                    dimension=wgpu.TextureViewDimension.d2_array
                ),
            },
            {
                "binding": 11,
                "resource": self._pass_out.create_view(
                    dimension=wgpu.TextureViewDimension.d2_array
                ),
            },
            {"binding": 12, "resource": self._channel_textures[0].create_view()},
            {"binding": 13, "resource": self._channel_textures[1].create_view()},
        ]
        for i, sampler in enumerate(self._samplers):
            entries.append({"binding": 14 + i, "resource": sampler})

        self.bind_group = self._device.create_bind_group(
            label="codeskew bind group",
            layout=self.bind_group_layout,
            entries=entries,
        )

    def stage(self, queue: wgpu.GPUQueue):
        """Write the host side uniforms to their buffers."""
        for uniform, gpu_buffer in (
            (self.time, self._time_buffer),
            (self.mouse, self._mouse_buffer),
            (self.keyboard, self._keyboard_buffer),
            (self.custom, self._custom_buffer),
        ):
            queue.write_buffer(
                buffer=gpu_buffer,
                buffer_offset=0,
                data=uniform.mem,
                data_offset=0,
                size=uniform.nbytes,
            )

    def copy_pass_textures(self, command_encoder: wgpu.GPUCommandEncoder):
        """Make what was written to ``pass_out`` readable from ``pass_in``."""
        command_encoder.copy_texture_to_texture(
            source={
                "texture": self._pass_out,
                "mip_level": 0,
                "origin": (0, 0, 0),
                "aspect": wgpu.TextureAspect.all,
            },
            destination={
                "texture": self._pass_in,
                "mip_level": 0,
                "origin": (0, 0, 0),
                "aspect": wgpu.TextureAspect.all,
            },
            copy_size=(self.width, self.height, NUM_PASSES),
        )

    def read_assertions(self) -> np.ndarray:
        data = self._device.queue.read_buffer(self.assert_buffer)
        return np.frombuffer(data, dtype=np.uint32)

    def read_screen(self) -> np.ndarray:
        """Read the screen texture back as a (height, width, 4) float16 array."""
        # Note, with queue.read_texture the bytes_per_row limitation does not apply.
        data = self._device.queue.read_texture(
            {
                "texture": self.screen_texture,
                "mip_level": 0,
                "origin": (0, 0, 0),
            },
            {
                "offset": 0,
                "bytes_per_row": 8 * self.width,
                "rows_per_image": self.height,
            },
            (self.width, self.height, 1),
        )
        return np.frombuffer(data, np.float16).reshape(self.height, self.width, 4)

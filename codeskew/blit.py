import wgpu

BLIT_CODE = """
struct VertexOut {
    @builtin(position) position: vec4<f32>,
    @location(0) uv: vec2<f32>,
}

@group(0) @binding(0) var screen: texture_2d<f32>;
@group(0) @binding(1) var screen_sampler: sampler;

@vertex
fn vs_main(@builtin(vertex_index) vertIndex: u32) -> VertexOut {
    var pos = array(
        vec2<f32>(-1.0, -1.0),
        vec2<f32>(3.0, -1.0),
        vec2<f32>(-1.0, 3.0),
    );
    var out: VertexOut;
    out.position = vec4<f32>(pos[vertIndex], 0.0, 1.0);
    // the screen texture has its origin at the top left
    out.uv = vec2<f32>(0.5 + 0.5 * pos[vertIndex].x, 0.5 - 0.5 * pos[vertIndex].y);
    return out;
}

@fragment
fn fs_main(in: VertexOut) -> @location(0) vec4<f32> {
    return textureSample(screen, screen_sampler, in.uv);
}
"""


class Blitter:
    """
    Draws the screen texture of a toy to a render target with a fullscreen triangle.
    Parameters:
        device (wgpu.GPUDevice): the device the screen texture lives on.
        format (str): the texture format of the render target.
    """

    def __init__(self, device: wgpu.GPUDevice, format):
        self._device = device
        self.format = format
        self._sampler = device.create_sampler(
            mag_filter=wgpu.FilterMode.nearest,
            min_filter=wgpu.FilterMode.nearest,
        )
        self._bind_group_layout = device.create_bind_group_layout(
            entries=[
                {
                    "binding": 0,
                    "visibility": wgpu.ShaderStage.FRAGMENT,
                    "texture": {
                        "sample_type": wgpu.TextureSampleType.float,
                        "view_dimension": wgpu.TextureViewDimension.d2,
                    },
                },
                {
                    "binding": 1,
                    "visibility": wgpu.ShaderStage.FRAGMENT,
                    "sampler": {"type": wgpu.SamplerBindingType.filtering},
                },
            ]
        )
        module = device.create_shader_module(label="codeskew blit", code=BLIT_CODE)
        self._render_pipeline = device.create_render_pipeline(
            label="blit pipeline",
            layout=device.create_pipeline_layout(
                bind_group_layouts=[self._bind_group_layout]
            ),
            vertex={
                "module": module,
                "entry_point": "vs_main",
                "buffers": [],
            },
            primitive={
                "topology": wgpu.PrimitiveTopology.triangle_list,
                "front_face": wgpu.FrontFace.ccw,
                "cull_mode": wgpu.CullMode.none,
            },
            depth_stencil=None,
            multisample=None,
            fragment={
                "module": module,
                "entry_point": "fs_main",
                "targets": [
                    {
                        "format": format,
                    },
                ],
            },
        )

    def blit(
        self, screen_texture: wgpu.GPUTexture, target_texture: wgpu.GPUTexture
    ) -> wgpu.GPUCommandBuffer:
        """
        Encodes drawing the screen texture onto the target texture.
        Returns the command buffer.
        """
        # the screen texture is replaced on resize, so the bind group is made per frame
        bind_group = self._device.create_bind_group(
            layout=self._bind_group_layout,
            entries=[
                {"binding": 0, "resource": screen_texture.create_view()},
                {"binding": 1, "resource": self._sampler},
            ],
        )
        command_encoder: wgpu.GPUCommandEncoder = self._device.create_command_encoder()
        render_pass: wgpu.GPURenderPassEncoder = command_encoder.begin_render_pass(
            label="blit",
            color_attachments=[
                {
                    "view": target_texture.create_view(
                        usage=wgpu.TextureUsage.RENDER_ATTACHMENT
                    ),
                    "resolve_target": None,
                    "clear_value": (0, 0, 0, 1),
                    "load_op": wgpu.LoadOp.clear,
                    "store_op": wgpu.StoreOp.store,
                }
            ],
        )
        render_pass.set_pipeline(self._render_pipeline)
        render_pass.set_bind_group(0, bind_group, [], 0, 99)
        render_pass.draw(3, 1, 0, 0)
        render_pass.end()
        return command_encoder.finish()

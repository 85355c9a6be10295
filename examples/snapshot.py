"""
Render a few frames offscreen and save the last one.
"""

import numpy as np
from PIL import Image

from codeskew import ComputeToy

shader_code = """
#include <string>

#data palette u32 0xff2040, 0x20ff80, 0x4080ff

@compute @workgroup_size(16, 16)
fn main_image(@builtin(global_invocation_id) id: uint3) {
    let screen_size = uint2(textureDimensions(screen));
    if (id.x >= screen_size.x || id.y >= screen_size.y) {
        return;
    }
    let band = min(id.x * 3u / screen_size.x, 2u);
    let rgb = data.palette[band];
    var col = float3(float((rgb >> 16u) & 0xffu), float((rgb >> 8u) & 0xffu), float(rgb & 0xffu)) / 255.0;

    // full brightness when the title starts with a c
    let title = "codeskew";
    col *= 0.5 + 0.5 * float(string_char(title, 0u) == 0x63u);
    col *= textureSampleLevel(channel0, bilinear_repeat, float2(id.xy) / 64.0, 0.0).r;
    textureStore(screen, int2(id.xy), float4(col, 1.0));
}
"""

shader = ComputeToy(shader_code, resolution=(320, 180))
checker = (np.indices((8, 8)).sum(axis=0) % 2 * 127 + 128).astype(np.uint8)
shader.load_channel(0, checker)

if __name__ == "__main__":
    frame = shader.snapshot(time_float=1.0)
    Image.fromarray(frame).save("snapshot.png")

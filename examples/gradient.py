from codeskew import ComputeToy

shader_code = """
#include <math>

@compute @workgroup_size(16, 16)
fn main_image(@builtin(global_invocation_id) id: uint3) {
    let screen_size = uint2(textureDimensions(screen));
    if (id.x >= screen_size.x || id.y >= screen_size.y) {
        return;
    }

    let uv = float2(id.xy) / float2(screen_size);
    let p = rotate2(time.elapsed * 0.25) * (uv - 0.5);
    var col = 0.5 + 0.5 * cos(time.elapsed + float3(p.x, p.y, p.x) * TAU + float3(0.0, 2.0, 4.0));

    // highlight around the mouse while clicked
    if (mouse.click == 1 && distance(float2(id.xy), float2(mouse.pos)) < 20.0) {
        col = float3(1.0) - col;
    }
    textureStore(screen, int2(id.xy), float4(col, 1.0));
}
"""

shader = ComputeToy(shader_code, resolution=(800, 450))

if __name__ == "__main__":
    shader.show()

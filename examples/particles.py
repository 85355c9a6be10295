from pathlib import Path

from codeskew import ComputeToy

# particles.wgsl includes std/math, which ships with codeskew
shader_path = Path(Path(__file__).parent, "particles.wgsl")
shader = ComputeToy(resolution=(800, 450))
# custom uniforms are part of the prelude, so set them before loading the shader
shader.set_custom_floats(["gravity"], [0.5])
shader.load_file(str(shader_path))

if __name__ == "__main__":
    shader.show(watch=True)

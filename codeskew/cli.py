import argparse

from PIL import Image

from .toy import ComputeToy

argument_parser = argparse.ArgumentParser(
    description="Run compute.toys style WGSL compute shaders"
)

argument_parser.add_argument("shader", type=str, help="The WGSL file to run")
argument_parser.add_argument(
    "--resolution",
    type=int,
    nargs=2,
    help="The resolution to render the shader at",
    default=(800, 450),
)
argument_parser.add_argument(
    "--output",
    type=str,
    help="render offscreen and save the last frame to this PNG file",
)
argument_parser.add_argument(
    "--time", type=float, default=0.0, help="value of time.elapsed for the snapshot"
)
argument_parser.add_argument(
    "--frames", type=int, default=1, help="number of frames to render offscreen"
)
argument_parser.add_argument("--channel0", type=str, help="image for channel0")
argument_parser.add_argument("--channel1", type=str, help="image for channel1")
argument_parser.add_argument(
    "--uniform",
    type=str,
    nargs="*",
    default=[],
    metavar="NAME=VALUE",
    help="custom float uniforms",
)
argument_parser.add_argument(
    "--pass-f32",
    help="use 32 bit float pass textures",
    action="store_true",
)
argument_parser.add_argument(
    "--watch",
    help="recompile when the shader file changes",
    action="store_true",
)


def parse_uniforms(items):
    names, values = [], []
    for item in items:
        name, sep, value = item.partition("=")
        if not sep:
            raise ValueError(f"Expected NAME=VALUE, got {item!r}")
        names.append(name.strip())
        values.append(float(value))
    return names, values


def main_cli(argv=None):
    args = argument_parser.parse_args(argv)
    try:
        names, values = parse_uniforms(args.uniform)
    except ValueError as e:
        argument_parser.error(str(e))

    toy = ComputeToy(resolution=args.resolution, pass_f32=args.pass_f32)
    for index, path in enumerate((args.channel0, args.channel1)):
        if path:
            toy.load_channel(index, Image.open(path).convert("RGBA"))
    # custom names are part of the prelude, set them before the shader compiles
    toy.set_custom_floats(names, values)
    if not toy.load_file(args.shader) and args.output:
        raise SystemExit(1)

    if args.output:
        for frame in range(max(args.frames, 1)):
            screen = toy.snapshot(time_float=args.time, frame=frame)
        Image.fromarray(screen).save(args.output)
        toy.check_assertions()
    else:
        toy.show(watch=args.watch)


if __name__ == "__main__":
    main_cli()

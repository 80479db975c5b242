import argparse
import logging
import math
import sys

from cloud_io import parse_file, save_open3d
from eptlib import EptBuilder
from pointlib import ModelParserError, SamplingConfig, SamplingStrategy

OUTPUT_FORMATS = ("json", "ept", "pcd", "ply")


def _finite_number(value: str) -> float:
    try:
        parsed = float(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Not a number: {value}") from exc
    if not math.isfinite(parsed):
        raise argparse.ArgumentTypeError(f"Not a finite number: {value}")
    return parsed


def _positive_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Not an integer: {value}") from exc
    if parsed < 1:
        raise argparse.ArgumentTypeError(f"Point count must be positive: {value}")
    return parsed


def _strategy(value: str) -> SamplingStrategy:
    try:
        return SamplingStrategy.parse(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Convert a 3D mesh into a point cloud: mesh -> sampling -> json | ept | pcd | ply"
    )
    parser.add_argument(
        "-i", "--input", required=True,
        help="Input mesh file path (.gltf, .glb, .ply, .obj, .stl, .off)"
    )
    parser.add_argument(
        "-o", "--output", required=True,
        help="Output file (json, pcd, ply) or directory (ept)"
    )
    parser.add_argument(
        "-f", "--format", default="json", type=str.lower, choices=OUTPUT_FORMATS,
        help="Output format (default: json)"
    )
    parser.add_argument(
        "-n", "--point-count", type=_positive_int, default=2000,
        help="Number of points to generate"
    )
    parser.add_argument(
        "-s", "--strategy", type=_strategy, default=SamplingStrategy.AREA_WEIGHTED,
        help="Sampling strategy: uniform, area-weighted or vertices"
    )
    parser.add_argument(
        "--normals", action=argparse.BooleanOptionalAction, default=True,
        help="Include vertex normals"
    )
    parser.add_argument(
        "--colors", action=argparse.BooleanOptionalAction, default=True,
        help="Include vertex colors"
    )
    parser.add_argument(
        "--scale", type=_finite_number, default=1.0,
        help="Scale factor for the model"
    )
    parser.add_argument(
        "-j", "--jitter", type=_finite_number, default=0.0,
        help="Jitter amount, clamped to 0.0-1.0"
    )
    parser.add_argument(
        "--seed", type=int, default=None,
        help="Seed for reproducible sampling"
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable debug logging"
    )
    return parser


def config_from_args(args: argparse.Namespace) -> SamplingConfig:
    return (SamplingConfig(args.point_count)
            .with_strategy(args.strategy)
            .with_normals(args.normals)
            .with_colors(args.colors)
            .with_scale(args.scale)
            .with_jitter(args.jitter)
            .with_seed(args.seed))


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG)

    config = config_from_args(args)
    print(f"Parsing 3D model: {args.input}")
    print("Configuration:")
    print(f"  - Point count: {config.point_count}")
    print(f"  - Strategy: {config.strategy.value}")
    print(f"  - Include normals: {config.include_normals}")
    print(f"  - Include colors: {config.include_colors}")
    print(f"  - Scale: {config.scale}")
    print(f"  - Jitter: {config.jitter}")

    try:
        cloud = parse_file(args.input, config)

        meta = cloud.metadata
        print("\nPoint cloud generated:")
        print(f"  - Total points: {meta.point_count}")
        print(f"  - Bounds min: {list(meta.bounds_min)}")
        print(f"  - Bounds max: {list(meta.bounds_max)}")
        print(f"  - Has normals: {meta.has_normals}")
        print(f"  - Has colors: {meta.has_colors}")

        if args.format == "json":
            cloud.save_to_file(args.output)
            print(f"Point cloud saved to: {args.output}")
        elif args.format == "ept":
            EptBuilder().build(cloud, args.output)
            print(f"EPT structure saved to: {args.output}")
            print("  - ept.json (metadata)")
            print("  - ept-data/ (binary tiles)")
            print("  - ept-hierarchy/ (octree structure)")
        else:
            save_open3d(cloud, args.output)
            print(f"Point cloud saved to: {args.output}")
    except (ModelParserError, OSError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())

# python create_point_cloud.py -i data/model.glb -o data/model.json -n 5000
# python create_point_cloud.py -i data/model.glb -o data/model_ept -f ept -s uniform -j 0.2

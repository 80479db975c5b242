import argparse
import sys

from cloud_io import show_point_cloud
from pointlib import ModelParserError


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Visualize a point cloud (.json, .pcd or .ply).")
    parser.add_argument("--input", "-i", required=True,
                        help="Path to the input point cloud file.")
    args = parser.parse_args(argv)

    try:
        show_point_cloud(args.input)
    except ModelParserError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

# python show_point_cloud.py -i data/model.json

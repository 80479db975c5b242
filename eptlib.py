import json
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Tuple

import numpy as np

from pointlib import PointCloud

logger = logging.getLogger(__name__)

DATA_DIR = "ept-data"
HIERARCHY_DIR = "ept-hierarchy"
METADATA_FILE = "ept.json"

# Fraction of the bounding box diagonal added on every side
BOUNDS_PADDING = 0.01


@dataclass(frozen=True, order=True)
class OctreeKey:
    """Address (depth, x, y, z) of a cube in octree space."""
    depth: int = 0
    x: int = 0
    y: int = 0
    z: int = 0

    def __post_init__(self):
        if min(self.depth, self.x, self.y, self.z) < 0:
            raise ValueError(f"Octree key components must be non-negative: {self}")

    @classmethod
    def root(cls) -> "OctreeKey":
        return cls(0, 0, 0, 0)

    @classmethod
    def from_string(cls, text: str) -> "OctreeKey":
        parts = text.split("-")
        if len(parts) != 4:
            raise ValueError(f"Invalid octree key '{text}', expected D-X-Y-Z")
        depth, x, y, z = (int(p) for p in parts)
        return cls(depth, x, y, z)

    def children(self) -> Tuple["OctreeKey", ...]:
        d = self.depth + 1
        x, y, z = self.x * 2, self.y * 2, self.z * 2
        return (
            OctreeKey(d, x,     y,     z),
            OctreeKey(d, x + 1, y,     z),
            OctreeKey(d, x,     y + 1, z),
            OctreeKey(d, x + 1, y + 1, z),
            OctreeKey(d, x,     y,     z + 1),
            OctreeKey(d, x + 1, y,     z + 1),
            OctreeKey(d, x,     y + 1, z + 1),
            OctreeKey(d, x + 1, y + 1, z + 1),
        )

    def parent(self) -> "OctreeKey":
        if self.depth == 0:
            raise ValueError("The root key has no parent")
        return OctreeKey(self.depth - 1, self.x // 2, self.y // 2, self.z // 2)

    def to_path_string(self) -> str:
        return f"{self.depth}-{self.x}-{self.y}-{self.z}"

    def __str__(self):
        return self.to_path_string()


@dataclass(frozen=True)
class EptDimension:
    name: str
    type: str
    size: int

    def to_dict(self) -> dict:
        return {"name": self.name, "type": self.type, "size": self.size}


POSITION_DIMENSIONS = (
    EptDimension("X", "floating", 4),
    EptDimension("Y", "floating", 4),
    EptDimension("Z", "floating", 4),
)
COLOR_DIMENSIONS = (
    EptDimension("Red", "unsigned", 1),
    EptDimension("Green", "unsigned", 1),
    EptDimension("Blue", "unsigned", 1),
)
NORMAL_DIMENSIONS = (
    EptDimension("NormalX", "floating", 4),
    EptDimension("NormalY", "floating", 4),
    EptDimension("NormalZ", "floating", 4),
)

_NUMPY_TYPES = {
    ("floating", 4): "<f4",
    ("unsigned", 1): "u1",
}


@dataclass(frozen=True)
class EptSrs:
    authority: str = "EPSG"
    horizontal: str = "4978"
    vertical: str = ""
    wkt: str = ""

    def to_dict(self) -> dict:
        return {
            "authority": self.authority,
            "horizontal": self.horizontal,
            "vertical": self.vertical,
            "wkt": self.wkt,
        }


@dataclass
class EptMetadata:
    bounds: List[float]
    bounds_conforming: List[float]
    points: int
    schema: List[EptDimension]
    srs: EptSrs = field(default_factory=EptSrs)
    data_type: str = "binary"
    hierarchy_type: str = "json"
    span: int = 128
    version: str = "1.0.0"

    def to_dict(self) -> dict:
        return {
            "bounds": list(self.bounds),
            "bounds_conforming": list(self.bounds_conforming),
            "points": self.points,
            "schema": [d.to_dict() for d in self.schema],
            "srs": self.srs.to_dict(),
            "dataType": self.data_type,
            "hierarchyType": self.hierarchy_type,
            "span": self.span,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EptMetadata":
        return cls(
            bounds=[float(v) for v in data["bounds"]],
            bounds_conforming=[float(v) for v in data["bounds_conforming"]],
            points=int(data["points"]),
            schema=[EptDimension(d["name"], d["type"], int(d["size"])) for d in data["schema"]],
            srs=EptSrs(**data["srs"]),
            data_type=data["dataType"],
            hierarchy_type=data["hierarchyType"],
            span=int(data["span"]),
            version=data["version"],
        )


def build_schema(has_colors: bool, has_normals: bool) -> List[EptDimension]:
    """Dimensions in record order: XYZ, then RGB, then normals."""
    schema = list(POSITION_DIMENSIONS)
    if has_colors:
        schema.extend(COLOR_DIMENSIONS)
    if has_normals:
        schema.extend(NORMAL_DIMENSIONS)
    return schema


def tile_dtype(schema: Sequence[EptDimension]) -> np.dtype:
    """Packed little-endian record type matching `schema`."""
    return np.dtype([(d.name, _NUMPY_TYPES[(d.type, d.size)]) for d in schema])


def calculate_bounds(positions: np.ndarray) -> List[float]:
    """
    Padded bounding box [minx, miny, minz, maxx, maxy, maxz].

    Padding is BOUNDS_PADDING times the diagonal length on every side.
    An empty set gives six zeros.
    """
    positions = np.asarray(positions, dtype=np.float32).reshape(-1, 3)
    if len(positions) == 0:
        return [0.0] * 6

    lo = positions.min(axis=0)
    hi = positions.max(axis=0)
    padding = np.float32(np.linalg.norm(hi - lo) * np.float32(BOUNDS_PADDING))
    lo = lo - padding
    hi = hi + padding
    return [float(v) for v in lo] + [float(v) for v in hi]


def colors_to_bytes(colors: np.ndarray) -> np.ndarray:
    """[0, 1] floats to 0-255 bytes by truncation, saturating out-of-range values."""
    scaled = np.nan_to_num(np.asarray(colors, dtype=np.float32) * np.float32(255.0), nan=0.0)
    return np.clip(scaled, 0.0, 255.0).astype(np.uint8)


def pack_tile(point_cloud: PointCloud, schema: Sequence[EptDimension]) -> np.ndarray:
    """
    Build one binary record per point, in point order.

    Points without a color are written white, points without a normal get
    a zero normal.
    """
    names = {d.name for d in schema}
    records = np.zeros(len(point_cloud.points), dtype=tile_dtype(schema))
    if len(records) == 0:
        return records

    positions = point_cloud.positions_array()
    records["X"], records["Y"], records["Z"] = positions.T

    if "Red" in names:
        colors = colors_to_bytes(point_cloud.colors_array(default=(1.0, 1.0, 1.0)))
        records["Red"], records["Green"], records["Blue"] = colors.T

    if "NormalX" in names:
        normals = point_cloud.normals_array(default=(0.0, 0.0, 0.0))
        records["NormalX"], records["NormalY"], records["NormalZ"] = normals.T

    return records


def write_tile(path: str, records: np.ndarray):
    with open(path, "wb") as fp:
        fp.write(records.tobytes())


def read_tile(path: str, schema: Sequence[EptDimension]) -> np.ndarray:
    with open(path, "rb") as fp:
        data = fp.read()
    return np.frombuffer(data, dtype=tile_dtype(schema))


def _write_json(path: str, data):
    with open(path, "w", encoding="utf-8") as fp:
        json.dump(data, fp, indent=2)


class EptBuilder:
    """
    Writes a point cloud as an EPT-style directory:

        ept.json                      metadata and schema
        ept-data/0-0-0-0.bin          packed point records
        ept-hierarchy/0-0-0-0.json    octree key -> point count

    Every point goes into the root tile. `max_points_per_tile` and
    `max_depth` are kept for a subdividing writer and are not used yet.
    """

    def __init__(self, max_points_per_tile: int = 100_000, max_depth: int = 10):
        self.max_points_per_tile = max_points_per_tile
        self.max_depth = max_depth

    def with_max_points_per_tile(self, max_points: int) -> "EptBuilder":
        return EptBuilder(max_points, self.max_depth)

    def with_max_depth(self, depth: int) -> "EptBuilder":
        return EptBuilder(self.max_points_per_tile, depth)

    def build_metadata(self, point_cloud: PointCloud) -> EptMetadata:
        bounds = calculate_bounds(point_cloud.positions_array())
        return EptMetadata(
            bounds=bounds,
            bounds_conforming=list(bounds),
            points=len(point_cloud.points),
            schema=build_schema(point_cloud.metadata.has_colors, point_cloud.metadata.has_normals),
        )

    def build(self, point_cloud: PointCloud, output_dir: str) -> EptMetadata:
        """
        Write the EPT directory for `point_cloud` into `output_dir`.

        Any OSError aborts the build; files already written are left in place.

        Returns:
            The metadata written to ept.json.
        """
        os.makedirs(output_dir, exist_ok=True)
        os.makedirs(os.path.join(output_dir, DATA_DIR), exist_ok=True)
        os.makedirs(os.path.join(output_dir, HIERARCHY_DIR), exist_ok=True)

        metadata = self.build_metadata(point_cloud)
        _write_json(os.path.join(output_dir, METADATA_FILE), metadata.to_dict())

        hierarchy = self.build_octree(point_cloud, output_dir, metadata)
        logger.info("Wrote EPT with %d points in %d tile(s) to %s",
                    metadata.points, len(hierarchy), output_dir)
        return metadata

    def build_octree(self, point_cloud: PointCloud, output_dir: str,
                     metadata: EptMetadata) -> Dict[str, int]:
        root_key = OctreeKey.root()

        records = pack_tile(point_cloud, metadata.schema)
        tile_path = os.path.join(output_dir, DATA_DIR, f"{root_key.to_path_string()}.bin")
        write_tile(tile_path, records)
        logger.debug("Tile %s: %d records of %d bytes", root_key, len(records), records.dtype.itemsize)

        hierarchy = {root_key.to_path_string(): len(point_cloud.points)}
        _write_json(os.path.join(output_dir, HIERARCHY_DIR, f"{root_key.to_path_string()}.json"),
                    hierarchy)
        return hierarchy


def load_ept_metadata(output_dir: str) -> EptMetadata:
    with open(os.path.join(output_dir, METADATA_FILE), "r", encoding="utf-8") as fp:
        return EptMetadata.from_dict(json.load(fp))

import json
import logging
import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)

# Jitter noise per axis is bounded by jitter * JITTER_SCALE
JITTER_SCALE = 0.1

Vec3 = Tuple[float, float, float]


class ModelParserError(Exception):
    """Base class for every failure raised while turning a mesh into a point cloud."""


class FileReadError(ModelParserError):
    def __init__(self, detail):
        super().__init__(f"Failed to read file: {detail}")


class UnsupportedFormatError(ModelParserError):
    def __init__(self, detail):
        super().__init__(f"Unsupported file format: {detail}")


class NoMeshDataError(ModelParserError):
    def __init__(self):
        super().__init__("No mesh data found in model")


class InvalidPointCountError(ModelParserError):
    def __init__(self, count):
        self.count = count
        super().__init__(f"Invalid point count: {count}")


class SerializationError(ModelParserError):
    def __init__(self, detail):
        super().__init__(f"Serialization error: {detail}")


class SamplingStrategy(Enum):
    UNIFORM = "uniform"
    AREA_WEIGHTED = "area-weighted"
    VERTICES = "vertices"

    @classmethod
    def parse(cls, text: str) -> "SamplingStrategy":
        key = text.strip().lower().replace("_", "-")
        for strategy in cls:
            if strategy.value == key:
                return strategy
        raise ValueError(
            f"Invalid sampling strategy '{text}'. Use: uniform, area-weighted, or vertices"
        )


@dataclass(frozen=True)
class SamplingConfig:
    """
    Immutable settings for point generation.

    Args:
        point_count: Target number of points. A ceiling for the VERTICES strategy.
        strategy: How sample locations are chosen.
        include_normals: Keep interpolated normals when the mesh has them.
        include_colors: Keep interpolated vertex colors when the mesh has them.
        scale: Uniform multiplier applied to every output position.
        jitter: Noise amount, clamped to [0, 1] on construction.
        seed: Optional seed for a reproducible random generator.
    """
    point_count: int = 2000
    strategy: SamplingStrategy = SamplingStrategy.AREA_WEIGHTED
    include_normals: bool = True
    include_colors: bool = True
    scale: float = 1.0
    jitter: float = 0.0
    seed: Optional[int] = None

    def __post_init__(self):
        if isinstance(self.strategy, str):
            object.__setattr__(self, "strategy", SamplingStrategy.parse(self.strategy))
        elif not isinstance(self.strategy, SamplingStrategy):
            raise TypeError(f"strategy must be a SamplingStrategy, got {self.strategy!r}")
        jitter = float(self.jitter)
        # NaN disables jitter
        jitter = 0.0 if math.isnan(jitter) else min(max(jitter, 0.0), 1.0)
        object.__setattr__(self, "jitter", jitter)

    def with_point_count(self, point_count: int) -> "SamplingConfig":
        return replace(self, point_count=point_count)

    def with_strategy(self, strategy: SamplingStrategy) -> "SamplingConfig":
        return replace(self, strategy=strategy)

    def with_normals(self, include: bool) -> "SamplingConfig":
        return replace(self, include_normals=include)

    def with_colors(self, include: bool) -> "SamplingConfig":
        return replace(self, include_colors=include)

    def with_scale(self, scale: float) -> "SamplingConfig":
        return replace(self, scale=scale)

    def with_jitter(self, jitter: float) -> "SamplingConfig":
        return replace(self, jitter=jitter)

    def with_seed(self, seed: Optional[int]) -> "SamplingConfig":
        return replace(self, seed=seed)


@dataclass(frozen=True)
class Point:
    position: Vec3
    normal: Optional[Vec3] = None
    color: Optional[Vec3] = None

    def to_dict(self) -> dict:
        # absent attributes are omitted rather than written as null
        data = {"position": list(self.position)}
        if self.normal is not None:
            data["normal"] = list(self.normal)
        if self.color is not None:
            data["color"] = list(self.color)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Point":
        normal = data.get("normal")
        color = data.get("color")
        return cls(
            position=_vec3(data["position"]),
            normal=_vec3(normal) if normal is not None else None,
            color=_vec3(color) if color is not None else None,
        )


def _vec3(values) -> Vec3:
    x, y, z = values
    return (float(x), float(y), float(z))


def _as_vec3_array(values) -> np.ndarray:
    if values is None:
        return np.empty((0, 3), dtype=np.float32)
    return np.asarray(values, dtype=np.float32).reshape(-1, 3)


@dataclass
class GeometryBuffer:
    """
    Raw mesh arrays handed over by a mesh importer.

    `normals` and `colors` are either empty or exactly as long as `vertices`.
    `indices` is a flattened triangle list into `vertices`.
    """
    vertices: np.ndarray
    normals: Optional[np.ndarray] = None
    colors: Optional[np.ndarray] = None
    indices: Optional[np.ndarray] = None

    def __post_init__(self):
        self.vertices = _as_vec3_array(self.vertices)
        self.normals = _as_vec3_array(self.normals)
        self.colors = _as_vec3_array(self.colors)
        if self.indices is None:
            self.indices = np.empty(0, dtype=np.int64)
        self.indices = np.asarray(self.indices, dtype=np.int64).reshape(-1)
        _check_attribute("normals", self.normals, len(self.vertices))
        _check_attribute("colors", self.colors, len(self.vertices))

    @property
    def has_normals(self) -> bool:
        return len(self.normals) > 0

    @property
    def has_colors(self) -> bool:
        return len(self.colors) > 0

    @property
    def is_empty(self) -> bool:
        return len(self.vertices) == 0

    @classmethod
    def concatenate(cls, buffers: Sequence["GeometryBuffer"]) -> "GeometryBuffer":
        """
        Merge several mesh primitives into one vertex/index space.

        Indices of each part are offset by the number of vertices before it.
        When only some parts carry normals (colors), the others are padded
        with zero normals (white colors) so the merged arrays stay aligned.
        """
        buffers = list(buffers)
        if not buffers:
            return cls(np.empty((0, 3), dtype=np.float32))

        any_normals = any(b.has_normals for b in buffers)
        any_colors = any(b.has_colors for b in buffers)

        vertices, normals, colors, indices = [], [], [], []
        offset = 0
        for b in buffers:
            n = len(b.vertices)
            vertices.append(b.vertices)
            if any_normals:
                normals.append(b.normals if b.has_normals else np.zeros((n, 3), dtype=np.float32))
            if any_colors:
                colors.append(b.colors if b.has_colors else np.ones((n, 3), dtype=np.float32))
            indices.append(b.indices + offset)
            offset += n

        return cls(
            vertices=np.concatenate(vertices),
            normals=np.concatenate(normals) if any_normals else None,
            colors=np.concatenate(colors) if any_colors else None,
            indices=np.concatenate(indices),
        )


def _check_attribute(name: str, values: np.ndarray, vertex_count: int):
    if len(values) not in (0, vertex_count):
        raise ValueError(
            f"{name} must be empty or match the vertex count ({len(values)} != {vertex_count})"
        )


def triangle_weights(vertices: np.ndarray,
                     triangles: np.ndarray,
                     strategy: SamplingStrategy) -> np.ndarray:
    """
    Selection weight of every triangle.

    AREA_WEIGHTED uses the geometric area, UNIFORM gives every triangle 1.0.
    """
    if strategy is SamplingStrategy.AREA_WEIGHTED:
        v = vertices.astype(np.float64)
        v0, v1, v2 = v[triangles[:, 0]], v[triangles[:, 1]], v[triangles[:, 2]]
        return 0.5 * np.linalg.norm(np.cross(v1 - v0, v2 - v0), axis=1)
    return np.ones(len(triangles), dtype=np.float64)


def select_triangles(weights: np.ndarray, draws: np.ndarray) -> np.ndarray:
    """
    Map uniform draws in [0, 1) to triangle indices.

    Equivalent to scanning the triangles in order, subtracting each weight
    from `draw * total` and stopping at the first one where the remainder
    drops to <= 0. With a zero total every draw lands on triangle 0.
    """
    cumulative = np.cumsum(weights, dtype=np.float64)
    total = cumulative[-1]
    selected = np.searchsorted(cumulative, draws * total, side="left")
    return np.minimum(selected, len(weights) - 1)


def _apply_jitter(positions: np.ndarray, jitter: float, rng: np.random.Generator) -> np.ndarray:
    if jitter <= 0.0:
        return positions
    amount = jitter * JITTER_SCALE
    return positions + rng.uniform(-amount, amount, size=positions.shape)


def _normalize_rows(vectors: np.ndarray) -> np.ndarray:
    lengths = np.linalg.norm(vectors, axis=1, keepdims=True)
    # zero-length blends stay zero instead of turning into NaN
    safe = np.where(lengths > 0.0, lengths, 1.0)
    return vectors / safe


def _sample_triangles(vertices, normals, colors, indices, config, count, rng):
    triangle_count = len(indices) // 3
    # trailing partial triangle is dropped
    triangles = indices[:triangle_count * 3].reshape(-1, 3)

    weights = triangle_weights(vertices, triangles, config.strategy)
    tri = triangles[select_triangles(weights, rng.random(count))]

    # square-root trick: uniform over the triangle's area
    r1 = np.sqrt(rng.random(count))
    r2 = rng.random(count)
    bary = np.stack([1.0 - r1, r1 * (1.0 - r2), r1 * r2], axis=1)[:, :, None]

    def blend(values):
        corners = values.astype(np.float64)[tri]
        return (corners * bary).sum(axis=1)

    positions = _apply_jitter(blend(vertices), config.jitter, rng) * config.scale
    blended_normals = _normalize_rows(blend(normals)) if normals is not None else None
    blended_colors = blend(colors) if colors is not None else None
    return positions, blended_normals, blended_colors


def _sample_vertices(vertices, normals, colors, config, count, rng):
    picks = rng.integers(0, len(vertices), size=count)
    positions = _apply_jitter(vertices[picks].astype(np.float64), config.jitter, rng) * config.scale
    return (
        positions,
        normals[picks] if normals is not None else None,
        colors[picks] if colors is not None else None,
    )


def _build_points(positions, normals, colors) -> List[Point]:
    positions = np.asarray(positions, dtype=np.float32).tolist()
    normals = np.asarray(normals, dtype=np.float32).tolist() if normals is not None else None
    colors = np.asarray(colors, dtype=np.float32).tolist() if colors is not None else None

    points = []
    for i, position in enumerate(positions):
        points.append(Point(
            position=tuple(position),
            normal=tuple(normals[i]) if normals is not None else None,
            color=tuple(colors[i]) if colors is not None else None,
        ))
    return points


def generate_points(vertices,
                    normals,
                    colors,
                    indices,
                    config: SamplingConfig,
                    rng: Optional[np.random.Generator] = None) -> List[Point]:
    """
    Sample points from mesh arrays according to `config`.

    Args:
        vertices: (N, 3) vertex positions, non-empty.
        normals: Empty or (N, 3) per-vertex normals.
        colors: Empty or (N, 3) per-vertex RGB colors in [0, 1].
        indices: Flattened triangle list into `vertices`, possibly empty.
        config: Sampling settings.
        rng: Random source. Defaults to a generator seeded from `config.seed`.

    Returns:
        Points in generation order.
    """
    geometry = GeometryBuffer(vertices, normals, colors, indices)
    if geometry.is_empty:
        raise NoMeshDataError()
    if config.point_count < 0:
        raise InvalidPointCountError(config.point_count)
    if rng is None:
        rng = np.random.default_rng(config.seed)

    vertices = geometry.vertices
    normals = geometry.normals if geometry.has_normals and config.include_normals else None
    colors = geometry.colors if geometry.has_colors and config.include_colors else None

    if config.strategy is SamplingStrategy.VERTICES:
        count = min(config.point_count, len(vertices))
        positions = vertices[:count] * np.float32(config.scale)
        result = (
            positions,
            normals[:count] if normals is not None else None,
            colors[:count] if colors is not None else None,
        )
    elif len(geometry.indices) >= 3:
        result = _sample_triangles(vertices, normals, colors, geometry.indices,
                                   config, config.point_count, rng)
    else:
        logger.debug("No triangles available, sampling %d random vertices", config.point_count)
        result = _sample_vertices(vertices, normals, colors, config, config.point_count, rng)

    points = _build_points(*result)
    logger.debug("Generated %d points with strategy %s", len(points), config.strategy.value)
    return points


def sample_geometry(geometry: GeometryBuffer,
                    config: SamplingConfig,
                    rng: Optional[np.random.Generator] = None) -> List[Point]:
    return generate_points(geometry.vertices, geometry.normals, geometry.colors,
                           geometry.indices, config, rng)


@dataclass(frozen=True)
class PointCloudMetadata:
    point_count: int
    bounds_min: Vec3
    bounds_max: Vec3
    source_file: str
    has_normals: bool
    has_colors: bool

    def to_dict(self) -> dict:
        return {
            "point_count": self.point_count,
            "bounds_min": list(self.bounds_min),
            "bounds_max": list(self.bounds_max),
            "source_file": self.source_file,
            "has_normals": self.has_normals,
            "has_colors": self.has_colors,
        }


class PointCloud:
    """
    Sampled points plus metadata derived from them.

    The metadata is computed once from `points` on construction and the
    cloud is not mutated afterwards.
    """

    def __init__(self, points: Iterable[Point], source_file: str):
        self.points: Tuple[Point, ...] = tuple(points)
        bounds_min, bounds_max = self.calculate_bounds(self.points)
        self.metadata = PointCloudMetadata(
            point_count=len(self.points),
            bounds_min=bounds_min,
            bounds_max=bounds_max,
            source_file=source_file,
            has_normals=any(p.normal is not None for p in self.points),
            has_colors=any(p.color is not None for p in self.points),
        )

    def __len__(self):
        return len(self.points)

    def __eq__(self, other):
        if not isinstance(other, PointCloud):
            return NotImplemented
        return self.points == other.points and self.metadata == other.metadata

    def __repr__(self):
        return (f"PointCloud(source_file={self.metadata.source_file!r}, "
                f"points={self.metadata.point_count})")

    @staticmethod
    def calculate_bounds(points: Sequence[Point]) -> Tuple[Vec3, Vec3]:
        if not points:
            return (0.0, 0.0, 0.0), (0.0, 0.0, 0.0)
        positions = np.array([p.position for p in points], dtype=np.float32)
        return _vec3(positions.min(axis=0).tolist()), _vec3(positions.max(axis=0).tolist())

    def positions_array(self) -> np.ndarray:
        return np.array([p.position for p in self.points], dtype=np.float32).reshape(-1, 3)

    def normals_array(self, default: Vec3 = (0.0, 0.0, 0.0)) -> np.ndarray:
        """Per-point normals as (N, 3) float32, `default` where a point has none."""
        return np.array([p.normal if p.normal is not None else default for p in self.points],
                        dtype=np.float32).reshape(-1, 3)

    def colors_array(self, default: Vec3 = (1.0, 1.0, 1.0)) -> np.ndarray:
        """Per-point colors as (N, 3) float32, `default` where a point has none."""
        return np.array([p.color if p.color is not None else default for p in self.points],
                        dtype=np.float32).reshape(-1, 3)

    def to_dict(self) -> dict:
        return {
            "points": [p.to_dict() for p in self.points],
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PointCloud":
        points = [Point.from_dict(p) for p in data["points"]]
        return cls(points, data["metadata"]["source_file"])

    def save_to_file(self, path: str):
        """
        Write the cloud as pretty-printed JSON.

        Raises:
            SerializationError: If a value cannot be encoded (e.g. NaN).
            OSError: If the file cannot be written.
        """
        try:
            text = json.dumps(self.to_dict(), indent=2, allow_nan=False)
        except (TypeError, ValueError) as exc:
            raise SerializationError(exc) from exc
        with open(path, "w", encoding="utf-8") as fp:
            fp.write(text)
        logger.info("Saved %d points to %s", len(self.points), path)

    @classmethod
    def load_from_file(cls, path: str) -> "PointCloud":
        """
        Read a cloud written by `save_to_file`. Metadata is recomputed from the points.

        Raises:
            FileReadError: If the file cannot be read.
            SerializationError: If the content is not a valid point cloud document.
        """
        try:
            with open(path, "r", encoding="utf-8") as fp:
                text = fp.read()
        except OSError as exc:
            raise FileReadError(exc) from exc
        try:
            return cls.from_dict(json.loads(text))
        except (ValueError, KeyError, TypeError) as exc:
            raise SerializationError(exc) from exc

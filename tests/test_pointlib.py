import json

import numpy as np
import pytest

from pointlib import (JITTER_SCALE, FileReadError, GeometryBuffer,
                      InvalidPointCountError, NoMeshDataError, Point,
                      PointCloud, SamplingConfig, SamplingStrategy,
                      SerializationError, generate_points, sample_geometry,
                      select_triangles, triangle_weights)

UNIT_TRIANGLE = np.array([[0, 0, 0], [1, 0, 0], [0, 1, 0]], dtype=np.float32)


def _positions(points):
    return np.array([p.position for p in points], dtype=np.float64)


def _two_triangle_mesh():
    # first triangle has area 100, second has area 1
    vertices = np.array([
        [0, 0, 0], [20, 0, 0], [0, 10, 0],
        [100, 0, 0], [102, 0, 0], [100, 1, 0],
    ], dtype=np.float32)
    indices = np.arange(6)
    return vertices, indices


def _linear_scan(weights, draw):
    remainder = draw * np.cumsum(weights)[-1]
    for i, w in enumerate(weights):
        remainder -= w
        if remainder <= 0:
            return i
    return 0


# --- SamplingConfig ---------------------------------------------------------

def test_config_defaults():
    config = SamplingConfig()
    assert config.point_count == 2000
    assert config.strategy is SamplingStrategy.AREA_WEIGHTED
    assert config.include_normals and config.include_colors
    assert config.scale == 1.0
    assert config.jitter == 0.0
    assert config.seed is None


@pytest.mark.parametrize("raw, stored", [(-0.5, 0.0), (0.25, 0.25), (3.0, 1.0), (float("nan"), 0.0)])
def test_jitter_is_clamped_on_construction(raw, stored):
    assert SamplingConfig(jitter=raw).jitter == stored
    assert SamplingConfig().with_jitter(raw).jitter == stored


def test_nan_jitter_samples_without_noise():
    config = SamplingConfig(50, SamplingStrategy.UNIFORM, jitter=float("nan"), seed=1)

    pos = _positions(generate_points(UNIT_TRIANGLE, [], [], [0, 1, 2], config))

    assert len(pos) == 50
    np.testing.assert_array_equal(pos[:, 2], 0.0)


def test_strategy_given_as_text_is_parsed():
    config = SamplingConfig(5, strategy="vertices")
    assert config.strategy is SamplingStrategy.VERTICES
    assert SamplingConfig().with_strategy("Area_Weighted").strategy is SamplingStrategy.AREA_WEIGHTED

    points = generate_points(UNIT_TRIANGLE, [], [], [0, 1, 2], config)
    assert [p.position for p in points] == [tuple(v) for v in UNIT_TRIANGLE.tolist()]


def test_invalid_strategy_is_rejected_on_construction():
    with pytest.raises(ValueError, match="Invalid sampling strategy"):
        SamplingConfig(strategy="poisson")
    with pytest.raises(TypeError):
        SamplingConfig(strategy=3)


def test_config_builders_return_new_instances():
    base = SamplingConfig(100)
    changed = (base.with_strategy(SamplingStrategy.VERTICES)
               .with_normals(False)
               .with_colors(False)
               .with_scale(-2.0)
               .with_seed(7))
    assert base == SamplingConfig(100)
    assert changed.point_count == 100
    assert changed.strategy is SamplingStrategy.VERTICES
    assert not changed.include_normals and not changed.include_colors
    assert changed.scale == -2.0
    assert changed.seed == 7
    with pytest.raises(AttributeError):
        changed.scale = 1.0


@pytest.mark.parametrize("text, strategy", [
    ("uniform", SamplingStrategy.UNIFORM),
    ("Area-Weighted", SamplingStrategy.AREA_WEIGHTED),
    ("area_weighted", SamplingStrategy.AREA_WEIGHTED),
    ("VERTICES", SamplingStrategy.VERTICES),
])
def test_strategy_parse(text, strategy):
    assert SamplingStrategy.parse(text) is strategy


def test_strategy_parse_rejects_unknown():
    with pytest.raises(ValueError, match="Invalid sampling strategy"):
        SamplingStrategy.parse("poisson")


# --- GeometryBuffer ---------------------------------------------------------

def test_geometry_rejects_misaligned_attributes():
    with pytest.raises(ValueError, match="normals"):
        GeometryBuffer(UNIT_TRIANGLE, normals=np.zeros((2, 3)))


def test_geometry_concatenate_offsets_indices_and_pads_attributes():
    a = GeometryBuffer(UNIT_TRIANGLE, normals=np.tile([0, 0, 1], (3, 1)), indices=[0, 1, 2])
    b = GeometryBuffer(UNIT_TRIANGLE + 5, colors=np.full((3, 3), 0.5), indices=[2, 1, 0])

    merged = GeometryBuffer.concatenate([a, b])

    assert len(merged.vertices) == 6
    np.testing.assert_array_equal(merged.indices, [0, 1, 2, 5, 4, 3])
    np.testing.assert_array_equal(merged.normals[3:], np.zeros((3, 3)))
    np.testing.assert_array_equal(merged.normals[:3], np.tile([0, 0, 1], (3, 1)))
    np.testing.assert_array_equal(merged.colors[:3], np.ones((3, 3)))
    np.testing.assert_allclose(merged.colors[3:], np.full((3, 3), 0.5))


def test_geometry_concatenate_without_attributes():
    merged = GeometryBuffer.concatenate([GeometryBuffer(UNIT_TRIANGLE), GeometryBuffer(UNIT_TRIANGLE)])
    assert not merged.has_normals
    assert not merged.has_colors
    assert len(merged.indices) == 0


# --- Vertices strategy ------------------------------------------------------

def test_vertices_strategy_caps_at_vertex_count():
    vertices = np.random.default_rng(0).random((10, 3)).astype(np.float32)
    config = SamplingConfig(25, SamplingStrategy.VERTICES, scale=2.5)

    points = generate_points(vertices, [], [], [], config)

    assert len(points) == 10
    np.testing.assert_array_equal(
        np.array([p.position for p in points], dtype=np.float32),
        vertices * np.float32(2.5),
    )


def test_vertices_strategy_takes_prefix_with_attributes():
    vertices = np.arange(30, dtype=np.float32).reshape(10, 3)
    normals = np.tile([0, 1, 0], (10, 1))
    colors = np.linspace(0, 1, 30).reshape(10, 3)
    config = SamplingConfig(4, SamplingStrategy.VERTICES)

    points = generate_points(vertices, normals, colors, [], config)

    assert len(points) == 4
    for i, p in enumerate(points):
        assert p.position == tuple(vertices[i].tolist())
        assert p.normal == (0.0, 1.0, 0.0)
        np.testing.assert_allclose(p.color, colors[i], rtol=1e-6)


def test_attributes_are_dropped_when_not_requested():
    normals = np.tile([0, 0, 1], (3, 1))
    colors = np.ones((3, 3))
    config = SamplingConfig(50, SamplingStrategy.UNIFORM, include_normals=False, include_colors=False)

    points = generate_points(UNIT_TRIANGLE, normals, colors, [0, 1, 2], config)

    assert all(p.normal is None and p.color is None for p in points)
    cloud = PointCloud(points, "tri")
    assert not cloud.metadata.has_normals
    assert not cloud.metadata.has_colors


# --- Triangle sampling ------------------------------------------------------

@pytest.mark.parametrize("strategy", [SamplingStrategy.UNIFORM, SamplingStrategy.AREA_WEIGHTED])
def test_triangle_sampling_produces_exact_count_inside_triangle(strategy):
    config = SamplingConfig(2000, strategy, seed=1)

    pos = _positions(generate_points(UNIT_TRIANGLE, [], [], [0, 1, 2], config))

    assert pos.shape == (2000, 3)
    assert np.all(pos[:, 0] >= -1e-6)
    assert np.all(pos[:, 1] >= -1e-6)
    assert np.all(pos[:, 0] + pos[:, 1] <= 1 + 1e-6)
    np.testing.assert_array_equal(pos[:, 2], 0.0)


def test_triangle_sampling_is_uniform_over_area():
    # the half of the unit triangle below x + y = sqrt(0.5) holds half the area
    config = SamplingConfig(20000, SamplingStrategy.UNIFORM, seed=2)
    pos = _positions(generate_points(UNIT_TRIANGLE, [], [], [0, 1, 2], config))
    inner = np.mean(pos[:, 0] + pos[:, 1] <= np.sqrt(0.5))
    assert abs(inner - 0.5) < 0.02


def test_jitter_displacement_is_bounded():
    jitter = 0.5
    bound = jitter * JITTER_SCALE
    config = SamplingConfig(3000, SamplingStrategy.AREA_WEIGHTED, jitter=jitter, seed=3)

    pos = _positions(generate_points(UNIT_TRIANGLE, [], [], [0, 1, 2], config))

    assert np.all(np.abs(pos[:, 2]) <= bound + 1e-6)
    assert np.all(pos[:, :2] >= -bound - 1e-6)
    assert np.abs(pos[:, 2]).max() > 0.0


def test_scale_is_applied_after_jitter():
    config = SamplingConfig(3000, SamplingStrategy.UNIFORM, jitter=1.0, scale=10.0, seed=4)
    pos = _positions(generate_points(UNIT_TRIANGLE, [], [], [0, 1, 2], config))
    assert np.all(np.abs(pos[:, 2]) <= 10.0 * JITTER_SCALE + 1e-5)
    assert np.abs(pos[:, 2]).max() > JITTER_SCALE


def test_area_weighted_prefers_large_triangle():
    vertices, indices = _two_triangle_mesh()
    config = SamplingConfig(20000, SamplingStrategy.AREA_WEIGHTED, seed=5)

    pos = _positions(generate_points(vertices, [], [], indices, config))

    large = np.mean(pos[:, 0] < 50)
    assert abs(large - 100 / 101) < 0.005


def test_uniform_ignores_triangle_size():
    vertices, indices = _two_triangle_mesh()
    config = SamplingConfig(20000, SamplingStrategy.UNIFORM, seed=6)

    pos = _positions(generate_points(vertices, [], [], indices, config))

    assert abs(np.mean(pos[:, 0] < 50) - 0.5) < 0.02


def test_triangle_weights():
    vertices, indices = _two_triangle_mesh()
    triangles = indices.reshape(-1, 3)
    np.testing.assert_allclose(
        triangle_weights(vertices, triangles, SamplingStrategy.AREA_WEIGHTED), [100.0, 1.0])
    np.testing.assert_array_equal(
        triangle_weights(vertices, triangles, SamplingStrategy.UNIFORM), [1.0, 1.0])


def test_select_triangles_matches_linear_scan():
    rng = np.random.default_rng(7)
    weights = rng.random(50)
    weights[::7] = 0.0
    draws = rng.random(500)

    selected = select_triangles(weights, draws)

    expected = [_linear_scan(weights, d) for d in draws]
    assert selected.tolist() == expected


def test_zero_total_weight_selects_first_triangle():
    vertices = np.array([[1, 1, 1]] * 3 + [[5, 5, 5]] * 3, dtype=np.float32)
    config = SamplingConfig(100, SamplingStrategy.AREA_WEIGHTED, seed=8)

    pos = _positions(generate_points(vertices, [], [], np.arange(6), config))

    np.testing.assert_allclose(pos, np.ones((100, 3)))


def test_trailing_partial_triangle_is_ignored():
    vertices = np.vstack([UNIT_TRIANGLE, [[50, 50, 50]]])
    config = SamplingConfig(500, SamplingStrategy.UNIFORM, seed=9)

    pos = _positions(generate_points(vertices, [], [], [0, 1, 2, 3], config))

    assert len(pos) == 500
    assert np.all(pos[:, 0] + pos[:, 1] <= 1 + 1e-6)


def test_blended_normals_are_unit_length():
    normals = np.eye(3)
    config = SamplingConfig(1000, SamplingStrategy.UNIFORM, seed=10)

    points = generate_points(UNIT_TRIANGLE, normals, [], [0, 1, 2], config)

    lengths = np.linalg.norm(np.array([p.normal for p in points]), axis=1)
    np.testing.assert_allclose(lengths, 1.0, atol=1e-5)


def test_blended_colors_are_not_normalized():
    colors = np.full((3, 3), 2.0)
    config = SamplingConfig(200, SamplingStrategy.AREA_WEIGHTED, seed=11)

    points = generate_points(UNIT_TRIANGLE, [], colors, [0, 1, 2], config)

    np.testing.assert_allclose(np.array([p.color for p in points]), 2.0, rtol=1e-5)


@pytest.mark.parametrize("indices", [[], [0], [0, 1]])
def test_missing_triangles_fall_back_to_random_vertices(indices):
    vertices = np.array([[0, 0, 0], [1, 2, 3], [4, 5, 6]], dtype=np.float32)
    colors = np.array([[1, 0, 0], [0, 1, 0], [0, 0, 1]], dtype=np.float32)
    config = SamplingConfig(300, SamplingStrategy.AREA_WEIGHTED, seed=12)

    points = generate_points(vertices, [], colors, indices, config)

    assert len(points) == 300
    by_position = {tuple(v.tolist()): tuple(c.tolist()) for v, c in zip(vertices, colors)}
    for p in points:
        assert by_position[p.position] == p.color
    assert len({p.position for p in points}) == 3


def test_same_seed_reproduces_points():
    vertices, indices = _two_triangle_mesh()
    config = SamplingConfig(100, SamplingStrategy.AREA_WEIGHTED, jitter=0.3, seed=42)
    assert generate_points(vertices, [], [], indices, config) == \
        generate_points(vertices, [], [], indices, config)


def test_explicit_generator_is_used():
    config = SamplingConfig(10, SamplingStrategy.UNIFORM)
    first = generate_points(UNIT_TRIANGLE, [], [], [0, 1, 2], config, rng=np.random.default_rng(3))
    second = sample_geometry(GeometryBuffer(UNIT_TRIANGLE, indices=[0, 1, 2]), config,
                             rng=np.random.default_rng(3))
    assert first == second


def test_negative_point_count_is_rejected():
    with pytest.raises(InvalidPointCountError):
        generate_points(UNIT_TRIANGLE, [], [], [0, 1, 2], SamplingConfig(-1))


def test_empty_vertices_are_rejected():
    with pytest.raises(NoMeshDataError):
        generate_points(np.empty((0, 3)), [], [], [], SamplingConfig(10))


# --- PointCloud -------------------------------------------------------------

def test_point_cloud_metadata():
    points = [
        Point((1.0, -2.0, 3.0)),
        Point((-1.0, 4.0, 0.5), normal=(0.0, 0.0, 1.0)),
        Point((0.0, 0.0, -7.0)),
    ]
    cloud = PointCloud(points, "mesh.glb")

    meta = cloud.metadata
    assert meta.point_count == 3
    assert meta.bounds_min == (-1.0, -2.0, -7.0)
    assert meta.bounds_max == (1.0, 4.0, 3.0)
    assert meta.source_file == "mesh.glb"
    assert meta.has_normals
    assert not meta.has_colors


def test_empty_point_cloud_has_zero_bounds():
    cloud = PointCloud([], "empty")
    assert cloud.metadata.point_count == 0
    assert cloud.metadata.bounds_min == (0.0, 0.0, 0.0)
    assert cloud.metadata.bounds_max == (0.0, 0.0, 0.0)
    assert len(cloud) == 0


def test_attribute_arrays_fill_defaults():
    cloud = PointCloud([Point((0.0, 0.0, 0.0)), Point((1.0, 1.0, 1.0), color=(0.5, 0.25, 0.0))], "x")
    np.testing.assert_array_equal(cloud.colors_array(), [[1, 1, 1], [0.5, 0.25, 0]])
    np.testing.assert_array_equal(cloud.normals_array(), np.zeros((2, 3)))


def test_json_round_trip(tmp_path):
    vertices, indices = _two_triangle_mesh()
    normals = np.tile([0, 0, 1], (6, 1))
    colors = np.random.default_rng(13).random((6, 3))
    config = SamplingConfig(250, jitter=0.2, seed=13)
    cloud = PointCloud(generate_points(vertices, normals, colors, indices, config), "two.glb")

    path = tmp_path / "cloud.json"
    cloud.save_to_file(str(path))

    assert PointCloud.load_from_file(str(path)) == cloud


def test_json_omits_absent_attributes(tmp_path):
    cloud = PointCloud([Point((1.0, 2.0, 3.0)), Point((4.0, 5.0, 6.0), color=(1.0, 0.0, 0.0))], "a")
    path = tmp_path / "cloud.json"
    cloud.save_to_file(str(path))

    data = json.loads(path.read_text())
    assert data["points"][0] == {"position": [1.0, 2.0, 3.0]}
    assert "normal" not in data["points"][1]
    assert data["metadata"] == {
        "point_count": 2,
        "bounds_min": [1.0, 2.0, 3.0],
        "bounds_max": [4.0, 5.0, 6.0],
        "source_file": "a",
        "has_normals": False,
        "has_colors": True,
    }

    loaded = PointCloud.load_from_file(str(path))
    assert loaded.points[0].normal is None
    assert loaded.points[0].color is None
    assert loaded.points[1].color == (1.0, 0.0, 0.0)


def test_load_missing_file(tmp_path):
    with pytest.raises(FileReadError):
        PointCloud.load_from_file(str(tmp_path / "missing.json"))


@pytest.mark.parametrize("content", ["not json", '{"points": []}', '{"points": [{"normal": [0, 0, 1]}]}'])
def test_load_malformed_file(tmp_path, content):
    path = tmp_path / "bad.json"
    path.write_text(content)
    with pytest.raises(SerializationError):
        PointCloud.load_from_file(str(path))


def test_save_rejects_nan(tmp_path):
    cloud = PointCloud([Point((float("nan"), 0.0, 0.0))], "nan")
    with pytest.raises(SerializationError):
        cloud.save_to_file(str(tmp_path / "nan.json"))

import json
import logging
import os

import numpy as np
import open3d as o3d

from pointlib import (FileReadError, GeometryBuffer, InvalidPointCountError,
                      NoMeshDataError, PointCloud, SamplingConfig,
                      SerializationError, UnsupportedFormatError, sample_geometry)

logger = logging.getLogger(__name__)

SUPPORTED_MESH_EXTENSIONS = (".gltf", ".glb", ".ply", ".obj", ".stl", ".off")
OPEN3D_CLOUD_EXTENSIONS = (".pcd", ".ply")

GLB_MAGIC = b"glTF"
PLY_MAGIC = b"ply"


def geometry_from_mesh(mesh: o3d.geometry.TriangleMesh) -> GeometryBuffer:
    """
    Copy the arrays of an Open3D triangle mesh into a GeometryBuffer.

    Normals and colors are only taken when the mesh carries them per vertex.
    """
    empty = np.empty((0, 3))
    return GeometryBuffer(
        vertices=np.asarray(mesh.vertices),
        normals=np.asarray(mesh.vertex_normals) if mesh.has_vertex_normals() else empty,
        colors=np.asarray(mesh.vertex_colors) if mesh.has_vertex_colors() else empty,
        indices=np.asarray(mesh.triangles).reshape(-1),
    )


def _check_header(mesh_path: str, ext: str):
    """Reject container files whose header does not match their extension."""
    try:
        with open(mesh_path, "rb") as fp:
            head = fp.read(4)
            if ext == ".gltf":
                fp.seek(0)
                document = json.loads(fp.read().decode("utf-8"))
    except OSError as exc:
        raise FileReadError(exc) from exc
    except ValueError as exc:
        raise UnsupportedFormatError(f"malformed glTF JSON in {mesh_path}: {exc}") from exc

    if ext == ".glb" and head != GLB_MAGIC:
        raise UnsupportedFormatError(f"malformed GLB (bad magic) in {mesh_path}")
    if ext == ".ply" and head[:3] != PLY_MAGIC:
        raise UnsupportedFormatError(f"malformed PLY (bad header) in {mesh_path}")
    if ext == ".gltf" and not isinstance(document, dict):
        raise UnsupportedFormatError(f"malformed glTF in {mesh_path}: JSON root is not an object")


def load_geometry(mesh_path: str) -> GeometryBuffer:
    """
    Load a mesh (glTF/GLB/PLY/OBJ/STL/OFF) into a GeometryBuffer.

    Args:
        mesh_path: Path to the input mesh file.

    Returns:
        The combined vertex, normal, color and index arrays of the mesh.

    Raises:
        FileReadError: If the file does not exist.
        UnsupportedFormatError: If the extension is not a supported mesh format,
            or a glTF/GLB/PLY file is malformed.
        NoMeshDataError: If the file holds no vertices.
    """
    if not os.path.isfile(mesh_path):
        raise FileReadError(f"{mesh_path}: no such file")

    ext = os.path.splitext(mesh_path)[1].lower()
    if not ext:
        raise UnsupportedFormatError("no extension")
    if ext not in SUPPORTED_MESH_EXTENSIONS:
        raise UnsupportedFormatError(
            f"{ext[1:]} (supported: {', '.join(e[1:] for e in SUPPORTED_MESH_EXTENSIONS)})"
        )

    _check_header(mesh_path, ext)

    # Load mesh
    mesh = o3d.io.read_triangle_mesh(mesh_path)
    if mesh.is_empty():
        raise NoMeshDataError()

    geometry = geometry_from_mesh(mesh)
    logger.debug("Loaded %s: %d vertices, %d triangles, normals=%s, colors=%s",
                 mesh_path, len(geometry.vertices), len(geometry.indices) // 3,
                 geometry.has_normals, geometry.has_colors)
    return geometry


def parse_file(mesh_path: str, config: SamplingConfig) -> PointCloud:
    """
    Load a mesh and sample a point cloud from it.

    Args:
        mesh_path: Path to the input mesh file.
        config: Sampling settings.

    Returns:
        A PointCloud whose source_file is the input file name.
    """
    if config.point_count < 1:
        raise InvalidPointCountError(config.point_count)

    geometry = load_geometry(mesh_path)
    if geometry.is_empty:
        raise NoMeshDataError()

    points = sample_geometry(geometry, config)
    return PointCloud(points, os.path.basename(mesh_path) or "unknown")


def to_open3d(cloud: PointCloud) -> o3d.geometry.PointCloud:
    """Convert to an Open3D point cloud, keeping normals/colors when the cloud has them."""
    pcd = o3d.geometry.PointCloud()
    pcd.points = o3d.utility.Vector3dVector(cloud.positions_array().astype(np.float64))
    if cloud.metadata.has_normals:
        pcd.normals = o3d.utility.Vector3dVector(cloud.normals_array().astype(np.float64))
    if cloud.metadata.has_colors:
        pcd.colors = o3d.utility.Vector3dVector(cloud.colors_array().astype(np.float64))
    return pcd


def save_open3d(cloud: PointCloud, path: str):
    """
    Write the cloud as .pcd or .ply with Open3D.

    Raises:
        UnsupportedFormatError: If the extension is neither .pcd nor .ply.
        SerializationError: If Open3D fails to write the file.
    """
    ext = os.path.splitext(path)[1].lower()
    if ext not in OPEN3D_CLOUD_EXTENSIONS:
        raise UnsupportedFormatError(f"{ext[1:] or 'no extension'} (expected pcd or ply)")
    if not o3d.io.write_point_cloud(path, to_open3d(cloud)):
        raise SerializationError(f"Open3D could not write {path}")
    logger.info("Point cloud saved to: %s", path)


def read_point_cloud(path: str) -> o3d.geometry.PointCloud:
    """Read a saved JSON cloud or a .pcd/.ply file as an Open3D point cloud."""
    if os.path.splitext(path)[1].lower() == ".json":
        return to_open3d(PointCloud.load_from_file(path))
    if not os.path.isfile(path):
        raise FileReadError(f"{path}: no such file")
    return o3d.io.read_point_cloud(path)


def show_point_cloud(path: str):
    """
    Load and display a point cloud using Open3D.

    Args:
        path (str): Path to a .json, .pcd or .ply point cloud.
    """
    pcd = read_point_cloud(path)
    if pcd.is_empty():
        raise NoMeshDataError()

    # Print basic info
    print(f"Point Cloud loaded from: {path}")
    print(pcd)

    extent = np.asarray(pcd.get_max_bound()) - np.asarray(pcd.get_min_bound())
    axis = o3d.geometry.TriangleMesh.create_coordinate_frame(
        size=max(float(np.linalg.norm(extent)) * 0.1, 0.01), origin=(0, 0, 0))

    o3d.visualization.draw_geometries([axis, pcd],
                                      window_name='Open3D - Point Cloud',
                                      width=800, height=600,
                                      left=50, top=50)

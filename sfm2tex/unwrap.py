"""
UV unwrapping of meshes without texture coordinates.

All methods delegate the parameterization to xatlas and keep the vertex set
untouched: xatlas output vertices are mapped back to the input vertices and
only the per-corner UV table is taken from it.

Methods:
- Basic: the mesh is cut into chunks of consecutive triangles sized for one
  texture each; every chunk is parameterized on its own and gets its own
  atlas. Suited to very large meshes.
- LSCM: a single atlas over the whole mesh with default chart options.
- ABF: a single atlas with stricter charting, giving smaller charts with
  less stretch at the cost of time.
"""

import logging

import numpy as np
from numpy.typing import NDArray

from .config import TexturingConfig, UnwrapMethod
from .errors import TexturingError
from .mesh import MeshModel, UDIM_ROW_SIZE

logger = logging.getLogger(__name__)

# Basic unwrap: texture area reserved for each triangle, in texels
TEXELS_PER_TRIANGLE = 64

ABF_MAX_COST = 1.0
ABF_MAX_ITERATIONS = 4


def _align_corners(
    triangles: NDArray[np.int64],
    vmapping: NDArray[np.int64],
    indices: NDArray[np.int64]
) -> NDArray[np.int64]:
    """
    UV index of every input triangle corner.

    xatlas keeps the triangle order but may rotate the corners of a triangle,
    so each input corner is matched to the output corner that maps back to
    the same input vertex.

    Args:
        triangles: Input triangles, shape (M, 3)
        vmapping: Input vertex of each xatlas output vertex
        indices: xatlas output triangles, shape (M, 3)

    Returns:
        UV indices per input corner, shape (M, 3)
    """
    indices = np.asarray(indices, dtype=np.int64).reshape(-1, 3)
    if len(indices) != len(triangles):
        raise TexturingError(
            f"xatlas returned {len(indices)} triangles for {len(triangles)} input triangles"
        )

    mapped = np.asarray(vmapping, dtype=np.int64)[indices]
    rows = np.arange(len(triangles))
    uv_ids = np.empty_like(triangles)
    for i in range(3):
        match = mapped == triangles[:, i:i + 1]
        if not match.any(axis=1).all():
            raise TexturingError("xatlas output does not match the input triangles")
        uv_ids[:, i] = indices[rows, np.argmax(match, axis=1)]
    return uv_ids


def _parametrize_chunk(
    vertices: NDArray[np.float64],
    triangles: NDArray[np.int64]
):
    """
    Parameterize a set of triangles with xatlas.parametrize.

    Returns:
        uvs: UV table of the chunk, shape (K, 2), in [0, 1]
        uv_ids: Index into `uvs` per triangle corner, shape (M, 3)
    """
    import xatlas

    used, local = np.unique(triangles, return_inverse=True)
    local = local.reshape(-1, 3)

    # xatlas requires float32 positions and uint32 face indices
    vmapping, indices, uvs = xatlas.parametrize(
        vertices[used].astype(np.float32),
        local.astype(np.uint32)
    )
    return np.asarray(uvs, dtype=np.float64), _align_corners(local, vmapping, indices)


def _unwrap_basic(mesh: MeshModel, config: TexturingConfig) -> None:
    triangles_per_atlas = max(1, config.output_side ** 2 // TEXELS_PER_TRIANGLE)
    n_chunks = -(-mesh.triangle_count // triangles_per_atlas)

    uv_tables = []
    uv_ids = np.empty_like(mesh.triangles)
    materials = np.empty(mesh.triangle_count, dtype=np.int64)
    n_uvs = 0

    for chunk in range(n_chunks):
        start = chunk * triangles_per_atlas
        stop = min(start + triangles_per_atlas, mesh.triangle_count)
        uvs, chunk_ids = _parametrize_chunk(mesh.vertices, mesh.triangles[start:stop])

        if config.use_udim:
            uvs = uvs + np.array([chunk % UDIM_ROW_SIZE, chunk // UDIM_ROW_SIZE], dtype=np.float64)

        uv_tables.append(uvs)
        uv_ids[start:stop] = chunk_ids + n_uvs
        materials[start:stop] = chunk
        n_uvs += len(uvs)

        logger.debug("Basic unwrap: chunk %d/%d, %d triangles", chunk + 1, n_chunks, stop - start)

    mesh.set_uvs(np.concatenate(uv_tables), uv_ids, materials)


def _unwrap_atlas(mesh: MeshModel, config: TexturingConfig, method: UnwrapMethod) -> None:
    import xatlas

    atlas = xatlas.Atlas()
    atlas.add_mesh(mesh.vertices.astype(np.float32), mesh.triangles.astype(np.uint32))

    chart_options = xatlas.ChartOptions()
    if method is UnwrapMethod.ABF:
        chart_options.max_cost = ABF_MAX_COST
        chart_options.max_iterations = ABF_MAX_ITERATIONS

    pack_options = xatlas.PackOptions()
    pack_options.padding = config.padding
    pack_options.resolution = config.output_side

    atlas.generate(chart_options=chart_options, pack_options=pack_options)
    vmapping, indices, uvs = atlas[0]

    uv_ids = _align_corners(mesh.triangles, vmapping, indices)
    mesh.set_uvs(
        np.asarray(uvs, dtype=np.float64),
        uv_ids,
        np.zeros(mesh.triangle_count, dtype=np.int64)
    )


def unwrap_mesh(mesh: MeshModel, method: UnwrapMethod, config: TexturingConfig) -> None:
    """
    Generate UV coordinates and atlases for a mesh.

    Vertex positions and visibilities are not modified.

    Args:
        mesh: Mesh without UVs, updated in place
        method: Unwrapping method
        config: Texturing configuration (texture size, padding, UDIM)
    """
    ceiling = method.max_recommended_triangles
    if ceiling is not None and mesh.triangle_count > ceiling:
        logger.warning(
            "%s unwrapping is recommended for meshes with fewer than %d triangles "
            "(mesh has %d), consider the Basic method",
            method.value, ceiling, mesh.triangle_count
        )

    if mesh.triangle_count == 0:
        mesh.set_uvs(
            np.zeros((mesh.vertex_count, 2), dtype=np.float64),
            np.zeros((0, 3), dtype=np.int64),
            np.zeros(0, dtype=np.int64)
        )
        mesh.update_atlases(config.use_udim)
        logger.warning("Mesh has no triangles, nothing to unwrap")
        return

    logger.info("Unwrapping %d triangles with %s method", mesh.triangle_count, method.value)
    if method is UnwrapMethod.BASIC:
        _unwrap_basic(mesh, config)
    else:
        _unwrap_atlas(mesh, config, method)

    atlases = mesh.update_atlases(config.use_udim)
    logger.info("Unwrapped mesh: %d UVs, %d atlas(es)", len(mesh.uv_coords), len(atlases))

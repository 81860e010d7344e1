"""
Adaptive subdivision by maximum edge length.

Edges strictly longer than the threshold are split at their midpoint and the
triangles around them are re-triangulated. Passes repeat until no edge
exceeds the threshold or the vertex budget is spent.

New vertices inherit the union of their endpoints' visibilities and, when the
mesh has UVs, the midpoint of the corresponding UV edge. Triangles keep their
material and their winding.
"""

import logging

import numpy as np
from numpy.typing import NDArray

from .mesh import MeshModel

logger = logging.getLogger(__name__)

# Slots 0-2 are the triangle corners, slots 3-5 the midpoints of the edges
# (0,1), (1,2) and (2,0). Triangles are rotated so that the split edges
# come first.
_ONE_SPLIT = np.array([(0, 3, 2), (3, 1, 2)], dtype=np.int64)
_TWO_SPLITS = np.array([(3, 1, 4), (0, 3, 4), (0, 4, 2)], dtype=np.int64)
_THREE_SPLITS = np.array([(0, 3, 5), (3, 1, 4), (5, 4, 2), (3, 4, 5)], dtype=np.int64)


def _triangle_edges(triangles: NDArray[np.int64]) -> NDArray[np.int64]:
    """Edges (c_k, c_k+1) of each triangle, shape (M, 3, 2)."""
    return np.stack([triangles, np.roll(triangles, -1, axis=1)], axis=2)


def _split_edge_ids(
    triangles: NDArray[np.int64],
    split: NDArray[np.bool_]
):
    """
    Unique undirected edges among the split triangle edges.

    Returns:
        edges: Unique edges, shape (E, 2)
        edge_ids: Index into `edges` per triangle edge, -1 where not split,
                  shape (M, 3)
    """
    edges = np.sort(_triangle_edges(triangles), axis=2)
    edge_ids = np.full(split.shape, -1, dtype=np.int64)
    if not split.any():
        return np.zeros((0, 2), dtype=np.int64), edge_ids
    unique, inverse = np.unique(edges[split], axis=0, return_inverse=True)
    edge_ids[split] = inverse.reshape(-1)
    return unique, edge_ids


def _rotate_slots(slots: NDArray[np.int64], rotation: NDArray[np.int64]) -> NDArray[np.int64]:
    """Rotate corner and midpoint slots of each triangle by `rotation` steps."""
    rows = np.arange(len(slots))[:, None]
    order = (np.arange(3)[None, :] + rotation[:, None]) % 3
    return np.concatenate([slots[rows, order], slots[rows, order + 3]], axis=1)


def _retriangulate(
    vertex_slots: NDArray[np.int64],
    uv_slots: NDArray[np.int64],
    split: NDArray[np.bool_]
):
    """
    Split each triangle according to its split edges.

    Returns:
        parents, triangles, uv_triangles: parent triangle index, vertex
        indices and UV indices of every output triangle, ordered by parent
    """
    n_splits = split.sum(axis=1)
    parents = [np.flatnonzero(n_splits == 0)]
    triangles = [vertex_slots[parents[0], :3]]
    uv_triangles = [uv_slots[parents[0], :3]]

    groups = (
        (1, _ONE_SPLIT, lambda s: np.argmax(s, axis=1)),
        (2, _TWO_SPLITS, lambda s: (np.argmin(s, axis=1) + 1) % 3),
        (3, _THREE_SPLITS, lambda s: np.zeros(len(s), dtype=np.int64)),
    )
    for count, template, rotation_of in groups:
        rows = np.flatnonzero(n_splits == count)
        if len(rows) == 0:
            continue
        rotation = rotation_of(split[rows])
        vertices = _rotate_slots(vertex_slots[rows], rotation)
        uvs = _rotate_slots(uv_slots[rows], rotation)
        parents.append(np.repeat(rows, len(template)))
        triangles.append(vertices[:, template].reshape(-1, 3))
        uv_triangles.append(uvs[:, template].reshape(-1, 3))

    parents = np.concatenate(parents)
    order = np.argsort(parents, kind='stable')
    return (
        parents[order],
        np.concatenate(triangles)[order],
        np.concatenate(uv_triangles)[order],
    )


def _subdivide_pass(mesh: MeshModel, threshold: float, budget: int) -> int:
    """One splitting pass. Returns the number of vertices added."""
    vertices = mesh.vertices
    triangles = mesh.triangles

    edges = np.sort(_triangle_edges(triangles).reshape(-1, 2), axis=1)
    unique, inverse = np.unique(edges, axis=0, return_inverse=True)
    inverse = inverse.reshape(-1)
    lengths = np.linalg.norm(vertices[unique[:, 0]] - vertices[unique[:, 1]], axis=1)

    candidates = np.flatnonzero(lengths > threshold)
    if len(candidates) == 0:
        return 0
    if len(candidates) > budget:
        # Longest edges first
        order = np.argsort(-lengths[candidates], kind='stable')
        candidates = np.sort(candidates[order[:budget]])

    n_vertices = mesh.vertex_count
    midpoint_ids = np.full(len(unique), -1, dtype=np.int64)
    midpoint_ids[candidates] = n_vertices + np.arange(len(candidates))

    split_edges = unique[candidates]
    new_vertices = 0.5 * (vertices[split_edges[:, 0]] + vertices[split_edges[:, 1]])
    new_visibilities = [
        mesh.visibilities[a] | mesh.visibilities[b] for a, b in split_edges
    ]

    vertex_mids = midpoint_ids[inverse].reshape(-1, 3)
    split = vertex_mids >= 0
    vertex_slots = np.concatenate([triangles, vertex_mids], axis=1)

    uv_coords = mesh.uv_coords
    if mesh.has_uvs():
        uv_edges, uv_edge_ids = _split_edge_ids(mesh.triangle_uv_ids, split)
        uv_mids = np.where(uv_edge_ids >= 0, len(uv_coords) + uv_edge_ids, -1)
        uv_slots = np.concatenate([mesh.triangle_uv_ids, uv_mids], axis=1)
        uv_coords = np.concatenate([
            uv_coords,
            0.5 * (uv_coords[uv_edges[:, 0]] + uv_coords[uv_edges[:, 1]])
        ])
    else:
        uv_slots = np.zeros_like(vertex_slots)

    parents, new_triangles, new_uv_ids = _retriangulate(vertex_slots, uv_slots, split)
    materials = mesh.triangle_materials[parents]

    mesh.set_geometry(np.concatenate([vertices, new_vertices]), new_triangles)
    mesh.visibilities = list(mesh.visibilities) + new_visibilities
    if mesh.has_uvs():
        mesh.set_uvs(uv_coords, new_uv_ids, materials)
    else:
        mesh.triangle_materials = materials

    return len(candidates)


def subdivide_mesh_max_edge_length(
    mesh: MeshModel,
    max_edge_length: float,
    max_points: int
) -> int:
    """
    Subdivide the mesh until no edge is longer than `max_edge_length`.

    Only edges strictly longer than the threshold are split. The vertex count
    never exceeds `max_points`; when the budget does not allow every split of
    a pass, the longest edges are split first.

    Args:
        mesh: Mesh to subdivide in place
        max_edge_length: Edge length threshold. Zero or less disables
                         subdivision.
        max_points: Maximum number of vertices after subdivision

    Returns:
        Number of vertices added
    """
    if max_edge_length <= 0 or mesh.triangle_count == 0:
        logger.debug("Subdivision skipped (threshold=%s, triangles=%d)",
                     max_edge_length, mesh.triangle_count)
        return 0

    mesh.ensure_visibility_size()
    initial_vertices = mesh.vertex_count
    n_passes = 0

    while mesh.vertex_count < max_points:
        added = _subdivide_pass(mesh, max_edge_length, max_points - mesh.vertex_count)
        if added == 0:
            break
        n_passes += 1

    added_total = mesh.vertex_count - initial_vertices
    logger.info(
        "Subdivided mesh in %d pass(es): %d -> %d vertices, %d triangles",
        n_passes, initial_vertices, mesh.vertex_count, mesh.triangle_count
    )
    return added_total

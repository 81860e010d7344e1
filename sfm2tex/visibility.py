"""
Visibility remapping from the reference point cloud to a mesh.

Three methods transfer per-point camera visibilities onto mesh vertices:

- Pull: each mesh vertex takes the visibilities of the closest reference
  point.
- Push: each reference point adds its visibilities to the three vertices of
  the closest mesh triangle.
- PullPush: union of the Pull and Push results, per vertex.

Whatever the inputs, the result holds exactly one visibility set per mesh
vertex. An empty mesh or an empty reference cloud yields empty sets.
"""

import itertools
import logging
from typing import List

import numpy as np
import trimesh
from numpy.typing import NDArray
from scipy.spatial import cKDTree

from .config import VisibilityRemappingMethod
from .mesh import MeshModel, Visibility
from .reference import ReferencePointCloud

logger = logging.getLogger(__name__)

# Closest-triangle search: triangles with the nearest centroids bound the
# search radius
PUSH_CANDIDATE_TRIANGLES = 8
PUSH_CHUNK_SIZE = 10_000


def pull_visibilities(
    reference: ReferencePointCloud,
    vertices: NDArray[np.float64]
) -> List[Visibility]:
    """
    For each vertex, copy the visibility set of the nearest reference point.

    Args:
        reference: Reference point cloud
        vertices: Mesh vertex positions, shape (N, 3)

    Returns:
        One visibility set per vertex
    """
    n_vertices = len(vertices)
    if n_vertices == 0 or reference.is_empty:
        return [frozenset() for _ in range(n_vertices)]

    tree = cKDTree(reference.points)
    _, nearest = tree.query(vertices, k=1)
    return [reference.visibilities[i] for i in np.asarray(nearest).reshape(-1)]


def closest_triangles(
    points: NDArray[np.float64],
    vertices: NDArray[np.float64],
    triangles: NDArray[np.int64],
    n_candidates: int = PUSH_CANDIDATE_TRIANGLES
) -> NDArray[np.int64]:
    """
    Index of the closest triangle for each point.

    The triangles with the nearest centroids give an upper bound on the
    distance. A triangle at distance d from a point has its centroid within
    d + its circumradius, so every centroid within that bound plus the
    largest radius is checked with the exact point-to-triangle distance.

    Args:
        points: Query points, shape (P, 3)
        vertices: Mesh vertices, shape (N, 3)
        triangles: Mesh triangles, shape (M, 3), M > 0

    Returns:
        Triangle indices, shape (P,)
    """
    triangle_coords = vertices[triangles]
    centroids = triangle_coords.mean(axis=1)
    radii = np.linalg.norm(triangle_coords - centroids[:, None, :], axis=2).max(axis=1)
    max_radius = float(radii.max())
    tolerance = 1e-9 * max(1.0, max_radius)

    tree = cKDTree(centroids)
    k = min(n_candidates, len(triangles))

    result = np.empty(len(points), dtype=np.int64)
    for start in range(0, len(points), PUSH_CHUNK_SIZE):
        chunk = points[start:start + PUSH_CHUNK_SIZE]
        rows = np.arange(len(chunk))

        _, candidates = tree.query(chunk, k=k)
        candidates = np.asarray(candidates, dtype=np.int64).reshape(len(chunk), k)
        distances = _point_triangle_distances(
            triangle_coords[candidates.reshape(-1)], np.repeat(chunk, k, axis=0)
        ).reshape(len(chunk), k)
        nearest = np.argmin(distances, axis=1)
        best = distances[rows, nearest]
        result[start:start + len(chunk)] = candidates[rows, nearest]

        # Points with no finite bound keep the centroid candidate
        bounded = np.flatnonzero(np.isfinite(best))
        if len(bounded) == 0:
            continue
        neighbours = tree.query_ball_point(chunk[bounded], best[bounded] + max_radius + tolerance)
        counts = np.fromiter((len(n) for n in neighbours), dtype=np.int64, count=len(bounded))
        owners = np.repeat(bounded, counts)
        found = np.fromiter(
            itertools.chain.from_iterable(neighbours), dtype=np.int64, count=int(counts.sum())
        )

        # Drop triangles that cannot beat the bound
        centroid_distances = np.linalg.norm(centroids[found] - chunk[owners], axis=1)
        keep = centroid_distances - radii[found] <= best[owners] + tolerance
        owners, found = owners[keep], found[keep]
        if len(found) == 0:
            continue

        exact = _point_triangle_distances(triangle_coords[found], chunk[owners])
        order = np.lexsort((found, exact, owners))
        owners, found = owners[order], found[order]
        _, first = np.unique(owners, return_index=True)
        result[start + owners[first]] = found[first]

    return result


def _point_triangle_distances(
    triangle_coords: NDArray[np.float64],
    points: NDArray[np.float64]
) -> NDArray[np.float64]:
    """Distance from each point to its paired triangle, inf for degenerate ones."""
    closest = trimesh.triangles.closest_point(triangle_coords, points)
    distances = np.linalg.norm(closest - points, axis=1)
    return np.nan_to_num(distances, nan=np.inf)


def push_visibilities(
    reference: ReferencePointCloud,
    vertices: NDArray[np.float64],
    triangles: NDArray[np.int64]
) -> List[Visibility]:
    """
    For each reference point, add its visibility set to the vertices of the
    closest mesh triangle.

    Args:
        reference: Reference point cloud
        vertices: Mesh vertex positions, shape (N, 3)
        triangles: Mesh triangles, shape (M, 3)

    Returns:
        One visibility set per vertex (empty for vertices nothing pushed to)
    """
    n_vertices = len(vertices)
    if n_vertices == 0 or len(triangles) == 0 or reference.is_empty:
        return [frozenset() for _ in range(n_vertices)]

    accumulated = [set() for _ in range(n_vertices)]
    nearest = closest_triangles(reference.points, vertices, triangles)

    for point_index, triangle_index in enumerate(nearest):
        visibility = reference.visibilities[point_index]
        if not visibility:
            continue
        for vertex in triangles[triangle_index]:
            accumulated[vertex].update(visibility)

    return [frozenset(s) for s in accumulated]


def remap_visibilities(
    method: VisibilityRemappingMethod,
    reference: ReferencePointCloud,
    mesh: MeshModel
) -> None:
    """
    Replace the mesh vertex visibilities with visibilities remapped from the
    reference point cloud.

    Args:
        method: Pull, Push or PullPush
        reference: Reference point cloud (read only)
        mesh: Target mesh, updated in place
    """
    if method is VisibilityRemappingMethod.PULL:
        visibilities = pull_visibilities(reference, mesh.vertices)
    elif method is VisibilityRemappingMethod.PUSH:
        visibilities = push_visibilities(reference, mesh.vertices, mesh.triangles)
    elif method is VisibilityRemappingMethod.PULL_PUSH:
        pulled = pull_visibilities(reference, mesh.vertices)
        pushed = push_visibilities(reference, mesh.vertices, mesh.triangles)
        visibilities = [a | b for a, b in zip(pulled, pushed)]
    else:
        raise ValueError(f"Unknown visibility remapping method: {method}")

    mesh.visibilities = visibilities

    logger.debug(
        "Remapped visibilities (%s): %d/%d vertices visible",
        method.value, sum(1 for v in visibilities if v), mesh.vertex_count
    )

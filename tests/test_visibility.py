"""
Tests for visibility remapping (Pull, Push, PullPush).
"""

import numpy as np
import pytest
import trimesh

from sfm2tex.config import VisibilityRemappingMethod
from sfm2tex.mesh import MeshModel
from sfm2tex.reference import ReferencePointCloud
from sfm2tex.visibility import (
    closest_triangles,
    pull_visibilities,
    push_visibilities,
    remap_visibilities,
)

from conftest import QUAD_TRIANGLES, QUAD_VERTICES


def _make_cloud(points, visibilities) -> ReferencePointCloud:
    return ReferencePointCloud(
        points=np.asarray(points, dtype=np.float64).reshape(-1, 3),
        visibilities=tuple(frozenset(v) for v in visibilities)
    )


def _make_quad() -> MeshModel:
    return MeshModel(QUAD_VERTICES, QUAD_TRIANGLES)


class TestPull:
    """Test vertex pulls from the nearest reference point."""

    def test_nearest_point(self):
        """Each vertex copies the set of its closest point."""
        cloud = _make_cloud(
            [[-1.1, -1.0, 0.0], [1.1, 1.1, 0.0]],
            [{0}, {1, 2}]
        )

        result = pull_visibilities(cloud, QUAD_VERTICES)

        assert result[0] == frozenset({0})
        assert result[2] == frozenset({1, 2})
        assert len(result) == 4

    def test_idempotent(self):
        """Pulling twice from the same cloud gives the same result."""
        rng = np.random.RandomState(3)
        cloud = _make_cloud(rng.rand(20, 3), [{i % 3} for i in range(20)])
        mesh = _make_quad()

        remap_visibilities(VisibilityRemappingMethod.PULL, cloud, mesh)
        first = list(mesh.visibilities)
        remap_visibilities(VisibilityRemappingMethod.PULL, cloud, mesh)

        assert mesh.visibilities == first


class TestPush:
    """Test point pushes onto the nearest triangle."""

    def test_closest_triangle(self):
        """Points above each half of the quad find their triangle."""
        points = np.array([[0.5, -0.5, 0.1], [-0.5, 0.5, -0.1]])

        result = closest_triangles(points, QUAD_VERTICES, QUAD_TRIANGLES)

        np.testing.assert_array_equal(result, [0, 1])

    def test_large_triangle_with_distant_centroid(self):
        """A large triangle right under the point wins over nearer small centroids."""
        vertices = [[-50.0, -50.0, 0.0], [50.0, -50.0, 0.0], [-50.0, 50.0, 0.0]]
        triangles = [[0, 1, 2]]
        for i in range(10):
            base = len(vertices)
            x, y = 5.0 + 0.1 * i, 5.0
            vertices += [[x, y, 0.0], [x + 0.01, y, 0.0], [x, y + 0.01, 0.0]]
            triangles.append([base, base + 1, base + 2])

        result = closest_triangles(np.array([[1.0, 1.0, 0.5]]), np.array(vertices), np.array(triangles))

        assert result[0] == 0

    def test_matches_exhaustive_search(self):
        """Mixed triangle sizes give the same answer as checking every triangle."""
        rng = np.random.RandomState(11)
        n_triangles = 40
        centers = rng.uniform(-10, 10, (n_triangles, 1, 3))
        scales = rng.choice([0.05, 0.5, 8.0], size=(n_triangles, 1, 1))
        triangle_coords = centers + rng.uniform(-1, 1, (n_triangles, 3, 3)) * scales
        vertices = triangle_coords.reshape(-1, 3)
        triangles = np.arange(3 * n_triangles).reshape(-1, 3)
        points = rng.uniform(-12, 12, (50, 3))

        result = closest_triangles(points, vertices, triangles, n_candidates=2)

        for point, found in zip(points, result):
            closest = trimesh.triangles.closest_point(triangle_coords, np.tile(point, (n_triangles, 1)))
            distances = np.linalg.norm(closest - point, axis=1)
            assert distances[found] == pytest.approx(distances.min())

    def test_push_to_triangle_vertices(self):
        """A point adds its set to the three vertices of its triangle."""
        cloud = _make_cloud([[0.5, -0.5, 0.0]], [{4}])

        result = push_visibilities(cloud, QUAD_VERTICES, QUAD_TRIANGLES)

        # Triangle 0 is (0, 2, 1); vertex 3 is untouched
        assert result == [frozenset({4}), frozenset({4}), frozenset({4}), frozenset()]

    def test_push_accumulates(self):
        """Sets pushed onto a shared vertex are merged."""
        cloud = _make_cloud([[0.5, -0.5, 0.0], [-0.5, 0.5, 0.0]], [{1}, {2}])

        result = push_visibilities(cloud, QUAD_VERTICES, QUAD_TRIANGLES)

        assert result[0] == frozenset({1, 2})
        assert result[1] == frozenset({1})
        assert result[3] == frozenset({2})


class TestRemapVisibilities:
    """Test the remapping driver."""

    @pytest.mark.parametrize("method", list(VisibilityRemappingMethod))
    def test_length_matches_vertex_count(self, method):
        """Every method yields one set per vertex."""
        cloud = _make_cloud([[0, 0, 0], [5, 5, 5]], [{0}, {1}])
        mesh = _make_quad()

        remap_visibilities(method, cloud, mesh)

        assert len(mesh.visibilities) == mesh.vertex_count

    @pytest.mark.parametrize("method", list(VisibilityRemappingMethod))
    def test_empty_cloud(self, method):
        """An empty cloud leaves every vertex with an empty set."""
        mesh = _make_quad()
        mesh.visibilities = [frozenset({9})] * 4

        remap_visibilities(method, _make_cloud(np.zeros((0, 3)), []), mesh)

        assert mesh.visibilities == [frozenset()] * 4

    @pytest.mark.parametrize("method", list(VisibilityRemappingMethod))
    def test_empty_mesh(self, method):
        mesh = MeshModel(np.zeros((0, 3)), np.zeros((0, 3)))

        remap_visibilities(method, _make_cloud([[0, 0, 0]], [{0}]), mesh)

        assert mesh.visibilities == []

    def test_mesh_without_triangles(self):
        """Push has nothing to push onto; Pull still works per vertex."""
        mesh = MeshModel(QUAD_VERTICES, np.zeros((0, 3)))
        cloud = _make_cloud([[-1, -1, 0]], [{3}])

        remap_visibilities(VisibilityRemappingMethod.PULL_PUSH, cloud, mesh)

        assert mesh.visibilities == [frozenset({3})] * 4

    def test_pull_push_is_union(self):
        """PullPush is the per-vertex union of Pull and Push."""
        rng = np.random.RandomState(7)
        cloud = _make_cloud(rng.uniform(-1, 1, (30, 3)) * [1, 1, 0.1], [{i % 5} for i in range(30)])

        pulled = pull_visibilities(cloud, QUAD_VERTICES)
        pushed = push_visibilities(cloud, QUAD_VERTICES, QUAD_TRIANGLES)
        mesh = _make_quad()
        remap_visibilities(VisibilityRemappingMethod.PULL_PUSH, cloud, mesh)

        assert mesh.visibilities == [a | b for a, b in zip(pulled, pushed)]

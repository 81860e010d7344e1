"""
Tests for reference point cloud construction.
"""

import numpy as np
import pytest

from sfm2tex.errors import ResolutionError
from sfm2tex.reference import ReferencePointCloud, build_reference_point_cloud
from sfm2tex.sfm_data import Landmark, Observation


def _make_landmark(landmark_id, position, view_ids=()):
    return Landmark(
        landmark_id=landmark_id,
        position=tuple(float(v) for v in position),
        observations={v: Observation(x=(0.0, 0.0), feature_id=i) for i, v in enumerate(view_ids)}
    )


def _resolver(mapping):
    def resolve(view_id):
        try:
            return mapping[view_id]
        except KeyError:
            raise ResolutionError(view_id) from None
    return resolve


class TestBuildReferencePointCloud:
    """Test landmark to reference point conversion."""

    def test_one_point_per_landmark_in_order(self):
        """Output length and order follow the landmark collection."""
        landmarks = {
            1: _make_landmark(1, (1, 0, 0), [100]),
            5: _make_landmark(5, (0, 2, 0), [100, 200]),
            9: _make_landmark(9, (0, 0, 3), [200]),
        }

        cloud = build_reference_point_cloud(landmarks, _resolver({100: 0, 200: 1}))

        assert len(cloud) == 3
        np.testing.assert_allclose(cloud.points, [[1, 0, 0], [0, 2, 0], [0, 0, 3]])
        assert cloud.visibilities == (frozenset({0}), frozenset({0, 1}), frozenset({1}))

    def test_landmark_without_observations(self):
        """A landmark nobody observed still contributes a point, with an empty set."""
        landmarks = {0: _make_landmark(0, (1, 1, 1)), 1: _make_landmark(1, (2, 2, 2), [7])}

        cloud = build_reference_point_cloud(landmarks, _resolver({7: 0}))

        assert len(cloud) == 2
        assert cloud.visibilities[0] == frozenset()
        assert cloud.visibilities[1] == frozenset({0})

    def test_no_landmarks(self):
        """Zero landmarks give an empty cloud, not an error."""
        cloud = build_reference_point_cloud({}, _resolver({}))

        assert cloud.is_empty
        assert cloud.points.shape == (0, 3)
        assert cloud.visibilities == ()

    def test_unknown_view_raises(self):
        """An observation from an unknown view is fatal and names the landmark."""
        landmarks = {4: _make_landmark(4, (0, 0, 0), [1, 42])}

        with pytest.raises(ResolutionError) as excinfo:
            build_reference_point_cloud(landmarks, _resolver({1: 0}))

        assert excinfo.value.view_id == 42
        assert excinfo.value.landmark_id == 4
        assert "Landmark 4" in str(excinfo.value)

    def test_points_are_read_only(self):
        """The cloud cannot be modified after construction."""
        cloud = build_reference_point_cloud({0: _make_landmark(0, (1, 2, 3))}, _resolver({}))

        with pytest.raises(ValueError):
            cloud.points[0, 0] = 5.0


class TestReferencePointCloud:
    """Test the cloud container."""

    def test_length_mismatch_rejected(self):
        with pytest.raises(ValueError):
            ReferencePointCloud(points=np.zeros((2, 3)), visibilities=(frozenset(),))

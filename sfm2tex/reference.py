"""
Reference point cloud with per-point visibilities.

The reference cloud is the reconstruction side of visibility remapping: one
3D point per landmark, each with the set of camera indices that observed it.
It is built once per run and only read afterwards.
"""

from dataclasses import dataclass
from typing import Callable, FrozenSet, Iterable, Mapping, Tuple

import numpy as np
from numpy.typing import NDArray

from .errors import ResolutionError
from .sfm_data import Landmark

Visibility = FrozenSet[int]


@dataclass(frozen=True)
class ReferencePointCloud:
    """
    Points and their visibility sets, in landmark order.

    `points` is a read-only array of shape (N, 3); `visibilities` holds one
    frozenset of camera indices per point.
    """
    points: NDArray[np.float64]
    visibilities: Tuple[Visibility, ...]

    def __post_init__(self):
        if len(self.points) != len(self.visibilities):
            raise ValueError(
                f"Number of points ({len(self.points)}) must match "
                f"number of visibility sets ({len(self.visibilities)})"
            )

    def __len__(self) -> int:
        return len(self.points)

    @property
    def is_empty(self) -> bool:
        return len(self.points) == 0

    def __repr__(self) -> str:
        return f"ReferencePointCloud(points={len(self.points)})"


def build_reference_point_cloud(
    landmarks: Mapping[int, Landmark],
    get_index_from_view_id: Callable[[int], int]
) -> ReferencePointCloud:
    """
    Build the reference point cloud from reconstruction landmarks.

    Every landmark contributes exactly one point, even when it has no
    observations (its visibility set is then empty).

    Args:
        landmarks: Landmarks keyed by id, iterated in mapping order
        get_index_from_view_id: Resolves a view id to a camera index

    Returns:
        ReferencePointCloud with len(landmarks) points

    Raises:
        ResolutionError: If an observation references an unknown view
    """
    points = np.zeros((len(landmarks), 3), dtype=np.float64)
    visibilities = []

    for i, landmark in enumerate(landmarks.values()):
        points[i] = landmark.position
        visibilities.append(_resolve_visibility(landmark, landmark.observations.keys(), get_index_from_view_id))

    points.setflags(write=False)
    return ReferencePointCloud(points=points, visibilities=tuple(visibilities))


def _resolve_visibility(
    landmark: Landmark,
    view_ids: Iterable[int],
    get_index_from_view_id: Callable[[int], int]
) -> Visibility:
    indices = set()
    for view_id in view_ids:
        try:
            indices.add(get_index_from_view_id(view_id))
        except ResolutionError as e:
            raise ResolutionError(e.view_id, landmark.landmark_id) from None
    return frozenset(indices)

"""
SfMData scene loading.

Reads the JSON scene description produced by the reconstruction stages of a
photogrammetry pipeline:

    {
      "views":      [{"viewId", "poseId", "intrinsicId", "path", "width", "height", "metadata"}],
      "intrinsics": [{"intrinsicId", "width", "height", "pxFocalLength" | "focalLength"+"sensorWidth",
                      "principalPoint"}],
      "poses":      [{"poseId", "pose": {"transform": {"rotation": [9], "center": [3]}}}],
      "structure":  [{"landmarkId", "X": [3], "color": [3],
                      "observations": [{"observationId", "featureId", "x": [2]}]}]
    }

Numeric values may be stored as JSON numbers or as strings. Pose rotations
are row-major world-to-camera matrices; centers are camera positions in world
coordinates. An observation's `observationId` is the id of the observing view.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from .errors import LoadError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Observation:
    """2D feature observation of a landmark in one view."""
    x: Tuple[float, float]
    feature_id: int = 0


@dataclass(frozen=True)
class Landmark:
    """Reconstructed 3D point and the views that observed it."""
    landmark_id: int
    position: Tuple[float, float, float]
    observations: Mapping[int, Observation] = field(default_factory=dict)
    color: Tuple[int, int, int] = (255, 255, 255)


@dataclass(frozen=True)
class Intrinsic:
    """Pinhole intrinsics in pixels."""
    intrinsic_id: int
    width: int
    height: int
    focal_length: Tuple[float, float]
    principal_point: Tuple[float, float]


@dataclass(frozen=True)
class Pose:
    """World-to-camera rotation and camera center."""
    pose_id: int
    rotation: NDArray[np.float64]
    center: NDArray[np.float64]


@dataclass(frozen=True)
class View:
    """One source image of the scene."""
    view_id: int
    path: str
    width: int
    height: int
    pose_id: Optional[int] = None
    intrinsic_id: Optional[int] = None
    metadata: Mapping[str, str] = field(default_factory=dict)


class SfMData:
    """
    Scene: views, intrinsics, poses and landmarks.

    Landmarks are kept ordered by landmark id, which is the iteration order
    every consumer relies on.
    """

    def __init__(
        self,
        views: Dict[int, View],
        intrinsics: Dict[int, Intrinsic],
        poses: Dict[int, Pose],
        landmarks: Dict[int, Landmark]
    ):
        self.views = dict(sorted(views.items()))
        self.intrinsics = intrinsics
        self.poses = poses
        self.landmarks = dict(sorted(landmarks.items()))

    @classmethod
    def from_json_file(cls, filepath: str) -> "SfMData":
        """
        Load a scene from an SfMData JSON file.

        Raises:
            LoadError: If the file cannot be read or is malformed
        """
        try:
            with open(filepath, 'r') as f:
                data = json.load(f)
        except OSError as e:
            raise LoadError(f"The input SfMData file '{filepath}' cannot be read: {e}")
        except json.JSONDecodeError as e:
            raise LoadError(f"The input SfMData file '{filepath}' is not valid JSON: {e}")

        try:
            scene = cls.from_dict(data, base_dir=Path(filepath).parent)
        except LoadError:
            raise
        except (KeyError, TypeError, ValueError) as e:
            raise LoadError(f"The input SfMData file '{filepath}' is malformed: {e!r}")

        logger.info(
            "Loaded SfMData '%s': %d views, %d poses, %d landmarks",
            filepath, len(scene.views), len(scene.poses), len(scene.landmarks)
        )
        return scene

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base_dir: Optional[Path] = None) -> "SfMData":
        """
        Build a scene from an already parsed SfMData mapping.

        Relative view paths are resolved against `base_dir` when given.
        """
        if not isinstance(data, dict):
            raise LoadError("SfMData root must be a JSON object")

        views = {}
        for item in data.get('views', []):
            view = _parse_view(item, base_dir)
            views[view.view_id] = view

        intrinsics = {}
        for item in data.get('intrinsics', []):
            intrinsic = _parse_intrinsic(item)
            intrinsics[intrinsic.intrinsic_id] = intrinsic

        poses = {}
        for item in data.get('poses', []):
            pose = _parse_pose(item)
            poses[pose.pose_id] = pose

        landmarks = {}
        for item in data.get('structure', []):
            landmark = _parse_landmark(item)
            landmarks[landmark.landmark_id] = landmark

        return cls(views, intrinsics, poses, landmarks)

    def get_landmarks(self) -> Dict[int, Landmark]:
        return self.landmarks

    def is_pose_and_intrinsic_defined(self, view: View) -> bool:
        """A view can be used for texturing only if its camera is known."""
        return (
            view.pose_id is not None and view.pose_id in self.poses
            and view.intrinsic_id is not None and view.intrinsic_id in self.intrinsics
        )

    def get_valid_views(self):
        """Views with a known pose and intrinsic, in ascending view id order."""
        return [view for view in self.views.values() if self.is_pose_and_intrinsic_defined(view)]

    def __repr__(self) -> str:
        return (
            f"SfMData(views={len(self.views)}, poses={len(self.poses)}, "
            f"landmarks={len(self.landmarks)})"
        )


def _as_int(value: Any) -> int:
    return int(value)


def _as_float_tuple(values: Any, size: int) -> Tuple[float, ...]:
    result = tuple(float(v) for v in values)
    if len(result) != size:
        raise ValueError(f"expected {size} values, got {len(result)}")
    return result


def _parse_view(item: Dict[str, Any], base_dir: Optional[Path]) -> View:
    path = str(item.get('path', ''))
    if path and base_dir is not None and not Path(path).is_absolute():
        path = str(base_dir / path)
    pose_id = item.get('poseId')
    intrinsic_id = item.get('intrinsicId')
    return View(
        view_id=_as_int(item['viewId']),
        path=path,
        width=_as_int(item.get('width', 0)),
        height=_as_int(item.get('height', 0)),
        pose_id=_as_int(pose_id) if pose_id is not None else None,
        intrinsic_id=_as_int(intrinsic_id) if intrinsic_id is not None else None,
        metadata={str(k): str(v) for k, v in (item.get('metadata') or {}).items()}
    )


def _parse_intrinsic(item: Dict[str, Any]) -> Intrinsic:
    width = _as_int(item['width'])
    height = _as_int(item['height'])

    if 'pxFocalLength' in item:
        px_focal = item['pxFocalLength']
        if isinstance(px_focal, (list, tuple)):
            fx, fy = _as_float_tuple(px_focal, 2)
        else:
            fx = fy = float(px_focal)
    elif 'focalLength' in item and 'sensorWidth' in item:
        # Focal length in mm, converted with the sensor width
        fx = fy = float(item['focalLength']) * width / float(item['sensorWidth'])
    else:
        raise ValueError(f"intrinsic {item.get('intrinsicId')} has no focal length")

    if 'principalPoint' in item:
        cx, cy = _as_float_tuple(item['principalPoint'], 2)
    else:
        cx, cy = width / 2.0, height / 2.0

    return Intrinsic(
        intrinsic_id=_as_int(item['intrinsicId']),
        width=width,
        height=height,
        focal_length=(fx, fy),
        principal_point=(cx, cy)
    )


def _parse_pose(item: Dict[str, Any]) -> Pose:
    transform = item['pose']['transform']
    rotation = np.array(_as_float_tuple(transform['rotation'], 9), dtype=np.float64).reshape(3, 3)
    center = np.array(_as_float_tuple(transform['center'], 3), dtype=np.float64)
    return Pose(pose_id=_as_int(item['poseId']), rotation=rotation, center=center)


def _parse_landmark(item: Dict[str, Any]) -> Landmark:
    observations = {}
    for obs in item.get('observations', []):
        view_id = _as_int(obs['observationId'])
        observations[view_id] = Observation(
            x=_as_float_tuple(obs.get('x', (0.0, 0.0)), 2),
            feature_id=_as_int(obs.get('featureId', 0))
        )

    color = item.get('color', (255, 255, 255))
    return Landmark(
        landmark_id=_as_int(item['landmarkId']),
        position=_as_float_tuple(item['X'], 3),
        observations=observations,
        color=tuple(int(c) for c in color)
    )

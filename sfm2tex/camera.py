"""
Pinhole cameras of the reconstructed views.

A Camera holds the calibration of a view (focal length, principal point,
image size) and its pose (orientation and center in world space).

Cameras follow the OpenCV convention used by SfM reconstructions:
X right, Y down, Z forward. The rotation maps world axes to camera axes
(world-to-camera), and the center is the camera position in world space.
"""

import numpy as np
from typing import Tuple, Optional
from numpy.typing import NDArray

from .sfm_data import Intrinsic, Pose


class Camera:
    """
    Pinhole camera of one view, without lens distortion.

    Calibration:
    - focal_length: (fx, fy) in pixels
    - principal_point: (cx, cy) in pixels
    - image_size: (width, height) in pixels

    Pose:
    - center: 3D camera position in world space
    - rotation: 3x3 world-to-camera rotation matrix
    """

    def __init__(
        self,
        focal_length: Tuple[float, float],
        image_size: Tuple[int, int],
        principal_point: Optional[Tuple[float, float]] = None,
        center: Optional[NDArray[np.float64]] = None,
        rotation: Optional[NDArray[np.float64]] = None
    ):
        """
        Args:
            focal_length: (fx, fy) in pixels
            image_size: (width, height) in pixels
            principal_point: (cx, cy) in pixels
                            If None, defaults to image center
            center: Camera position in world coords, shape (3,)
                   If None, defaults to origin [0, 0, 0]
            rotation: World-to-camera rotation matrix, shape (3, 3)
                     Rows are camera's local axes in world coords
                     If None, defaults to identity (camera looks down +Z)
        """
        self.fx, self.fy = focal_length
        self.width, self.height = image_size

        if principal_point is None:
            self.cx = self.width / 2.0
            self.cy = self.height / 2.0
        else:
            self.cx, self.cy = principal_point

        if center is None:
            self.center = np.zeros(3, dtype=np.float64)
        else:
            self.center = np.array(center, dtype=np.float64)

        if rotation is None:
            self.rotation = np.eye(3, dtype=np.float64)
        else:
            self.rotation = np.array(rotation, dtype=np.float64)

    @classmethod
    def from_sfm(cls, intrinsic: Intrinsic, pose: Pose) -> "Camera":
        """
        Create camera from an SfM intrinsic and pose.

        Args:
            intrinsic: Pinhole intrinsics of the view
            pose: World-to-camera rotation and center of the view

        Returns:
            Camera instance
        """
        return cls(
            focal_length=intrinsic.focal_length,
            image_size=(intrinsic.width, intrinsic.height),
            principal_point=intrinsic.principal_point,
            center=pose.center,
            rotation=pose.rotation
        )

    def project(
        self,
        points_3d: NDArray[np.float64]
    ) -> Tuple[NDArray[np.float64], NDArray[np.float64]]:
        """
        Project 3D points in world coordinates to 2D image coordinates.

        Args:
            points_3d: 3D points in world coords, shape (N, 3)

        Returns:
            pixels: 2D points in image coordinates, shape (N, 2)
                    Points behind the camera get NaN coordinates.
            depth: Z coordinate in camera space, shape (N,)
                   Positive for points in front of the camera.
        """
        points_3d = np.asarray(points_3d, dtype=np.float64).reshape(-1, 3)
        points_cam = (points_3d - self.center) @ self.rotation.T
        depth = points_cam[:, 2]

        pixels = np.full((len(points_3d), 2), np.nan, dtype=np.float64)
        in_front = depth > 0
        pixels[in_front, 0] = self.fx * points_cam[in_front, 0] / depth[in_front] + self.cx
        pixels[in_front, 1] = self.fy * points_cam[in_front, 1] / depth[in_front] + self.cy

        return pixels, depth

    def is_in_image(self, pixels: NDArray[np.float64], margin: float = 0.0) -> NDArray[np.bool_]:
        """
        Check which pixel coordinates fall inside the image.

        NaN coordinates (points behind the camera) are outside.
        """
        with np.errstate(invalid='ignore'):
            return (
                (pixels[:, 0] >= margin) & (pixels[:, 0] <= self.width - 1 - margin) &
                (pixels[:, 1] >= margin) & (pixels[:, 1] <= self.height - 1 - margin)
            )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"Camera(center={self.center}, "
            f"focal=({self.fx:.1f}, {self.fy:.1f}), "
            f"size=({self.width}, {self.height}))"
        )

"""
Multi-view parameters: the set of cameras usable for texturing.

MultiViewParams assigns each valid view (known pose and intrinsic) a stable,
contiguous index, in ascending view id order. Visibility sets everywhere in
the pipeline store these indices, never raw view ids.

ImageCache loads source images on demand, keeps a bounded number of them in
memory and optionally uniformizes their exposure.
"""

import logging
import math
from collections import OrderedDict
from pathlib import Path
from typing import Dict, List, Optional

import cv2
import numpy as np
from numpy.typing import NDArray

from .camera import Camera
from .errors import LoadError, ResolutionError
from .sfm_data import SfMData, View

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".tif", ".tiff", ".exr", ".JPG", ".JPEG", ".PNG", ".TIF")


class MultiViewParams:
    """
    Cameras and image locations of the valid views of a scene.

    Args:
        sfm_data: Loaded scene
        images_folder: If set, images are looked up as
                       <images_folder>/<viewId>.<ext> instead of the view paths
    """

    def __init__(self, sfm_data: SfMData, images_folder: Optional[str] = None):
        self.images_folder = Path(images_folder) if images_folder else None
        self.views: List[View] = sfm_data.get_valid_views()
        self.cameras: List[Camera] = [
            Camera.from_sfm(sfm_data.intrinsics[view.intrinsic_id], sfm_data.poses[view.pose_id])
            for view in self.views
        ]
        self._index_from_view_id: Dict[int, int] = {
            view.view_id: index for index, view in enumerate(self.views)
        }

        n_invalid = len(sfm_data.views) - len(self.views)
        if n_invalid:
            logger.warning("%d view(s) without pose or intrinsic are ignored", n_invalid)

    @property
    def nb_cameras(self) -> int:
        return len(self.views)

    def get_index_from_view_id(self, view_id: int) -> int:
        """
        Resolve a view id to its camera index.

        Raises:
            ResolutionError: If the view is not a valid view of the scene
        """
        try:
            return self._index_from_view_id[view_id]
        except KeyError:
            raise ResolutionError(view_id) from None

    def get_view_id(self, index: int) -> int:
        return self.views[index].view_id

    def get_camera(self, index: int) -> Camera:
        return self.cameras[index]

    def get_image_path(self, index: int) -> Path:
        """
        Locate the source image of a camera.

        Raises:
            LoadError: If no image file can be found
        """
        view = self.views[index]
        if self.images_folder is not None:
            for ext in IMAGE_EXTENSIONS:
                candidate = self.images_folder / f"{view.view_id}{ext}"
                if candidate.exists():
                    return candidate
            raise LoadError(
                f"No image for view {view.view_id} in images folder '{self.images_folder}'"
            )
        if not view.path:
            raise LoadError(f"View {view.view_id} has no image path")
        return Path(view.path)

    def compute_exposure_corrections(self) -> NDArray[np.float64]:
        """
        Per-camera gain that brings every image to the median exposure.

        The exposure value of a view is derived from its metadata:
            ev = log2(FNumber^2 / ExposureTime) - log2(ISO / 100)
        Views without usable metadata get a gain of 1.

        Returns:
            Gains, shape (nb_cameras,)
        """
        evs = np.array([_exposure_value(view.metadata) for view in self.views], dtype=np.float64)
        gains = np.ones(len(evs), dtype=np.float64)
        known = np.isfinite(evs)
        if not known.any():
            logger.warning("No exposure metadata found, exposure correction disabled")
            return gains

        median_ev = float(np.median(evs[known]))
        gains[known] = np.power(2.0, evs[known] - median_ev)
        logger.debug("Exposure correction: median EV %.3f", median_ev)
        return gains

    def __repr__(self) -> str:
        return f"MultiViewParams(cameras={self.nb_cameras})"


def _metadata_float(metadata, *keys: str) -> Optional[float]:
    for key in keys:
        for candidate in (key, f"Exif:{key}", f"exif:{key}"):
            if candidate in metadata:
                try:
                    value = float(metadata[candidate])
                except ValueError:
                    continue
                if value > 0:
                    return value
    return None


def _exposure_value(metadata) -> float:
    exposure_time = _metadata_float(metadata, "ExposureTime")
    f_number = _metadata_float(metadata, "FNumber")
    iso = _metadata_float(metadata, "ISOSpeedRatings", "PhotographicSensitivity", "ISO")
    if exposure_time is None or f_number is None:
        return math.nan
    ev = math.log2(f_number * f_number / exposure_time)
    if iso is not None:
        ev -= math.log2(iso / 100.0)
    return ev


class ImageCache:
    """
    Load source images as RGB float32 in [0, 1] (or linear gain-corrected).

    Keeps at most `max_images` decoded images, evicting the least recently
    used one.
    """

    def __init__(
        self,
        mp: MultiViewParams,
        max_images: int = 8,
        correct_ev: bool = False
    ):
        self.mp = mp
        self.max_images = max(1, max_images)
        self._images: "OrderedDict[int, NDArray[np.float32]]" = OrderedDict()
        self._gains = mp.compute_exposure_corrections() if correct_ev else None

    def get(self, index: int) -> NDArray[np.float32]:
        """
        Get the image of camera `index`, shape (H, W, 3), RGB float32.

        Raises:
            LoadError: If the image is missing or cannot be decoded
        """
        if index in self._images:
            self._images.move_to_end(index)
            return self._images[index]

        image = self._load(index)
        self._images[index] = image
        if len(self._images) > self.max_images:
            self._images.popitem(last=False)
        return image

    def _load(self, index: int) -> NDArray[np.float32]:
        path = self.mp.get_image_path(index)
        image = cv2.imread(str(path), cv2.IMREAD_UNCHANGED | cv2.IMREAD_ANYDEPTH)
        if image is None:
            raise LoadError(f"Cannot read image '{path}'")

        if image.ndim == 2:
            image = cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
        elif image.shape[2] == 4:
            image = cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
        image = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)

        if image.dtype == np.uint8:
            image = image.astype(np.float32) / 255.0
        elif image.dtype == np.uint16:
            image = image.astype(np.float32) / 65535.0
        else:
            image = image.astype(np.float32)

        if self._gains is not None:
            image = image * np.float32(self._gains[index])

        camera = self.mp.get_camera(index)
        height, width = image.shape[:2]
        if (width, height) != (camera.width, camera.height):
            logger.warning(
                "Image '%s' is %dx%d but its camera expects %dx%d, resizing",
                path, width, height, camera.width, camera.height
            )
            image = cv2.resize(image, (camera.width, camera.height), interpolation=cv2.INTER_LINEAR)

        return image

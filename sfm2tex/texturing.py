"""
Texture atlas generation from the source images.

For every atlas the generator rasterizes the atlas triangles in UV space,
finds the cameras that see each texel, and blends their colors.

Contributions are scored per texel and camera: the cosine between the
surface normal and the direction to the camera, scaled by the projected
resolution (fx^2 / depth^2) when scoring is enabled. Only the cameras in the
visibility sets of the texel's triangle are considered.

Colors are blended per frequency band. Band 0 holds the finest details and
is taken from the best few contributions only; lower frequency bands
average more cameras, which hides exposure differences between views
without blurring the details.
"""

import logging
from pathlib import Path
from typing import Dict, List

import cv2
import numpy as np
from numpy.typing import NDArray

from .config import ColorSpace, ImageFileType, TexturingConfig
from .errors import TexturingError
from .mesh import MeshModel, Visibility, udim_tile_offset
from .mesh_io import texture_filename
from .multiview import ImageCache, MultiViewParams
from .raster import dilate_texture, rasterize_triangles

logger = logging.getLogger(__name__)

REMAP_ROW_SIZE = 4096


def srgb_to_linear(rgb: NDArray[np.float32]) -> NDArray[np.float32]:
    rgb = np.asarray(rgb, dtype=np.float32)
    return np.where(
        rgb <= 0.04045, rgb / 12.92, np.power((np.maximum(rgb, 0) + 0.055) / 1.055, 2.4)
    ).astype(np.float32)


def linear_to_srgb(rgb: NDArray[np.float32]) -> NDArray[np.float32]:
    rgb = np.asarray(rgb, dtype=np.float32)
    return np.where(
        rgb <= 0.0031308, rgb * 12.92, 1.055 * np.power(np.maximum(rgb, 0), 1.0 / 2.4) - 0.055
    ).astype(np.float32)


def to_colorspace(rgb: NDArray[np.float32], colorspace: ColorSpace) -> NDArray[np.float32]:
    """Convert an sRGB image (H, W, 3) to the processing colorspace."""
    if colorspace is ColorSpace.LINEAR:
        return srgb_to_linear(rgb)
    if colorspace is ColorSpace.LAB:
        return cv2.cvtColor(np.ascontiguousarray(rgb, dtype=np.float32), cv2.COLOR_RGB2Lab)
    return np.asarray(rgb, dtype=np.float32)


def from_colorspace(values: NDArray[np.float32], colorspace: ColorSpace) -> NDArray[np.float32]:
    """Convert an image (H, W, 3) from the processing colorspace back to sRGB."""
    if colorspace is ColorSpace.LINEAR:
        return linear_to_srgb(values)
    if colorspace is ColorSpace.LAB:
        return cv2.cvtColor(np.ascontiguousarray(values, dtype=np.float32), cv2.COLOR_Lab2RGB)
    return np.asarray(values, dtype=np.float32)


def frequency_bands(
    image: NDArray[np.float32],
    nb_bands: int,
    band_downscale: int
) -> List[NDArray[np.float32]]:
    """
    Split an image into frequency bands that sum back to the image.

    Low-pass level b is the image downscaled by band_downscale**b and
    upscaled again. Band b is level b minus level b+1; the last band is the
    last low-pass level.
    """
    height, width = image.shape[:2]
    levels = [image]
    for b in range(1, nb_bands):
        factor = band_downscale ** b
        small = cv2.resize(
            image, (max(1, width // factor), max(1, height // factor)),
            interpolation=cv2.INTER_AREA
        )
        levels.append(cv2.resize(small, (width, height), interpolation=cv2.INTER_LINEAR))

    bands = [levels[b] - levels[b + 1] for b in range(nb_bands - 1)]
    bands.append(levels[-1])
    return bands


def sample_bilinear(image: NDArray[np.float32], pixels: NDArray[np.float64]) -> NDArray[np.float32]:
    """Sample an (H, W, C) image at (x, y) pixel positions, shape (P, 2) -> (P, C)."""
    n_points = len(pixels)
    # cv2.remap maps are limited to SHRT_MAX rows and columns
    n_rows = max(1, -(-n_points // REMAP_ROW_SIZE))
    padded = np.zeros((n_rows * REMAP_ROW_SIZE, 2), dtype=np.float32)
    padded[:n_points] = pixels

    map_x = np.ascontiguousarray(padded[:, 0].reshape(n_rows, REMAP_ROW_SIZE))
    map_y = np.ascontiguousarray(padded[:, 1].reshape(n_rows, REMAP_ROW_SIZE))
    sampled = cv2.remap(image, map_x, map_y, interpolation=cv2.INTER_LINEAR,
                        borderMode=cv2.BORDER_REPLICATE)
    return sampled.reshape(n_rows * REMAP_ROW_SIZE, -1)[:n_points]


def triangle_cameras(
    visibilities: List[Visibility],
    triangles: NDArray[np.int64],
    intersect: bool
) -> List[Visibility]:
    """
    Candidate cameras of each triangle from its vertex visibilities.

    Args:
        visibilities: Per-vertex visibility sets
        triangles: Triangles, shape (T, 3)
        intersect: Require the camera to see all three vertices

    Returns:
        One camera set per triangle
    """
    result = []
    for a, b, c in triangles:
        if intersect:
            result.append(visibilities[a] & visibilities[b] & visibilities[c])
        else:
            result.append(visibilities[a] | visibilities[b] | visibilities[c])
    return result


class _AtlasTexels:
    """Texels covered by one atlas and their surface samples."""

    def __init__(self, mesh: MeshModel, triangle_ids: NDArray[np.int64], offsets: NDArray[np.float64], size: int):
        uv_triangles = mesh.uv_coords[mesh.triangle_uv_ids[triangle_ids]] - offsets[:, None, :]
        triangle_map, barycentric = rasterize_triangles(uv_triangles, size)

        self.size = size
        self.rows, self.cols = np.nonzero(triangle_map >= 0)
        self.local_triangles = triangle_map[self.rows, self.cols]

        corners = mesh.vertices[mesh.triangles[triangle_ids[self.local_triangles]]]
        weights = barycentric[self.rows, self.cols]
        self.positions = np.einsum('pk,pkd->pd', weights, corners)
        self.normals = mesh.triangle_normals()[triangle_ids[self.local_triangles]]

    def __len__(self) -> int:
        return len(self.rows)


class TextureAtlasGenerator:
    """
    Generate and write one texture image per mesh atlas.

    Args:
        mp: Cameras and images of the scene
        config: Texturing parameters
        texture_file_type: Image format of the written textures
    """

    def __init__(
        self,
        mp: MultiViewParams,
        config: TexturingConfig,
        texture_file_type: ImageFileType = ImageFileType.PNG
    ):
        self.mp = mp
        self.config = config
        self.texture_file_type = texture_file_type
        self.image_cache = ImageCache(mp, correct_ev=config.correct_ev)

    @property
    def max_contributions(self) -> int:
        return int(sum(self.config.multi_band_nb_contrib))

    def generate_textures(self, mesh: MeshModel, output_dir: Path) -> Dict[int, Path]:
        """
        Generate the texture of every atlas, in ascending texture number.

        Args:
            mesh: Mesh with UVs, visibilities and atlases
            output_dir: Directory to write the texture files to

        Returns:
            Texture number -> written file
        """
        if not mesh.atlases:
            logger.warning("Mesh has no texture atlas, no texture generated")
            return {}
        mesh.ensure_visibility_size()

        written = {}
        for number in sorted(mesh.atlases):
            written[number] = self.generate_texture(mesh, number, Path(output_dir))
        return written

    def generate_texture(self, mesh: MeshModel, texture_number: int, output_dir: Path) -> Path:
        """Generate and write the texture of one atlas."""
        triangle_ids = mesh.atlases[texture_number]
        image = self.compute_texture(mesh, triangle_ids, texture_number)

        path = Path(output_dir) / texture_filename(texture_number, self.texture_file_type)
        self.write_texture(image, path)
        logger.info("Written texture '%s' (%d triangles)", path, len(triangle_ids))
        return path

    def _atlas_offsets(self, mesh: MeshModel, triangle_ids: NDArray[np.int64], texture_number: int):
        """UV offset bringing each atlas triangle into [0, 1]^2, shape (T, 2)."""
        if self.config.use_udim:
            return np.tile(udim_tile_offset(texture_number), (len(triangle_ids), 1))
        return np.floor(mesh.triangle_uv_centroids()[triangle_ids])

    def compute_texture(
        self,
        mesh: MeshModel,
        triangle_ids: NDArray[np.int64],
        texture_number: int
    ) -> NDArray[np.float32]:
        """
        Compute the sRGB texture of an atlas, shape (S, S, 3), float32.

        Texels no camera contributes to are black unless hole filling is on.
        """
        size = self.config.output_side
        texels = _AtlasTexels(mesh, triangle_ids, self._atlas_offsets(mesh, triangle_ids, texture_number), size)

        cameras = triangle_cameras(
            mesh.visibilities, mesh.triangles[triangle_ids],
            self.config.force_visible_by_all_vertices
        )
        best_scores, best_cameras = self._select_contributions(texels, cameras)
        values, contributed = self._blend(texels, best_scores, best_cameras)

        texture = np.zeros((size, size, 3), dtype=np.float32)
        filled = np.zeros((size, size), dtype=bool)
        texture[texels.rows[contributed], texels.cols[contributed]] = values[contributed]
        filled[texels.rows[contributed], texels.cols[contributed]] = True

        logger.debug(
            "Atlas %d: %d texels, %d textured, %d camera(s)",
            texture_number, len(texels), int(contributed.sum()), len(set().union(*cameras)) if cameras else 0
        )

        texture, filled = dilate_texture(texture, filled, self.config.padding)
        if self.config.fill_holes:
            texture, filled = dilate_texture(texture, filled, np.inf)
        return texture

    def _camera_scores(self, camera_index: int, texels: _AtlasTexels, selection: NDArray[np.int64]):
        """
        Score of a camera for the selected texels.

        Returns:
            valid: Indices into `selection` of texels the camera can texture
            scores: Their scores
        """
        camera = self.mp.get_camera(camera_index)
        positions = texels.positions[selection]
        pixels, depth = camera.project(positions)

        to_camera = camera.center - positions
        distances = np.linalg.norm(to_camera, axis=1)
        with np.errstate(invalid='ignore', divide='ignore'):
            cos = np.einsum('pd,pd->p', texels.normals[selection], to_camera) / distances

        valid = (depth > 0) & camera.is_in_image(pixels) & (cos > 0)
        if self.config.angle_hard_threshold > 0:
            valid &= cos >= np.cos(np.radians(self.config.angle_hard_threshold))

        valid = np.flatnonzero(valid)
        if self.config.use_score:
            scores = cos[valid] * camera.fx ** 2 / depth[valid] ** 2
        else:
            scores = np.ones(len(valid), dtype=np.float64)
        return valid, scores

    def _select_contributions(self, texels: _AtlasTexels, cameras: List[Visibility]):
        """
        Keep the best scoring cameras of each texel, best first.

        Returns:
            best_scores: shape (P, K), -inf for missing contributions
            best_cameras: shape (P, K), -1 for missing contributions
        """
        k = self.max_contributions
        best_scores = np.full((len(texels), k), -np.inf, dtype=np.float64)
        best_cameras = np.full((len(texels), k), -1, dtype=np.int64)
        if len(texels) == 0 or k == 0:
            return best_scores, best_cameras

        for camera_index in sorted(set().union(*cameras)):
            sees = np.array([camera_index in c for c in cameras], dtype=bool)
            selection = np.flatnonzero(sees[texels.local_triangles])
            if len(selection) == 0:
                continue

            valid, scores = self._camera_scores(camera_index, texels, selection)
            texel_ids = selection[valid]

            merged_scores = np.concatenate([best_scores[texel_ids], scores[:, None]], axis=1)
            merged_cameras = np.concatenate(
                [best_cameras[texel_ids], np.full((len(texel_ids), 1), camera_index)], axis=1
            )
            order = np.argsort(-merged_scores, axis=1, kind='stable')[:, :k]
            best_scores[texel_ids] = np.take_along_axis(merged_scores, order, axis=1)
            best_cameras[texel_ids] = np.take_along_axis(merged_cameras, order, axis=1)

        # Drop contributions far below the best one of their texel
        with np.errstate(invalid='ignore'):
            weak = best_scores < self.config.best_score_threshold * best_scores[:, :1]
        best_scores[weak] = -np.inf
        best_cameras[weak] = -1
        return best_scores, best_cameras

    def _blend(self, texels: _AtlasTexels, best_scores, best_cameras):
        """
        Multi-band blend of the selected contributions.

        Returns:
            colors: sRGB color per texel, shape (P, 3)
            contributed: True for texels with at least one contribution
        """
        nb_contrib = np.cumsum(self.config.multi_band_nb_contrib)
        nb_bands = len(nb_contrib)
        colorspace = self.config.process_colorspace

        numerators = np.zeros((nb_bands, len(texels), 3), dtype=np.float64)
        denominators = np.zeros((nb_bands, len(texels)), dtype=np.float64)

        for camera_index in np.unique(best_cameras[best_cameras >= 0]):
            texel_ids, ranks = np.nonzero(best_cameras == camera_index)
            image = to_colorspace(self.image_cache.get(int(camera_index)), colorspace)
            bands = frequency_bands(image, nb_bands, self.config.multi_band_downscale)

            pixels, _ = self.mp.get_camera(int(camera_index)).project(texels.positions[texel_ids])
            weights = best_scores[texel_ids, ranks]

            for b, band in enumerate(bands):
                used = ranks < nb_contrib[b]
                if not used.any():
                    continue
                colors = sample_bilinear(band, pixels[used])
                np.add.at(numerators[b], texel_ids[used], weights[used, None] * colors)
                np.add.at(denominators[b], texel_ids[used], weights[used])

        values = np.zeros((len(texels), 3), dtype=np.float64)
        for b in range(nb_bands):
            has_weight = denominators[b] > 0
            values[has_weight] += numerators[b][has_weight] / denominators[b][has_weight, None]

        contributed = (best_cameras >= 0).any(axis=1)
        if len(texels) == 0:
            return values.astype(np.float32), contributed
        srgb = from_colorspace(values.astype(np.float32).reshape(-1, 1, 3), colorspace)
        return srgb.reshape(-1, 3), contributed

    def write_texture(self, texture: NDArray[np.float32], path: Path) -> None:
        """
        Write an sRGB float texture with OpenCV.

        8-bit formats are clipped to [0, 1]; EXR keeps float values.
        """
        bgr = cv2.cvtColor(np.ascontiguousarray(texture, dtype=np.float32), cv2.COLOR_RGB2BGR)
        if self.texture_file_type is ImageFileType.EXR:
            data = bgr
        else:
            data = np.round(np.clip(bgr, 0.0, 1.0) * 255.0).astype(np.uint8)

        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            written = cv2.imwrite(str(path), data)
        except cv2.error as e:
            raise TexturingError(f"Failed to write texture '{path}': {e}") from e
        if not written:
            raise TexturingError(f"Failed to write texture '{path}'")

"""
Texture-space rasterization and texel dilation.

Triangles are rasterized in UV space to find, for every texel, the triangle
covering it and its barycentric coordinates. The 3D position of a texel is
then the barycentric blend of its triangle's vertices.

UV (0, 0) is the bottom-left corner of the texture; image rows go down, so
V is flipped when converting to pixel coordinates.
"""

import numpy as np
from numpy.typing import NDArray
from scipy.ndimage import distance_transform_edt

# Small negative tolerance so texels exactly on shared edges are covered
BARY_EPSILON = -1e-5


def uv_to_pixels(uv: NDArray[np.float64], image_size: int) -> NDArray[np.float64]:
    """Convert UV coordinates in [0, 1] to pixel coordinates (x, y)."""
    uv = np.asarray(uv, dtype=np.float64)
    px = uv[..., 0] * (image_size - 1)
    py = (1.0 - uv[..., 1]) * (image_size - 1)
    return np.stack([px, py], axis=-1)


def rasterize_triangles(uv_triangles: NDArray[np.float64], image_size: int):
    """
    Rasterize triangles given by their UV corners.

    Later triangles overwrite earlier ones where they overlap.

    Args:
        uv_triangles: UV coordinates of each triangle's corners, shape (T, 3, 2)
        image_size: Side of the square texture in pixels

    Returns:
        triangle_map: Index of the covering triangle per texel, -1 where
                      empty, shape (S, S), int32
        barycentric: Barycentric coordinates per texel, shape (S, S, 3), float32
    """
    # 32-bit buffers: an 8k texture holds 64M texels
    triangle_map = np.full((image_size, image_size), -1, dtype=np.int32)
    barycentric = np.zeros((image_size, image_size, 3), dtype=np.float32)

    pixels = uv_to_pixels(uv_triangles, image_size)

    for index, ((x0, y0), (x1, y1), (x2, y2)) in enumerate(pixels):
        xmin = max(0, int(np.floor(min(x0, x1, x2))))
        xmax = min(image_size - 1, int(np.ceil(max(x0, x1, x2))))
        ymin = max(0, int(np.floor(min(y0, y1, y2))))
        ymax = min(image_size - 1, int(np.ceil(max(y0, y1, y2))))
        if xmin > xmax or ymin > ymax:
            continue

        denom = (y1 - y2) * (x0 - x2) + (x2 - x1) * (y0 - y2)
        if abs(denom) < 1e-12:
            continue  # Degenerate in UV space

        xx, yy = np.meshgrid(
            np.arange(xmin, xmax + 1, dtype=np.float64),
            np.arange(ymin, ymax + 1, dtype=np.float64)
        )
        w0 = ((y1 - y2) * (xx - x2) + (x2 - x1) * (yy - y2)) / denom
        w1 = ((y2 - y0) * (xx - x2) + (x0 - x2) * (yy - y2)) / denom
        w2 = 1.0 - w0 - w1

        inside = (w0 >= BARY_EPSILON) & (w1 >= BARY_EPSILON) & (w2 >= BARY_EPSILON)
        if not inside.any():
            continue

        iy, ix = np.nonzero(inside)
        rows = ymin + iy
        cols = xmin + ix
        triangle_map[rows, cols] = index
        barycentric[rows, cols] = np.stack([w0[iy, ix], w1[iy, ix], w2[iy, ix]], axis=1)

    return triangle_map, barycentric


def dilate_texture(
    image: NDArray,
    filled_mask: NDArray[np.bool_],
    radius: float
):
    """
    Copy the nearest filled texel into empty texels up to `radius` pixels away.

    Args:
        image: Texture, shape (H, W, C) or (H, W)
        filled_mask: True where the texture holds data, shape (H, W)
        radius: Dilation radius in pixels; np.inf fills every empty texel

    Returns:
        dilated: Copy of `image` with the border zone filled
        mask: Updated filled mask
    """
    result = image.copy()
    if not filled_mask.any() or radius <= 0:
        return result, filled_mask.copy()

    dist, (nearest_r, nearest_c) = distance_transform_edt(~filled_mask, return_indices=True)
    dilation_mask = (dist > 0) & (dist <= radius)
    if dilation_mask.any():
        result[dilation_mask] = image[nearest_r[dilation_mask], nearest_c[dilation_mask]]

    return result, filled_mask | dilation_mask

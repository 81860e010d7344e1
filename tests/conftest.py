"""
Shared fixtures: a small synthetic scene on disk.

The scene is a 2x2 quad in the z=0 plane facing -Z, observed by cameras
placed at z=-3 and looking down +Z. Source images are flat colors, so the
expected texture color is known.
"""

import json
import os
from pathlib import Path

# Must be set before cv2 is first imported for EXR support
os.environ.setdefault("OPENCV_IO_ENABLE_OPENEXR", "1")

import cv2  # noqa: E402
import numpy as np  # noqa: E402
import pytest  # noqa: E402

IMAGE_SIZE = 64
FOCAL_LENGTH = 64.0

QUAD_VERTICES = np.array([
    [-1.0, -1.0, 0.0],
    [1.0, -1.0, 0.0],
    [1.0, 1.0, 0.0],
    [-1.0, 1.0, 0.0],
])
# Wound so that normals point towards the cameras (-Z)
QUAD_TRIANGLES = np.array([[0, 2, 1], [0, 3, 2]])
QUAD_UVS = np.array([[0.0, 0.0], [1.0, 0.0], [1.0, 1.0], [0.0, 1.0]])


def write_obj(path, vertices, triangles, uvs=None):
    """Write an OBJ file; `uvs` are per-vertex when given."""
    lines = [f"v {x} {y} {z}" for x, y, z in vertices]
    if uvs is not None:
        lines += [f"vt {u} {v}" for u, v in uvs]
        lines += [f"f {a + 1}/{a + 1} {b + 1}/{b + 1} {c + 1}/{c + 1}" for a, b, c in triangles]
    else:
        lines += [f"f {a + 1} {b + 1} {c + 1}" for a, b, c in triangles]
    Path(path).write_text("\n".join(lines) + "\n")


def write_image(path, color_rgb, size=IMAGE_SIZE):
    """Write a flat color 8-bit image."""
    image = np.zeros((size, size, 3), dtype=np.uint8)
    image[:] = color_rgb[::-1]  # BGR
    assert cv2.imwrite(str(path), image)


def make_sfm_dict(view_images, landmarks):
    """
    Build an SfMData mapping.

    Args:
        view_images: {view_id: image path}
        landmarks: [(landmark_id, position, [observing view ids])]
    """
    views, poses = [], []
    for index, (view_id, image_path) in enumerate(sorted(view_images.items())):
        views.append({
            "viewId": str(view_id),
            "poseId": str(view_id),
            "intrinsicId": "1",
            "path": str(image_path),
            "width": str(IMAGE_SIZE),
            "height": str(IMAGE_SIZE),
            "metadata": {},
        })
        poses.append({
            "poseId": str(view_id),
            "pose": {"transform": {
                "rotation": [str(v) for v in np.eye(3).reshape(-1)],
                "center": [str(0.2 * index), "0", "-3"],
            }},
        })

    structure = [
        {
            "landmarkId": str(landmark_id),
            "X": [str(v) for v in position],
            "color": ["255", "255", "255"],
            "observations": [
                {"observationId": str(view_id), "featureId": str(i), "x": ["32", "32"]}
                for i, view_id in enumerate(observed_by)
            ],
        }
        for landmark_id, position, observed_by in landmarks
    ]

    return {
        "version": ["1", "2", "0"],
        "views": views,
        "intrinsics": [{
            "intrinsicId": "1",
            "width": str(IMAGE_SIZE),
            "height": str(IMAGE_SIZE),
            "pxFocalLength": str(FOCAL_LENGTH),
            "principalPoint": [str(IMAGE_SIZE / 2), str(IMAGE_SIZE / 2)],
        }],
        "poses": poses,
        "structure": structure,
    }


def default_landmarks(view_ids):
    """One landmark per quad corner plus the center, seen by every view."""
    points = list(QUAD_VERTICES) + [np.zeros(3)]
    return [(i, p, list(view_ids)) for i, p in enumerate(points)]


@pytest.fixture
def scene_factory(tmp_path):
    """
    Factory writing a scene to a temporary folder.

    Returns a function accepting:
        view_ids: Views of the scene (default: 10, 20)
        landmarks: Landmark list, see make_sfm_dict (default: default_landmarks)
        mesh_uvs: Write the quad with UVs
        color: RGB color of every source image
    and returning a dict with the `sfm`, `mesh`, `output` and `images` paths.
    """
    def factory(view_ids=(10, 20), landmarks=None, mesh_uvs=False, color=(200, 40, 20),
                vertices=QUAD_VERTICES, triangles=QUAD_TRIANGLES):
        images_dir = tmp_path / "images"
        images_dir.mkdir(exist_ok=True)
        view_images = {}
        for view_id in view_ids:
            path = images_dir / f"{view_id}.png"
            write_image(path, color)
            view_images[view_id] = path

        if landmarks is None:
            landmarks = default_landmarks(view_ids)

        sfm_path = tmp_path / "sfm.json"
        sfm_path.write_text(json.dumps(make_sfm_dict(view_images, landmarks), indent=2))

        mesh_path = tmp_path / "mesh.obj"
        write_obj(mesh_path, vertices, triangles, QUAD_UVS if mesh_uvs else None)

        return {
            "sfm": sfm_path,
            "mesh": mesh_path,
            "output": tmp_path / "output",
            "images": images_dir,
        }

    return factory

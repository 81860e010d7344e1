"""
Tests for texture-space rasterization and texture atlas generation.
"""

import cv2
import numpy as np
import pytest

from sfm2tex.config import ColorSpace, ImageFileType, TexturingConfig
from sfm2tex.errors import TexturingError
from sfm2tex.mesh import MeshModel
from sfm2tex.multiview import MultiViewParams
from sfm2tex.raster import dilate_texture, rasterize_triangles, uv_to_pixels
from sfm2tex.sfm_data import SfMData
from sfm2tex.texturing import (
    TextureAtlasGenerator,
    frequency_bands,
    from_colorspace,
    linear_to_srgb,
    srgb_to_linear,
    to_colorspace,
    triangle_cameras,
)

from conftest import QUAD_TRIANGLES, QUAD_UVS, QUAD_VERTICES

COLOR = (200, 40, 20)


def _make_textured_quad(visibilities=None) -> MeshModel:
    mesh = MeshModel(QUAD_VERTICES, QUAD_TRIANGLES, uv_coords=QUAD_UVS, triangle_uv_ids=QUAD_TRIANGLES)
    mesh.visibilities = visibilities if visibilities is not None else [frozenset({0, 1})] * 4
    mesh.update_atlases(use_udim=True)
    return mesh


def _make_generator(scene, **texturing) -> TextureAtlasGenerator:
    options = dict(texture_side=32, downscale=1, padding=2)
    options.update(texturing)
    mp = MultiViewParams(SfMData.from_json_file(str(scene["sfm"])))
    return TextureAtlasGenerator(mp, TexturingConfig(**options), ImageFileType.PNG)


class TestRasterize:
    """Test UV-space rasterization."""

    def test_uv_to_pixels_flips_v(self):
        """UV (0, 0) is the bottom-left texel."""
        pixels = uv_to_pixels(np.array([[0.0, 0.0], [1.0, 1.0]]), 8)

        np.testing.assert_allclose(pixels, [[0.0, 7.0], [7.0, 0.0]])

    def test_full_square_coverage(self):
        """Two triangles covering UV space cover every texel."""
        uv_triangles = QUAD_UVS[QUAD_TRIANGLES]

        triangle_map, barycentric = rasterize_triangles(uv_triangles, 8)

        assert (triangle_map >= 0).all()
        np.testing.assert_allclose(barycentric.sum(axis=2), 1.0, atol=1e-6)

    def test_barycentric_interpolates_corners(self):
        """Barycentric blend of the UV corners gives back the texel UV."""
        uv_triangles = QUAD_UVS[QUAD_TRIANGLES]

        triangle_map, barycentric = rasterize_triangles(uv_triangles, 8)

        rows, cols = np.nonzero(triangle_map >= 0)
        uv = np.einsum('pk,pkd->pd', barycentric[rows, cols], uv_triangles[triangle_map[rows, cols]])
        np.testing.assert_allclose(uv_to_pixels(uv, 8), np.stack([cols, rows], axis=1), atol=1e-4)

    def test_compact_buffers(self):
        """Texture-sized buffers use 32-bit types."""
        triangle_map, barycentric = rasterize_triangles(QUAD_UVS[QUAD_TRIANGLES], 8)

        assert triangle_map.dtype == np.int32
        assert barycentric.dtype == np.float32

    def test_degenerate_triangle_skipped(self):
        uv_triangles = np.array([[[0.1, 0.1], [0.5, 0.5], [0.9, 0.9]]])

        triangle_map, _ = rasterize_triangles(uv_triangles, 8)

        assert (triangle_map == -1).all()


class TestDilate:
    """Test nearest-texel dilation."""

    def test_limited_radius(self):
        image = np.zeros((1, 6, 3), dtype=np.float32)
        image[0, 0] = 1.0
        filled = np.zeros((1, 6), dtype=bool)
        filled[0, 0] = True

        dilated, mask = dilate_texture(image, filled, 2)

        np.testing.assert_array_equal(mask[0], [True, True, True, False, False, False])
        np.testing.assert_allclose(dilated[0, 2], 1.0)
        np.testing.assert_allclose(dilated[0, 3], 0.0)

    def test_infinite_radius_fills_everything(self):
        image = np.zeros((4, 4), dtype=np.float32)
        image[1, 1] = 0.5
        filled = image > 0

        dilated, mask = dilate_texture(image, filled, np.inf)

        assert mask.all()
        np.testing.assert_allclose(dilated, 0.5)

    def test_nothing_filled(self):
        image = np.zeros((3, 3), dtype=np.float32)

        dilated, mask = dilate_texture(image, np.zeros((3, 3), dtype=bool), 5)

        assert not mask.any()


class TestColorspace:
    """Test colorspace conversions."""

    def test_srgb_linear_round_trip(self):
        values = np.linspace(0.0, 1.0, 11, dtype=np.float32)

        np.testing.assert_allclose(linear_to_srgb(srgb_to_linear(values)), values, atol=1e-5)

    @pytest.mark.parametrize("colorspace", list(ColorSpace))
    def test_round_trip(self, colorspace):
        rgb = np.array([[[0.8, 0.2, 0.1], [0.0, 0.5, 1.0]]], dtype=np.float32)

        back = from_colorspace(to_colorspace(rgb, colorspace), colorspace)

        np.testing.assert_allclose(back, rgb, atol=1.0 / 255.0)


class TestMultiBand:
    """Test frequency band decomposition."""

    def test_bands_sum_to_image(self):
        image = np.random.RandomState(0).rand(32, 32, 3).astype(np.float32)

        bands = frequency_bands(image, 4, 2)

        assert len(bands) == 4
        np.testing.assert_allclose(sum(bands), image, atol=1e-5)

    def test_single_band_is_image(self):
        image = np.ones((8, 8, 3), dtype=np.float32)

        bands = frequency_bands(image, 1, 4)

        assert len(bands) == 1
        np.testing.assert_array_equal(bands[0], image)


class TestTriangleCameras:
    """Test candidate camera selection per triangle."""

    def test_union_and_intersection(self):
        visibilities = [frozenset({0, 1}), frozenset({1}), frozenset({1, 2})]
        triangles = np.array([[0, 1, 2]])

        assert triangle_cameras(visibilities, triangles, intersect=False) == [frozenset({0, 1, 2})]
        assert triangle_cameras(visibilities, triangles, intersect=True) == [frozenset({1})]


class TestTextureAtlasGenerator:
    """Test texture generation on the synthetic scene."""

    def test_flat_color_scene(self, scene_factory, tmp_path):
        """A quad seen by flat-colored images gets that color."""
        scene = scene_factory(color=COLOR)
        generator = _make_generator(scene)
        mesh = _make_textured_quad()

        written = generator.generate_textures(mesh, tmp_path / "textures")

        assert list(written) == [1001]
        image = cv2.imread(str(written[1001]))
        assert image.shape == (32, 32, 3)
        np.testing.assert_allclose(image[16, 16], COLOR[::-1], atol=1)

    @pytest.mark.parametrize("colorspace", [ColorSpace.LINEAR, ColorSpace.LAB])
    def test_process_colorspace(self, scene_factory, colorspace):
        """Blending in another colorspace still reproduces a flat color."""
        scene = scene_factory(color=COLOR)
        generator = _make_generator(scene, process_colorspace=colorspace)

        texture = generator.compute_texture(_make_textured_quad(), np.array([0, 1]), 1001)

        np.testing.assert_allclose(texture[16, 16] * 255.0, COLOR, atol=1.5)

    def test_no_visibility_gives_black(self, scene_factory):
        """Texels no camera is allowed to see stay empty."""
        scene = scene_factory()
        generator = _make_generator(scene)
        mesh = _make_textured_quad(visibilities=[frozenset()] * 4)

        texture = generator.compute_texture(mesh, np.array([0, 1]), 1001)

        np.testing.assert_allclose(texture, 0.0)

    def test_only_visible_cameras_contribute(self, scene_factory):
        """A camera outside the visibility sets does not contribute."""
        scene = scene_factory(color=COLOR)
        generator = _make_generator(scene)
        mesh = _make_textured_quad(visibilities=[frozenset({1})] * 4)

        best_cameras = generator._select_contributions(
            *_texels_and_cameras(generator, mesh)
        )[1]

        assert set(np.unique(best_cameras)) <= {-1, 1}

    def test_force_visible_by_all_vertices(self, scene_factory):
        """With the intersection rule, a partially seen triangle gets nothing."""
        scene = scene_factory()
        generator = _make_generator(scene, force_visible_by_all_vertices=True)
        mesh = _make_textured_quad(visibilities=[frozenset({0}), frozenset(), frozenset({0}), frozenset({0})])

        texture = generator.compute_texture(mesh, np.array([0, 1]), 1001)

        # Triangle 0 (0, 2, 1) lacks vertex 1; triangle 1 (0, 3, 2) is fully seen
        assert texture.any()
        assert not generator.compute_texture(mesh, np.array([0]), 1001).any()

    @pytest.mark.skipif(
        not cv2.haveImageWriter(".exr"), reason="OpenCV built without an EXR writer"
    )
    def test_exr_output(self, scene_factory, tmp_path):
        """EXR textures keep float values."""
        scene = scene_factory(color=COLOR)
        mp = MultiViewParams(SfMData.from_json_file(str(scene["sfm"])))
        generator = TextureAtlasGenerator(mp, TexturingConfig(texture_side=16, downscale=1), ImageFileType.EXR)

        written = generator.generate_textures(_make_textured_quad(), tmp_path)

        assert written[1001].name == "texture_1001.exr"
        image = cv2.imread(str(written[1001]), cv2.IMREAD_UNCHANGED)
        assert image.dtype == np.float32

    def test_writer_error(self, scene_factory, tmp_path, monkeypatch):
        """OpenCV writer errors are reported as TexturingError."""
        def failing_imwrite(path, data):
            raise cv2.error("could not find a writer")

        generator = _make_generator(scene_factory())
        monkeypatch.setattr(cv2, "imwrite", failing_imwrite)

        with pytest.raises(TexturingError):
            generator.write_texture(np.zeros((4, 4, 3), dtype=np.float32), tmp_path / "texture_1001.png")

    def test_no_atlases(self, scene_factory, tmp_path):
        """Nothing is written for a mesh without atlases."""
        generator = _make_generator(scene_factory())
        mesh = MeshModel(QUAD_VERTICES, np.zeros((0, 3)))

        assert generator.generate_textures(mesh, tmp_path) == {}


def _texels_and_cameras(generator, mesh):
    from sfm2tex.texturing import _AtlasTexels

    triangle_ids = mesh.atlases[1001]
    texels = _AtlasTexels(mesh, triangle_ids, np.zeros((len(triangle_ids), 2)), generator.config.output_side)
    cameras = triangle_cameras(mesh.visibilities, mesh.triangles[triangle_ids], False)
    return texels, cameras

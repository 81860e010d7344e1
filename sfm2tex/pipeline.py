"""
High-level pipeline orchestrating all components.

This module provides the TexturingPipeline class which ties together:
- Scene loading (cameras and landmarks)
- Mesh loading
- Visibility remapping from the landmarks to the mesh
- UV unwrapping, or adaptive subdivision for meshes that already have UVs
- Export of the textured mesh and generation of its textures

This is the main API for users of the library.
"""

import logging
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Optional, TypeVar

from .config import Config
from .errors import ConfigurationError, LoadError, ResolutionError, StageFailure
from .events import EventSink, LoggingEventSink
from .mesh import MeshModel
from .mesh_io import MeshExporter, load_mesh
from .multiview import MultiViewParams
from .reference import ReferencePointCloud, build_reference_point_cloud
from .sfm_data import SfMData
from .subdivision import subdivide_mesh_max_edge_length
from .texturing import TextureAtlasGenerator
from .unwrap import unwrap_mesh
from .visibility import remap_visibilities

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Subdivision of meshes with UVs, relative to the input mesh
SUBDIVISION_EDGE_RATIO = 0.1
SUBDIVISION_POINTS_RATIO = 100

# Raised as they are by every stage
_PASSTHROUGH_ERRORS = (ResolutionError, LoadError, ConfigurationError, StageFailure)


class MeshState(Enum):
    """Where the mesh is in the UV preparation."""
    INITIAL = "initial"
    UNWRAPPED = "unwrapped"
    SUBDIVIDED = "subdivided"


def choose_mesh_state(mesh: MeshModel) -> MeshState:
    """
    UV preparation for a freshly loaded mesh.

    Meshes without UVs are unwrapped; meshes with UVs keep them and are
    subdivided instead.
    """
    return MeshState.SUBDIVIDED if mesh.has_uvs() else MeshState.UNWRAPPED


class TexturingPipeline:
    """
    High-level pipeline for mesh texturing.

    This class orchestrates the entire process:
    1. Load the SfM scene
    2. Load the mesh
    3. Create the output directory
    4. Build the reference point cloud from the landmarks
    5. Remap landmark visibilities onto the mesh
    6. Unwrap the mesh, or subdivide it and remap again
    7. Export the mesh (OBJ + MTL)
    8. Generate the textures

    The pipeline is the only owner of the mesh; stages receive it for the
    duration of one call. The first failure aborts the run.

    Example:
        config = Config(input_file="sfm.json", input_mesh="mesh.obj", output_dir="out")
        pipeline = TexturingPipeline(config)
        pipeline.run()
    """

    def __init__(self, config: Config, events: Optional[EventSink] = None):
        """
        Initialize pipeline.

        Args:
            config: Run configuration
            events: Receives progress events (default: log them)
        """
        self.config = config
        self.events = events if events is not None else LoggingEventSink()

        # Set by the stages of run()
        self.sfm_data: Optional[SfMData] = None
        self.mp: Optional[MultiViewParams] = None
        self.mesh: Optional[MeshModel] = None
        self.reference: Optional[ReferencePointCloud] = None
        self.state = MeshState.INITIAL
        self.mesh_file: Optional[Path] = None
        self.texture_files: Dict[int, Path] = {}

        self._remap_count = 0

    @property
    def output_dir(self) -> Path:
        return Path(self.config.output_dir)

    def run(self) -> Path:
        """
        Run every stage in order.

        Returns:
            Path to the exported OBJ file

        Raises:
            ResolutionError: A landmark references an unknown view
            LoadError: The scene, the mesh or an image cannot be loaded
            StageFailure: Unwrapping, subdivision, export or texture
                          generation failed
        """
        self.load_scene()
        self.load_mesh()
        self.prepare_output_dir()
        self.build_reference()
        self.remap()
        self.prepare_uvs()
        self.export_mesh()
        self.generate_textures()

        self.events.emit(
            "pipeline_finished",
            mesh=str(self.mesh_file), textures=len(self.texture_files)
        )
        return self.mesh_file

    def load_scene(self) -> None:
        self.sfm_data = SfMData.from_json_file(self.config.input_file)
        self.mp = MultiViewParams(self.sfm_data, self.config.images_folder)
        self.events.emit(
            "scene_loaded",
            views=len(self.sfm_data.views), cameras=self.mp.nb_cameras,
            landmarks=len(self.sfm_data.landmarks)
        )

    def load_mesh(self) -> None:
        self.mesh = load_mesh(self.config.input_mesh, flip_normals=self.config.flip_normals)
        self.state = MeshState.INITIAL
        self.events.emit(
            "mesh_loaded",
            vertices=self.mesh.vertex_count, triangles=self.mesh.triangle_count,
            has_uvs=self.mesh.has_uvs()
        )

    def prepare_output_dir(self) -> None:
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def build_reference(self) -> None:
        self.reference = build_reference_point_cloud(
            self.sfm_data.get_landmarks(), self.mp.get_index_from_view_id
        )
        self.events.emit("reference_built", points=len(self.reference))

    def remap(self) -> None:
        """Remap the reference visibilities onto the current mesh vertices."""
        method = self.config.texturing.visibility_remapping_method
        remap_visibilities(method, self.reference, self.mesh)
        if self.mesh.ensure_visibility_size():
            logger.warning("Visibility count did not match the vertex count and was fixed")

        self._remap_count += 1
        self.events.emit(
            "visibility_remapped",
            method=method.value, remap=self._remap_count,
            vertices=self.mesh.vertex_count,
            visible_vertices=sum(1 for v in self.mesh.visibilities if v)
        )

    def prepare_uvs(self) -> None:
        """Unwrap meshes without UVs; subdivide and remap the others."""
        if self.state is not MeshState.INITIAL:
            raise RuntimeError(f"UVs were already prepared (state: {self.state.value})")

        target = choose_mesh_state(self.mesh)
        if target is MeshState.UNWRAPPED:
            self._unwrap()
        else:
            self._subdivide()
        self.state = target

    def _unwrap(self) -> None:
        method = self.config.unwrap_method
        self._run_stage("unwrap", unwrap_mesh, self.mesh, method, self.config.texturing)
        self.events.emit(
            "mesh_unwrapped",
            method=method.value, uvs=len(self.mesh.uv_coords), atlases=len(self.mesh.atlases)
        )

    def _subdivide(self) -> None:
        edge_threshold = self.mesh.average_edge_length() * SUBDIVISION_EDGE_RATIO
        max_points = self.mesh.vertex_count * SUBDIVISION_POINTS_RATIO
        vertices_before = self.mesh.vertex_count

        self._run_stage(
            "subdivide", subdivide_mesh_max_edge_length, self.mesh, edge_threshold, max_points
        )
        self.events.emit(
            "mesh_subdivided",
            edge_threshold=edge_threshold, max_points=max_points,
            vertices_before=vertices_before, vertices=self.mesh.vertex_count
        )

        self.remap()
        self.mesh.update_atlases(self.config.texturing.use_udim)

    def export_mesh(self) -> None:
        exporter = MeshExporter(self.config.output_texture_file_type)
        self.mesh_file = self._run_stage("export", exporter.export, self.mesh, self.output_dir)
        self.events.emit("mesh_exported", path=str(self.mesh_file), atlases=len(self.mesh.atlases))

    def generate_textures(self) -> None:
        generator = TextureAtlasGenerator(
            self.mp, self.config.texturing, self.config.output_texture_file_type
        )
        self.texture_files = self._run_stage(
            "texture", generator.generate_textures, self.mesh, self.output_dir
        )
        self.events.emit("textures_generated", textures=len(self.texture_files))

    @staticmethod
    def _run_stage(stage: str, func: Callable[..., T], *args) -> T:
        """Run a stage, wrapping its unexpected errors in StageFailure."""
        try:
            return func(*args)
        except _PASSTHROUGH_ERRORS:
            raise
        except Exception as e:
            raise StageFailure(stage, str(e)) from e

    def __repr__(self) -> str:
        return f"TexturingPipeline(state={self.state.value}, mesh={self.mesh})"

"""
sfm2tex - Texture photogrammetry meshes from a Structure-from-Motion scene.

This package takes a reconstructed mesh and the SfM scene it comes from and
produces:
- Per-vertex camera visibilities, remapped from the reconstruction landmarks
- UV coordinates (xatlas unwrapping) or an adaptively subdivided mesh
- An OBJ + MTL mesh with one material per texture atlas
- Texture images blended from the source photographs

Example usage:
    from sfm2tex import Config, TexturingPipeline

    config = Config(input_file="sfm.json", input_mesh="mesh.obj", output_dir="./output")
    TexturingPipeline(config).run()
"""

import os

# OpenCV only writes EXR textures when this is set before cv2 is imported
os.environ.setdefault("OPENCV_IO_ENABLE_OPENEXR", "1")

__version__ = "0.1.0"

from .camera import Camera
from .config import (
    ColorSpace,
    Config,
    ImageFileType,
    TexturingConfig,
    UnwrapMethod,
    VisibilityRemappingMethod,
)
from .errors import ConfigurationError, LoadError, ResolutionError, StageFailure, TexturingError
from .events import EventSink, LoggingEventSink, NullEventSink, RecordingEventSink
from .mesh import MeshModel
from .mesh_io import MeshExporter, load_mesh
from .multiview import ImageCache, MultiViewParams
from .pipeline import MeshState, TexturingPipeline, choose_mesh_state
from .reference import ReferencePointCloud, build_reference_point_cloud
from .sfm_data import SfMData
from .subdivision import subdivide_mesh_max_edge_length
from .texturing import TextureAtlasGenerator
from .unwrap import unwrap_mesh
from .visibility import remap_visibilities

__all__ = [
    "Camera",
    "ColorSpace",
    "Config",
    "ConfigurationError",
    "EventSink",
    "ImageCache",
    "ImageFileType",
    "LoadError",
    "LoggingEventSink",
    "MeshExporter",
    "MeshModel",
    "MeshState",
    "MultiViewParams",
    "NullEventSink",
    "RecordingEventSink",
    "ReferencePointCloud",
    "ResolutionError",
    "SfMData",
    "StageFailure",
    "TextureAtlasGenerator",
    "TexturingConfig",
    "TexturingError",
    "TexturingPipeline",
    "UnwrapMethod",
    "VisibilityRemappingMethod",
    "build_reference_point_cloud",
    "choose_mesh_state",
    "load_mesh",
    "remap_visibilities",
    "subdivide_mesh_max_edge_length",
    "unwrap_mesh",
]

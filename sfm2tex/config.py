"""
Configuration management for sfm2tex.

Handles:
- Command-line argument parsing
- YAML config file loading
- Typed option values (unwrap method, remapping method, colorspace, ...)
- Configuration validation

The configuration is built once, before any pipeline stage runs, and is
immutable afterwards: every stage receives the same frozen value.
"""

from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Optional, Tuple, List, Dict, Any
import argparse
import logging

from .errors import ConfigurationError


class _NamedEnum(Enum):
    """Enum whose members round-trip through their user-facing names."""

    @classmethod
    def from_string(cls, value: Any) -> "_NamedEnum":
        """
        Resolve a user-supplied name (case-insensitive) to a member.

        Raises:
            ConfigurationError: If the name matches no member
        """
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        for member in cls:
            if member.value.lower() == text:
                return member
        valid = ", ".join(member.value for member in cls)
        raise ConfigurationError(
            f"Invalid {cls.__name__} '{value}'. Expected one of: {valid}"
        )

    @classmethod
    def names(cls) -> List[str]:
        return [member.value for member in cls]

    def __str__(self) -> str:
        return self.value


class UnwrapMethod(_NamedEnum):
    """
    UV generation method used when the input mesh has no UV coordinates.

    - Basic: fast greedy packing, suited to very large meshes; may produce
      several atlases.
    - LSCM: conformal charts packed into one atlas (recommended <= 600k
      triangles).
    - ABF: stricter charting to minimize stretch, one atlas (recommended
      <= 300k triangles).
    """
    BASIC = "Basic"
    LSCM = "LSCM"
    ABF = "ABF"

    @property
    def max_recommended_triangles(self) -> Optional[int]:
        return {
            UnwrapMethod.BASIC: None,
            UnwrapMethod.LSCM: 600_000,
            UnwrapMethod.ABF: 300_000,
        }[self]


class VisibilityRemappingMethod(_NamedEnum):
    """How reconstruction visibilities are transferred to the mesh."""
    PULL = "Pull"
    PUSH = "Push"
    PULL_PUSH = "PullPush"


class ColorSpace(_NamedEnum):
    """Colorspace used for internal texture blending."""
    SRGB = "sRGB"
    LINEAR = "linear"
    LAB = "LAB"


class ImageFileType(_NamedEnum):
    """Output texture file type."""
    PNG = "png"
    JPEG = "jpg"
    TIFF = "tif"
    EXR = "exr"

    @property
    def extension(self) -> str:
        return "." + self.value


VERBOSE_LEVELS = {
    "fatal": logging.CRITICAL,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": logging.DEBUG,
}


def parse_bool(value: Any) -> bool:
    """
    Parse a boolean option value ("true", "false", "1", "0", "yes", "no").

    Raises:
        ConfigurationError: If the value is not a recognized boolean
    """
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"Invalid boolean value: '{value}'")


@dataclass(frozen=True)
class TexturingConfig:
    """Texture generation parameters, shared read-only by every stage."""
    texture_side: int = 8192
    downscale: int = 2
    padding: int = 5
    fill_holes: bool = False
    use_udim: bool = True
    use_score: bool = True
    multi_band_downscale: int = 4
    multi_band_nb_contrib: Tuple[int, ...] = (1, 5, 10, 0)
    best_score_threshold: float = 0.1
    angle_hard_threshold: float = 90.0
    force_visible_by_all_vertices: bool = False
    visibility_remapping_method: VisibilityRemappingMethod = VisibilityRemappingMethod.PULL_PUSH
    process_colorspace: ColorSpace = ColorSpace.SRGB
    correct_ev: bool = False

    def __post_init__(self):
        if self.texture_side <= 0:
            raise ConfigurationError(f"textureSide must be positive, got {self.texture_side}")
        if self.downscale < 1:
            raise ConfigurationError(f"downscale must be >= 1, got {self.downscale}")
        if self.padding < 0:
            raise ConfigurationError(f"padding must be >= 0, got {self.padding}")
        if self.multi_band_downscale < 1:
            raise ConfigurationError(
                f"multiBandDownscale must be >= 1, got {self.multi_band_downscale}"
            )
        if not self.multi_band_nb_contrib or any(n < 0 for n in self.multi_band_nb_contrib):
            raise ConfigurationError(
                "multiBandNbContrib must be a non-empty list of non-negative integers"
            )
        if self.best_score_threshold < 0 or self.angle_hard_threshold < 0:
            raise ConfigurationError("Score and angle thresholds must be >= 0")

    @property
    def output_side(self) -> int:
        """Side of the written texture images in pixels."""
        return max(1, self.texture_side // self.downscale)

    @property
    def nb_bands(self) -> int:
        return len(self.multi_band_nb_contrib)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TexturingConfig":
        """
        Build from a plain mapping (YAML section), converting enum names.

        Unknown keys are rejected.
        """
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"Unknown texturing option(s): {', '.join(sorted(unknown))}")

        values = dict(data)
        try:
            for key in ("texture_side", "downscale", "padding", "multi_band_downscale"):
                if key in values:
                    values[key] = int(values[key])
            for key in ("best_score_threshold", "angle_hard_threshold"):
                if key in values:
                    values[key] = float(values[key])
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid texturing option value: {e}")
        for key in ("fill_holes", "use_udim", "use_score", "force_visible_by_all_vertices", "correct_ev"):
            if key in values:
                values[key] = parse_bool(values[key])
        if "multi_band_nb_contrib" in values:
            try:
                values["multi_band_nb_contrib"] = tuple(int(n) for n in values["multi_band_nb_contrib"])
            except (TypeError, ValueError):
                raise ConfigurationError(
                    f"Invalid multiBandNbContrib: {values['multi_band_nb_contrib']}"
                )
        if "visibility_remapping_method" in values:
            values["visibility_remapping_method"] = VisibilityRemappingMethod.from_string(
                values["visibility_remapping_method"]
            )
        if "process_colorspace" in values:
            values["process_colorspace"] = ColorSpace.from_string(values["process_colorspace"])

        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'texture_side': self.texture_side,
            'downscale': self.downscale,
            'padding': self.padding,
            'fill_holes': self.fill_holes,
            'use_udim': self.use_udim,
            'use_score': self.use_score,
            'multi_band_downscale': self.multi_band_downscale,
            'multi_band_nb_contrib': list(self.multi_band_nb_contrib),
            'best_score_threshold': self.best_score_threshold,
            'angle_hard_threshold': self.angle_hard_threshold,
            'force_visible_by_all_vertices': self.force_visible_by_all_vertices,
            'visibility_remapping_method': self.visibility_remapping_method.value,
            'process_colorspace': self.process_colorspace.value,
            'correct_ev': self.correct_ev,
        }


@dataclass(frozen=True)
class Config:
    """Complete run configuration."""
    input_file: str
    input_mesh: str
    output_dir: str
    images_folder: Optional[str] = None
    unwrap_method: UnwrapMethod = UnwrapMethod.BASIC
    flip_normals: bool = False
    output_texture_file_type: ImageFileType = ImageFileType.PNG
    verbose_level: str = "info"
    texturing: TexturingConfig = field(default_factory=TexturingConfig)

    def __post_init__(self):
        for name in ("input_file", "input_mesh", "output_dir"):
            if not getattr(self, name):
                raise ConfigurationError(f"{name} must be specified")
        if self.verbose_level not in VERBOSE_LEVELS:
            raise ConfigurationError(
                f"Invalid verbose level '{self.verbose_level}'. "
                f"Expected one of: {', '.join(VERBOSE_LEVELS)}"
            )

    @property
    def log_level(self) -> int:
        return VERBOSE_LEVELS[self.verbose_level]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """
        Build from a plain mapping (parsed YAML), converting enum names.

        Raises:
            ConfigurationError: On missing required values, unknown keys or
                invalid option values
        """
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"Unknown option(s): {', '.join(sorted(unknown))}")

        values = dict(data)
        for name in ("input_file", "input_mesh", "output_dir"):
            if not values.get(name):
                raise ConfigurationError(f"{name} must be specified (command line or config file)")
        if "unwrap_method" in values:
            values["unwrap_method"] = UnwrapMethod.from_string(values["unwrap_method"])
        if "output_texture_file_type" in values:
            values["output_texture_file_type"] = ImageFileType.from_string(
                values["output_texture_file_type"]
            )
        if "flip_normals" in values:
            values["flip_normals"] = parse_bool(values["flip_normals"])
        if "verbose_level" in values:
            values["verbose_level"] = str(values["verbose_level"]).lower()
        values["texturing"] = TexturingConfig.from_dict(values.get("texturing") or {})

        return cls(**values)

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "Config":
        """
        Create config from parsed command-line arguments.

        Loads the config file if specified, then applies command-line
        overrides. The result is constructed once; nothing mutates it later.

        Args:
            args: Parsed arguments from argparse

        Returns:
            Config instance

        Raises:
            ConfigurationError: If required values are missing or invalid
        """
        data: Dict[str, Any] = {}
        if getattr(args, "config", None):
            data = cls._load_yaml_dict(args.config)

        texturing = dict(data.get("texturing") or {})

        overrides = {
            "input_file": args.input,
            "input_mesh": args.input_mesh,
            "output_dir": args.output,
            "images_folder": args.images_folder,
            "unwrap_method": args.unwrap_method,
            "flip_normals": args.flip_normals,
            "output_texture_file_type": args.output_texture_file_type,
            "verbose_level": args.verbose_level,
        }
        texturing_overrides = {
            "texture_side": args.texture_side,
            "downscale": args.downscale,
            "padding": args.padding,
            "fill_holes": args.fill_holes,
            "use_udim": args.use_udim,
            "use_score": args.use_score,
            "multi_band_downscale": args.multi_band_downscale,
            "multi_band_nb_contrib": args.multi_band_nb_contrib,
            "best_score_threshold": args.best_score_threshold,
            "angle_hard_threshold": args.angle_hard_threshold,
            "force_visible_by_all_vertices": args.force_visible_by_all_vertices,
            "visibility_remapping_method": args.visibility_remapping_method,
            "process_colorspace": args.process_colorspace,
            "correct_ev": args.correct_ev,
        }

        data.update({k: v for k, v in overrides.items() if v is not None})
        texturing.update({k: v for k, v in texturing_overrides.items() if v is not None})
        data["texturing"] = texturing

        return cls.from_dict(data)

    @classmethod
    def from_yaml(cls, filepath: str) -> "Config":
        """
        Load config from YAML file.

        Args:
            filepath: Path to YAML config file

        Returns:
            Config instance
        """
        return cls.from_dict(cls._load_yaml_dict(filepath))

    @staticmethod
    def _load_yaml_dict(filepath: str) -> Dict[str, Any]:
        try:
            import yaml
        except ImportError:
            raise ImportError(
                "PyYAML is required for config files. "
                "Install with: pip install pyyaml"
            )

        try:
            with open(filepath, 'r') as f:
                data = yaml.safe_load(f) or {}
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file '{filepath}': {e}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file '{filepath}': {e}")

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file '{filepath}' must contain a mapping")
        return data

    def to_dict(self) -> Dict[str, Any]:
        return {
            'input_file': self.input_file,
            'input_mesh': self.input_mesh,
            'output_dir': self.output_dir,
            'images_folder': self.images_folder,
            'unwrap_method': self.unwrap_method.value,
            'flip_normals': self.flip_normals,
            'output_texture_file_type': self.output_texture_file_type.value,
            'verbose_level': self.verbose_level,
            'texturing': self.texturing.to_dict(),
        }

    def to_yaml(self, filepath: str) -> None:
        """
        Save config to YAML file.

        Args:
            filepath: Path to save YAML config file
        """
        try:
            import yaml
        except ImportError:
            raise ImportError(
                "PyYAML is required for config files. "
                "Install with: pip install pyyaml"
            )

        with open(filepath, 'w') as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)

    def with_texturing(self, **changes: Any) -> "Config":
        """Return a copy with some texturing parameters replaced."""
        return replace(self, texturing=replace(self.texturing, **changes))

    @staticmethod
    def generate_default_config_template() -> str:
        """
        Generate a default configuration template with comments.

        Returns:
            YAML string with comments explaining each option
        """
        return """# sfm2tex Configuration File
#
# Configures mesh texturing from an SfM reconstruction.
# Command-line arguments override values specified here.

# SfMData JSON file with views, intrinsics, poses and landmarks (required)
input_file: "path/to/sfm.json"

# Mesh to texture: OBJ, PLY, ... (required)
input_mesh: "path/to/mesh.obj"

# Output folder for the textured OBJ, its material and the textures (required)
output_dir: "./output"

# Look up source images as <images_folder>/<viewId>.<ext> (null = use view paths)
images_folder: null

# UV generation when the input mesh has no UVs: Basic, LSCM, ABF
#   Basic (> 600k faces): fast and simple, can generate multiple atlases
#   LSCM (<= 600k faces): optimize space, one atlas
#   ABF (<= 300k faces): optimize space and stretch, one atlas
unwrap_method: "Basic"

# Flip face normals (reverse triangle winding) at load
flip_normals: false

# Texture file type: png, jpg, tif, exr
output_texture_file_type: "png"

# Log verbosity: fatal, error, warning, info, debug, trace
verbose_level: "info"

texturing:
  # Texture side in pixels (before downscale)
  texture_side: 8192

  # Texture downscale factor
  downscale: 2

  # Texture edge padding in pixels
  padding: 5

  # Fill texture holes with the nearest filled texel
  fill_holes: false

  # Use UDIM tiles for multiple atlases
  use_udim: true

  # Weight contributions by projected texel footprint and viewing angle
  use_score: true

  # Width of the frequency bands (scale ratio between bands)
  multi_band_downscale: 4

  # Number of best contributions per frequency band (high to low)
  multi_band_nb_contrib: [1, 5, 10, 0]

  # Discard contributions below this ratio of the best score (0 = disabled)
  best_score_threshold: 0.1

  # Discard contributions seen under a larger angle, in degrees (0 = disabled)
  angle_hard_threshold: 90.0

  # Triangle visibility is the intersection of its vertices' visibilities
  force_visible_by_all_vertices: false

  # Visibility remapping: Pull, Push, PullPush
  visibility_remapping_method: "PullPush"

  # Blending colorspace: sRGB, linear, LAB
  process_colorspace: "sRGB"

  # Uniformize image exposure from EXIF metadata
  correct_ev: false
"""


class _ArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that raises ConfigurationError instead of exiting."""

    def error(self, message: str):
        raise ConfigurationError(message)


def _bool_arg(value: str) -> bool:
    try:
        return parse_bool(value)
    except ConfigurationError as e:
        raise argparse.ArgumentTypeError(str(e))


def _add_bool_option(group, *flags: str, dest: str, help: str) -> None:
    group.add_argument(
        *flags,
        dest=dest,
        type=_bool_arg,
        nargs='?',
        const=True,
        metavar="BOOL",
        help=help
    )


def create_argument_parser() -> argparse.ArgumentParser:
    """
    Create command-line argument parser.

    Option names follow the camelCase convention of photogrammetry tools
    (--inputMesh, --unwrapMethod, ...); each also accepts a kebab-case alias.
    Enum-valued options are kept as strings here and validated when the
    Config is built.

    Returns:
        Configured ArgumentParser
    """
    parser = _ArgumentParser(
        prog="sfm2tex",
        description="Texture a reconstructed mesh from an SfM scene: remap visibilities, "
                    "unwrap or subdivide, export an OBJ and generate texture atlases",
        epilog="Configuration file (YAML) can be used to set all options. Command-line arguments override config file values."
    )

    parser.add_argument(
        "--config", "-c",
        help="Path to YAML configuration file"
    )
    parser.add_argument(
        "--save-config",
        metavar="PATH",
        help="Save default configuration to YAML file and exit"
    )

    # Required (unless provided by --config)
    required_group = parser.add_argument_group("Required parameters")
    required_group.add_argument(
        "--input", "-i",
        help="SfMData file (JSON) with views, poses and landmarks"
    )
    required_group.add_argument(
        "--inputMesh", "--input-mesh",
        dest="input_mesh",
        help="Input mesh to texture"
    )
    required_group.add_argument(
        "--output", "-o",
        help="Folder for output mesh: OBJ, material and texture files"
    )

    optional_group = parser.add_argument_group("Optional parameters")
    optional_group.add_argument(
        "--imagesFolder", "--images-folder",
        dest="images_folder",
        help="Use images from a specific folder instead of those specified in the SfMData file. "
             "Filename should be the view id."
    )
    optional_group.add_argument(
        "--outputTextureFileType", "--output-texture-file-type",
        dest="output_texture_file_type",
        metavar="TYPE",
        help=f"Texture file type: {', '.join(ImageFileType.names())} (default: png)"
    )
    optional_group.add_argument(
        "--textureSide", "--texture-side",
        dest="texture_side",
        type=int,
        metavar="PIXELS",
        help="Output texture size (default: 8192)"
    )
    optional_group.add_argument(
        "--downscale",
        type=int,
        metavar="N",
        help="Texture downscale factor (default: 2)"
    )
    optional_group.add_argument(
        "--unwrapMethod", "--unwrap-method",
        dest="unwrap_method",
        metavar="METHOD",
        help="Method to unwrap input mesh if it does not have UV coordinates: "
             "Basic (> 600k faces) fast and simple, can generate multiple atlases; "
             "LSCM (<= 600k faces) optimize space, one atlas; "
             "ABF (<= 300k faces) optimize space and stretch, one atlas (default: Basic)"
    )
    _add_bool_option(optional_group, "--useUDIM", "--use-udim", dest="use_udim",
                     help="Use UDIM UV mapping (default: true)")
    _add_bool_option(optional_group, "--fillHoles", "--fill-holes", dest="fill_holes",
                     help="Fill texture holes with plausible values (default: false)")
    optional_group.add_argument(
        "--padding",
        type=int,
        metavar="PIXELS",
        help="Texture edge padding size in pixels (default: 5)"
    )
    _add_bool_option(optional_group, "--flipNormals", "--flip-normals", dest="flip_normals",
                     help="Flip face normals (reverse triangle winding) at load (default: false)")
    _add_bool_option(optional_group, "--correctEV", "--correct-ev", dest="correct_ev",
                     help="Uniformize images exposure (default: false)")
    _add_bool_option(optional_group, "--useScore", "--use-score", dest="use_score",
                     help="Use triangle scores (reprojected area and angle) to weight contributions "
                          "(default: true)")
    optional_group.add_argument(
        "--processColorspace", "--process-colorspace",
        dest="process_colorspace",
        metavar="COLORSPACE",
        help=f"Colorspace for the texturing internal computation: {', '.join(ColorSpace.names())} "
             f"(default: sRGB)"
    )
    optional_group.add_argument(
        "--multiBandDownscale", "--multi-band-downscale",
        dest="multi_band_downscale",
        type=int,
        metavar="N",
        help="Width of frequency bands (default: 4)"
    )
    optional_group.add_argument(
        "--multiBandNbContrib", "--multi-band-nb-contrib",
        dest="multi_band_nb_contrib",
        type=int,
        nargs='+',
        metavar="N",
        help="Number of contributions per frequency band (default: 1 5 10 0)"
    )
    optional_group.add_argument(
        "--bestScoreThreshold", "--best-score-threshold",
        dest="best_score_threshold",
        type=float,
        metavar="RATIO",
        help="Filter contributions below this ratio of the best score, 0 to disable (default: 0.1)"
    )
    optional_group.add_argument(
        "--angleHardThreshold", "--angle-hard-threshold",
        dest="angle_hard_threshold",
        type=float,
        metavar="DEGREES",
        help="Filter contributions seen under a larger angle, 0 to disable (default: 90)"
    )
    _add_bool_option(optional_group, "--forceVisibleByAllVertices", "--force-visible-by-all-vertices",
                     dest="force_visible_by_all_vertices",
                     help="Triangle visibility is the intersection of its vertices' visibilities "
                          "(default: false)")
    optional_group.add_argument(
        "--visibilityRemappingMethod", "--visibility-remapping-method",
        dest="visibility_remapping_method",
        metavar="METHOD",
        help="Method to remap visibilities from the reconstruction to the input mesh: "
             "Pull (each mesh vertex pulls the visibilities of the closest reconstruction point), "
             "Push (each reconstruction point pushes its visibilities to the closest triangle), "
             "PullPush (union of both) (default: PullPush)"
    )

    log_group = parser.add_argument_group("Log parameters")
    log_group.add_argument(
        "--verboseLevel", "--verbose-level", "-v",
        dest="verbose_level",
        choices=list(VERBOSE_LEVELS),
        help="Verbosity level (default: info)"
    )

    return parser

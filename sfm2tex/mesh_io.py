"""
Mesh file reading and writing.

OBJ files are parsed directly so that UV coordinates stay attached to
triangle corners (`f v/vt ...`) and vertex identity is preserved. Other
formats are loaded through trimesh.

The exporter writes the textured mesh as OBJ + MTL with one material per
atlas. It runs before textures exist; the MTL references the texture files
that texture generation will write next to it.
"""

import logging
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np

from .config import ImageFileType
from .errors import LoadError
from .mesh import MeshModel

logger = logging.getLogger(__name__)


def texture_filename(texture_number: int, file_type: ImageFileType) -> str:
    """File name of the texture image of an atlas, e.g. texture_1001.png."""
    return f"texture_{texture_number}{file_type.extension}"


def material_name(texture_number: int) -> str:
    return f"TextureAtlas_{texture_number}"


def load_mesh(filepath: str, flip_normals: bool = False) -> MeshModel:
    """
    Load a mesh from disk.

    Args:
        filepath: Path to the mesh (.obj parsed directly, anything else via trimesh)
        flip_normals: Reverse triangle winding after loading

    Returns:
        MeshModel without visibilities

    Raises:
        LoadError: If the file cannot be read or is malformed
    """
    path = Path(filepath)
    if not path.exists():
        raise LoadError(f"Input mesh '{filepath}' does not exist")

    if path.suffix.lower() == '.obj':
        mesh = read_obj(path)
    else:
        mesh = _read_with_trimesh(path)

    if flip_normals:
        mesh.flip_normals()

    logger.info(
        "Loaded mesh '%s': %d vertices, %d triangles, %s",
        filepath, mesh.vertex_count, mesh.triangle_count,
        "with UVs" if mesh.has_uvs() else "no UVs"
    )
    return mesh


def _resolve_index(token: str, count: int, kind: str, line_no: int) -> int:
    index = int(token)
    if index < 0:
        index = count + index
    else:
        index -= 1
    if not 0 <= index < count:
        raise LoadError(f"line {line_no}: {kind} index {token} out of range")
    return index


def _parse_corner(
    token: str,
    n_vertices: int,
    n_uvs: int,
    line_no: int
) -> Tuple[int, Optional[int]]:
    parts = token.split('/')
    vertex = _resolve_index(parts[0], n_vertices, "vertex", line_no)
    uv = None
    if len(parts) > 1 and parts[1]:
        uv = _resolve_index(parts[1], n_uvs, "texture coordinate", line_no)
    return vertex, uv


def read_obj(filepath: Path) -> MeshModel:
    """
    Parse a Wavefront OBJ file.

    Supports `v`, `vt`, `f` (v, v/vt, v//vn, v/vt/vn forms, negative
    indices, polygons fan-triangulated) and `usemtl`. Materials are numbered
    in order of first use, after an implicit default material for faces
    that precede any `usemtl`; the default is dropped when no face uses
    it. Normals, groups and smoothing are ignored.

    Raises:
        LoadError: On unreadable files or invalid records
    """
    vertices: List[List[float]] = []
    uvs: List[List[float]] = []
    triangles: List[Tuple[int, int, int]] = []
    triangle_uvs: List[Tuple[Optional[int], ...]] = []
    triangle_materials: List[int] = []
    material_ids = {}
    current_material = 0

    try:
        with open(filepath, 'r') as f:
            for line_no, line in enumerate(f, start=1):
                parts = line.split()
                if not parts or parts[0].startswith('#'):
                    continue
                key = parts[0]
                try:
                    if key == 'v':
                        vertices.append([float(x) for x in parts[1:4]])
                    elif key == 'vt':
                        # v defaults to 0 when omitted
                        uvs.append([float(x) for x in (parts[1:3] + ['0'])[:2]])
                    elif key == 'usemtl':
                        name = parts[1] if len(parts) > 1 else ''
                        current_material = material_ids.setdefault(name, len(material_ids) + 1)
                    elif key == 'f':
                        corners = [
                            _parse_corner(token, len(vertices), len(uvs), line_no)
                            for token in parts[1:]
                        ]
                        if len(corners) < 3:
                            raise LoadError(f"line {line_no}: face with fewer than 3 vertices")
                        # Fan triangulation
                        for k in range(1, len(corners) - 1):
                            tri = (corners[0], corners[k], corners[k + 1])
                            triangles.append(tuple(c[0] for c in tri))
                            triangle_uvs.append(tuple(c[1] for c in tri))
                            triangle_materials.append(current_material)
                except ValueError as e:
                    raise LoadError(f"line {line_no}: invalid '{key}' record: {e}")
    except OSError as e:
        raise LoadError(f"Cannot read mesh '{filepath}': {e}")
    except LoadError as e:
        raise LoadError(f"Invalid OBJ file '{filepath}': {e}")

    for v in vertices:
        if len(v) != 3:
            raise LoadError(f"Invalid OBJ file '{filepath}': vertex with {len(v)} coordinates")

    materials = np.array(triangle_materials, dtype=np.int64)
    if len(materials) and materials.min() > 0:
        materials -= 1

    uv_coords = None
    triangle_uv_ids = None
    try:
        if uvs and triangles:
            if all(uv is not None for tri in triangle_uvs for uv in tri):
                uv_coords = np.array(uvs, dtype=np.float64).reshape(-1, 2)
                triangle_uv_ids = np.array(triangle_uvs, dtype=np.int64)
            else:
                logger.warning("OBJ '%s' has faces without texture coordinates, ignoring UVs", filepath)

        return MeshModel(
            vertices=np.array(vertices, dtype=np.float64).reshape(-1, 3),
            triangles=np.array(triangles, dtype=np.int64).reshape(-1, 3),
            uv_coords=uv_coords,
            triangle_uv_ids=triangle_uv_ids,
            triangle_materials=materials
        )
    except ValueError as e:
        raise LoadError(f"Invalid OBJ file '{filepath}': {e}")


def _read_with_trimesh(filepath: Path) -> MeshModel:
    import trimesh

    try:
        loaded = trimesh.load(str(filepath), process=False, force='mesh')
    except Exception as e:
        raise LoadError(f"Cannot read mesh '{filepath}': {e}")

    vertices = np.asarray(loaded.vertices, dtype=np.float64)
    faces = np.asarray(loaded.faces, dtype=np.int64).reshape(-1, 3)

    uv = getattr(loaded.visual, 'uv', None)
    if uv is not None and len(uv) == len(vertices) and len(faces):
        # trimesh stores UVs per vertex: corners index the same table
        return MeshModel(vertices, faces, uv_coords=np.asarray(uv, dtype=np.float64),
                         triangle_uv_ids=faces.copy())
    return MeshModel(vertices, faces)


class MeshExporter:
    """
    Export a MeshModel to OBJ + MTL.

    Creates:
    - output_dir/<basename>.obj: vertices, UVs and faces grouped by atlas
    - output_dir/<basename>.mtl: one TextureAtlas_<n> material per atlas,
      whose diffuse map is texture_<n>.<ext>
    """

    def __init__(self, texture_file_type: ImageFileType = ImageFileType.PNG):
        self.texture_file_type = texture_file_type

    def export(self, mesh: MeshModel, output_dir: Path, basename: str = "texturedMesh") -> Path:
        """
        Write the mesh to `output_dir`.

        Args:
            mesh: Mesh to export (atlases must be up to date)
            output_dir: Directory to write files to (will be created if needed)
            basename: File name without extension

        Returns:
            Path to the written OBJ file
        """
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        obj_path = output_dir / f"{basename}.obj"
        mtl_path = output_dir / f"{basename}.mtl"

        self._export_mtl(mesh, mtl_path)
        self._export_obj(mesh, obj_path, mtl_path.name)

        logger.info(
            "Exported mesh '%s': %d vertices, %d triangles, %d atlas(es)",
            obj_path, mesh.vertex_count, mesh.triangle_count, len(mesh.atlases)
        )
        return obj_path

    def _export_obj(self, mesh: MeshModel, filepath: Path, mtl_name: str) -> None:
        textured = mesh.has_uvs() and bool(mesh.atlases)

        with open(filepath, 'w') as f:
            f.write("# Textured mesh\n")
            f.write(f"# Number of vertices: {mesh.vertex_count}\n")
            f.write(f"# Number of triangles: {mesh.triangle_count}\n")
            if textured:
                f.write(f"mtllib {mtl_name}\n")

            if mesh.vertex_count:
                np.savetxt(f, mesh.vertices, fmt="v %.8f %.8f %.8f")

            if mesh.has_uvs():
                np.savetxt(f, mesh.uv_coords, fmt="vt %.8f %.8f")

            if not textured:
                if mesh.triangle_count:
                    np.savetxt(f, mesh.triangles + 1, fmt="f %d %d %d")
                return

            # OBJ indices are 1-based
            for number, triangle_ids in sorted(mesh.atlases.items()):
                f.write(f"usemtl {material_name(number)}\n")
                corners = np.empty((len(triangle_ids), 6), dtype=np.int64)
                corners[:, 0::2] = mesh.triangles[triangle_ids] + 1
                corners[:, 1::2] = mesh.triangle_uv_ids[triangle_ids] + 1
                np.savetxt(f, corners, fmt="f %d/%d %d/%d %d/%d")

    def _export_mtl(self, mesh: MeshModel, filepath: Path) -> None:
        with open(filepath, 'w') as f:
            f.write("# Materials, one per texture atlas\n")
            for number in sorted(mesh.atlases):
                f.write(f"\nnewmtl {material_name(number)}\n")
                f.write("Ka 0.6 0.6 0.6\n")
                f.write("Kd 0.6 0.6 0.6\n")
                f.write("Ks 0.0 0.0 0.0\n")
                f.write("d 1.0\n")
                f.write("Ns 0.0\n")
                f.write("illum 1\n")
                f.write(f"map_Kd {texture_filename(number, self.texture_file_type)}\n")

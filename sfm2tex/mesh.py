"""
Mesh model for texturing: geometry, UVs, visibilities and atlases.

The MeshModel holds the mesh that flows through the whole pipeline. It is
owned by the pipeline and handed to each stage for the duration of one call.

UV coordinates are stored per triangle corner, as in OBJ files: `uv_coords`
is a table of 2D coordinates and `triangle_uv_ids` indexes it for each corner
of each triangle. This keeps vertex identity independent of UV seams, so UV
unwrapping never changes the vertex set.

Atlases group triangles by output texture. Each atlas is identified by its
texture number (1001, 1002, ...). With UDIM the number is the UDIM tile the
triangle's UVs fall in; otherwise it is 1001 + the triangle's material index.
"""

import numpy as np
from typing import Dict, FrozenSet, List, Optional
from numpy.typing import NDArray

UDIM_BASE = 1001
UDIM_ROW_SIZE = 10

Visibility = FrozenSet[int]


def udim_tile_number(uv: NDArray[np.float64]) -> NDArray[np.int64]:
    """
    UDIM tile number of UV points, shape (N, 2) -> (N,).

    Tile 1001 covers [0, 1)^2, 1002 covers [1, 2) x [0, 1), and so on, ten
    tiles per row.
    """
    uv = np.asarray(uv, dtype=np.float64).reshape(-1, 2)
    u_tile = np.clip(np.floor(uv[:, 0]), 0, UDIM_ROW_SIZE - 1).astype(np.int64)
    v_tile = np.maximum(np.floor(uv[:, 1]), 0).astype(np.int64)
    return UDIM_BASE + u_tile + UDIM_ROW_SIZE * v_tile


def udim_tile_offset(texture_number: int) -> NDArray[np.float64]:
    """UV offset of the lower-left corner of a UDIM tile."""
    index = texture_number - UDIM_BASE
    return np.array([index % UDIM_ROW_SIZE, index // UDIM_ROW_SIZE], dtype=np.float64)


class MeshModel:
    """
    Triangle mesh with optional per-corner UVs and per-vertex visibilities.

    Attributes:
        vertices: Vertex positions, shape (N, 3)
        triangles: Vertex indices, shape (M, 3)
        uv_coords: UV table, shape (K, 2); K == 0 means the mesh has no UVs
        triangle_uv_ids: UV indices per triangle corner, shape (M, 3)
        triangle_materials: Material index per triangle, shape (M,)
        visibilities: One frozenset of camera indices per vertex
        atlases: Texture number -> triangle indices
    """

    def __init__(
        self,
        vertices: NDArray[np.float64],
        triangles: NDArray[np.int64],
        uv_coords: Optional[NDArray[np.float64]] = None,
        triangle_uv_ids: Optional[NDArray[np.int64]] = None,
        triangle_materials: Optional[NDArray[np.int64]] = None,
        visibilities: Optional[List[Visibility]] = None
    ):
        self.vertices = np.asarray(vertices, dtype=np.float64).reshape(-1, 3)
        self.triangles = np.asarray(triangles, dtype=np.int64).reshape(-1, 3)

        if uv_coords is None or len(uv_coords) == 0:
            self.uv_coords = np.zeros((0, 2), dtype=np.float64)
            self.triangle_uv_ids = np.zeros((0, 3), dtype=np.int64)
        else:
            if triangle_uv_ids is None:
                raise ValueError("triangle_uv_ids is required when uv_coords are given")
            self.uv_coords = np.asarray(uv_coords, dtype=np.float64).reshape(-1, 2)
            self.triangle_uv_ids = np.asarray(triangle_uv_ids, dtype=np.int64).reshape(-1, 3)
            if len(self.triangle_uv_ids) != len(self.triangles):
                raise ValueError(
                    f"Number of triangle UV ids ({len(self.triangle_uv_ids)}) must match "
                    f"number of triangles ({len(self.triangles)})"
                )

        if triangle_materials is None:
            self.triangle_materials = np.zeros(len(self.triangles), dtype=np.int64)
        else:
            self.triangle_materials = np.asarray(triangle_materials, dtype=np.int64).reshape(-1)

        self.visibilities: List[Visibility] = list(visibilities) if visibilities is not None else []
        self.atlases: Dict[int, NDArray[np.int64]] = {}

        # Will be lazily initialized
        self._mesh_trimesh = None

    @property
    def vertex_count(self) -> int:
        return len(self.vertices)

    @property
    def triangle_count(self) -> int:
        return len(self.triangles)

    def has_uvs(self) -> bool:
        """True if the mesh carries any UV coordinates."""
        return len(self.uv_coords) > 0

    def get_trimesh(self):
        """
        Get trimesh.Trimesh object for mesh operations.

        Lazily creates and caches the trimesh object; the cache is dropped
        whenever the geometry changes.

        Returns:
            trimesh.Trimesh instance
        """
        if self._mesh_trimesh is None:
            import trimesh

            self._mesh_trimesh = trimesh.Trimesh(
                vertices=self.vertices,
                faces=self.triangles,
                process=False  # Don't modify the mesh
            )

        return self._mesh_trimesh

    def average_edge_length(self) -> float:
        """
        Mean length of the unique edges of the mesh.

        Returns 0.0 for a mesh without triangles.
        """
        if self.triangle_count == 0:
            return 0.0
        return float(np.mean(self.get_trimesh().edges_unique_length))

    def triangle_normals(self) -> NDArray[np.float64]:
        """Unit normals per triangle, shape (M, 3). Degenerate triangles get zeros."""
        if self.triangle_count == 0:
            return np.zeros((0, 3), dtype=np.float64)
        return np.asarray(self.get_trimesh().face_normals, dtype=np.float64)

    def set_geometry(
        self,
        vertices: NDArray[np.float64],
        triangles: NDArray[np.int64]
    ) -> None:
        """Replace vertices and triangles, invalidating cached geometry."""
        self.vertices = np.asarray(vertices, dtype=np.float64).reshape(-1, 3)
        self.triangles = np.asarray(triangles, dtype=np.int64).reshape(-1, 3)
        self._mesh_trimesh = None

    def set_uvs(
        self,
        uv_coords: NDArray[np.float64],
        triangle_uv_ids: NDArray[np.int64],
        triangle_materials: Optional[NDArray[np.int64]] = None
    ) -> None:
        """Replace the UV table, its per-corner indices and the materials."""
        triangle_uv_ids = np.asarray(triangle_uv_ids, dtype=np.int64).reshape(-1, 3)
        if len(triangle_uv_ids) != self.triangle_count:
            raise ValueError(
                f"Number of triangle UV ids ({len(triangle_uv_ids)}) must match "
                f"number of triangles ({self.triangle_count})"
            )
        self.uv_coords = np.asarray(uv_coords, dtype=np.float64).reshape(-1, 2)
        self.triangle_uv_ids = triangle_uv_ids
        if triangle_materials is not None:
            self.triangle_materials = np.asarray(triangle_materials, dtype=np.int64).reshape(-1)

    def flip_normals(self) -> None:
        """Reverse the winding of every triangle (and of its UV corners)."""
        self.triangles = self.triangles[:, ::-1].copy()
        if self.has_uvs():
            self.triangle_uv_ids = self.triangle_uv_ids[:, ::-1].copy()
        self._mesh_trimesh = None

    def ensure_visibility_size(self) -> bool:
        """
        Make sure there is exactly one visibility set per vertex.

        Missing sets are added empty; extra sets are dropped.

        Returns:
            True if the visibility list had to be fixed
        """
        n = self.vertex_count
        if len(self.visibilities) == n:
            return False
        if len(self.visibilities) < n:
            self.visibilities.extend(frozenset() for _ in range(n - len(self.visibilities)))
        else:
            del self.visibilities[n:]
        return True

    def triangle_uv_centroids(self) -> NDArray[np.float64]:
        """Mean UV of each triangle's corners, shape (M, 2)."""
        if not self.has_uvs():
            raise ValueError("Mesh has no UV coordinates")
        return self.uv_coords[self.triangle_uv_ids].mean(axis=1)

    def update_atlases(self, use_udim: bool) -> Dict[int, NDArray[np.int64]]:
        """
        Regroup triangles into atlases after UVs or topology changed.

        Args:
            use_udim: Group by UDIM tile of the triangle UVs instead of by
                      material

        Returns:
            The new atlases (texture number -> sorted triangle indices)
        """
        if self.triangle_count == 0 or not self.has_uvs():
            self.atlases = {}
            return self.atlases

        if use_udim:
            numbers = udim_tile_number(self.triangle_uv_centroids())
        else:
            numbers = UDIM_BASE + self.triangle_materials

        self.atlases = {
            int(number): np.flatnonzero(numbers == number)
            for number in np.unique(numbers)
        }
        return self.atlases

    def copy(self) -> "MeshModel":
        """Deep copy of geometry, UVs, materials, visibilities and atlases."""
        mesh = MeshModel(
            vertices=self.vertices.copy(),
            triangles=self.triangles.copy(),
            uv_coords=self.uv_coords.copy() if self.has_uvs() else None,
            triangle_uv_ids=self.triangle_uv_ids.copy() if self.has_uvs() else None,
            triangle_materials=self.triangle_materials.copy(),
            visibilities=list(self.visibilities)
        )
        mesh.atlases = {number: tris.copy() for number, tris in self.atlases.items()}
        return mesh

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"MeshModel(vertices={self.vertex_count}, "
            f"triangles={self.triangle_count}, "
            f"uvs={len(self.uv_coords)}, atlases={len(self.atlases)})"
        )

"""
Thermal Engine - Mesh
=====================
Discretized domain consumed by the assembler: nodes, elements, material tags
and named node sets for boundary conditions.

The mesh stores its data as NumPy arrays for the solvers; ``MeshNode`` and
``MeshElement`` are lightweight views for callers that want objects.

Author: Thermal Engine Developers
Version: 1.0.0
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple
from enum import Enum
import hashlib

import numpy as np

from .errors import GeometryError


class ElementType(Enum):
    """Supported 2D element shapes (extruded by the mesh thickness)."""
    QUAD4 = "quad4"
    TRI3 = "tri3"

    @property
    def nodes_per_element(self) -> int:
        return 4 if self is ElementType.QUAD4 else 3


@dataclass(frozen=True)
class MeshNode:
    """A single mesh node (position in metres)."""
    node_id: int
    x: float
    y: float
    is_boundary: bool = False


@dataclass(frozen=True)
class MeshElement:
    """A mesh element with its material tag and volume."""
    element_id: int
    node_ids: Tuple[int, ...]
    material: str
    area_m2: float
    volume_m3: float


@dataclass
class GridSpec:
    """Structured rectangular grid metadata (enables the FDM stencil path)."""
    nx: int  # nodes in x
    ny: int  # nodes in y
    x0: float = 0.0
    y0: float = 0.0
    width: float = 0.0
    height: float = 0.0

    @property
    def dx(self) -> float:
        return self.width / (self.nx - 1)

    @property
    def dy(self) -> float:
        return self.height / (self.ny - 1)


@dataclass
class ThermalMesh:
    """Complete 2D mesh with out-of-plane thickness."""
    coordinates: np.ndarray  # (N, 2) [m]
    connectivity: np.ndarray  # (E, nodes_per_element)
    element_materials: List[str]
    element_type: ElementType = ElementType.QUAD4
    thickness_m: float = 1.6e-3
    node_sets: Dict[str, np.ndarray] = field(default_factory=dict)
    grid: Optional[GridSpec] = None

    def __post_init__(self):
        self.coordinates = np.asarray(self.coordinates, dtype=np.float64)
        self.connectivity = np.asarray(self.connectivity, dtype=np.int64)
        self.element_materials = list(self.element_materials)
        self.node_sets = {name: np.unique(np.asarray(ids, dtype=np.int64))
                          for name, ids in self.node_sets.items()}
        # Meshes are shared read-only between concurrent solves
        self.coordinates.setflags(write=False)
        self.connectivity.setflags(write=False)
        self._areas: Optional[np.ndarray] = None
        self._boundary_edges: Optional[np.ndarray] = None

    # ------------------------------------------------------------------
    # Basic queries
    # ------------------------------------------------------------------
    @property
    def n_nodes(self) -> int:
        return self.coordinates.shape[0]

    @property
    def n_elements(self) -> int:
        return self.connectivity.shape[0]

    @property
    def is_structured(self) -> bool:
        return self.grid is not None

    @property
    def element_areas(self) -> np.ndarray:
        """Signed element areas (shoelace); positive for counter-clockwise nodes."""
        if self._areas is None:
            xy = self.coordinates[self.connectivity]  # (E, nen, 2)
            x, y = xy[..., 0], xy[..., 1]
            self._areas = 0.5 * np.sum(x * np.roll(y, -1, axis=1) - np.roll(x, -1, axis=1) * y, axis=1)
        return self._areas

    @property
    def element_volumes(self) -> np.ndarray:
        return self.element_areas * self.thickness_m

    @property
    def element_centroids(self) -> np.ndarray:
        return self.coordinates[self.connectivity].mean(axis=1)

    def node(self, node_id: int) -> MeshNode:
        x, y = self.coordinates[node_id]
        return MeshNode(node_id, float(x), float(y), bool(self.boundary_mask()[node_id]))

    def element(self, element_id: int) -> MeshElement:
        area = float(self.element_areas[element_id])
        return MeshElement(
            element_id=element_id,
            node_ids=tuple(int(i) for i in self.connectivity[element_id]),
            material=self.element_materials[element_id],
            area_m2=area,
            volume_m3=area * self.thickness_m,
        )

    @property
    def nodes(self) -> Iterator[MeshNode]:
        return (self.node(i) for i in range(self.n_nodes))

    @property
    def elements(self) -> Iterator[MeshElement]:
        return (self.element(e) for e in range(self.n_elements))

    def get_node_set(self, name: str) -> np.ndarray:
        if name == 'all':
            return np.arange(self.n_nodes)
        if name == 'boundary' and 'boundary' not in self.node_sets:
            return np.flatnonzero(self.boundary_mask())
        try:
            return self.node_sets[name]
        except KeyError:
            raise GeometryError(f"Unknown node set '{name}'",
                                {'available': sorted(self.node_sets)}) from None

    def elements_with_material(self, material: str) -> np.ndarray:
        return np.array([e for e, m in enumerate(self.element_materials) if m == material], dtype=np.int64)

    def nodes_of_elements(self, element_ids: Sequence[int]) -> np.ndarray:
        if len(element_ids) == 0:
            return np.zeros(0, dtype=np.int64)
        return np.unique(self.connectivity[np.asarray(element_ids, dtype=np.int64)].ravel())

    def find_element(self, x: float, y: float) -> int:
        """Element whose centroid is nearest to (x, y)."""
        d2 = np.sum((self.element_centroids - np.array([x, y])) ** 2, axis=1)
        return int(np.argmin(d2))

    def find_node(self, x: float, y: float) -> int:
        d2 = np.sum((self.coordinates - np.array([x, y])) ** 2, axis=1)
        return int(np.argmin(d2))

    def characteristic_sizes(self) -> Tuple[float, float]:
        """(min, max) element size as sqrt(area) [m]."""
        h = np.sqrt(np.abs(self.element_areas))
        return float(h.min()), float(h.max())

    # ------------------------------------------------------------------
    # Boundary geometry
    # ------------------------------------------------------------------
    def boundary_edges(self) -> np.ndarray:
        """Edges (node pairs) used by exactly one element."""
        if self._boundary_edges is None:
            nen = self.connectivity.shape[1]
            edges = np.concatenate([
                np.stack([self.connectivity[:, a], self.connectivity[:, (a + 1) % nen]], axis=1)
                for a in range(nen)
            ])
            keys = np.sort(edges, axis=1)
            uniq, counts = np.unique(keys, axis=0, return_counts=True)
            self._boundary_edges = uniq[counts == 1]
        return self._boundary_edges

    def boundary_mask(self) -> np.ndarray:
        mask = np.zeros(self.n_nodes, dtype=bool)
        mask[self.boundary_edges().ravel()] = True
        return mask

    def node_face_areas(self) -> np.ndarray:
        """Tributary in-plane area of each node (one face) [m²]."""
        nen = self.connectivity.shape[1]
        areas = np.zeros(self.n_nodes)
        np.add.at(areas, self.connectivity.ravel(),
                  np.repeat(np.abs(self.element_areas) / nen, nen))
        return areas

    def node_edge_areas(self, node_ids: Sequence[int]) -> np.ndarray:
        """
        Lumped side-wall area per node for boundary edges whose two end nodes
        both belong to ``node_ids`` (edge length × thickness, split in half).
        """
        selected = np.zeros(self.n_nodes, dtype=bool)
        selected[np.asarray(node_ids, dtype=np.int64)] = True
        edges = self.boundary_edges()
        edges = edges[selected[edges[:, 0]] & selected[edges[:, 1]]]
        lengths = np.linalg.norm(self.coordinates[edges[:, 0]] - self.coordinates[edges[:, 1]], axis=1)
        areas = np.zeros(self.n_nodes)
        half = 0.5 * lengths * self.thickness_m
        np.add.at(areas, edges[:, 0], half)
        np.add.at(areas, edges[:, 1], half)
        return areas

    # ------------------------------------------------------------------
    # Validation and identity
    # ------------------------------------------------------------------
    def validate(self, materials: Optional[Mapping[str, object]] = None) -> None:
        """Raise GeometryError for degenerate or inconsistent meshes."""
        if self.n_elements == 0 or self.n_nodes == 0:
            raise GeometryError("Mesh has no elements")
        if self.thickness_m <= 0:
            raise GeometryError(f"Mesh thickness must be positive, got {self.thickness_m}")
        if self.connectivity.shape[1] != self.element_type.nodes_per_element:
            raise GeometryError(
                f"{self.element_type.value} elements need {self.element_type.nodes_per_element} nodes, "
                f"connectivity has {self.connectivity.shape[1]}")
        if self.connectivity.min() < 0 or self.connectivity.max() >= self.n_nodes:
            raise GeometryError("Element connectivity references a node outside the mesh")
        if len(self.element_materials) != self.n_elements:
            raise GeometryError("Every element needs exactly one material tag")

        used = np.zeros(self.n_nodes, dtype=bool)
        used[self.connectivity.ravel()] = True
        if not used.all():
            dangling = np.flatnonzero(~used)
            raise GeometryError(f"{len(dangling)} dangling node(s) not used by any element",
                                {'node_ids': dangling[:20].tolist()})

        areas = self.element_areas
        h_min, h_max = self.characteristic_sizes()
        tiny = 1e-12 * max(h_max, 1e-300) ** 2
        bad = np.flatnonzero(areas <= tiny)
        if bad.size:
            raise GeometryError(
                f"{bad.size} degenerate or inverted element(s) (area <= 0)",
                {'element_ids': bad[:20].tolist(), 'areas': areas[bad[:20]].tolist()})

        if materials is not None:
            missing = sorted(set(self.element_materials) - set(materials))
            if missing:
                raise GeometryError(f"Elements reference unknown material(s): {missing}",
                                    {'missing': missing})

    def geometry_hash(self) -> str:
        h = hashlib.sha256()
        h.update(self.element_type.value.encode())
        h.update(np.float64(self.thickness_m).tobytes())
        h.update(np.ascontiguousarray(self.coordinates).tobytes())
        h.update(np.ascontiguousarray(self.connectivity).tobytes())
        return h.hexdigest()

    def content_hash(self) -> str:
        """Geometry plus material tags and node sets."""
        h = hashlib.sha256(self.geometry_hash().encode())
        h.update("\x1f".join(self.element_materials).encode())
        for name in sorted(self.node_sets):
            h.update(name.encode())
            h.update(self.node_sets[name].tobytes())
        return h.hexdigest()

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------
    @classmethod
    def from_arrays(cls, coordinates, connectivity, materials,
                    thickness_m: float = 1.6e-3,
                    node_sets: Optional[Dict[str, Sequence[int]]] = None) -> 'ThermalMesh':
        """Build a mesh from externally generated arrays (geometry subsystem)."""
        connectivity = np.asarray(connectivity, dtype=np.int64)
        if connectivity.ndim != 2 or connectivity.shape[1] not in (3, 4):
            raise GeometryError("Connectivity must be an (E, 3) or (E, 4) array")
        element_type = ElementType.QUAD4 if connectivity.shape[1] == 4 else ElementType.TRI3
        if isinstance(materials, str):
            materials = [materials] * connectivity.shape[0]
        return cls(
            coordinates=coordinates,
            connectivity=connectivity,
            element_materials=list(materials),
            element_type=element_type,
            thickness_m=thickness_m,
            node_sets=dict(node_sets or {}),
        )

    def refined(self, ratio: int = 2) -> 'ThermalMesh':
        """
        New structured mesh with element size divided by ``ratio``.

        Elements inherit the material of their parent element; custom node
        sets keep the nodes that coincide with their original members.
        """
        if not self.is_structured:
            raise GeometryError("Only structured grids can be refined automatically")
        g = self.grid
        ex, ey = g.nx - 1, g.ny - 1
        cell_materials = self.element_materials
        if self.element_type is ElementType.TRI3:
            # Two triangles per cell, both tagged with the cell material
            cell_materials = cell_materials[::2]
        parent_materials = np.array(cell_materials, dtype=object).reshape(ey, ex)

        def material_at(ix: int, iy: int) -> str:
            return parent_materials[iy // ratio, ix // ratio]

        fine = MeshGenerator.rectangle(
            width=g.width, height=g.height,
            nx=ex * ratio + 1, ny=ey * ratio + 1,
            material=material_at, thickness_m=self.thickness_m,
            element_type=self.element_type, origin=(g.x0, g.y0),
        )
        for name, ids in self.node_sets.items():
            if name in fine.node_sets:
                continue
            old_ij = np.stack(np.divmod(ids, g.nx), axis=1)  # (iy, ix)
            fine.node_sets[name] = old_ij[:, 0] * ratio * fine.grid.nx + old_ij[:, 1] * ratio
        return fine


class MeshGenerator:
    """Generates structured meshes for rectangular domains."""

    @staticmethod
    def rectangle(width: float, height: float, nx: int, ny: int,
                  material,
                  thickness_m: float = 1.6e-3,
                  element_type: ElementType = ElementType.QUAD4,
                  origin: Tuple[float, float] = (0.0, 0.0)) -> ThermalMesh:
        """
        Structured grid of ``nx × ny`` nodes over a width × height rectangle.

        ``material`` is a tag, or a callable ``(ix, iy) -> tag`` evaluated per
        grid cell. Node sets ``left``, ``right``, ``bottom``, ``top`` and
        ``boundary`` are created. Tri3 meshes split each cell along its
        diagonal.
        """
        if nx < 2 or ny < 2:
            raise GeometryError(f"Grid needs at least 2×2 nodes, got {nx}×{ny}")
        if width <= 0 or height <= 0:
            raise GeometryError(f"Grid extent must be positive, got {width}×{height}")

        x0, y0 = origin
        xs = x0 + np.linspace(0.0, width, nx)
        ys = y0 + np.linspace(0.0, height, ny)
        gx, gy = np.meshgrid(xs, ys)  # row-major: node id = iy * nx + ix
        coordinates = np.stack([gx.ravel(), gy.ravel()], axis=1)

        ix, iy = np.meshgrid(np.arange(nx - 1), np.arange(ny - 1))
        ix, iy = ix.ravel(), iy.ravel()
        n0 = iy * nx + ix
        n1, n2, n3 = n0 + 1, n0 + 1 + nx, n0 + nx

        if callable(material):
            cell_materials = [material(int(i), int(j)) for i, j in zip(ix, iy)]
        else:
            cell_materials = [material] * len(n0)

        if element_type is ElementType.QUAD4:
            connectivity = np.stack([n0, n1, n2, n3], axis=1)
            element_materials = cell_materials
        else:
            lower = np.stack([n0, n1, n2], axis=1)
            upper = np.stack([n0, n2, n3], axis=1)
            connectivity = np.stack([lower, upper], axis=1).reshape(-1, 3)
            element_materials = [m for m in cell_materials for _ in range(2)]

        all_ids = np.arange(nx * ny).reshape(ny, nx)
        node_sets = {
            'left': all_ids[:, 0],
            'right': all_ids[:, -1],
            'bottom': all_ids[0, :],
            'top': all_ids[-1, :],
        }
        node_sets['boundary'] = np.concatenate(list(node_sets.values()))

        return ThermalMesh(
            coordinates=coordinates,
            connectivity=connectivity,
            element_materials=element_materials,
            element_type=element_type,
            thickness_m=thickness_m,
            node_sets=node_sets,
            grid=GridSpec(nx=nx, ny=ny, x0=x0, y0=y0, width=width, height=height),
        )

    @staticmethod
    def square_with_spacing(n: int, spacing: float, material, thickness_m: float = 1.6e-3,
                            element_type: ElementType = ElementType.QUAD4) -> ThermalMesh:
        """n × n nodes with uniform spacing (e.g. 20×20 nodes at 1 mm)."""
        extent = spacing * (n - 1)
        return MeshGenerator.rectangle(extent, extent, n, n, material,
                                       thickness_m=thickness_m, element_type=element_type)


__all__ = [
    'ElementType',
    'MeshNode',
    'MeshElement',
    'GridSpec',
    'ThermalMesh',
    'MeshGenerator',
]

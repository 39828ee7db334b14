"""
Thermal Engine - Linear System Assembler
========================================
Builds the conduction stiffness K, heat capacity M and load vector f.

Two discretizations share one element loop:

- ``fem``: Galerkin weak form on Quad4 (2×2 Gauss) or Tri3 elements.
- ``fdm``: finite-volume five-point stencil, built element by element as
  edge conductances k·t·(half width)/length on rectangular Quad4 elements.

Element work is split into chunks that may run on a thread pool; each chunk
returns COO triplets and the reduction into the global sparse matrices is
done by the calling thread only.

Author: Thermal Engine Developers
Version: 1.0.0
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy import sparse
from scipy.sparse.csgraph import connected_components

from ..core.context import DirichletBC, ConvectiveBC, resolve_nodes, robin_areas
from ..core.errors import GeometryError, SingularMatrixError
from ..core.mesh import ElementType
from ..utils.logger import get_logger, timed_function

_G = 1.0 / np.sqrt(3.0)
GAUSS_2X2 = ((-_G, -_G), (_G, -_G), (_G, _G), (-_G, _G))


def quad4_shape(xi: float, eta: float) -> Tuple[np.ndarray, np.ndarray]:
    """Bilinear shape functions N (4,) and their derivatives dN/d(xi, eta) (4, 2)."""
    N = 0.25 * np.array([(1 - xi) * (1 - eta), (1 + xi) * (1 - eta),
                         (1 + xi) * (1 + eta), (1 - xi) * (1 + eta)])
    dN = 0.25 * np.array([[-(1 - eta), -(1 - xi)],
                          [(1 - eta), -(1 + xi)],
                          [(1 + eta), (1 + xi)],
                          [-(1 + eta), (1 - xi)]])
    return N, dN


@dataclass
class AssembledSystem:
    """Global operators for one solve. Boundary terms are kept per kind."""
    conduction: sparse.csr_matrix
    M: sparse.csr_matrix
    source_load: np.ndarray
    dirichlet_nodes: np.ndarray
    dirichlet_values: np.ndarray
    boundary_diag: Dict[str, np.ndarray] = field(default_factory=dict)
    boundary_load: Dict[str, np.ndarray] = field(default_factory=dict)

    def __post_init__(self):
        n = self.conduction.shape[0]
        diag = np.zeros(n)
        load = np.zeros(n)
        for kind in self.boundary_diag:
            diag += self.boundary_diag[kind]
            load += self.boundary_load[kind]
        self.K = (self.conduction + sparse.diags(diag)).tocsr()
        self.f = self.source_load + load

    @property
    def n(self) -> int:
        return self.conduction.shape[0]

    @property
    def free_mask(self) -> np.ndarray:
        mask = np.ones(self.n, dtype=bool)
        mask[self.dirichlet_nodes] = False
        return mask

    @property
    def lumped_mass(self) -> np.ndarray:
        return np.asarray(self.M.sum(axis=1)).ravel()

    @property
    def robin_diag(self) -> np.ndarray:
        total = np.zeros(self.n)
        for diag in self.boundary_diag.values():
            total += diag
        return total

    def with_boundary(self, kind: str, diag: np.ndarray, load: np.ndarray) -> 'AssembledSystem':
        """Copy with the boundary terms of one kind replaced."""
        boundary_diag = dict(self.boundary_diag)
        boundary_load = dict(self.boundary_load)
        boundary_diag[kind] = diag
        boundary_load[kind] = load
        return replace(self, boundary_diag=boundary_diag, boundary_load=boundary_load)

    def with_sources(self, source_load: np.ndarray) -> 'AssembledSystem':
        return replace(self, source_load=source_load)

    def boundary_outflow(self, T: np.ndarray) -> Dict[str, float]:
        """Heat leaving through each kind of Robin boundary [W]."""
        return {kind: float(np.sum(self.boundary_diag[kind] * T - self.boundary_load[kind]))
                for kind in self.boundary_diag}

    def dirichlet_outflow(self, T: np.ndarray) -> float:
        """Heat extracted by the fixed-temperature nodes [W]."""
        reactions = self.f - self.K @ T
        return float(np.sum(reactions[self.dirichlet_nodes]))


def apply_dirichlet(A: sparse.spmatrix, b: np.ndarray, nodes: np.ndarray,
                    values: np.ndarray) -> Tuple[sparse.csr_matrix, np.ndarray]:
    """
    Impose T[nodes] = values by symmetric lifting.

    Known values move to the right-hand side, then Dirichlet rows and columns
    become identity, so a symmetric positive definite A stays SPD.
    """
    n = A.shape[0]
    if len(nodes) == 0:
        return A.tocsr(), np.array(b, dtype=np.float64)
    x_d = np.zeros(n)
    x_d[nodes] = values
    b_bc = np.asarray(b, dtype=np.float64) - A @ x_d
    free = np.ones(n)
    free[nodes] = 0.0
    P = sparse.diags(free)
    A_bc = (P @ A @ P + sparse.diags(1.0 - free)).tocsr()
    b_bc[nodes] = values
    return A_bc, b_bc


class SystemAssembler:
    """
    Assembles global operators for a mesh.

    Args:
        mesh: ThermalMesh (read-only)
        method: 'fem' or 'fdm'
        lumped_mass: Row-sum lumped capacity matrix (always true for fdm)
        num_threads: Element assembly workers
        chunk_size: Elements per work item
    """

    def __init__(self, mesh, method: str = "fem", lumped_mass: bool = True,
                 num_threads: int = 1, chunk_size: int = 4096):
        self.mesh = mesh
        self.method = method
        self.lumped_mass = lumped_mass or method == "fdm"
        self.num_threads = max(1, int(num_threads))
        self.chunk_size = max(1, int(chunk_size))
        self._load_weights: Optional[np.ndarray] = None
        self.logger = get_logger()

        if method not in ("fem", "fdm"):
            raise ValueError(f"Unknown discretization method: {method}")
        if method == "fdm":
            self._check_rectangular()

    def _check_rectangular(self):
        mesh = self.mesh
        if mesh.element_type is not ElementType.QUAD4:
            raise GeometryError("The FDM stencil needs Quad4 elements")
        xy = mesh.coordinates[mesh.connectivity]
        e01 = xy[:, 1] - xy[:, 0]
        e03 = xy[:, 3] - xy[:, 0]
        scale = np.linalg.norm(e01, axis=1) * np.linalg.norm(e03, axis=1)
        skew = np.abs(np.sum(e01 * e03, axis=1)) / scale
        closure = np.linalg.norm(xy[:, 0] + e01 + e03 - xy[:, 2], axis=1) / np.sqrt(scale)
        bad = np.flatnonzero((skew > 1e-9) | (closure > 1e-9))
        if bad.size:
            raise GeometryError(f"The FDM stencil needs rectangular elements; "
                                f"{bad.size} element(s) are skewed",
                                {'element_ids': bad[:20].tolist()})

    # ------------------------------------------------------------------
    # Element kernels (vectorized over a chunk)
    # ------------------------------------------------------------------
    def _fem_quad4(self, xy, k, rhocp, q):
        t = self.mesh.thickness_m
        c = xy.shape[0]
        Ke = np.zeros((c, 4, 4))
        Me = np.zeros((c, 4, 4))
        fe = np.zeros((c, 4))
        for xi, eta in GAUSS_2X2:
            N, dN = quad4_shape(xi, eta)
            J = np.einsum('ai,cak->cik', dN, xy)
            detJ = J[:, 0, 0] * J[:, 1, 1] - J[:, 0, 1] * J[:, 1, 0]
            B = np.einsum('cki,ai->cka', np.linalg.inv(J), dN)
            w = detJ * t
            Ke += (k * w)[:, None, None] * np.einsum('cka,ckb->cab', B, B)
            Me += (rhocp * w)[:, None, None] * np.outer(N, N)[None, :, :]
            fe += (q * w)[:, None] * N[None, :]
        return Ke, Me, fe

    def _fem_tri3(self, xy, k, rhocp, q):
        t = self.mesh.thickness_m
        x, y = xy[..., 0], xy[..., 1]
        two_a = (x[:, 1] - x[:, 0]) * (y[:, 2] - y[:, 0]) - (x[:, 2] - x[:, 0]) * (y[:, 1] - y[:, 0])
        area = 0.5 * two_a
        b = np.stack([y[:, 1] - y[:, 2], y[:, 2] - y[:, 0], y[:, 0] - y[:, 1]], axis=1) / two_a[:, None]
        c = np.stack([x[:, 2] - x[:, 1], x[:, 0] - x[:, 2], x[:, 1] - x[:, 0]], axis=1) / two_a[:, None]
        B = np.stack([b, c], axis=1)
        vol = area * t
        Ke = (k * vol)[:, None, None] * np.einsum('cka,ckb->cab', B, B)
        consistent = (np.ones((3, 3)) + np.eye(3)) / 12.0
        Me = (rhocp * vol)[:, None, None] * consistent[None, :, :]
        fe = np.repeat((q * vol / 3.0)[:, None], 3, axis=1)
        return Ke, Me, fe

    def _fdm_quad4(self, xy, k, rhocp, q):
        t = self.mesh.thickness_m
        lx = np.linalg.norm(xy[:, 1] - xy[:, 0], axis=1)
        ly = np.linalg.norm(xy[:, 3] - xy[:, 0], axis=1)
        gx = k * t * (0.5 * ly) / lx
        gy = k * t * (0.5 * lx) / ly
        c = xy.shape[0]
        Ke = np.zeros((c, 4, 4))
        for (a, b), g in (((0, 1), gx), ((3, 2), gx), ((0, 3), gy), ((1, 2), gy)):
            Ke[:, a, a] += g
            Ke[:, b, b] += g
            Ke[:, a, b] -= g
            Ke[:, b, a] -= g
        vol = lx * ly * t
        Me = np.zeros((c, 4, 4))
        idx = np.arange(4)
        Me[:, idx, idx] = (rhocp * vol / 4.0)[:, None]
        fe = np.repeat((q * vol / 4.0)[:, None], 4, axis=1)
        return Ke, Me, fe

    def _element_chunk(self, ids: np.ndarray, k: np.ndarray, rhocp: np.ndarray, q: np.ndarray):
        conn = self.mesh.connectivity[ids]
        xy = self.mesh.coordinates[conn]
        if self.method == "fdm":
            Ke, Me, fe = self._fdm_quad4(xy, k[ids], rhocp[ids], q[ids])
        elif self.mesh.element_type is ElementType.QUAD4:
            Ke, Me, fe = self._fem_quad4(xy, k[ids], rhocp[ids], q[ids])
        else:
            Ke, Me, fe = self._fem_tri3(xy, k[ids], rhocp[ids], q[ids])

        nen = conn.shape[1]
        rows = np.repeat(conn, nen, axis=1).ravel()
        cols = np.tile(conn, (1, nen)).ravel()
        if self.lumped_mass:
            m_rows = conn.ravel()
            m_data = Me.sum(axis=2).ravel()
        else:
            m_rows = None
            m_data = Me.ravel()
        return rows, cols, Ke.ravel(), m_rows, m_data, conn.ravel(), fe.ravel()

    # ------------------------------------------------------------------
    # Global assembly
    # ------------------------------------------------------------------
    @timed_function("assemble_conduction")
    def assemble_conduction(self, props, q_elem: np.ndarray
                            ) -> Tuple[sparse.csr_matrix, sparse.csr_matrix, np.ndarray]:
        """
        Conduction K, capacity M and source load f from element properties.

        Args:
            props: ElementProperties from the material resolver
            q_elem: Per-element volumetric heat [W/m³]
        """
        n = self.mesh.n_nodes
        n_el = self.mesh.n_elements
        k = np.asarray(props.conductivity, dtype=np.float64)
        rhocp = np.asarray(props.volumetric_heat_capacity, dtype=np.float64)
        q = np.asarray(q_elem, dtype=np.float64)

        chunks = [np.arange(s, min(s + self.chunk_size, n_el)) for s in range(0, n_el, self.chunk_size)]
        def work(ids):
            return self._element_chunk(ids, k, rhocp, q)

        if self.num_threads > 1 and len(chunks) > 1:
            with ThreadPoolExecutor(max_workers=self.num_threads,
                                    thread_name_prefix="assembly") as executor:
                parts = list(executor.map(work, chunks))
        else:
            parts = [work(ids) for ids in chunks]

        # Single-owner reduction, in chunk order
        rows = np.concatenate([p[0] for p in parts])
        cols = np.concatenate([p[1] for p in parts])
        K = sparse.coo_matrix((np.concatenate([p[2] for p in parts]), (rows, cols)), shape=(n, n)).tocsr()

        m_data = np.concatenate([p[4] for p in parts])
        if self.lumped_mass:
            m_diag = np.bincount(np.concatenate([p[3] for p in parts]), weights=m_data, minlength=n)
            M = sparse.diags(m_diag, format='csr')
        else:
            M = sparse.coo_matrix((m_data, (rows, cols)), shape=(n, n)).tocsr()

        f = np.bincount(np.concatenate([p[5] for p in parts]),
                        weights=np.concatenate([p[6] for p in parts]), minlength=n)

        self.logger.debug(f"Assembled {self.method.upper()} system: {n} nodes, K nnz={K.nnz}, "
                          f"{len(chunks)} chunk(s) on {min(self.num_threads, len(chunks))} worker(s)")
        return K, M, f

    def load_weights(self) -> np.ndarray:
        """Integral of each shape function times thickness per element, (E, nen) [m³]."""
        if self._load_weights is None:
            nen = self.mesh.connectivity.shape[1]
            if self.method == "fem" and self.mesh.element_type is ElementType.QUAD4:
                xy = self.mesh.coordinates[self.mesh.connectivity]
                W = np.zeros((self.mesh.n_elements, 4))
                for xi, eta in GAUSS_2X2:
                    N, dN = quad4_shape(xi, eta)
                    J = np.einsum('ai,cak->cik', dN, xy)
                    detJ = J[:, 0, 0] * J[:, 1, 1] - J[:, 0, 1] * J[:, 1, 0]
                    W += (detJ * self.mesh.thickness_m)[:, None] * N[None, :]
            else:
                W = np.repeat((np.abs(self.mesh.element_volumes) / nen)[:, None], nen, axis=1)
            self._load_weights = W
        return self._load_weights

    def source_load(self, q_elem: np.ndarray) -> np.ndarray:
        """Nodal load vector for element heat densities, without re-assembling K and M."""
        weights = (np.asarray(q_elem, dtype=np.float64)[:, None] * self.load_weights()).ravel()
        return np.bincount(self.mesh.connectivity.ravel(), weights=weights, minlength=self.mesh.n_nodes)

    def convective_terms(self, bcs: Sequence[ConvectiveBC]) -> Tuple[np.ndarray, np.ndarray]:
        """Lumped diagonal h·A and load h·A·T_amb for convective boundaries."""
        diag = np.zeros(self.mesh.n_nodes)
        load = np.zeros(self.mesh.n_nodes)
        for bc in bcs:
            ids, areas = robin_areas(self.mesh, bc)
            np.add.at(diag, ids, bc.h * areas)
            np.add.at(load, ids, bc.h * areas * bc.ambient_c)
        return diag, load

    def dirichlet(self, bcs: Sequence[DirichletBC]) -> Tuple[np.ndarray, np.ndarray]:
        """Fixed nodes and values; later conditions win on shared nodes."""
        values: Dict[int, float] = {}
        for bc in bcs:
            for node in resolve_nodes(self.mesh, bc.nodes):
                values[int(node)] = float(bc.temperature_c)
        nodes = np.array(sorted(values), dtype=np.int64)
        return nodes, np.array([values[i] for i in nodes], dtype=np.float64)

    def node_graph(self) -> sparse.csr_matrix:
        """Node adjacency through shared elements."""
        conn = self.mesh.connectivity
        nen = conn.shape[1]
        rows = np.repeat(conn, nen, axis=1).ravel()
        cols = np.tile(conn, (1, nen)).ravel()
        n = self.mesh.n_nodes
        return sparse.coo_matrix((np.ones(rows.size), (rows, cols)), shape=(n, n)).tocsr()

    def check_anchored(self, system: AssembledSystem):
        """
        Raise SingularMatrixError if any connected part of the mesh has no
        fixed-temperature node and no Robin (convective/radiative) boundary.
        """
        n_comp, labels = connected_components(self.node_graph(), directed=False)
        anchored = np.zeros(system.n, dtype=bool)
        anchored[system.dirichlet_nodes] = True
        anchored |= system.robin_diag > 0
        comp_ok = np.zeros(n_comp, dtype=bool)
        comp_ok[labels[anchored]] = True
        if not comp_ok.all():
            bad = np.flatnonzero(~comp_ok)
            sizes = [int(np.sum(labels == c)) for c in bad]
            raise SingularMatrixError(
                f"{bad.size} of {n_comp} mesh component(s) have no Dirichlet or Robin anchor; "
                f"the steady-state system is singular",
                n_components=int(n_comp),
                unanchored_components=[{'component': int(c), 'n_nodes': s,
                                        'first_node': int(np.flatnonzero(labels == c)[0])}
                                       for c, s in zip(bad, sizes)],
            )

    def build(self, props, q_elem: np.ndarray,
              boundary_conditions: Sequence = (),
              extra_boundary: Optional[Dict[str, Tuple[np.ndarray, np.ndarray]]] = None,
              require_anchor: bool = False) -> AssembledSystem:
        """Assemble the complete system with Dirichlet and convective boundaries."""
        K_c, M, f = self.assemble_conduction(props, q_elem)
        convective = [bc for bc in boundary_conditions if isinstance(bc, ConvectiveBC)]
        dirichlet = [bc for bc in boundary_conditions if isinstance(bc, DirichletBC)]
        d_nodes, d_values = self.dirichlet(dirichlet)

        boundary_diag: Dict[str, np.ndarray] = {}
        boundary_load: Dict[str, np.ndarray] = {}
        if convective:
            boundary_diag['convective'], boundary_load['convective'] = self.convective_terms(convective)
        for kind, (diag, load) in (extra_boundary or {}).items():
            boundary_diag[kind], boundary_load[kind] = diag, load

        system = AssembledSystem(K_c, M, f, d_nodes, d_values, boundary_diag, boundary_load)
        if require_anchor:
            self.check_anchored(system)
        return system


__all__ = [
    'AssembledSystem',
    'SystemAssembler',
    'apply_dirichlet',
    'GAUSS_2X2',
]

"""Residuals and Jacobians for fitting a body model to a scan with a least-squares solver.

The solver itself is not part of this package. A cost object maps a flat parameter vector to
residuals and, on request, to the Jacobian of the residuals w.r.t. that vector, which is the
interface of e.g. ``scipy.optimize.least_squares`` (``fun`` and ``jac``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
import scipy.sparse
import scipy.spatial
import trimesh

from .common import DISTANCE_EPSILON

logger = logging.getLogger(__name__)

PARAMETER_GROUPS = ('translation', 'shape', 'pose', 'full')
DISTANCE_SIDES = ('inside', 'outside', 'both')


@dataclass(frozen=True)
class DistanceConfig:
    """Configuration of a :class:`ScanDistance` cost."""

    parameters: str = 'full'
    """Optimized parameter group: 'translation', 'shape', 'pose' or 'full'. The full vector
    is the translation, the pose and the shape concatenated in this order."""

    side: str = 'both'
    """Which model vertices contribute: those 'inside' the scan, those 'outside' or 'both'."""

    pruning_threshold: float = 100.0
    """Vertices farther from the scan than this contribute nothing."""

    def __post_init__(self):
        if self.parameters not in PARAMETER_GROUPS:
            raise ValueError(
                f'Unknown parameter group {self.parameters!r}, expected one of {PARAMETER_GROUPS}'
            )
        if self.side not in DISTANCE_SIDES:
            raise ValueError(f'Unknown distance side {self.side!r}, expected one of {DISTANCE_SIDES}')
        if self.pruning_threshold <= 0:
            raise ValueError('The pruning threshold must be positive')

    @property
    def groups(self) -> tuple[str, ...]:
        if self.parameters == 'full':
            return ('translation', 'pose', 'shape')
        return (self.parameters,)


class ScanDistance:
    """
    Point-to-scan distance of every model vertex.

    With scan triangles, the residual of a vertex is its distance to the closest point on
    the scan surface, and the scan normal at that point is interpolated from the vertex
    normals of the closest triangle. With only scan normals, the scan is a point cloud and
    the closest scan vertex is used instead. The residual is zero if the vertex is on the
    excluded side of the scan, farther than the pruning threshold, or its normal faces away
    from the scan normal at the closest point.

    Parameters:
        model: The :class:`bodyshape.BodyModel` to fit. The parameter groups that are not
            optimized, and the displacement, are taken from its current state.
        scan_vertices: Scan vertices, shaped as (num_scan_vertices, 3).
        scan_normals: Unit normals at the scan vertices. Computed from `scan_faces` if None.
        config: A :class:`DistanceConfig`, the default one if None.
        scan_faces: Scan triangles, shaped as (num_scan_faces, 3). Needed when `scan_normals`
            is not given.
    """

    def __init__(
        self,
        model,
        scan_vertices,
        scan_normals: Optional[np.ndarray] = None,
        config: Optional[DistanceConfig] = None,
        *,
        scan_faces: Optional[np.ndarray] = None,
    ):
        self.model = model
        self.config = config if config is not None else DistanceConfig()
        self.scan_vertices = np.asarray(scan_vertices, np.float64)
        if scan_normals is None:
            if scan_faces is None:
                raise ValueError('Either scan_normals or scan_faces must be given')
            scan_mesh = trimesh.Trimesh(self.scan_vertices, scan_faces, process=False)
            scan_normals = scan_mesh.vertex_normals
        self.scan_normals = np.asarray(scan_normals, np.float64)
        self.scan_faces = None if scan_faces is None else np.asarray(scan_faces, np.int64)

        if self.scan_faces is None:
            self._tree = scipy.spatial.cKDTree(self.scan_vertices)
        else:
            self._triangles = self.scan_vertices[self.scan_faces]
            centroids = self._triangles.mean(axis=1)
            self._centroid_tree = scipy.spatial.cKDTree(centroids)
            self._triangle_radius = np.max(
                np.linalg.norm(self._triangles - centroids[:, np.newaxis], axis=-1)
            )
            # Only corners of triangles, so that every query has a candidate triangle
            self._tree = scipy.spatial.cKDTree(self._triangles.reshape(-1, 3))

        sizes = dict(translation=3, pose=model.num_joints * 3, shape=model.num_betas)
        self._slices = {}
        offset = 0
        for group in self.config.groups:
            self._slices[group] = slice(offset, offset + sizes[group])
            offset += sizes[group]
        self.num_parameters = offset

    def initial_parameters(self) -> np.ndarray:
        """The optimized parameters of the current model state as a flat vector."""
        state = self.model.get_state()
        return np.concatenate(
            [np.ravel(getattr(state, group)) for group in self.config.groups]
        )

    def unpack(self, params) -> dict[str, np.ndarray]:
        params = np.asarray(params, np.float64)
        if params.shape != (self.num_parameters,):
            raise ValueError(
                f'Expected {self.num_parameters} parameters, got an array of shape {params.shape}'
            )
        return {group: params[s] for group, s in self._slices.items()}

    def residuals(self, params) -> np.ndarray:
        return self(params)[0]

    def jacobian(self, params) -> np.ndarray:
        return self(params, with_jacobian=True)[1]

    def closest_points(self, points):
        """
        Finds the closest point of the scan to each of the given points.

        Returns:
            A tuple containing
                - **closest** -- the closest scan points, shaped as (num_points, 3).
                - **distances** -- their distances, shaped as (num_points,).
                - **normals** -- unit scan normals at the closest points, shaped as
                  (num_points, 3).
        """
        points = np.asarray(points, np.float64)
        if self.scan_faces is None:
            distances, indices = self._tree.query(points)
            return self.scan_vertices[indices], distances, self.scan_normals[indices]

        # The closest corner bounds the surface distance, and a triangle can only be closer
        # if its centroid is within that bound plus the triangle radius
        upper_bounds, _ = self._tree.query(points)
        candidates = self._centroid_tree.query_ball_point(
            points, upper_bounds + self._triangle_radius * (1 + 1e-9) + 1e-12
        )
        counts = np.array([len(c) for c in candidates])
        point_ids = np.repeat(np.arange(len(points)), counts)
        face_ids = np.concatenate(candidates).astype(np.int64)

        projected = trimesh.triangles.closest_point(self._triangles[face_ids], points[point_ids])
        squared = np.sum(np.square(projected - points[point_ids]), axis=-1)
        order = np.lexsort((squared, point_ids))
        best = order[np.searchsorted(point_ids[order], np.arange(len(points)))]

        closest = projected[best]
        best_faces = face_ids[best]
        barycentric = trimesh.triangles.points_to_barycentric(self._triangles[best_faces], closest)
        normals = np.einsum(
            'vk,vkc->vc', barycentric, self.scan_normals[self.scan_faces[best_faces]]
        )
        norms = np.linalg.norm(normals, axis=-1, keepdims=True)
        normals = np.divide(normals, norms, out=np.zeros_like(normals), where=norms > 0)
        return closest, np.sqrt(squared[best]), normals

    def __call__(self, params, with_jacobian=False):
        """
        Evaluates the cost.

        Returns:
            A tuple containing
                - **residuals** -- shaped as (num_vertices,).
                - **jacobian** -- shaped as (num_vertices, num_parameters), or None unless
                  `with_jacobian` is True.
        """
        state = self.model.get_state()
        arguments = dict(
            translation=state.translation,
            pose=state.pose,
            shape=state.shape,
            displacement=state.displacement,
        )
        arguments.update(self.unpack(params))
        if with_jacobian:
            verts, vertex_jacobians = self.model.evaluate(**arguments, return_jacobians=True)
        else:
            verts = self.model.evaluate(**arguments)

        closest, distances, closest_normals = self.closest_points(verts)
        offsets = verts - closest
        signed = distances * np.sign(np.einsum('vc,vc->v', offsets, closest_normals))

        model_normals = self.model.vertex_normals(verts)
        keep = distances <= self.config.pruning_threshold
        if self.config.side == 'inside':
            keep &= signed <= 0
        elif self.config.side == 'outside':
            keep &= signed >= 0
        keep &= np.einsum('vc,vc->v', model_normals, closest_normals) > 0

        residuals = np.where(keep, distances, 0.0)
        logger.debug(
            'Scan distance: %d of %d vertices kept, total %.6g',
            np.count_nonzero(keep),
            len(keep),
            residuals.sum(),
        )
        if not with_jacobian:
            return residuals, None

        # d|v - c| / dv with the closest point held fixed
        valid = keep & (distances >= DISTANCE_EPSILON)
        safe_distances = np.where(valid, distances, 1.0)
        gradients = np.where(valid[:, np.newaxis], offsets / safe_distances[:, np.newaxis], 0.0)

        jacobian = np.concatenate(
            [
                np.einsum('vc,pvc->vp', gradients, vertex_jacobians[group])
                for group in self.config.groups
            ],
            axis=1,
        )
        return residuals, jacobian


def pose_regularizer(model, pose=None):
    """
    Quadratic pose prior given by the stiffness matrix of the model.

    Parameters:
        model: A :class:`bodyshape.BodyModel`.
        pose: Rotation vectors, shaped as (num_joints, 3) or (num_joints * 3,). Defaults to the
            current pose of the model.

    Returns:
        A tuple of the residuals ``stiffness @ pose``, shaped as (num_joints * 3,), and their
        Jacobian, which is the stiffness matrix itself.
    """
    if pose is None:
        pose = model.get_state().pose
    pose = np.reshape(np.asarray(pose, np.float64), [-1])
    stiffness = model.pose_stiffness
    return stiffness @ pose, stiffness.copy()


def displacement_regularizer(model, displacement=None, l2_weight=1.0, smoothing_weight=1.0):
    """
    Keeps the per-vertex displacement small and smooth over the mesh.

    The residuals are ``l2_weight * d`` followed by ``smoothing_weight * (d - mean(d[n]))``
    for every vertex, where ``n`` are the mesh neighbours of the vertex. Vertices without
    neighbours get a zero smoothing residual.

    Parameters:
        model: A :class:`bodyshape.BodyModel`.
        displacement: Per-vertex offsets, shaped as (num_vertices, 3) or (num_vertices * 3,).
            Defaults to the current displacement of the model.
        l2_weight: Weight of the magnitude term.
        smoothing_weight: Weight of the smoothness term.

    Returns:
        A tuple of the residuals, shaped as (2 * num_vertices * 3,), and their Jacobian w.r.t.
        the flattened displacement as a sparse matrix shaped as
        (2 * num_vertices * 3, num_vertices * 3).
    """
    if displacement is None:
        displacement = model.get_state().displacement
    displacement = np.reshape(np.asarray(displacement, np.float64), [-1])
    if displacement.shape != (model.num_vertices * 3,):
        raise ValueError(
            f'Expected {model.num_vertices * 3} displacement values, got {displacement.size}'
        )

    adjacency = model.vertex_adjacency
    degrees = np.asarray(adjacency.sum(axis=1)).ravel()
    has_neighbours = degrees > 0
    inverse_degrees = np.divide(1.0, degrees, out=np.zeros_like(degrees), where=has_neighbours)
    laplacian = scipy.sparse.diags(has_neighbours.astype(np.float64)) - scipy.sparse.diags(
        inverse_degrees
    ) @ adjacency

    identity = scipy.sparse.identity(model.num_vertices * 3, format='csr')
    jacobian = scipy.sparse.vstack(
        [
            l2_weight * identity,
            smoothing_weight * scipy.sparse.kron(laplacian, scipy.sparse.identity(3)),
        ],
        format='csr',
    )
    return jacobian @ displacement, jacobian

"""Blendshapes and linear blend skinning."""

from __future__ import annotations

import numpy as np
import scipy.sparse


def apply_shape(vertices, shapedirs, shape_betas):
    """Adds the shape blendshapes, ``vertices + sum_i shape_betas[i] * shapedirs[i]``."""
    shape_betas = np.asarray(shape_betas, np.float64)
    return vertices + np.einsum('s,svc->vc', shape_betas, shapedirs[: shape_betas.shape[0]])


def pose_feature(local_rotations):
    """Pose blendshape coefficients: ``R_j - I`` of every non-root joint, flattened row-major.

    The coefficient of row r and column c of joint j has index ``(j - 1) * 9 + r * 3 + c``.
    """
    return np.reshape(local_rotations[1:] - np.eye(3), [-1])


def apply_pose_blendshapes(vertices, posedirs, local_rotations):
    return vertices + np.einsum('p,pvc->vc', pose_feature(local_rotations), posedirs)


def pose_blendshape_jacobian(posedirs, local_rotation_jacobians):
    """
    Derivatives of the pose blendshape offsets w.r.t. every pose parameter.

    Parameters:
        posedirs: Pose blendshapes, shaped as ((num_joints - 1) * 9, num_vertices, 3).
        local_rotation_jacobians: Derivative of each local rotation w.r.t. its rotation
            vector, shaped as (num_joints, 3, 3, 3).

    Returns:
        Array shaped as (num_joints * 3, num_vertices, 3). The root rows are zero.
    """
    num_joints = local_rotation_jacobians.shape[0]
    num_vertices = posedirs.shape[1]
    coeffs = np.reshape(local_rotation_jacobians[1:], [num_joints - 1, 3, 9])
    blendshapes = np.reshape(posedirs, [num_joints - 1, 9, num_vertices, 3])

    jacobian = np.zeros((num_joints * 3, num_vertices, 3))
    jacobian[3:] = np.einsum('jik,jkvc->jivc', coeffs, blendshapes).reshape(-1, num_vertices, 3)
    return jacobian


def lbs_matrix(weights, points, homogeneous=1.0) -> scipy.sparse.csr_matrix:
    """
    Builds the sparse linear blend skinning matrix of shape (num_vertices, 4 * num_joints).

    Each vertex row holds ``w_vj * [x, y, z, homogeneous]`` in the four columns of every joint
    j that influences it. Multiplying it with a stacked transform block (see
    :func:`bodyshape.kinematics.lbs_transforms`) applies the blended transforms. Positions
    use ``homogeneous=1``; displacement directions (derivatives of rest coordinates) use 0 so
    that the joint translations do not act on them.

    Parameters:
        weights: Sparse skinning weights, shaped as (num_vertices, num_joints).
        points: Rest-pose coordinates, shaped as (num_vertices, 3).
        homogeneous: Value of the fourth homogeneous coordinate.
    """
    weights = scipy.sparse.coo_matrix(weights)
    num_vertices, num_joints = weights.shape
    points = np.asarray(points, np.float64)

    coords = points[weights.row]
    data = np.concatenate(
        [weights.data[:, np.newaxis] * coords, (weights.data * homogeneous)[:, np.newaxis]],
        axis=1,
    )
    rows = np.repeat(weights.row[:, np.newaxis], 4, axis=1)
    cols = weights.col[:, np.newaxis] * 4 + np.arange(4)
    return scipy.sparse.csr_matrix(
        (data.ravel(), (rows.ravel(), cols.ravel())), shape=(num_vertices, 4 * num_joints)
    )


def skin(weights, points, transform_block, homogeneous=1.0):
    return np.asarray(lbs_matrix(weights, points, homogeneous) @ transform_block)

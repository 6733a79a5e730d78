from __future__ import annotations

import numpy as np

ROTATION_EPSILON = 1e-4
"""Rotation angles at or below this value are treated as the identity rotation."""


def skew(v):
    """Cross-product matrix ``[v]_x`` such that ``skew(v) @ u == np.cross(v, u)``."""
    x, y, z = v
    return np.array([[0.0, -z, y], [z, 0.0, -x], [-y, x, 0.0]])


# Derivatives of exp([w]_x) at w = 0
_GENERATORS = np.stack([skew(e) for e in np.eye(3)])


def rotvec2mat(rotvec):
    """Rodrigues' formula, vectorized over leading axes.

    Angles at or below ``ROTATION_EPSILON`` map to the exact identity matrix.
    """
    rotvec = np.asarray(rotvec, np.float64)
    angle = np.linalg.norm(rotvec, axis=-1, keepdims=True)
    is_small = angle <= ROTATION_EPSILON
    axis = np.divide(rotvec, angle, out=np.zeros_like(rotvec), where=~is_small)
    angle = np.where(is_small, 0.0, angle)

    sin_axis = np.sin(angle) * axis
    cos_angle = np.cos(angle)
    cos1_axis = (1.0 - cos_angle) * axis
    axis_y = axis[..., 1]
    axis_z = axis[..., 2]
    cos1_axis_x = cos1_axis[..., 0]
    cos1_axis_y = cos1_axis[..., 1]
    sin_axis_x = sin_axis[..., 0]
    sin_axis_y = sin_axis[..., 1]
    sin_axis_z = sin_axis[..., 2]

    tmp = cos1_axis_x * axis_y
    m01 = tmp - sin_axis_z
    m10 = tmp + sin_axis_z
    tmp = cos1_axis_x * axis_z
    m02 = tmp + sin_axis_y
    m20 = tmp - sin_axis_y
    tmp = cos1_axis_y * axis_z
    m12 = tmp - sin_axis_x
    m21 = tmp + sin_axis_x

    diag = cos1_axis * axis + cos_angle
    m00 = diag[..., 0]
    m11 = diag[..., 1]
    m22 = diag[..., 2]

    matrix = np.stack((m00, m01, m02, m10, m11, m12, m20, m21, m22), axis=-1)
    return matrix.reshape(axis.shape[:-1] + (3, 3))


def mat2rotvec(rotmat):
    """Inverse of :func:`rotvec2mat` through a unit quaternion, vectorized over leading axes."""
    rotmat = np.asarray(rotmat, np.float64)
    r00 = rotmat[..., 0, 0]
    r01 = rotmat[..., 0, 1]
    r02 = rotmat[..., 0, 2]
    r10 = rotmat[..., 1, 0]
    r11 = rotmat[..., 1, 1]
    r12 = rotmat[..., 1, 2]
    r20 = rotmat[..., 2, 0]
    r21 = rotmat[..., 2, 1]
    r22 = rotmat[..., 2, 2]

    p10p01 = r10 + r01
    p10m01 = r10 - r01
    p02p20 = r02 + r20
    p02m20 = r02 - r20
    p21p12 = r21 + r12
    p21m12 = r21 - r12
    p00p11 = r00 + r11
    p00m11 = r00 - r11
    _1p22 = 1.0 + r22
    _1m22 = 1.0 - r22

    trace = r00 + r11 + r22
    cond0 = np.stack((p21m12, p02m20, p10m01, 1.0 + trace), axis=-1)
    cond1 = np.stack((_1m22 + p00m11, p10p01, p02p20, p21m12), axis=-1)
    cond2 = np.stack((p10p01, _1m22 - p00m11, p21p12, p02m20), axis=-1)
    cond3 = np.stack((p02p20, p21p12, _1p22 - p00p11, p10m01), axis=-1)

    trace_pos = (trace > 0)[..., np.newaxis]
    d00_large = ((r00 > r11) & (r00 > r22))[..., np.newaxis]
    d11_large = (r11 > r22)[..., np.newaxis]

    q = np.where(
        trace_pos, cond0, np.where(d00_large, cond1, np.where(d11_large, cond2, cond3))
    )
    # Keep the scalar part non-negative so that the angle is at most pi
    q = np.where(q[..., 3:4] < 0, -q, q)

    xyz = q[..., :3]
    w = q[..., 3:4]
    norm = np.linalg.norm(xyz, axis=-1, keepdims=True)
    factor = np.divide(2.0, norm, out=np.zeros_like(norm), where=norm != 0)
    return factor * np.arctan2(norm, w) * xyz


def rotvec2mat_jacobian(rotvec, rotmat=None):
    """Derivatives of the rotation matrix w.r.t. the three rotation vector coordinates.

    Uses the compact formula of Gallego & Yezzi (arXiv:1312.0788),
    ``dR/dw_i = (w_i [w]_x + [w x (I - R) e_i]_x) / |w|^2 @ R``. Below ``ROTATION_EPSILON``
    the derivatives are the three skew generators, which is the exact limit at zero.

    Parameters:
        rotvec: Rotation vector, shaped as (3,).
        rotmat: The matching rotation matrix, if already computed.

    Returns:
        Array shaped as (3, 3, 3), indexed as [coordinate, row, column].
    """
    rotvec = np.asarray(rotvec, np.float64)
    angle = np.linalg.norm(rotvec)
    if angle <= ROTATION_EPSILON:
        return _GENERATORS.copy()

    if rotmat is None:
        rotmat = rotvec2mat(rotvec)

    w_skew = skew(rotvec)
    residual = np.eye(3) - rotmat
    squared_angle = angle * angle
    jacobian = np.empty((3, 3, 3))
    for i in range(3):
        cross = np.cross(rotvec, residual[:, i])
        jacobian[i] = (rotvec[i] * w_skew + skew(cross)) / squared_angle @ rotmat
    return jacobian


def angle_axis(source, target):
    """Smallest rotation vector that turns the direction of `source` into that of `target`.

    Zero-length inputs and parallel directions give the zero rotation. Opposite directions
    give a half turn about an arbitrary axis perpendicular to `source`.
    """
    source = np.asarray(source, np.float64)
    target = np.asarray(target, np.float64)
    norms = np.linalg.norm(source) * np.linalg.norm(target)
    if norms == 0:
        return np.zeros(3)

    axis = np.cross(source, target)
    sin_angle = np.linalg.norm(axis) / norms
    cos_angle = np.dot(source, target) / norms
    if sin_angle < 1e-12:
        if cos_angle > 0:
            return np.zeros(3)
        return np.pi * _orthogonal_unit(source)

    angle = np.arctan2(sin_angle, cos_angle)
    return angle * axis / np.linalg.norm(axis)


def rotate_by_rotvec(vector, rotvec):
    return rotvec2mat(rotvec) @ np.asarray(vector, np.float64)


def compose_rotvecs(first, second):
    """Rotation vector equivalent to applying `first` and then `second`.

    Uses the half-angle (quaternion product) composition formula.
    """
    first = np.asarray(first, np.float64)
    second = np.asarray(second, np.float64)
    angle_first = np.linalg.norm(first)
    angle_second = np.linalg.norm(second)
    if angle_first == 0:
        return second.copy()
    if angle_second == 0:
        return first.copy()

    axis_first = first / angle_first
    axis_second = second / angle_second
    sin_first, cos_first = np.sin(angle_first / 2), np.cos(angle_first / 2)
    sin_second, cos_second = np.sin(angle_second / 2), np.cos(angle_second / 2)

    axis_sin_scaled = (
        cos_first * sin_second * axis_second
        + sin_first * cos_second * axis_first
        + sin_first * sin_second * np.cross(axis_second, axis_first)
    )
    half_angle_sin = np.linalg.norm(axis_sin_scaled)
    if half_angle_sin == 0:
        return np.zeros(3)
    half_angle_cos = (
        cos_first * cos_second - np.dot(axis_first, axis_second) * sin_first * sin_second
    )
    angle = 2 * np.arctan2(half_angle_sin, half_angle_cos)
    return angle * axis_sin_scaled / half_angle_sin


def _orthogonal_unit(v):
    helper = np.eye(3)[np.argmin(np.abs(v))]
    axis = np.cross(v, helper)
    return axis / np.linalg.norm(axis)

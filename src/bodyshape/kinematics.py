"""Forward kinematics of the SMPL joint tree and its derivatives w.r.t. the pose."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np

from .rotation import rotvec2mat, rotvec2mat_jacobian


@dataclass
class KinematicState:
    """Per-joint transforms of one pose, as computed by :func:`forward_kinematics`.

    The state remembers the pose and rest joint locations it was computed for, so a caller
    can check with :meth:`matches` whether it may be reused instead of relying on call order.
    """

    pose: np.ndarray
    """Axis-angle pose the transforms belong to, shape (num_joints, 3)."""

    rest_joints: np.ndarray
    """Rest-pose joint locations the transforms belong to, shape (num_joints, 3)."""

    local_rotations: np.ndarray
    """Parent-relative rotation matrices, shape (num_joints, 3, 3)."""

    local_transforms: np.ndarray
    """Parent-relative homogeneous transforms, shape (num_joints, 4, 4)."""

    global_transforms: np.ndarray
    """Rest joint frame to posed world frame, shape (num_joints, 4, 4)."""

    derivatives: Optional[list[dict[int, np.ndarray]]] = None
    """Per joint, a mapping from pose parameter index to the 4x4 derivative of the global
    transform. Only the joint's own parameters and those of its ancestors are present."""

    local_rotation_jacobians: Optional[np.ndarray] = None
    """Derivatives of each local rotation w.r.t. its own rotation vector, shape
    (num_joints, 3, 3, 3)."""

    @property
    def has_derivatives(self) -> bool:
        return self.derivatives is not None

    @property
    def global_rotations(self) -> np.ndarray:
        return self.global_transforms[:, :3, :3]

    def joint_locations(self) -> np.ndarray:
        return self.global_transforms[:, :3, 3].copy()

    def matches(self, pose, rest_joints, with_derivatives=False) -> bool:
        if with_derivatives and not self.has_derivatives:
            return False
        return np.array_equal(self.pose, np.reshape(pose, (-1, 3))) and np.array_equal(
            self.rest_joints, rest_joints
        )


def local_transforms(local_rotations, rest_joints, kintree_parents):
    """Homogeneous transforms of each joint relative to its parent.

    The translation of a joint is its rest offset from the parent, the root is placed at
    its own rest location.
    """
    parents = np.asarray(kintree_parents)
    rest_joints = np.asarray(rest_joints, np.float64)
    offsets = rest_joints.copy()
    offsets[1:] -= rest_joints[parents[1:]]

    transforms = np.tile(np.eye(4), (len(parents), 1, 1))
    transforms[:, :3, :3] = local_rotations
    transforms[:, :3, 3] = offsets
    return transforms


def chain_transforms(local, kintree_parents):
    """Composes parent-relative transforms from the root to the leaves."""
    glob = np.empty_like(local)
    glob[0] = local[0]
    for i_joint in range(1, len(kintree_parents)):
        glob[i_joint] = glob[kintree_parents[i_joint]] @ local[i_joint]
    return glob


def forward_kinematics(pose, rest_joints, kintree_parents, with_derivatives=False):
    """
    Computes the posed transform of every joint.

    ``global[j] = global[parent[j]] @ local[j]`` with ``global[root] = local[root]``.
    With `with_derivatives`, each joint also gets the derivative of its global transform
    w.r.t. the rotation coordinates of itself and of all its ancestors, propagated by the
    chain rule: ``d global[j] / dq = (d global[parent] / dq) @ local[j]``.

    Parameters:
        pose: Parent-relative rotation vectors, shaped as (num_joints, 3) or (num_joints * 3,).
        rest_joints: Joint locations in the rest pose, shaped as (num_joints, 3).
        kintree_parents: Parent index of each joint, the root entry is ignored.
        with_derivatives: Whether to compute the transform derivatives.

    Returns:
        A :class:`KinematicState`.
    """
    pose = np.array(pose, np.float64).reshape(-1, 3)
    rest_joints = np.array(rest_joints, np.float64)
    local_rotations = rotvec2mat(pose)
    local = local_transforms(local_rotations, rest_joints, kintree_parents)
    glob = chain_transforms(local, kintree_parents)

    state = KinematicState(
        pose=pose,
        rest_joints=rest_joints,
        local_rotations=local_rotations,
        local_transforms=local,
        global_transforms=glob,
    )
    if not with_derivatives:
        return state

    num_joints = len(kintree_parents)
    rotation_jacobians = np.empty((num_joints, 3, 3, 3))
    derivatives: list[dict[int, np.ndarray]] = []
    for i_joint in range(num_joints):
        rotation_jacobians[i_joint] = rotvec2mat_jacobian(
            pose[i_joint], local_rotations[i_joint]
        )
        # The offset is constant, so only the rotation block has a derivative
        local_jacobian = np.zeros((3, 4, 4))
        local_jacobian[:, :3, :3] = rotation_jacobians[i_joint]

        joint_derivatives = {}
        if i_joint == 0:
            for dim in range(3):
                joint_derivatives[dim] = local_jacobian[dim]
        else:
            i_parent = kintree_parents[i_joint]
            for i_param, parent_derivative in derivatives[i_parent].items():
                joint_derivatives[i_param] = parent_derivative @ local[i_joint]
            for dim in range(3):
                joint_derivatives[3 * i_joint + dim] = glob[i_parent] @ local_jacobian[dim]
        derivatives.append(joint_derivatives)

    state.derivatives = derivatives
    state.local_rotation_jacobians = rotation_jacobians
    return state


def lbs_transforms(global_transforms, rest_joints):
    """
    Stacks the skinning transforms ``global[j] @ T(-rest[j])`` into a (4 * num_joints, 3)
    block.

    Rows ``4j .. 4j+3`` hold the transposed first three rows of joint j's transform, so that
    multiplying an LBS matrix (see :func:`bodyshape.skinning.lbs_matrix`) with the block
    gives the skinned vertices.
    """
    rotations = global_transforms[:, :3, :3]
    translations = global_transforms[:, :3, 3] - np.einsum('jCc,jc->jC', rotations, rest_joints)
    return _stack_transform_block(rotations, translations)


def lbs_transform_derivatives(state: KinematicState, rest_joints):
    """
    Derivatives of the :func:`lbs_transforms` block w.r.t. each pose parameter.

    Returns:
        A dict from pose parameter index to a (4 * num_joints, 3) block. Joints that do not
        depend on the parameter have zero rows.
    """
    if not state.has_derivatives:
        raise ValueError('The kinematic state was computed without derivatives.')

    num_joints = len(state.derivatives)
    rotations = {}
    translations = {}
    for i_joint, joint_derivatives in enumerate(state.derivatives):
        for i_param, derivative in joint_derivatives.items():
            if i_param not in rotations:
                rotations[i_param] = np.zeros((num_joints, 3, 3))
                translations[i_param] = np.zeros((num_joints, 3))
            rotation = derivative[:3, :3]
            rotations[i_param][i_joint] = rotation
            translations[i_param][i_joint] = derivative[:3, 3] - rotation @ rest_joints[i_joint]

    return {
        i_param: _stack_transform_block(rotations[i_param], translations[i_param])
        for i_param in sorted(rotations)
    }


def _stack_transform_block(rotations, translations):
    num_joints = rotations.shape[0]
    block = np.empty((num_joints, 4, 3))
    block[:, :3] = np.swapaxes(rotations, -2, -1)
    block[:, 3] = translations
    return block.reshape(num_joints * 4, 3)

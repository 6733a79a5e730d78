from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
import trimesh

from . import common as bodyshape_common
from . import paramfile
from .common import BACK_JOINTS, NUM_BETAS, SHOULDER_JOINTS
from .errors import InvalidJointError
from .kinematics import (
    KinematicState,
    chain_transforms,
    forward_kinematics,
    lbs_transform_derivatives,
    lbs_transforms,
    local_transforms,
)
from .rotation import angle_axis, compose_rotvecs, mat2rotvec, rotate_by_rotvec, rotvec2mat
from .skinning import (
    apply_pose_blendshapes,
    apply_shape,
    lbs_matrix,
    pose_blendshape_jacobian,
    skin,
)

logger = logging.getLogger(__name__)


@dataclass
class ModelState:
    """Parameters of one body instance."""

    translation: np.ndarray
    """Global translation, shape (3,)."""

    pose: np.ndarray
    """Parent-relative rotation vectors, shape (num_joints, 3). Row 0 is the global
    orientation."""

    shape: np.ndarray
    """Shape coefficients (betas), shape (num_betas,)."""

    displacement: np.ndarray
    """Per-vertex offsets in the rest pose, shape (num_vertices, 3)."""

    @classmethod
    def zeros(cls, num_joints, num_betas, num_vertices) -> ModelState:
        return cls(
            translation=np.zeros(3),
            pose=np.zeros((num_joints, 3)),
            shape=np.zeros(num_betas),
            displacement=np.zeros((num_vertices, 3)),
        )

    def copy(self) -> ModelState:
        return ModelState(
            translation=self.translation.copy(),
            pose=self.pose.copy(),
            shape=self.shape.copy(),
            displacement=self.displacement.copy(),
        )


class BodyModel:
    """
    A single SMPL body with its own parameters.

    The model deforms a fixed-topology template mesh with shape blendshapes, pose blendshapes,
    per-vertex displacement and linear blend skinning over a 24-joint kinematic tree, and
    computes analytic Jacobians of the vertices w.r.t. every parameter group.

    Parameters:
        gender: Gender of the model, 'f' or 'm' (or 'female', 'male').
        model_root: Path to the directory containing the model assets. By default,
            the BODYSHAPE_MODELS environment variable is used, or if it doesn't exist,
            ``{DATA_ROOT}/body_models/smpl`` with DATA_ROOT defaulting to the current directory.
        pose_blendshapes: Whether to load and apply the pose-dependent corrective blendshapes.
        num_betas: Number of shape parameters (betas) to use.
        data: Already loaded model data. If given, nothing is read from disk and the other
            loading arguments are ignored.
    """

    def __init__(
        self,
        gender='f',
        model_root=None,
        pose_blendshapes=True,
        num_betas=NUM_BETAS,
        *,
        data: Optional[bodyshape_common.ModelData] = None,
    ):
        if data is None:
            data = bodyshape_common.initialize(
                gender, model_root, pose_blendshapes, num_betas=num_betas
            )
        else:
            bodyshape_common.validate(data)

        self.gender = data.gender
        self.v_template = data.v_template
        self.shapedirs = data.shapedirs
        self.posedirs = data.posedirs
        self.J_regressor = data.J_regressor
        self.weights = data.weights
        self.kintree_parents = data.kintree_parents
        self.joint_names = data.joint_names
        self.pose_stiffness = data.pose_stiffness
        self.faces = data.faces
        self.num_joints = data.num_joints
        self.num_vertices = data.num_vertices
        self.num_betas = data.num_betas
        self.vertex_adjacency = bodyshape_common.vertex_adjacency(self.faces, self.num_vertices)

        self._state = ModelState.zeros(self.num_joints, self.num_betas, self.num_vertices)
        self._kinematics: Optional[KinematicState] = None
        self._vertices: Optional[np.ndarray] = None

    @classmethod
    def from_data(cls, data: bodyshape_common.ModelData) -> BodyModel:
        return cls(data=data)

    @property
    def template(self) -> np.ndarray:
        return self.v_template.copy()

    @property
    def pose_size(self) -> int:
        return self.num_joints * 3

    @property
    def vertex_neighbours(self) -> list[np.ndarray]:
        """Indices of the vertices sharing a triangle with each vertex, in increasing order."""
        indptr, indices = self.vertex_adjacency.indptr, self.vertex_adjacency.indices
        return [indices[indptr[i] : indptr[i + 1]].copy() for i in range(self.num_vertices)]

    def evaluate(
        self,
        translation: Optional[np.ndarray] = None,
        pose: Optional[np.ndarray] = None,
        shape: Optional[np.ndarray] = None,
        displacement: Optional[np.ndarray] = None,
        *,
        return_jacobians: bool = False,
    ):
        """
        Computes the vertices for the given parameters, independently of the model state.

        The stages run in the order template, shape, pose (with pose blendshapes, displacement
        and skinning) and translation. The stage of a parameter group that is None is skipped,
        except that displacement is added to the unposed vertices when the pose is omitted.

        Parameters:
            translation: Global translation, shaped as (3,).
            pose: Parent-relative rotation vectors, shaped as (num_joints, 3) or
                (num_joints * 3,).
            shape: Shape coefficients (betas), shaped as (num_betas,).
            displacement: Per-vertex offsets in the rest pose, shaped as (num_vertices, 3).
            return_jacobians: Whether to also compute the Jacobians of the vertices w.r.t. each
                given parameter group.

        Returns:
            The vertices shaped as (num_vertices, 3), or with `return_jacobians` a tuple of
            the vertices and a dictionary containing, for each given parameter group,
                - **translation** -- shaped as (3, num_vertices, 3).
                - **pose** -- shaped as (num_joints * 3, num_vertices, 3).
                - **shape** -- shaped as (num_betas, num_vertices, 3).
                - **displacement** -- shaped as (3, num_vertices, 3), where entry ``[a, v]``
                  is the derivative of vertex v w.r.t. its own displacement along axis a.
        """
        translation = self._check_param(translation, (3,), 'translation')
        pose = self._check_param(pose, (self.num_joints, 3), 'pose')
        shape = self._check_param(shape, (self.num_betas,), 'shape')
        displacement = self._check_param(displacement, (self.num_vertices, 3), 'displacement')

        verts = self.v_template
        if shape is not None:
            verts = apply_shape(verts, self.shapedirs, shape)

        jacobians = {}
        if pose is not None:
            rest_joints = self.J_regressor @ verts
            kinematics = self._forward_kinematics(pose, rest_joints, return_jacobians)
            rest_verts = verts
            if self.posedirs is not None:
                rest_verts = apply_pose_blendshapes(
                    rest_verts, self.posedirs, kinematics.local_rotations
                )
            if displacement is not None:
                rest_verts = rest_verts + displacement

            lbs = lbs_matrix(self.weights, rest_verts)
            transform_block = lbs_transforms(kinematics.global_transforms, rest_joints)
            verts = np.asarray(lbs @ transform_block)

            if return_jacobians:
                jacobians['pose'] = self._pose_jacobian(kinematics, rest_joints, lbs)
                if shape is not None:
                    jacobians['shape'] = self._shape_jacobian(kinematics)
                if displacement is not None:
                    jacobians['displacement'] = np.stack(
                        [
                            skin(self.weights, self._unit_offsets(axis), transform_block, 0.0)
                            for axis in range(3)
                        ]
                    )
        else:
            if displacement is not None:
                verts = verts + displacement
            if return_jacobians:
                if shape is not None:
                    jacobians['shape'] = self.shapedirs.copy()
                if displacement is not None:
                    jacobians['displacement'] = self._identity_jacobian()

        if translation is not None:
            verts = verts + translation
            if return_jacobians:
                jacobians['translation'] = self._identity_jacobian()

        verts = np.array(verts)
        if return_jacobians:
            return verts, jacobians
        return verts

    def vertices(self) -> np.ndarray:
        """Vertices of the current state. The result is cached until the next state change."""
        if self._vertices is None:
            state = self._state
            self._vertices = self.evaluate(
                state.translation, state.pose, state.shape, state.displacement
            )
        return self._vertices.copy()

    def joint_locations(self, translation=True) -> np.ndarray:
        """Posed joint locations of the current state, shaped as (num_joints, 3)."""
        joints = self._current_kinematics().joint_locations()
        if translation:
            joints += self._state.translation
        return joints

    def get_state(self) -> ModelState:
        return self._state.copy()

    def set_state(self, translation=None, pose=None, shape=None, displacement=None):
        """Replaces the given parameter groups of the state. Omitted groups are kept."""
        new_state = self._state.copy()
        if translation is not None:
            new_state.translation = self._check_param(translation, (3,), 'translation')
        if pose is not None:
            new_state.pose = self._check_param(pose, (self.num_joints, 3), 'pose')
        if shape is not None:
            new_state.shape = self._check_param(shape, (self.num_betas,), 'shape')
        if displacement is not None:
            new_state.displacement = self._check_param(
                displacement, (self.num_vertices, 3), 'displacement'
            )
        self._state = new_state
        self._update()

    def rotate_limb_to_direction(self, joint_name, direction):
        """
        Rotates a joint so that the bone to its first child points along `direction`.

        The rotation is the smallest one between the current bone and `direction` in world
        coordinates, and it is composed onto the current rotation of the joint. Nothing
        happens if either vector has zero length.

        Raises:
            InvalidJointError: If the joint is unknown, is the root (see :meth:`rotate_root`),
                is one of the back joints (see :meth:`twist_back`) or has no child.
        """
        i_joint = self._joint_index(joint_name)
        if i_joint == 0:
            raise InvalidJointError(
                f'{joint_name} is the root joint, use rotate_root() to orient the body'
            )
        if joint_name in BACK_JOINTS:
            raise InvalidJointError(
                f'{joint_name} is a back joint, use twist_back() to rotate the back'
            )
        children = [i for i, i_parent in enumerate(self.kintree_parents) if i_parent == i_joint]
        if not children:
            raise InvalidJointError(f'{joint_name} has no child joint to define a limb direction')
        i_child = children[0]

        direction = np.asarray(direction, np.float64)
        kinematics = self._current_kinematics()
        joints = kinematics.joint_locations()
        bone = joints[i_child] - joints[i_joint]
        if np.linalg.norm(direction) * np.linalg.norm(bone) == 0:
            logger.debug('Zero-length direction for %s, rotation skipped', joint_name)
            return

        rotvec = angle_axis(bone, direction)
        self._apply_world_rotation(i_joint, rotvec, kinematics)

        if logger.isEnabledFor(logging.DEBUG):
            joints = self.joint_locations(translation=False)
            new_bone = joints[i_child] - joints[i_joint]
            residual = new_bone / np.linalg.norm(new_bone) - direction / np.linalg.norm(direction)
            logger.debug(
                'Rotated %s by %.4f rad, residual direction difference %.3g',
                joint_name,
                np.linalg.norm(rotvec),
                np.linalg.norm(residual),
            )

    def rotate_root(self, body_up, hips_direction):
        """
        Sets the global orientation of the body.

        The model Y axis is turned to `body_up`, then the body is turned about that axis so
        that its X axis (from the right to the left hip) points to the projection of
        `hips_direction` on the plane orthogonal to `body_up`.
        """
        unit_x, unit_y = np.eye(3)[0], np.eye(3)[1]
        up_rotvec = angle_axis(unit_y, body_up)
        x_updated = rotate_by_rotvec(unit_x, up_rotvec)
        y_matched = rotate_by_rotvec(unit_y, up_rotvec)

        hips_direction = np.asarray(hips_direction, np.float64)
        projection = hips_direction - np.dot(hips_direction, y_matched) * y_matched
        cross = np.cross(x_updated, projection)
        sign = 1.0 if np.dot(cross, y_matched) >= 0 else -1.0
        angle = np.arctan2(sign * np.linalg.norm(cross), np.dot(x_updated, projection))
        hips_rotvec = angle * y_matched

        pose = self._state.pose.copy()
        pose[0] = compose_rotvecs(up_rotvec, hips_rotvec)
        logger.debug('Root rotation set to %s', pose[0])
        self.set_state(pose=pose)

    def twist_back(self, shoulder_direction):
        """
        Turns the upper body so that the vector from the right to the left shoulder points
        along `shoulder_direction`. The rotation is split equally among the back joints.
        """
        i_left, i_right = (self._joint_index(name) for name in SHOULDER_JOINTS)
        joints = self._current_kinematics().joint_locations()
        rotvec = angle_axis(joints[i_left] - joints[i_right], shoulder_direction)
        rotvec = rotvec / len(BACK_JOINTS)
        for name in BACK_JOINTS:
            self._apply_world_rotation(
                self.joint_names[name], rotvec, self._current_kinematics()
            )
        logger.debug('Twisted the back by %.4f rad', np.linalg.norm(rotvec) * len(BACK_JOINTS))

    def translate_to(self, center_point):
        """Sets the translation so that the mean of the vertices is at `center_point`."""
        untranslated = self.vertices() - self._state.translation
        self.set_state(translation=np.asarray(center_point, np.float64) - untranslated.mean(axis=0))

    def save_parameters(self, file):
        """Writes the translation, pose, shape and posed joint locations as text."""
        state = self._state
        paramfile.write_parameters(
            file, state.translation, state.pose, state.shape, self.joint_locations()
        )

    def load_parameters(self, file):
        """Reads the translation, pose and shape written by :meth:`save_parameters`."""
        translation, pose, shape = paramfile.read_parameters(
            file, self.num_joints, self.num_betas
        )
        self.set_state(translation=translation, pose=pose, shape=shape)

    def save_mesh(self, path, pose=True, shape=True, displacement=False):
        """
        Exports the current body as a mesh file, OBJ for a path ending in '.obj'.

        Parameters:
            path: Output file path.
            pose: Whether to apply the pose. Otherwise the body is in T-pose.
            shape: Whether to apply the shape. Otherwise the average shape is used.
            displacement: Whether to apply the per-vertex displacement.

        The translation is always applied.
        """
        state = self._state
        verts = self.evaluate(
            state.translation,
            state.pose if pose else None,
            state.shape if shape else None,
            state.displacement if displacement else None,
        )
        trimesh.Trimesh(verts, self.faces, process=False).export(path)
        logger.info('Saved mesh to %s', path)

    def vertex_normals(self, vertices=None) -> np.ndarray:
        """Unit vertex normals of the given vertices, or of the current state if None."""
        if vertices is None:
            vertices = self.vertices()
        mesh = trimesh.Trimesh(vertices, self.faces, process=False)
        return np.array(mesh.vertex_normals)

    def _update(self):
        self._vertices = None

    def _joint_index(self, joint_name) -> int:
        try:
            return self.joint_names[joint_name]
        except KeyError:
            raise InvalidJointError(f'Unknown joint name: {joint_name}') from None

    def _rest_joints(self, shape):
        return self.J_regressor @ apply_shape(self.v_template, self.shapedirs, shape)

    def _forward_kinematics(self, pose, rest_joints, with_derivatives=False) -> KinematicState:
        kinematics = self._kinematics
        if kinematics is None or not kinematics.matches(pose, rest_joints, with_derivatives):
            kinematics = forward_kinematics(
                pose, rest_joints, self.kintree_parents, with_derivatives
            )
            self._kinematics = kinematics
        return kinematics

    def _current_kinematics(self) -> KinematicState:
        return self._forward_kinematics(self._state.pose, self._rest_joints(self._state.shape))

    def _apply_world_rotation(self, i_joint, rotvec, kinematics: KinematicState):
        """Turns the global frame of a joint by a world-space rotation vector, keeping its
        position."""
        local_rotvec = kinematics.global_rotations[i_joint].T @ rotvec
        new_rotation = kinematics.local_rotations[i_joint] @ rotvec2mat(local_rotvec)
        pose = self._state.pose.copy()
        pose[i_joint] = mat2rotvec(new_rotation)
        self.set_state(pose=pose)

    def _pose_jacobian(self, kinematics: KinematicState, rest_joints, lbs):
        derivatives = lbs_transform_derivatives(kinematics, rest_joints)
        stacked = np.concatenate([derivatives[i] for i in range(self.pose_size)], axis=1)
        jacobian = np.asarray(lbs @ stacked).reshape(self.num_vertices, self.pose_size, 3)
        jacobian = np.ascontiguousarray(np.transpose(jacobian, (1, 0, 2)))

        if self.posedirs is not None:
            blendshape_jacobian = pose_blendshape_jacobian(
                self.posedirs, kinematics.local_rotation_jacobians
            )
            # Rest-space offsets are only rotated by the blended joint rotations
            blended_rotations = np.reshape(
                self.weights @ np.reshape(kinematics.global_rotations, [self.num_joints, 9]),
                [self.num_vertices, 3, 3],
            )
            jacobian += np.einsum('vCc,pvc->pvC', blended_rotations, blendshape_jacobian)
        return jacobian

    def _shape_jacobian(self, kinematics: KinematicState):
        """
        Derivatives w.r.t. the betas at a fixed pose.

        With the rotations fixed, the skinned vertices are linear in the rest vertices and the
        rest joints together. So each column is the skinning of the blendshape itself, using
        the transforms that the rest joint offsets of that blendshape produce.
        """
        jacobian = np.empty((self.num_betas, self.num_vertices, 3))
        for i_beta in range(self.num_betas):
            blendshape = self.shapedirs[i_beta]
            joint_offsets = self.J_regressor @ blendshape
            glob = chain_transforms(
                local_transforms(kinematics.local_rotations, joint_offsets, self.kintree_parents),
                self.kintree_parents,
            )
            jacobian[i_beta] = skin(
                self.weights, blendshape, lbs_transforms(glob, joint_offsets)
            )
        return jacobian

    def _unit_offsets(self, axis):
        offsets = np.zeros((self.num_vertices, 3))
        offsets[:, axis] = 1.0
        return offsets

    def _identity_jacobian(self):
        return np.stack([self._unit_offsets(axis) for axis in range(3)])

    def _check_param(self, value, shape, name):
        if value is None:
            return None
        value = np.array(value, np.float64)
        if value.size != int(np.prod(shape)):
            raise ValueError(f'{name} must have shape {shape}, got {value.shape}')
        return value.reshape(shape)

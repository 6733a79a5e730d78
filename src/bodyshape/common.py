from __future__ import annotations

import contextlib
import logging
import os
import os.path as osp
from dataclasses import dataclass
from typing import Optional

import numpy as np
import scipy.sparse
import trimesh

from .errors import ModelConfigError

logger = logging.getLogger(__name__)

NUM_JOINTS = 24
NUM_VERTICES = 6890
NUM_BETAS = 10
SPACE_DIM = 3
POSE_SIZE = NUM_JOINTS * SPACE_DIM
NUM_POSE_BLENDSHAPES = (NUM_JOINTS - 1) * 9

WEIGHTS_BY_VERTEX = 4
"""Expected upper bound of influencing joints per vertex."""

WEIGHT_EPSILON = 1e-5
"""Skinning weights at or below this value are dropped on load."""

DISTANCE_EPSILON = 1e-5
"""Point distances below this value get a zero Jacobian in the cost functions."""

BACK_JOINTS = ('LowBack', 'MiddleBack', 'TopBack')
SHOULDER_JOINTS = ('LShoulder', 'RShoulder')
REQUIRED_JOINT_NAMES = ('Root',) + BACK_JOINTS + SHOULDER_JOINTS


@dataclass
class ModelData:
    """Arrays and metadata of one SMPL model, as loaded from its asset directory.

    The arrays are shared between all body models built from the same data and are never
    modified after loading.
    """

    v_template: np.ndarray
    """Mean-centred vertex template in T-pose, shape (num_vertices, 3)."""

    faces: np.ndarray
    """Triangle vertex indices, shape (num_faces, 3)."""

    J_regressor: np.ndarray
    """Rest joint regressor, shape (num_joints, num_vertices)."""

    weights: scipy.sparse.csr_matrix
    """Sparse skinning weights, shape (num_vertices, num_joints)."""

    shapedirs: np.ndarray
    """Shape blendshapes, shape (num_betas, num_vertices, 3)."""

    posedirs: Optional[np.ndarray]
    """Pose blendshapes, shape ((num_joints-1)*9, num_vertices, 3), or None if disabled."""

    kintree_parents: list[int]
    """Parent joint indices for the kinematic tree, -1 for the root."""

    joint_names: dict[str, int]
    """Joint name to joint index."""

    pose_stiffness: np.ndarray
    """Pose regularization matrix, shape (num_joints*3, num_joints*3), zero for the root."""

    num_joints: int
    num_vertices: int
    num_betas: int

    gender: str = 'f'
    """Either 'f' or 'm'."""


def resolve_model_root(model_root=None):
    """Returns the directory holding the model assets.

    The explicit argument wins, then the ``BODYSHAPE_MODELS`` environment variable, then
    ``$DATA_ROOT/body_models/smpl``.
    """
    if model_root is not None:
        return model_root
    model_root = os.getenv('BODYSHAPE_MODELS')
    if model_root is None:
        data_root = os.getenv('DATA_ROOT', '.')
        model_root = f'{data_root}/body_models/smpl'
    return model_root


def initialize(
    gender,
    model_root=None,
    pose_blendshapes=True,
    num_joints=NUM_JOINTS,
    num_betas=NUM_BETAS,
):
    """
    Loads and validates the assets of one gender.

    Parameters:
        gender: 'f' or 'm', or any string starting with one of them ('female', 'male').
        model_root: Asset directory, see :func:`resolve_model_root`.
        pose_blendshapes: Whether to load the pose blendshapes.
        num_joints: Expected number of joints in the asset files.
        num_betas: Number of shape blendshapes to load.

    Returns:
        A validated :class:`ModelData`.

    Raises:
        ModelConfigError: If a file is missing or inconsistent with the others.
    """
    gender = _normalize_gender(gender)
    model_root = resolve_model_root(model_root)
    if not osp.isdir(model_root):
        raise ModelConfigError(
            f'Body model directory not found: {model_root}\n\n'
            f'Set the body model location using one of:\n'
            f"  1. BodyModel('{gender}', model_root='/your/path/body_models/smpl')\n"
            f'  2. export BODYSHAPE_MODELS=/your/path/body_models/smpl\n'
            f'  3. export DATA_ROOT=/your/path   '
            f'(looks for $DATA_ROOT/body_models/smpl/)'
        )
    gender_dir = osp.join(model_root, f'{gender}_smpl')
    logger.info('Loading %s SMPL model from %s', gender, model_root)

    joint_names = _read_joint_names(osp.join(model_root, 'joint_names.txt'), num_joints)
    kintree_parents = _read_hierarchy(osp.join(model_root, 'jointsHierarchy.txt'), num_joints)
    pose_stiffness = _read_stiffness(osp.join(model_root, 'stiffness.txt'), num_joints)

    template_path = osp.join(gender_dir, f'{gender}_shapeAv.obj')
    v_template_raw, faces = _read_mesh(template_path, with_faces=True)
    num_vertices = len(v_template_raw)

    J_regressor = _read_table(
        osp.join(gender_dir, f'{gender}_joints_mat.txt'), num_joints, num_vertices
    )
    weights = _read_table(
        osp.join(gender_dir, f'{gender}_weight.txt'), num_joints, num_vertices, per_vertex=True
    )
    weights = np.where(weights > WEIGHT_EPSILON, weights, 0.0)

    shapedirs = _read_blendshapes(
        [
            osp.join(gender_dir, f'{gender}_blendshape', f'shape{i}.obj')
            for i in range(num_betas)
        ],
        v_template_raw,
    )
    if pose_blendshapes:
        posedirs = _read_blendshapes(
            [
                osp.join(gender_dir, f'{gender}_pose_blendshapes', f'Pose{i:03d}.obj')
                for i in range((num_joints - 1) * 9)
            ],
            v_template_raw,
        )
    else:
        posedirs = None

    data = ModelData(
        v_template=v_template_raw - np.mean(v_template_raw, axis=0),
        faces=faces,
        J_regressor=J_regressor,
        weights=scipy.sparse.csr_matrix(weights),
        shapedirs=shapedirs,
        posedirs=posedirs,
        kintree_parents=kintree_parents,
        joint_names=joint_names,
        pose_stiffness=pose_stiffness,
        num_joints=num_joints,
        num_vertices=num_vertices,
        num_betas=num_betas,
        gender=gender,
    )
    validate(data)
    logger.info(
        'Loaded SMPL model: %d vertices, %d faces, %d joints, %d betas, pose blendshapes %s',
        num_vertices,
        len(faces),
        num_joints,
        num_betas,
        'on' if pose_blendshapes else 'off',
    )
    return data


def validate(data: ModelData):
    """Checks the structural invariants of the model data.

    Raises:
        ModelConfigError: If the kinematic tree is not ordered from the root to the leaves, a
            vertex has no skinning weight, a required joint name is missing or the array
            shapes disagree.
    """
    parents = data.kintree_parents
    if len(parents) != data.num_joints:
        raise ModelConfigError(
            f'Expected {data.num_joints} parent entries, got {len(parents)}'
        )
    for i_joint in range(1, data.num_joints):
        if not 0 <= parents[i_joint] < i_joint:
            raise ModelConfigError(
                f'Joint {i_joint} has parent {parents[i_joint]}, but parents must precede '
                f'their children'
            )

    missing = [name for name in REQUIRED_JOINT_NAMES if name not in data.joint_names]
    if missing:
        raise ModelConfigError(f'Joint names are missing: {", ".join(missing)}')
    out_of_range = [name for name, i in data.joint_names.items() if not 0 <= i < data.num_joints]
    if out_of_range:
        raise ModelConfigError(f'Joint ids out of range for: {", ".join(out_of_range)}')

    expected_shapes = {
        'v_template': (data.v_template, (data.num_vertices, 3)),
        'J_regressor': (data.J_regressor, (data.num_joints, data.num_vertices)),
        'weights': (data.weights, (data.num_vertices, data.num_joints)),
        'shapedirs': (data.shapedirs, (data.num_betas, data.num_vertices, 3)),
        'pose_stiffness': (data.pose_stiffness, (data.num_joints * 3, data.num_joints * 3)),
    }
    if data.posedirs is not None:
        expected_shapes['posedirs'] = (
            data.posedirs,
            ((data.num_joints - 1) * 9, data.num_vertices, 3),
        )
    for name, (array, shape) in expected_shapes.items():
        if array.shape != shape:
            raise ModelConfigError(f'{name} has shape {array.shape}, expected {shape}')

    if np.any(data.weights.getnnz(axis=1) == 0):
        unweighted = np.flatnonzero(data.weights.getnnz(axis=1) == 0)
        raise ModelConfigError(f'Vertices without skinning weights: {unweighted[:10].tolist()}')


def vertex_adjacency(faces, num_vertices) -> scipy.sparse.csr_matrix:
    """Symmetric 0/1 matrix of the mesh edges, shape (num_vertices, num_vertices).

    Row v lists the vertices that share a triangle with v, in increasing order.
    """
    faces = np.asarray(faces, np.int64)
    edges = np.concatenate([faces[:, [0, 1]], faces[:, [1, 2]], faces[:, [2, 0]]])
    edges = np.concatenate([edges, edges[:, ::-1]])
    adjacency = scipy.sparse.csr_matrix(
        (np.ones(len(edges)), (edges[:, 0], edges[:, 1])), shape=(num_vertices, num_vertices)
    )
    adjacency.data[:] = 1.0
    adjacency.sort_indices()
    return adjacency


@contextlib.contextmanager
def opened(file, mode='r'):
    """Yields `file` itself if it is already a stream, otherwise opens and closes the path."""
    if hasattr(file, 'read') or hasattr(file, 'write'):
        yield file
    else:
        with open(file, mode) as f:
            yield f


def _normalize_gender(gender):
    if not gender or gender[0].lower() not in ('f', 'm'):
        raise ModelConfigError(f"Gender must be 'f' or 'm', got {gender!r}")
    return gender[0].lower()


def _read_tokens(path):
    try:
        with open(path) as f:
            return f.read().split()
    except FileNotFoundError:
        raise ModelConfigError(f'Model file not found: {path}') from None


def _read_header(tokens, count, path):
    try:
        return [int(token) for token in tokens[:count]]
    except ValueError:
        raise ModelConfigError(f'Malformed header in {path}') from None


def _read_joint_names(path, num_joints):
    tokens = _read_tokens(path)
    (joints_n,) = _read_header(tokens, 1, path)
    if joints_n != num_joints:
        raise ModelConfigError(
            f'{path} lists {joints_n} joint names, the model has {num_joints} joints'
        )
    entries = tokens[1 : 1 + 2 * joints_n]
    if len(entries) != 2 * joints_n:
        raise ModelConfigError(f'{path} is truncated')
    try:
        return {name: int(i_joint) for name, i_joint in zip(entries[::2], entries[1::2])}
    except ValueError:
        raise ModelConfigError(f'Malformed joint id in {path}') from None


def _read_hierarchy(path, num_joints):
    tokens = _read_tokens(path)
    (joints_n,) = _read_header(tokens, 1, path)
    if joints_n != num_joints:
        raise ModelConfigError(
            f'{path} describes {joints_n} joints, the model has {num_joints} joints'
        )
    pairs = _to_array(tokens[1 : 1 + 2 * joints_n], 2 * joints_n, path).astype(int)
    parents = [-1] * num_joints
    for i_joint, i_parent in pairs.reshape(-1, 2):
        if not 0 <= i_joint < num_joints:
            raise ModelConfigError(f'{path} refers to joint {i_joint}')
        parents[i_joint] = int(i_parent)
    # The root entry is either a sentinel or the root itself
    parents[0] = -1
    return parents


def _read_stiffness(path, num_joints):
    tokens = _read_tokens(path)
    rows, cols = _read_header(tokens, 2, path)
    if rows != cols:
        raise ModelConfigError(f'Stiffness matrix in {path} is not square ({rows}x{cols})')
    non_root_size = (num_joints - 1) * 3
    if rows != non_root_size:
        raise ModelConfigError(
            f'Stiffness matrix in {path} has size {rows}, expected the number of non-root '
            f'pose parameters ({non_root_size})'
        )
    values = _to_array(tokens[2 : 2 + rows * cols], rows * cols, path)
    stiffness = np.zeros((num_joints * 3, num_joints * 3))
    stiffness[3:, 3:] = values.reshape(rows, cols)
    return stiffness


def _read_table(path, num_joints, num_vertices, per_vertex=False):
    """Reads a joint-vertex table with a 'joints vertices' header.

    The rows are joints, or vertices with `per_vertex`.
    """
    tokens = _read_tokens(path)
    joints_n, verts_n = _read_header(tokens, 2, path)
    if joints_n != num_joints or verts_n != num_vertices:
        raise ModelConfigError(
            f'{path} is for {joints_n} joints and {verts_n} vertices, the model has '
            f'{num_joints} joints and {num_vertices} vertices'
        )
    values = _to_array(tokens[2 : 2 + joints_n * verts_n], joints_n * verts_n, path)
    if per_vertex:
        return values.reshape(verts_n, joints_n)
    return values.reshape(joints_n, verts_n)


def _read_mesh(path, with_faces=False):
    if not osp.isfile(path):
        raise ModelConfigError(f'Model mesh not found: {path}')
    mesh = trimesh.load_mesh(path, process=False, maintain_order=True)
    vertices = np.array(mesh.vertices, np.float64)
    if with_faces:
        return vertices, np.array(mesh.faces, np.int64)
    return vertices


def _to_array(tokens, count, path):
    if len(tokens) != count:
        raise ModelConfigError(f'{path} holds {len(tokens)} values, expected {count}')
    try:
        return np.array(tokens, np.float64)
    except ValueError:
        raise ModelConfigError(f'Non-numeric value in {path}') from None


def _read_blendshapes(paths, v_template_raw):
    """Reads full blendshape meshes and returns their offsets from the template."""
    offsets = []
    for path in paths:
        vertices = _read_mesh(path)
        if vertices.shape != v_template_raw.shape:
            raise ModelConfigError(
                f'{path} has {len(vertices)} vertices, the template has {len(v_template_raw)}'
            )
        offsets.append(vertices - v_template_raw)
    if not offsets:
        return np.zeros((0,) + v_template_raw.shape)
    return np.stack(offsets)

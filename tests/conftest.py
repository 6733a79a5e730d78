"""Shared pytest fixtures for bodyshape tests.

The tests run on a small synthetic model with the SMPL skeleton: every joint carries a tiny
tetrahedron of 4 vertices, skinned to the joint and its parent, with random shape and pose
blendshapes.
"""

from __future__ import annotations

import os
import os.path as osp

import numpy as np
import pytest
import scipy.sparse

from bodyshape import BodyModel, ModelData

JOINT_NAMES = [
    'Root',
    'LHip',
    'RHip',
    'LowBack',
    'LKnee',
    'RKnee',
    'MiddleBack',
    'LAnkle',
    'RAnkle',
    'TopBack',
    'LFoot',
    'RFoot',
    'Neck',
    'LClavicle',
    'RClavicle',
    'Head',
    'LShoulder',
    'RShoulder',
    'LElbow',
    'RElbow',
    'LWrist',
    'RWrist',
    'LHand',
    'RHand',
]

KINTREE_PARENTS = [-1, 0, 0, 0, 1, 2, 3, 4, 5, 6, 7, 8, 9, 9, 9, 12, 13, 14, 16, 17, 18, 19, 20, 21]

# The body's left is on the positive X side, up is +Y
JOINT_POSITIONS = np.array(
    [
        [0.0, 0.0, 0.0],
        [0.1, -0.1, 0.0],
        [-0.1, -0.1, 0.0],
        [0.0, 0.1, 0.0],
        [0.1, -0.5, 0.0],
        [-0.1, -0.5, 0.0],
        [0.0, 0.25, 0.0],
        [0.1, -0.9, 0.0],
        [-0.1, -0.9, 0.0],
        [0.0, 0.4, 0.0],
        [0.1, -0.95, 0.1],
        [-0.1, -0.95, 0.1],
        [0.0, 0.6, 0.0],
        [0.08, 0.5, 0.0],
        [-0.08, 0.5, 0.0],
        [0.0, 0.75, 0.03],
        [0.18, 0.52, 0.0],
        [-0.18, 0.52, 0.0],
        [0.45, 0.52, 0.0],
        [-0.45, 0.52, 0.0],
        [0.7, 0.52, 0.0],
        [-0.7, 0.52, 0.0],
        [0.78, 0.52, 0.0],
        [-0.78, 0.52, 0.0],
    ]
)

TETRAHEDRON_OFFSETS = 0.02 * np.array(
    [[1.0, 1.0, 1.0], [1.0, -1.0, -1.0], [-1.0, 1.0, -1.0], [-1.0, -1.0, 1.0]]
)
TETRAHEDRON_FACES = np.array([[0, 1, 2], [0, 3, 1], [0, 2, 3], [1, 3, 2]])

NUM_JOINTS = len(JOINT_NAMES)
NUM_VERTICES = NUM_JOINTS * 4
NUM_BETAS = 10

# Where the template sits in the asset files, before mean-centring
TEMPLATE_FILE_OFFSET = np.array([0.5, 1.0, -0.2])


def make_model_data(pose_blendshapes=True, seed=0) -> ModelData:
    rng = np.random.RandomState(seed)
    v_template = (JOINT_POSITIONS[:, np.newaxis] + TETRAHEDRON_OFFSETS).reshape(-1, 3)
    v_template = v_template - np.mean(v_template, axis=0)
    faces = (TETRAHEDRON_FACES + 4 * np.arange(NUM_JOINTS)[:, np.newaxis, np.newaxis]).reshape(
        -1, 3
    )

    J_regressor = np.zeros((NUM_JOINTS, NUM_VERTICES))
    weights = np.zeros((NUM_VERTICES, NUM_JOINTS))
    for i_joint, i_parent in enumerate(KINTREE_PARENTS):
        vertex_ids = slice(4 * i_joint, 4 * i_joint + 4)
        J_regressor[i_joint, vertex_ids] = 0.25
        if i_parent < 0:
            weights[vertex_ids, i_joint] = 1.0
        else:
            weights[vertex_ids, i_joint] = 0.7
            weights[vertex_ids, i_parent] = 0.3

    shapedirs = rng.normal(0.0, 0.002, size=(NUM_BETAS, NUM_VERTICES, 3))
    posedirs = rng.normal(0.0, 0.001, size=((NUM_JOINTS - 1) * 9, NUM_VERTICES, 3))

    non_root_size = (NUM_JOINTS - 1) * 3
    a = rng.normal(size=(non_root_size, non_root_size))
    pose_stiffness = np.zeros((NUM_JOINTS * 3, NUM_JOINTS * 3))
    pose_stiffness[3:, 3:] = a @ a.T / non_root_size + np.eye(non_root_size)

    return ModelData(
        v_template=v_template,
        faces=faces,
        J_regressor=J_regressor,
        weights=scipy.sparse.csr_matrix(weights),
        shapedirs=shapedirs,
        posedirs=posedirs if pose_blendshapes else None,
        kintree_parents=list(KINTREE_PARENTS),
        joint_names={name: i for i, name in enumerate(JOINT_NAMES)},
        pose_stiffness=pose_stiffness,
        num_joints=NUM_JOINTS,
        num_vertices=NUM_VERTICES,
        num_betas=NUM_BETAS,
        gender='f',
    )


def write_obj(path, vertices, faces):
    with open(path, 'w') as f:
        for vertex in vertices:
            f.write('v ' + ' '.join(repr(float(x)) for x in vertex) + '\n')
        for face in faces:
            f.write('f ' + ' '.join(str(int(i) + 1) for i in face) + '\n')


def write_model_root(root, data: ModelData, gender='f'):
    """Writes the asset tree that :func:`bodyshape.common.initialize` reads."""
    root = str(root)
    gender_dir = osp.join(root, f'{gender}_smpl')
    shape_dir = osp.join(gender_dir, f'{gender}_blendshape')
    pose_dir = osp.join(gender_dir, f'{gender}_pose_blendshapes')
    for dirname in (gender_dir, shape_dir, pose_dir):
        os.makedirs(dirname, exist_ok=True)

    with open(osp.join(root, 'joint_names.txt'), 'w') as f:
        f.write(f'{data.num_joints}\n')
        for name, i_joint in data.joint_names.items():
            f.write(f'{name} {i_joint}\n')

    with open(osp.join(root, 'jointsHierarchy.txt'), 'w') as f:
        f.write(f'{data.num_joints}\n')
        for i_joint, i_parent in enumerate(data.kintree_parents):
            f.write(f'{i_joint} {i_parent}\n')

    stiffness = data.pose_stiffness[3:, 3:]
    with open(osp.join(root, 'stiffness.txt'), 'w') as f:
        f.write(f'{stiffness.shape[0]} {stiffness.shape[1]}\n')
        for row in stiffness:
            f.write(' '.join(repr(float(x)) for x in row) + '\n')

    template = data.v_template + TEMPLATE_FILE_OFFSET
    write_obj(osp.join(gender_dir, f'{gender}_shapeAv.obj'), template, data.faces)

    with open(osp.join(gender_dir, f'{gender}_joints_mat.txt'), 'w') as f:
        f.write(f'{data.num_joints} {data.num_vertices}\n')
        for row in data.J_regressor:
            f.write(' '.join(repr(float(x)) for x in row) + '\n')

    with open(osp.join(gender_dir, f'{gender}_weight.txt'), 'w') as f:
        f.write(f'{data.num_joints} {data.num_vertices}\n')
        for row in data.weights.toarray():
            f.write(' '.join(repr(float(x)) for x in row) + '\n')

    for i, blendshape in enumerate(data.shapedirs):
        write_obj(osp.join(shape_dir, f'shape{i}.obj'), template + blendshape, data.faces)
    if data.posedirs is not None:
        for i, blendshape in enumerate(data.posedirs):
            write_obj(osp.join(pose_dir, f'Pose{i:03d}.obj'), template + blendshape, data.faces)
    return root


@pytest.fixture
def model_data() -> ModelData:
    """Synthetic model data with pose blendshapes."""
    return make_model_data()


@pytest.fixture
def model(model_data) -> BodyModel:
    """Body model built from the synthetic data."""
    return BodyModel.from_data(model_data)


@pytest.fixture
def model_without_pose_blendshapes() -> BodyModel:
    return BodyModel.from_data(make_model_data(pose_blendshapes=False))


@pytest.fixture
def model_root(tmp_path, model_data):
    """Directory with the synthetic model written as asset files."""
    return write_model_root(tmp_path / 'smpl', model_data)


@pytest.fixture
def random_pose():
    """Generate a moderate random pose."""
    return np.random.RandomState(7).randn(NUM_JOINTS, 3) * 0.3


@pytest.fixture
def random_shape():
    """Generate random shape betas."""
    return np.random.RandomState(8).randn(NUM_BETAS)

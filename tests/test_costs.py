"""Tests for the scan distance cost and the regularizers."""

from __future__ import annotations

import numpy as np
import pytest
import trimesh

from conftest import NUM_BETAS, NUM_JOINTS, NUM_VERTICES
from bodyshape import DistanceConfig, ScanDistance, displacement_regularizer, pose_regularizer

SCAN_OFFSET = np.array([0.003, 0.001, 0.002])
PLANE_HEIGHT = -2.0

PARAMETER_SIZES = dict(
    translation=3,
    pose=NUM_JOINTS * 3,
    shape=NUM_BETAS,
    full=3 + NUM_JOINTS * 3 + NUM_BETAS,
)


@pytest.fixture
def posed_model(model, random_pose, random_shape):
    model.set_state(translation=[0.1, 0.0, -0.2], pose=random_pose * 0.5, shape=random_shape)
    return model


@pytest.fixture
def scan(posed_model):
    """The current body moved by a small offset, as (vertices, faces)."""
    return posed_model.vertices() + SCAN_OFFSET, posed_model.faces


@pytest.fixture
def plane_scan():
    """A single large triangle below the body, facing up."""
    vertices = np.array(
        [[-10.0, -10.0, PLANE_HEIGHT], [10.0, -10.0, PLANE_HEIGHT], [0.0, 10.0, PLANE_HEIGHT]]
    )
    return vertices, np.array([[0, 1, 2]])


def _check_jacobian(cost):
    params = cost.initial_parameters()
    _, jacobian = cost(params, with_jacobian=True)
    assert jacobian.shape == (NUM_VERTICES, cost.num_parameters)
    eps = 1e-6
    for i in range(cost.num_parameters):
        step = np.zeros(cost.num_parameters)
        step[i] = eps
        numerical = (cost.residuals(params + step) - cost.residuals(params - step)) / (2 * eps)
        np.testing.assert_allclose(jacobian[:, i], numerical, atol=1e-5, err_msg=f'param {i}')


class TestDistanceConfig:
    def test_defaults(self):
        config = DistanceConfig()
        assert config.parameters == 'full'
        assert config.side == 'both'
        assert config.pruning_threshold == 100.0
        assert config.groups == ('translation', 'pose', 'shape')

    @pytest.mark.parametrize(
        'kwargs',
        [dict(parameters='base'), dict(side='left'), dict(pruning_threshold=0.0)],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            DistanceConfig(**kwargs)


class TestPointCloudDistance:
    """Scans given by vertices and normals only."""

    def test_residuals_are_offset_lengths(self, posed_model, scan):
        cost = ScanDistance(posed_model, scan[0], scan_normals=posed_model.vertex_normals())
        residuals, jacobian = cost(cost.initial_parameters())
        assert jacobian is None
        assert residuals.shape == (NUM_VERTICES,)
        np.testing.assert_allclose(residuals, np.linalg.norm(SCAN_OFFSET), atol=1e-12)

    def test_pruning(self, posed_model, scan):
        config = DistanceConfig(pruning_threshold=1e-3)
        cost = ScanDistance(
            posed_model, scan[0], scan_normals=posed_model.vertex_normals(), config=config
        )
        residuals, jacobian = cost(cost.initial_parameters(), with_jacobian=True)
        assert not np.any(residuals)
        assert not np.any(jacobian)

    def test_normals_facing_away_are_ignored(self, posed_model, scan):
        flipped = -posed_model.vertex_normals(scan[0] - SCAN_OFFSET)
        cost = ScanDistance(posed_model, scan[0], scan_normals=flipped)
        assert not np.any(cost.residuals(cost.initial_parameters()))

    def test_distance_to_sparse_points(self, model, plane_scan):
        cost = ScanDistance(
            model,
            plane_scan[0],
            scan_normals=np.tile([0.0, 0.0, 1.0], (3, 1)),
            config=DistanceConfig('translation'),
        )
        residuals = cost.residuals(cost.initial_parameters())
        assert np.all(residuals[residuals > 0] > 10.0)

    @pytest.mark.parametrize('parameters', ['translation', 'pose', 'shape', 'full'])
    def test_jacobian_matches_finite_differences(self, posed_model, scan, parameters):
        cost = ScanDistance(
            posed_model,
            scan[0],
            scan_normals=posed_model.vertex_normals(),
            config=DistanceConfig(parameters=parameters),
        )
        assert cost.initial_parameters().shape == (PARAMETER_SIZES[parameters],)
        _check_jacobian(cost)


class TestSurfaceDistance:
    """Scans given as triangle meshes."""

    def test_distance_to_large_triangle(self, model, plane_scan):
        cost = ScanDistance(
            model, plane_scan[0], config=DistanceConfig('translation'), scan_faces=plane_scan[1]
        )
        residuals, jacobian = cost(cost.initial_parameters(), with_jacobian=True)

        verts = model.vertices()
        kept = model.vertex_normals()[:, 2] > 0
        assert np.any(kept) and not np.all(kept)
        np.testing.assert_allclose(residuals[kept], verts[kept, 2] - PLANE_HEIGHT, atol=1e-12)
        assert not np.any(residuals[~kept])
        np.testing.assert_allclose(
            jacobian[kept], np.broadcast_to([0.0, 0.0, 1.0], (np.count_nonzero(kept), 3)), atol=1e-12
        )

    def test_closest_points_match_exhaustive_search(self, posed_model, scan):
        cost = ScanDistance(posed_model, scan[0], scan_faces=scan[1])
        verts = posed_model.vertices()
        closest, distances, normals = cost.closest_points(verts)

        triangles = scan[0][scan[1]]
        num_faces = len(triangles)
        projected = trimesh.triangles.closest_point(
            np.tile(triangles, (NUM_VERTICES, 1, 1)), np.repeat(verts, num_faces, axis=0)
        ).reshape(NUM_VERTICES, num_faces, 3)
        expected = np.min(np.linalg.norm(projected - verts[:, np.newaxis], axis=-1), axis=1)

        np.testing.assert_allclose(distances, expected, atol=1e-12)
        np.testing.assert_allclose(np.linalg.norm(closest - verts, axis=-1), distances, atol=1e-12)
        np.testing.assert_allclose(np.linalg.norm(normals, axis=-1), 1.0, atol=1e-12)

    def test_surface_is_not_farther_than_vertices(self, posed_model, scan):
        cost = ScanDistance(posed_model, scan[0], scan_faces=scan[1])
        _, distances, _ = cost.closest_points(posed_model.vertices())
        assert np.all(distances <= np.linalg.norm(SCAN_OFFSET) + 1e-12)

    def test_sides_partition_vertices(self, posed_model, scan):
        counts = {}
        for side in ('inside', 'outside'):
            cost = ScanDistance(
                posed_model, scan[0], config=DistanceConfig(side=side), scan_faces=scan[1]
            )
            counts[side] = np.count_nonzero(cost.residuals(cost.initial_parameters()))
        assert counts['inside'] > 0 and counts['outside'] > 0
        assert counts['inside'] + counts['outside'] == NUM_VERTICES

    @pytest.mark.parametrize('parameters', ['translation', 'pose', 'shape', 'full'])
    def test_jacobian_matches_finite_differences(self, posed_model, plane_scan, parameters):
        cost = ScanDistance(
            posed_model,
            plane_scan[0],
            config=DistanceConfig(parameters=parameters),
            scan_faces=plane_scan[1],
        )
        assert np.any(cost.residuals(cost.initial_parameters()))
        _check_jacobian(cost)


class TestScanDistance:
    def test_displacement_comes_from_state(self, posed_model):
        posed_model.set_state(displacement=np.random.RandomState(9).randn(NUM_VERTICES, 3) * 0.002)
        cost = ScanDistance(
            posed_model,
            posed_model.vertices(),
            config=DistanceConfig('translation'),
            scan_faces=posed_model.faces,
        )
        np.testing.assert_allclose(cost.residuals(cost.initial_parameters()), 0.0, atol=1e-12)

    def test_needs_scan_normals_or_faces(self, posed_model, scan):
        with pytest.raises(ValueError):
            ScanDistance(posed_model, scan[0])

    def test_wrong_parameter_count(self, posed_model, scan):
        cost = ScanDistance(posed_model, scan[0], scan_faces=scan[1])
        with pytest.raises(ValueError):
            cost.residuals(np.zeros(5))


class TestPoseRegularizer:
    def test_residuals_and_jacobian(self, model, random_pose):
        residuals, jacobian = pose_regularizer(model, random_pose)
        np.testing.assert_allclose(residuals, model.pose_stiffness @ random_pose.ravel())
        np.testing.assert_array_equal(jacobian, model.pose_stiffness)

    def test_root_is_free(self, model):
        pose = np.zeros((NUM_JOINTS, 3))
        pose[0] = [0.5, -1.0, 2.0]
        residuals, _ = pose_regularizer(model, pose)
        assert not np.any(residuals)

    def test_defaults_to_current_pose(self, model, random_pose):
        model.set_state(pose=random_pose)
        np.testing.assert_array_equal(pose_regularizer(model)[0], pose_regularizer(model, random_pose)[0])


class TestDisplacementRegularizer:
    def test_single_vertex(self, model):
        displacement = np.zeros((NUM_VERTICES, 3))
        displacement[5] = [0.3, -0.6, 0.9]
        residuals, _ = displacement_regularizer(model, displacement, l2_weight=2.0, smoothing_weight=0.5)
        l2, smoothing = residuals.reshape(2, NUM_VERTICES, 3)

        np.testing.assert_allclose(l2, 2.0 * displacement)
        # Vertex 5 belongs to the second tetrahedron, so its neighbours are 4, 6 and 7
        np.testing.assert_allclose(smoothing[5], 0.5 * displacement[5])
        for i_vertex in (4, 6, 7):
            np.testing.assert_allclose(smoothing[i_vertex], -0.5 * displacement[5] / 3)
        others = [i for i in range(NUM_VERTICES) if i not in (4, 5, 6, 7)]
        assert not np.any(smoothing[others])

    def test_rigid_offset_is_smooth(self, model):
        displacement = np.tile([0.1, 0.2, -0.3], (NUM_VERTICES, 1))
        residuals, _ = displacement_regularizer(model, displacement, smoothing_weight=3.0)
        np.testing.assert_allclose(residuals[NUM_VERTICES * 3 :], 0.0, atol=1e-15)

    def test_jacobian_is_linear_map(self, model):
        displacement = np.random.RandomState(3).randn(NUM_VERTICES, 3)
        residuals, jacobian = displacement_regularizer(model, displacement, 0.7, 1.3)
        assert jacobian.shape == (2 * NUM_VERTICES * 3, NUM_VERTICES * 3)
        np.testing.assert_allclose(jacobian @ displacement.ravel(), residuals)
        np.testing.assert_allclose(jacobian[: NUM_VERTICES * 3].toarray(), 0.7 * np.eye(NUM_VERTICES * 3))

    def test_defaults_to_current_displacement(self, model):
        displacement = np.random.RandomState(4).randn(NUM_VERTICES, 3)
        model.set_state(displacement=displacement)
        np.testing.assert_array_equal(
            displacement_regularizer(model)[0], displacement_regularizer(model, displacement)[0]
        )

    def test_wrong_size(self, model):
        with pytest.raises(ValueError):
            displacement_regularizer(model, np.zeros((NUM_VERTICES - 1, 3)))

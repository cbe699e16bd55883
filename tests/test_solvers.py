import numpy as np
import pytest

from shademap.core.errors import SingularSystemError
from shademap.core.solvers import (
    SolveStats,
    initial_light_set,
    initial_normal_field,
    lambertian_residual,
    pseudo_inverse,
    solve_light_directions,
    solve_normal_field,
)


# ---------------------------------------------------------------------------
# Seed field
# ---------------------------------------------------------------------------

def test_initial_field_is_unit_and_faces_camera():
    field = initial_normal_field(40, 30)
    assert field.shape == (40 * 30, 3)
    np.testing.assert_allclose(np.linalg.norm(field, axis=1), 1.0, atol=1e-12)
    assert np.all(field[:, 2] > 0)


def test_initial_field_centre_points_straight_up():
    grid = initial_normal_field(21, 15).reshape(15, 21, 3)
    np.testing.assert_array_equal(grid[7, 10], [0.0, 0.0, 1.0])


def test_initial_field_is_symmetric_and_tilts_outwards():
    width, height = 32, 24
    grid = initial_normal_field(width, height).reshape(height, width, 3)

    np.testing.assert_allclose(grid[:, :, 0], -grid[:, ::-1, 0], atol=1e-12)
    np.testing.assert_allclose(grid[:, :, 1], -grid[::-1, :, 1], atol=1e-12)
    assert grid[height // 2, -1, 0] > 0
    assert grid[height // 2, 0, 0] < 0
    assert grid[-1, width // 2, 1] > 0
    # Tilt grows monotonically away from the centre along a row.
    row = grid[height // 2, width // 2:, 2]
    assert np.all(np.diff(row) < 0)


def test_dome_strength_controls_edge_tilt():
    shallow = initial_normal_field(16, 16, strength=0.25).reshape(16, 16, 3)
    steep = initial_normal_field(16, 16, strength=1.0).reshape(16, 16, 3)
    assert steep[8, 0, 2] < shallow[8, 0, 2]


def test_initial_light_set_points_up():
    lights = initial_light_set(4)
    np.testing.assert_array_equal(lights, [[0, 0, 1]] * 4)


# ---------------------------------------------------------------------------
# Pseudo-inverse
# ---------------------------------------------------------------------------

def test_pseudo_inverse_of_full_rank_matrix():
    matrix = np.array([[1.0, 0.0, 0.2], [0.0, 1.0, 0.3], [0.1, 0.1, 1.0], [0.5, 0.5, 0.5]])
    pinv, rank = pseudo_inverse(matrix)
    assert rank == 3
    np.testing.assert_allclose(pinv, np.linalg.pinv(matrix), atol=1e-12)


def test_pseudo_inverse_reports_rank_deficiency():
    matrix = np.array([[0.0, 0.0, 1.0], [0.0, 0.0, 2.0], [0.0, 0.0, 3.0]])
    pinv, rank = pseudo_inverse(matrix)
    assert rank == 1
    # Minimum-norm solution lives on the observable z axis only.
    solution = pinv @ np.array([1.0, 2.0, 3.0])
    np.testing.assert_allclose(solution, [0.0, 0.0, 1.0], atol=1e-12)


@pytest.mark.parametrize("matrix", [
    np.zeros((5, 3)),
    np.array([[np.nan, 0.0, 1.0], [0.0, 1.0, 0.0], [1.0, 0.0, 0.0]]),
])
def test_pseudo_inverse_raises_on_rank_zero(matrix):
    with pytest.raises(SingularSystemError):
        pseudo_inverse(matrix)


# ---------------------------------------------------------------------------
# Light directions
# ---------------------------------------------------------------------------

@pytest.fixture
def known_scene(light_from_angles):
    normals = initial_normal_field(24, 24, strength=1.0)
    lights = np.array([
        light_from_angles(30, 0),
        light_from_angles(40, 120),
        light_from_angles(25, 240),
    ]) * np.array([[1.0], [0.8], [1.3]])
    return normals, lights, normals @ lights.T


def test_light_solve_recovers_known_lights(known_scene):
    normals, lights, intensities = known_scene
    stats = SolveStats()
    solved = solve_light_directions(normals, intensities, initial_light_set(3), stats=stats)
    np.testing.assert_allclose(solved, lights, atol=1e-10)
    assert stats.total_fallbacks == 0
    assert stats.rank_deficient_light_solves == 0


def test_light_solve_unit_mode_normalises(known_scene):
    normals, lights, intensities = known_scene
    solved = solve_light_directions(normals, intensities, initial_light_set(3),
                                    light_magnitude="unit")
    np.testing.assert_allclose(np.linalg.norm(solved, axis=1), 1.0, atol=1e-12)
    expected = lights / np.linalg.norm(lights, axis=1, keepdims=True)
    np.testing.assert_allclose(solved, expected, atol=1e-10)


def test_black_image_keeps_previous_light(known_scene):
    normals, _, intensities = known_scene
    intensities = intensities.copy()
    intensities[:, 1] = 0.0
    previous = np.array([[0.1, 0.0, 1.0], [0.0, 0.2, 0.9], [0.0, 0.0, 1.0]])

    stats = SolveStats()
    solved = solve_light_directions(normals, intensities, previous, stats=stats)

    np.testing.assert_array_equal(solved[1], previous[1])
    assert stats.singular_lights == 1


def test_zero_normals_keep_all_lights():
    previous = np.array([[0.1, 0.0, 1.0], [0.0, 0.2, 0.9], [-0.3, 0.0, 0.8]])
    stats = SolveStats()
    solved = solve_light_directions(np.zeros((64, 3)), np.ones((64, 3)), previous,
                                    stats=stats)

    np.testing.assert_array_equal(solved, previous)
    assert solved is not previous
    assert stats.singular_light_systems == 1
    assert stats.singular_lights == 0


def test_light_solve_does_not_modify_inputs(known_scene):
    normals, _, intensities = known_scene
    previous = initial_light_set(3)
    normals_before = normals.copy()
    solve_light_directions(normals, intensities, previous)
    np.testing.assert_array_equal(normals, normals_before)
    np.testing.assert_array_equal(previous, initial_light_set(3))


# ---------------------------------------------------------------------------
# Normal field
# ---------------------------------------------------------------------------

def test_normal_solve_recovers_unit_normals(known_scene):
    normals, lights, intensities = known_scene
    # Albedo scales the solution; normalisation removes it.
    albedo = np.linspace(0.3, 1.0, normals.shape[0])[:, np.newaxis]
    solved = solve_normal_field(lights, intensities * albedo, initial_normal_field(24, 24))

    np.testing.assert_allclose(np.linalg.norm(solved, axis=1), 1.0, atol=1e-12)
    np.testing.assert_allclose(solved, normals, atol=1e-10)


def test_black_pixel_keeps_previous_normal(known_scene):
    normals, lights, intensities = known_scene
    intensities = intensities.copy()
    intensities[5] = 0.0
    previous = initial_normal_field(24, 24, strength=0.3)

    stats = SolveStats()
    solved = solve_normal_field(lights, intensities, previous, stats=stats)

    np.testing.assert_array_equal(solved[5], previous[5])
    assert stats.singular_pixels == 1
    np.testing.assert_allclose(np.linalg.norm(solved, axis=1), 1.0, atol=1e-12)


def test_zero_lights_keep_whole_field():
    previous = initial_normal_field(8, 8)
    intensities = np.ones((64, 3))
    stats = SolveStats()
    solved = solve_normal_field(np.zeros((3, 3)), intensities, previous, stats=stats)

    np.testing.assert_array_equal(solved, previous)
    assert stats.singular_normal_systems == 1


def test_coplanar_lights_are_counted_as_rank_deficient():
    lights = np.array([[0.0, 0.0, 1.0], [0.0, 0.0, 0.5], [0.0, 0.0, 2.0]])
    intensities = np.tile([1.0, 0.5, 2.0], (16, 1))
    stats = SolveStats()
    solved = solve_normal_field(lights, intensities, initial_normal_field(4, 4), stats=stats)

    assert stats.rank_deficient_normal_solves == 1
    np.testing.assert_allclose(solved, np.tile([0.0, 0.0, 1.0], (16, 1)), atol=1e-12)


def test_parallel_normal_solve_matches_serial(known_scene):
    normals, lights, intensities = known_scene
    previous = initial_normal_field(24, 24)
    serial = solve_normal_field(lights, intensities, previous, workers=1)
    threaded = solve_normal_field(lights, intensities, previous, workers=4, chunk_size=37)
    np.testing.assert_allclose(threaded, serial, atol=1e-14)


def test_residual_is_zero_for_exact_fit(known_scene):
    normals, lights, intensities = known_scene
    assert lambertian_residual(normals, lights, intensities) == pytest.approx(0.0, abs=1e-12)

import os.path
import sys
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
import itertools
import unittest
import numpy as np
import taichi as ti
from ti_mcubes.utils import *
from ti_mcubes.mc_tables import *
from ti_mcubes.density_field import DensityField
from ti_mcubes.triangle_buffer import TriangleBuffer
from ti_mcubes.tools.marching_cubes import *


## Straight-line numpy marching cubes used to check the kernel output
def reference_triangles(grid, surface_level, grid_size=1.0):
    grid = np.asarray(grid, dtype=np.float32).astype(np.float64)
    s = grid.shape[0]

    def sample(coord):
        x, y, z = np.clip(coord, 0, s - 1)
        return grid[x, y, z]

    def normal(coord):
        gradient = np.array([sample(coord + axis) - sample(coord - axis) for axis in np.eye(3, dtype=np.int32)])
        return gradient / np.linalg.norm(gradient)

    triangles = []
    for base in itertools.product(range(s - 1), repeat=3):
        coords = np.asarray(base, dtype=np.int32) + CORNER_OFFSETS
        densities = [sample(c) for c in coords]
        config = sum(1 << w for w in range(8) if densities[w] <= surface_level)
        row = TRI_TABLE[config]
        for w in range(0, TRI_TABLE_WIDTH, 3):
            if row[w] == TRI_TABLE_SENTINEL:
                break
            vertices, normals = [], []
            # Emitted counter-clockwise around the outward normal
            for edge in row[w:w + 3][::-1]:
                lo, hi = EDGE_TO_CORNERS[edge]
                t = (surface_level - densities[lo]) / (densities[hi] - densities[lo])
                vertices.append((coords[lo] + t * (coords[hi] - coords[lo])) * grid_size)
                normal_lo, normal_hi = normal(coords[lo]), normal(coords[hi])
                normals.append(normal_lo + t * (normal_hi - normal_lo))
            triangles.append(np.concatenate(vertices + normals))
    return np.asarray(triangles).reshape((-1, 18))


def buffer_triangles(buffer):
    n = len(buffer)
    return np.concatenate([buffer.vertices().reshape((n, 9)), buffer.normals().reshape((n, 9))], axis=1)


def sort_rows(rows):
    return rows[np.lexsort(rows.T[::-1])]


class MarchingCubesTestBase(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        ti.init(arch=ti.cpu, fast_math=False, offline_cache=False)
        cls.mc = MarchingCubes()

    def make_field(self, grid):
        grid = np.asarray(grid, dtype=np.float32)
        field = DensityField(grid.shape[0])
        field.from_numpy(grid)
        return field

    ## Compares two triangle sets as multisets, ignoring emission order
    def assert_same_triangles(self, actual, expected, tolerance=1e-4):
        self.assertEqual(actual.shape, expected.shape)
        if expected.shape[0] == 0:
            return
        distances = np.abs(expected[:, None, :] - actual[None, :, :]).max(axis=2)
        matches = distances.argmin(axis=1)
        self.assertTrue((distances[np.arange(expected.shape[0]), matches] < tolerance).all())
        self.assertEqual(len(set(matches.tolist())), expected.shape[0])


class CubeClassifierTest(MarchingCubesTestBase):

    def classify(self, densities, surface_level):
        densities = np.asarray(densities, dtype=np.float32)
        n = densities.shape[0]
        density_field = ti.Vector.field(n=8, dtype=ti.f32, shape=n)
        configs = ti.field(ti.i32, shape=n)
        density_field.from_numpy(densities)
        mc = self.mc

        @ti.kernel
        def classify_all(level: ti.f32):
            for i in range(n):
                configs[i] = mc.classify(density_field[i], level)

        classify_all(surface_level)
        return configs.to_numpy()

    def test_matches_corner_bits(self):
        densities = np.random.RandomState(7).uniform(-1.0, 1.0, size=(256, 8))
        configs = self.classify(densities, 0.1)
        expected = [sum(1 << w for w in range(8) if np.float32(d[w]) <= np.float32(0.1)) for d in densities]
        self.assertEqual(configs.tolist(), expected)

    def test_is_deterministic(self):
        densities = np.random.RandomState(11).uniform(-1.0, 1.0, size=(64, 8))
        np.testing.assert_array_equal(self.classify(densities, 0.0), self.classify(densities, 0.0))

    def test_inclusive_comparison(self):
        densities = [[0.5, 0.5, 0.5, 0.5, 0.5, 0.5, 0.5, 0.5],
                     [0.5, 1.0, 1.0, 1.0, 1.0, 1.0, 1.0, 1.0],
                     [-1.0, -1.0, -1.0, -1.0, -1.0, -1.0, -1.0, 1.0],
                     [1.0, 1.0, 1.0, 1.0, 1.0, 1.0, 1.0, 1.0]]
        self.assertEqual(self.classify(densities, 0.5).tolist(), [255, 1, 127, 0])


class InterpolatorTest(MarchingCubesTestBase):

    def interpolate(self, field, surface_level, coord_a, coord_b, density_a, density_b, grid_size=1.0):
        result = ti.Vector.field(n=3, dtype=ti.f32, shape=2)
        mc = self.mc

        @ti.kernel
        def run(level: ti.f32, size: ti.f32, da: ti.f32, db: ti.f32):
            vertex, normal = mc.interpolate(field, level, size, ti.Vector(coord_a), ti.Vector(coord_b), da, db)
            result[0] = vertex
            result[1] = normal

        run(surface_level, grid_size, density_a, density_b)
        values = result.to_numpy()
        return values[0], values[1]

    def test_vertex_position_and_blended_normal(self):
        grid = np.full((2, 2, 2), -1.0)
        grid[0, 1, 1] = 1.0
        field = self.make_field(grid)

        # Edge from corner 7 to corner 4
        vertex, normal = self.interpolate(field, 0.0, [0, 1, 1], [0, 0, 1], 1.0, -1.0, grid_size=2.0)
        np.testing.assert_allclose(vertex, [0.0, 1.0, 2.0], atol=1e-6)

        normal_7 = np.array([-1.0, 1.0, 1.0]) / np.sqrt(3.0)
        normal_4 = np.array([0.0, 1.0, 0.0])
        np.testing.assert_allclose(normal, 0.5 * (normal_7 + normal_4), atol=1e-5)
        # Blended normals keep their shortened length
        self.assertLess(np.linalg.norm(normal), 0.9)

    def test_parameter_follows_surface_level(self):
        grid = np.zeros((2, 2, 2))
        grid[1, :, :] = 1.0
        field = self.make_field(grid)

        vertex, normal = self.interpolate(field, 0.25, [0, 0, 0], [1, 0, 0], 0.0, 1.0)
        np.testing.assert_allclose(vertex, [0.25, 0.0, 0.0], atol=1e-6)
        np.testing.assert_allclose(normal, [1.0, 0.0, 0.0], atol=1e-6)

    def test_equal_densities_give_non_finite_vertex(self):
        field = self.make_field(np.zeros((2, 2, 2)))
        vertex, _ = self.interpolate(field, 0.0, [0, 0, 0], [1, 0, 0], 0.0, 0.0)
        self.assertFalse(np.isfinite(vertex).all())


class MarchingCubesTest(MarchingCubesTestBase):

    def test_single_corner_cell(self):
        grid = np.full((2, 2, 2), -1.0)
        grid[0, 1, 1] = 1.0
        field = self.make_field(grid)

        buffer = self.mc.extract(field, MarchingCubesConfig(surface_level=0.0))
        self.assertEqual(len(buffer), 1)
        vertices = buffer.vertices()[0]
        # Midpoints of edges 6, 11 and 7, all adjacent to corner 7
        np.testing.assert_allclose(vertices, [[0.5, 1.0, 1.0], [0.0, 1.0, 0.5], [0.0, 0.5, 1.0]], atol=1e-6)
        self.assert_same_triangles(buffer_triangles(buffer), reference_triangles(grid, 0.0))

    def test_uniform_grid_emits_nothing(self):
        for value, level in [(5.0, 0.0), (-5.0, 0.0), (0.0, 0.0)]:
            field = self.make_field(np.full((4, 4, 4), value))
            self.assertEqual(self.mc.count_triangles(field, level), 0)
            buffer = self.mc.extract(field, MarchingCubesConfig(surface_level=level))
            self.assertEqual(len(buffer), 0)

    def test_matches_reference(self):
        grid = np.random.RandomState(3).uniform(-1.0, 1.0, size=(6, 6, 6))
        field = self.make_field(grid)

        buffer = self.mc.extract(field, MarchingCubesConfig(surface_level=0.2, grid_size=0.5))
        expected = reference_triangles(grid, 0.2, 0.5)
        self.assertGreater(expected.shape[0], 0)
        self.assertEqual(self.mc.count_triangles(field, 0.2), expected.shape[0])
        self.assert_same_triangles(buffer_triangles(buffer), expected)

    def test_vertices_lie_on_crossing_edges(self):
        grid = np.random.RandomState(5).uniform(-1.0, 1.0, size=(5, 5, 5)).astype(np.float32)
        field = self.make_field(grid)
        buffer = self.mc.extract(field, MarchingCubesConfig(surface_level=0.0))

        vertices = buffer.vertices().reshape((-1, 3))
        self.assertGreater(vertices.shape[0], 0)
        for vertex in vertices:
            nearest = np.round(vertex)
            axes = np.nonzero(np.abs(vertex - nearest) > 1e-5)[0]
            self.assertLessEqual(len(axes), 1)
            if len(axes) == 0:
                continue
            lower = nearest.astype(np.int32)
            lower[axes[0]] = int(np.floor(vertex[axes[0]]))
            upper = lower.copy()
            upper[axes[0]] += 1
            self.assertNotEqual(grid[tuple(lower)] <= 0.0, grid[tuple(upper)] <= 0.0)

    def test_grid_size_scales_vertices_only(self):
        grid = np.random.RandomState(9).uniform(-1.0, 1.0, size=(5, 5, 5))
        field = self.make_field(grid)

        unit = buffer_triangles(self.mc.extract(field, MarchingCubesConfig(grid_size=1.0)))
        scaled = buffer_triangles(self.mc.extract(field, MarchingCubesConfig(grid_size=3.0)))
        expected = unit.copy()
        expected[:, :9] *= 3.0
        self.assert_same_triangles(scaled, expected)

    def test_rerun_is_idempotent(self):
        grid = np.random.RandomState(13).uniform(-1.0, 1.0, size=(7, 7, 7))
        field = self.make_field(grid)

        first = buffer_triangles(self.mc.extract(field))
        second = buffer_triangles(self.mc.extract(field))
        np.testing.assert_array_equal(sort_rows(first), sort_rows(second))

    def test_boundary_lanes_are_skipped(self):
        s = 4
        grid = np.full((s, s, s), -1.0)
        # A single outside sample on the last x plane
        grid[s - 1, 1, 1] = 1.0
        field = self.make_field(grid)

        self.assertEqual(dispatch_extent(s, self.mc.group_edge), 8)
        self.assertEqual(self.mc.count_triangles(field, 0.0), 4)
        buffer = self.mc.extract(field)
        self.assertEqual(len(buffer), 4)
        self.assert_same_triangles(buffer_triangles(buffer), reference_triangles(grid, 0.0))

    def test_corner_on_surface_level_stays_finite(self):
        grid = np.ones((2, 2, 2))
        grid[0, 0, 0] = 0.0
        field = self.make_field(grid)

        buffer = self.mc.extract(field, MarchingCubesConfig(surface_level=0.0))
        self.assertEqual(len(buffer), 1)
        np.testing.assert_allclose(buffer.vertices()[0], np.zeros((3, 3)), atol=1e-6)
        self.assertTrue(np.isfinite(buffer_triangles(buffer)).all())


class ExtractionTest(MarchingCubesTestBase):

    def make_sphere_field(self, s=9):
        axis = np.arange(s, dtype=np.float32) - (s - 1) / 2.0
        x, y, z = np.meshgrid(axis, axis, axis, indexing="ij")
        return self.make_field(np.sqrt(x * x + y * y + z * z) - (s - 1) / 3.0)

    def test_dispatch_helpers(self):
        self.assertEqual(dispatch_groups(2), 1)
        self.assertEqual(dispatch_groups(9), 1)
        self.assertEqual(dispatch_groups(10), 2)
        self.assertEqual(dispatch_extent(10), 16)
        self.assertEqual(dispatch_extent(10, 4), 12)

    def test_buffer_is_reused_when_large_enough(self):
        field = self.make_sphere_field()
        needed = self.mc.count_triangles(field, 0.0)
        buffer = TriangleBuffer(needed + 10)

        result = self.mc.extract(field, buffer=buffer)
        self.assertIs(result, buffer)
        self.assertEqual(len(result), needed)

        # A second extraction starts from an empty buffer
        result = self.mc.extract(field, buffer=buffer)
        self.assertEqual(len(result), needed)

    def test_buffer_grows_when_too_small(self):
        field = self.make_sphere_field()
        needed = self.mc.count_triangles(field, 0.0)
        buffer = TriangleBuffer(1)

        result = self.mc.extract(field, MarchingCubesConfig(verbose=True), buffer=buffer)
        self.assertIsNot(result, buffer)
        self.assertIs(result, self.mc.buffer)
        self.assertGreaterEqual(result.capacity, needed)
        self.assertEqual(len(result), needed)

    def test_owned_buffer_is_reused_across_levels(self):
        mc = MarchingCubes(min_capacity=64)
        field = self.make_sphere_field(13)
        levels = [1.0, 0.0, -1.0, 0.5, -0.5]
        needed = {level: mc.count_triangles(field, level) for level in levels}
        largest = max(levels, key=lambda level: needed[level])

        first = mc.extract(field, MarchingCubesConfig(surface_level=largest))
        for level in levels:
            buffer = mc.extract(field, MarchingCubesConfig(surface_level=level))
            self.assertIs(buffer, first)
            self.assertEqual(len(buffer), needed[level])
        self.assertEqual(first.capacity, align_size(needed[largest], 64))

    def test_owned_buffer_grows_geometrically(self):
        mc = MarchingCubes(min_capacity=8)
        small = mc.reserve(5)
        self.assertEqual(small.capacity, 8)
        self.assertIs(mc.reserve(8), small)

        grown = mc.reserve(9)
        self.assertIsNot(grown, small)
        self.assertEqual(grown.capacity, 16)
        self.assertEqual(mc.reserve(40).capacity, 40)
        self.assertEqual(mc.reserve(41).capacity, 80)
        with self.assertRaises(AssertionError):
            MarchingCubes(min_capacity=100)

    def test_march_appends_and_detects_overflow(self):
        field = self.make_sphere_field()
        needed = self.mc.count_triangles(field, 0.0)

        buffer = TriangleBuffer(2 * needed)
        self.mc.march(field, buffer)
        self.mc.march(field, buffer)
        self.assertEqual(len(buffer), 2 * needed)

        with self.assertRaises(AssertionError):
            self.mc.march(field, TriangleBuffer(needed - 1))

    def test_triangles_wind_around_their_normals(self):
        field = self.make_sphere_field(17)
        buffer = self.mc.extract(field)
        self.assertGreater(len(buffer), 0)

        vertices = buffer.vertices()
        face_normals = np.cross(vertices[:, 1] - vertices[:, 0], vertices[:, 2] - vertices[:, 0])
        vertex_normals = buffer.normals().mean(axis=1)
        self.assertTrue((np.einsum("ij,ij->i", face_normals, vertex_normals) > 0.0).all())

    def test_sphere_normals_point_outwards(self):
        s = 9
        field = self.make_sphere_field(s)
        buffer = self.mc.extract(field, MarchingCubesConfig(grid_size=1.0))
        self.assertGreater(len(buffer), 0)

        center = (s - 1) / 2.0
        vertices = buffer.vertices().reshape((-1, 3))
        normals = buffer.normals().reshape((-1, 3))
        self.assertTrue((np.einsum("ij,ij->i", vertices - center, normals) > 0.0).all())

    def test_config_preconditions(self):
        with self.assertRaises(AssertionError):
            MarchingCubesConfig(group_edge=6)
        with self.assertRaises(AssertionError):
            MarchingCubesConfig(group_edge=16)
        with self.assertRaises(AssertionError):
            MarchingCubes(group_edge=16)
        with self.assertRaises(AssertionError):
            MarchingCubesConfig(grid_size=float("nan"))
        with self.assertRaises(AssertionError):
            self.mc.extract(self.make_sphere_field(), MarchingCubesConfig(group_edge=4))


if __name__ == '__main__':
    unittest.main()

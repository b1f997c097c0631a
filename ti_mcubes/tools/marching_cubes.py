## @package MarchingCubes extracts a triangulated isosurface from a dense density field
#
import math
import taichi as ti
from ti_mcubes.utils import *
from ti_mcubes.mc_math import edge_parameter, lerp, unit_gradient
from ti_mcubes.mc_tables import *
from ti_mcubes.density_field import DensityField
from ti_mcubes.triangle_buffer import TriangleBuffer


## Parameters of one surface extraction
class MarchingCubesConfig:
    ## @param surface_level The density threshold, samples at or below it count as inside
    #  @param grid_size The world space length of one lattice step
    #  @param group_edge The edge length of a cubic lane group, 8 gives blocks of 512 lanes
    #  @param verbose Log cell and triangle counts of every extraction
    def __init__(self, surface_level=0.0, grid_size=1.0, group_edge=8, verbose=False):
        mc_assert(math.isfinite(surface_level), "Surface level must be finite.")
        mc_assert(math.isfinite(grid_size), "Grid size must be finite.")
        check_group_edge(group_edge)
        self.surface_level = float(surface_level)
        self.grid_size = float(grid_size)
        self.group_edge = group_edge
        self.verbose = verbose


@ti.data_oriented
class MarchingCubes:
    ## @detail Cells are arranged so that:
    # Cell Index: [i, j, k]  <-------> The cell whose lower corner is lattice point [i, j, k]
    # Each cell has corner id from 0 - 7, ordered as in mc_tables:
    #
    #        7 ---------- 6
    #       /|           /|
    #      / |          / |
    #     4 ---------- 5  |
    #     |  |         |  |
    #     |  3 --------|- 2
    #     | /          | /
    #     |/           |/
    #     0 ---------- 1
    #
    # Corner i sets bit i of the configuration index if its density is <= surface level.

    ## @param group_edge The edge length of a cubic lane group
    #  @param min_capacity The smallest triangle buffer \a extract allocates
    def __init__(self, group_edge=8, min_capacity=1024):
        check_group_edge(group_edge)
        mc_assert(is_power_of_two(min_capacity), "Minimum buffer capacity must be a positive power of two.")
        mc_assert(TRI_TABLE.shape == (256, TRI_TABLE_WIDTH), "Triangle table must have 256 rows.")
        mc_assert(EDGE_TO_CORNERS.shape == (MarchingCubeEdge.count, 2), "Edge table must have 12 rows.")
        mc_assert(CORNER_OFFSETS.shape == (MarchingCubeCorner.count, 3), "Corner table must have 8 rows.")

        self.group_edge = group_edge
        self.block_dim = group_edge * group_edge * group_edge
        self.min_capacity = min_capacity
        # Owned by extract, only replaced when a surface outgrows it
        self.buffer = None

        self.triangle_table = ti.field(ti.i32, shape=TRI_TABLE.shape)
        self.triangle_count_table = ti.field(ti.i32, shape=TRI_COUNT_TABLE.shape)
        self.edge_corners = ti.field(ti.i32, shape=EDGE_TO_CORNERS.shape)
        self.corner_offsets = ti.Vector.field(n=3, dtype=ti.i32, shape=MarchingCubeCorner.count)
        self.num_triangles = ti.field(ti.i32, shape=())

        self.triangle_table.from_numpy(TRI_TABLE)
        self.triangle_count_table.from_numpy(TRI_COUNT_TABLE)
        self.edge_corners.from_numpy(EDGE_TO_CORNERS)
        self.corner_offsets.from_numpy(CORNER_OFFSETS)

    ## @param densities A vector of the 8 corner densities in corner order
    #  @param surface_level The density threshold
    #  @return The configuration index in [0, 255]
    @ti.func
    def classify(self, densities, surface_level):
        config = 0
        for w in ti.static(range(8)):
            if densities[w] <= surface_level:
                config += ti.static(1 << w)
        return config

    @ti.func
    def corner_densities(self, field: ti.template(), base):
        densities = ti.Vector.zero(dt=ti.f32, n=8)
        for w in ti.static(range(8)):
            densities[w] = field.sample(base + self.corner_offsets[w])
        return densities

    ## @param coord An integer lattice coordinate
    #  @return The unit density gradient at \a coord, from central differences of clamped samples
    @ti.func
    def estimate_normal(self, field: ti.template(), coord):
        dx = field.sample(coord + ti.Vector([1, 0, 0])) - field.sample(coord - ti.Vector([1, 0, 0]))
        dy = field.sample(coord + ti.Vector([0, 1, 0])) - field.sample(coord - ti.Vector([0, 1, 0]))
        dz = field.sample(coord + ti.Vector([0, 0, 1])) - field.sample(coord - ti.Vector([0, 0, 1]))
        return unit_gradient(dx, dy, dz)

    ## @param coord_a, coord_b The lattice coordinates of the two ends of a cube edge
    #  @param density_a, density_b The densities at \a coord_a and \a coord_b
    #  @return The world space vertex on the edge and its blended normal
    #  @detail: The normal is blended linearly from the two end normals and is not renormalized.
    @ti.func
    def interpolate(self, field: ti.template(), surface_level, grid_size, coord_a, coord_b, density_a, density_b):
        t = edge_parameter(surface_level, density_a, density_b)
        vertex = lerp(ti.cast(coord_a, ti.f32), ti.cast(coord_b, ti.f32), t) * grid_size

        normal_a = self.estimate_normal(field, coord_a)
        normal_b = self.estimate_normal(field, coord_b)
        normal = lerp(normal_a, normal_b, t)
        return vertex, normal

    @ti.func
    def edge_vertex(self, field: ti.template(), surface_level, grid_size, base, edge):
        coord_a = base + self.corner_offsets[self.edge_corners[edge, 0]]
        coord_b = base + self.corner_offsets[self.edge_corners[edge, 1]]
        return self.interpolate(field, surface_level, grid_size, coord_a, coord_b,
                                field.sample(coord_a), field.sample(coord_b))

    ## @param base The lower corner of an interior cell
    #  @detail: Walks the edge triples of the cell configuration until the sentinel and
    #           appends one triangle per triple.
    @ti.func
    def march_cell(self, field: ti.template(), buffer: ti.template(), surface_level, grid_size, base):
        config = self.classify(self.corner_densities(field, base), surface_level)

        # Every row ends with at least one sentinel
        w = 0
        while self.triangle_table[config, w] != TRI_TABLE_SENTINEL:
            # Table triples wind clockwise around the normal, emit them reversed
            vertex_a, normal_a = self.edge_vertex(field, surface_level, grid_size, base,
                                                  self.triangle_table[config, w + 2])
            vertex_b, normal_b = self.edge_vertex(field, surface_level, grid_size, base,
                                                  self.triangle_table[config, w + 1])
            vertex_c, normal_c = self.edge_vertex(field, surface_level, grid_size, base,
                                                  self.triangle_table[config, w])
            buffer.append(vertex_a, vertex_b, vertex_c, normal_a, normal_b, normal_c)
            w += 3

    @ti.kernel
    def march_impl(self, field: ti.template(), buffer: ti.template(), surface_level: ti.f32, grid_size: ti.f32):
        extent = ti.static(dispatch_extent(field.samples_per_axis, self.group_edge))
        ti.loop_config(block_dim=self.block_dim)
        for i, j, k in ti.ndrange(extent, extent, extent):
            base = ti.Vector([i, j, k])
            if field.is_valid_cell(base):
                self.march_cell(field, buffer, surface_level, grid_size, base)

    @ti.kernel
    def count_impl(self, field: ti.template(), surface_level: ti.f32):
        self.num_triangles[None] = 0
        extent = ti.static(dispatch_extent(field.samples_per_axis, self.group_edge))
        ti.loop_config(block_dim=self.block_dim)
        for i, j, k in ti.ndrange(extent, extent, extent):
            base = ti.Vector([i, j, k])
            if field.is_valid_cell(base):
                config = self.classify(self.corner_densities(field, base), surface_level)
                ti.atomic_add(self.num_triangles[None], self.triangle_count_table[config])

    ## @param field The density field to extract the surface from
    #  @param buffer The triangle buffer to append to, it is not cleared
    #  @param surface_level The density threshold
    #  @param grid_size The world space length of one lattice step
    def march(self, field: DensityField, buffer: TriangleBuffer, surface_level=0.0, grid_size=1.0):
        self.march_impl(field, buffer, surface_level, grid_size)
        mc_assert(not buffer.overflowed(),
                  "Triangle buffer overflowed: {} triangles emitted into a capacity of {}.".format(
                      buffer.required_capacity(), buffer.capacity))

    ## @return The exact number of triangles marching \a field at \a surface_level emits
    def count_triangles(self, field: DensityField, surface_level=0.0) -> int:
        self.count_impl(field, surface_level)
        return self.num_triangles[None]

    ## @param num_triangles The number of triangles the next march emits
    #  @param verbose Log when the buffer is replaced
    #  @return The owned triangle buffer, grown geometrically if it holds fewer than \a num_triangles
    def reserve(self, num_triangles, verbose=False) -> TriangleBuffer:
        if self.buffer is not None and self.buffer.capacity >= num_triangles:
            return self.buffer

        old_capacity = 0 if self.buffer is None else self.buffer.capacity
        capacity = align_size(max(num_triangles, 2 * old_capacity, 1), self.min_capacity)
        if verbose:
            mc_log("Growing triangle buffer from {} to {} triangles".format(old_capacity, capacity))
        if self.buffer is not None:
            self.buffer.destroy()
        self.buffer = TriangleBuffer(capacity)
        return self.buffer

    ## @param field The density field to extract the surface from
    #  @param config A MarchingCubesConfig, defaults are used when None
    #  @param buffer A caller buffer used if it is large enough, otherwise the owned buffer is used
    #  @return A cleared-then-filled triangle buffer holding the whole surface. The owned buffer
    #          is overwritten by the next extraction.
    def extract(self, field: DensityField, config: MarchingCubesConfig = None, buffer: TriangleBuffer = None):
        if config is None:
            config = MarchingCubesConfig(group_edge=self.group_edge)
        mc_assert(config.group_edge == self.group_edge,
                  "Config lane group edge {} differs from the kernel's {}.".format(config.group_edge,
                                                                                  self.group_edge))

        num_triangles = self.count_triangles(field, config.surface_level)
        if buffer is None or buffer.capacity < num_triangles:
            buffer = self.reserve(num_triangles, config.verbose)

        buffer.clear()
        self.march(field, buffer, config.surface_level, config.grid_size)

        if config.verbose:
            num_cells = (field.samples_per_axis - 1) ** 3
            mc_log("Marched {} cells in {} lane groups, emitted {} triangles".format(
                num_cells, dispatch_groups(field.samples_per_axis, self.group_edge) ** 3, len(buffer)))
        return buffer

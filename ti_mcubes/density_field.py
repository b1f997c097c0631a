## @package DensityField
# Documentations for a dense, flat-indexed scalar field sampled on a regular lattice
import numbers
import taichi as ti
import numpy as np
from ti_mcubes.utils import *


@ti.data_oriented
class DensityField:
    ## @param samples_per_axis The number of samples S along each axis, the field holds S^3 samples
    #  @param dtype The sample type, ti.f32 or ti.f64
    def __init__(self, samples_per_axis: int, dtype=ti.f32):
        mc_assert(isinstance(samples_per_axis, numbers.Integral), "Samples per axis must be an integer.")
        mc_assert(samples_per_axis >= 2, "A density field needs at least 2 samples per axis.")
        mc_assert(dtype in (ti.f32, ti.f64), "Density samples must be ti.f32 or ti.f64.")

        self.samples_per_axis = int(samples_per_axis)
        self.num_samples = self.samples_per_axis * self.samples_per_axis * self.samples_per_axis
        self.dtype = dtype
        self.np_dtype = np.float64 if dtype == ti.f64 else np.float32
        self.values = ti.field(dtype, shape=self.num_samples)

    ## @param array A numpy array of shape (S, S, S) indexed [x, y, z], or a flat array of S^3 samples
    def from_numpy(self, array):
        array = np.asarray(array, dtype=self.np_dtype)
        s = self.samples_per_axis
        mc_assert(array.shape == (s, s, s) or array.shape == (self.num_samples,),
                  "Expected density samples of shape {} or {}, but got {}.".format((s, s, s), (self.num_samples,),
                                                                                  array.shape))
        self.values.from_numpy(np.ascontiguousarray(array).reshape(-1))

    ## @return The samples as a numpy array of shape (S, S, S) indexed [x, y, z]
    def to_numpy(self):
        s = self.samples_per_axis
        return self.values.to_numpy().reshape((s, s, s))

    ## @param coord An integer lattice coordinate, any axis may lie outside [0, S)
    #  @detail: Each axis is clamped to [0, S - 1] independently before flattening, so
    #           probes one step outside the grid read the nearest boundary sample.
    @ti.func
    def flatten_index(self, coord):
        s = ti.static(self.samples_per_axis)
        i = ti.min(ti.max(coord[0], 0), s - 1)
        j = ti.min(ti.max(coord[1], 0), s - 1)
        k = ti.min(ti.max(coord[2], 0), s - 1)
        return i * s * s + j * s + k

    @ti.func
    def sample(self, coord):
        return self.values[self.flatten_index(coord)]

    ## @param base The lower corner of a cell
    #  @return If all 8 corners of the cell lie inside the grid
    @ti.func
    def is_valid_cell(self, base):
        s = ti.static(self.samples_per_axis)
        return 0 <= base[0] and base[0] < s - 1 and \
            0 <= base[1] and base[1] < s - 1 and \
            0 <= base[2] and base[2] < s - 1


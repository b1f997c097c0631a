## @package TriangleBuffer
# An append-only triangle collection shared by all lanes of a marching cubes launch
import taichi as ti
import numpy as np
from ti_mcubes.utils import *


Triangle = ti.types.struct(
    vertex_a=ti.math.vec3, vertex_b=ti.math.vec3, vertex_c=ti.math.vec3,
    normal_a=ti.math.vec3, normal_b=ti.math.vec3, normal_c=ti.math.vec3,
)


@ti.data_oriented
class TriangleBuffer:
    members = ["vertex_a", "vertex_b", "vertex_c", "normal_a", "normal_b", "normal_c"]

    ## @param capacity The number of triangles the buffer can hold
    #  @detail: The counter keeps counting past \a capacity, so a launch that runs out of
    #           slots reports how many it needed. Writes past capacity are dropped.
    def __init__(self, capacity: int):
        mc_assert(capacity >= 0, "Triangle buffer capacity must be non-negative.")
        self.capacity = capacity
        self.count = ti.field(dtype=ti.i32)
        self.triangles = Triangle.field()

        # Own snode tree so the storage can be released by destroy
        fb = ti.FieldsBuilder()
        fb.place(self.count)
        # Taichi fields cannot be empty
        fb.dense(ti.i, max(capacity, 1)).place(self.triangles)
        self.snode_tree = fb.finalize()

    ## @detail: Claims a slot with an atomic counter, then writes only that slot
    @ti.func
    def append(self, vertex_a, vertex_b, vertex_c, normal_a, normal_b, normal_c):
        slot = ti.atomic_add(self.count[None], 1)
        if slot < ti.static(self.capacity):
            self.triangles[slot].vertex_a = vertex_a
            self.triangles[slot].vertex_b = vertex_b
            self.triangles[slot].vertex_c = vertex_c
            self.triangles[slot].normal_a = normal_a
            self.triangles[slot].normal_b = normal_b
            self.triangles[slot].normal_c = normal_c

    ## @detail: Frees the storage, the buffer must not be used afterwards
    def destroy(self):
        self.snode_tree.destroy()

    def clear(self):
        self.count[None] = 0

    def required_capacity(self) -> int:
        return self.count[None]

    def overflowed(self) -> bool:
        return self.count[None] > self.capacity

    def __len__(self):
        return min(self.count[None], self.capacity)

    ## @return A dict of (N, 3) numpy arrays, one per triangle member, for the N written triangles
    def to_numpy(self):
        n = len(self)
        data = self.triangles.to_numpy()
        return {name: data[name][:n] for name in TriangleBuffer.members}

    ## @return The vertices of the written triangles as an (N, 3, 3) numpy array
    def vertices(self):
        data = self.to_numpy()
        return np.stack([data["vertex_a"], data["vertex_b"], data["vertex_c"]], axis=1)

    ## @return The normals of the written triangles as an (N, 3, 3) numpy array
    def normals(self):
        data = self.to_numpy()
        return np.stack([data["normal_a"], data["normal_b"], data["normal_c"]], axis=1)

import os.path
import sys
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
import numpy as np
import taichi as ti
from ti_mcubes.density_field import DensityField
from ti_mcubes.tools.marching_cubes import *

ti.init(arch=ti.cpu, offline_cache=True, debug=False, kernel_profiler=True)

samples_per_axis = 65
grid_size = 1.0 / (samples_per_axis - 1)
sphere_radius = 0.35
export_mesh = True


def sphere_sdf(s, radius):
    axis = np.linspace(0.0, 1.0, s, dtype=np.float32)
    x, y, z = np.meshgrid(axis, axis, axis, indexing="ij")
    return np.sqrt((x - 0.5) ** 2 + (y - 0.5) ** 2 + (z - 0.5) ** 2) - radius


if __name__ == "__main__":
    field = DensityField(samples_per_axis)
    field.from_numpy(sphere_sdf(samples_per_axis, sphere_radius))

    mc = MarchingCubes()
    config = MarchingCubesConfig(surface_level=0.0, grid_size=grid_size, verbose=True)
    buffer = mc.extract(field, config)
    print(f"Generated {len(buffer)} triangles")

    if export_mesh:
        # Triangles do not share vertices
        arr_vertices = buffer.vertices().reshape((-1, 3))
        arr_normals = buffer.normals().reshape((-1, 3))
        writer = ti.tools.PLYWriter(num_vertices=arr_vertices.shape[0], num_faces=len(buffer), face_type="tri")
        writer.add_vertex_pos(arr_vertices[:, 0], arr_vertices[:, 1], arr_vertices[:, 2])
        writer.add_vertex_normal(arr_normals[:, 0], arr_normals[:, 1], arr_normals[:, 2])
        writer.add_faces(np.arange(arr_vertices.shape[0], dtype=np.int32))
        writer.export("sphere.ply")

    ti.profiler.print_kernel_profiler_info()

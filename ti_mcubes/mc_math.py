import taichi as ti


## @param surface_level The iso value the surface passes through
#  @param density_a, density_b The densities at the two ends of a cube edge
#  @detail: Returns where the surface crosses the edge as a fraction from end a to end b.
#           The denominator is not guarded: equal densities give a non-finite result.
@ti.func
def edge_parameter(surface_level, density_a, density_b):
    return (surface_level - density_a) / (density_b - density_a)


@ti.func
def lerp(a, b, t):
    return a + t * (b - a)


## @param dx, dy, dz The central differences of a scalar field along x, y and z
#  @detail: Returns the unit gradient. A zero gradient normalizes to NaN.
@ti.func
def unit_gradient(dx, dy, dz):
    return ti.Vector([dx, dy, dz]).normalized()

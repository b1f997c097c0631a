def align_size(x, align):
    return (x + (align - 1)) & ~(align - 1)


def is_power_of_two(x: int) -> bool:
    return x > 0 and (x & (x - 1)) == 0


## @param samples_per_axis The number of density samples along each axis
#  @param group_edge The edge length of a cubic lane group, a power of two
#  @return Number of lane groups along each axis needed to cover all interior cells
def dispatch_groups(samples_per_axis: int, group_edge: int = 8) -> int:
    return align_size(samples_per_axis - 1, group_edge) // group_edge


## @return Number of lanes along each axis, padded up to whole lane groups
def dispatch_extent(samples_per_axis: int, group_edge: int = 8) -> int:
    return dispatch_groups(samples_per_axis, group_edge) * group_edge


def mc_assert(expr: bool, log_str: str):
    assert expr, ">>>> [MC]: " + log_str


def mc_log(log_str: str):
    print(">> [MC]: {}".format(log_str))


## Lanes per block may not exceed the CUDA per-block thread limit
MAX_BLOCK_DIM = 1024


## @param group_edge The edge length of a cubic lane group
#  @detail: Asserts that a group is a power-of-two cube fitting in one block
def check_group_edge(group_edge: int):
    mc_assert(is_power_of_two(group_edge), "Lane group edge must be a positive power of two.")
    mc_assert(group_edge * group_edge * group_edge <= MAX_BLOCK_DIM,
              "Lane group of edge {} exceeds {} lanes per block.".format(group_edge, MAX_BLOCK_DIM))


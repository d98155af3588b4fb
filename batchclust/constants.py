# Requested reservation durations are inflated by this factor to absorb
# execution-time estimation error.
EXECUTION_TIME_FUDGE_FACTOR = 1.1

# Level-by-level never keeps more levels in flight than this.
MAX_ONGOING_LEVELS = 2

DEFAULT_CORES_PER_NODE = 1

# Batch service argument keys (SLURM-style)
ARG_NUM_NODES = '-N'
ARG_CORES_PER_NODE = '-c'
ARG_WALL_TIME_MINUTES = '-t'

clustering_policies = {
  'hc': 'horizontal clustering, fixed number of tasks per cluster',
  'dfjs': 'horizontal clustering, fixed runtime budget per cluster',
  'hrb': 'horizontal runtime balancing',
}

unsupported_clustering_policies = {
  'spsc': 'single-parent/single-child merging',
  'vc': 'variance-based clustering',
  'hifb': 'horizontal impact-factor balancing',
  'hdb': 'horizontal distance balancing',
}

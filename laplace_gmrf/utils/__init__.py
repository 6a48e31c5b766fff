"""
Utility functions for latent Gaussian models.

This subpackage contains helper functions organized into modules:
    - sparse: scipy <-> torch COO conversion and union patterns
    - mesh: Triangulations and projector matrices for SPDE fields
    - spline: B-spline bases, difference penalties, factor indicators
    - diagnostics: Sparsity checks and model comparison
    - data: Synthetic data generation (import from laplace_gmrf.utils.data;
      it builds on the precision families, which depend on this subpackage)
"""

# Sparse helpers
from .sparse import (
    to_coo_triplets,
    align_to_union,
    triplets_to_scipy,
)

# Mesh utilities
from .mesh import (
    triangulate,
    regular_mesh,
    projector_matrix,
)

# Spline utilities
from .spline import (
    bspline_design,
    difference_penalty,
    indicator_design,
    absorb_sum_to_zero,
)

# Diagnostics
from .diagnostics import (
    sparsity_pattern,
    pattern_union,
    is_symmetric,
    compute_aic,
    compare_models,
)

__all__ = [
    # Sparse
    'to_coo_triplets',
    'align_to_union',
    'triplets_to_scipy',
    # Mesh
    'triangulate',
    'regular_mesh',
    'projector_matrix',
    # Spline
    'bspline_design',
    'difference_penalty',
    'indicator_design',
    'absorb_sum_to_zero',
    # Diagnostics
    'sparsity_pattern',
    'pattern_union',
    'is_symmetric',
    'compute_aic',
    'compare_models',
]

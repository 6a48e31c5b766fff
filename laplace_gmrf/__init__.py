"""
Laplace GMRF: Laplace-approximate estimation of latent Gaussian models

A Python package for maximum marginal likelihood estimation of models with
sparse Gaussian Markov random field (GMRF) latent structure: SPDE (Matern)
spatial fields, penalized splines, random walks and random effects, combined
with non-Gaussian observation likelihoods.

Main Components:
    - structures: Hyperparameter-independent structural matrices
    - precision: Sparse precision matrices and latent-field families
    - link: Maps from latent coordinates to observations
    - density, likelihoods, priors: Terms of the joint objective
    - models: The latent Gaussian model (objective assembler)
    - inference: Laplace approximation and standard-error reporting
    - utils: Meshes, spline bases, data generation, diagnostics
"""

__version__ = "0.1.0"
__author__ = "Sean Plummer"
__license__ = "MIT"

# Errors
from .exceptions import (
    LaplaceGMRFError,
    StructuralError,
    SingularPrecisionError,
    InnerConvergenceError,
    ConfigurationError,
)

# Structural matrices
from .structures import (
    SPDEStructure,
    SplineStructure,
    RandomWalkStructure,
    IIDStructure,
    build_spde_structure,
    build_spline_structure,
    build_random_walk_structure,
    build_iid_structure,
)

# Precision assembly and latent-field families
from .precision import (
    PrecisionMatrix,
    PrecisionFamily,
    SPDEPrecision,
    SplinePrecision,
    RandomWalkPrecision,
    IIDPrecision,
)
from .recruitment import (
    RecruitmentProcess,
    RecruitmentMode,
    RandomWalk,
    Ricker,
    BevertonHolt,
    recruitment_mode,
)

# Objective terms
from .link import LinkMap, FieldConvention
from .density import gmrf_nll, independent_gaussian_nll
from .likelihoods import (
    ObservationFamily,
    Gaussian,
    CensoredWeibull,
    Binomial,
    Poisson,
    LIKELIHOODS,
    get_likelihood,
)
from .priors import HyperPrior
from .parameters import ParameterLayout

# Models and inference
from .models import LatentComponent, LatentGaussianModel, EvaluationMode
from .inference import LaplaceApproximation, LaplaceReport

# Most commonly used utilities (convenient imports)
from .utils import (
    # Mesh and basis construction
    triangulate,
    regular_mesh,
    projector_matrix,
    bspline_design,
    difference_penalty,
    indicator_design,
    # Diagnostics
    sparsity_pattern,
    compare_models,
)
from .utils.data import (
    generate_survival_data,
    generate_spline_data,
    generate_recruitment_data,
    generate_grouped_data,
)

__all__ = [
    # Version info
    '__version__',
    # Errors
    'LaplaceGMRFError',
    'StructuralError',
    'SingularPrecisionError',
    'InnerConvergenceError',
    'ConfigurationError',
    # Structures
    'SPDEStructure',
    'SplineStructure',
    'RandomWalkStructure',
    'IIDStructure',
    'build_spde_structure',
    'build_spline_structure',
    'build_random_walk_structure',
    'build_iid_structure',
    # Precision
    'PrecisionMatrix',
    'PrecisionFamily',
    'SPDEPrecision',
    'SplinePrecision',
    'RandomWalkPrecision',
    'IIDPrecision',
    'RecruitmentProcess',
    'RecruitmentMode',
    'RandomWalk',
    'Ricker',
    'BevertonHolt',
    'recruitment_mode',
    # Objective terms
    'LinkMap',
    'FieldConvention',
    'gmrf_nll',
    'independent_gaussian_nll',
    'ObservationFamily',
    'Gaussian',
    'CensoredWeibull',
    'Binomial',
    'Poisson',
    'LIKELIHOODS',
    'get_likelihood',
    'HyperPrior',
    'ParameterLayout',
    # Models and inference
    'LatentComponent',
    'LatentGaussianModel',
    'EvaluationMode',
    'LaplaceApproximation',
    'LaplaceReport',
    # Utils
    'triangulate',
    'regular_mesh',
    'projector_matrix',
    'bspline_design',
    'difference_penalty',
    'indicator_design',
    'sparsity_pattern',
    'compare_models',
    'generate_survival_data',
    'generate_spline_data',
    'generate_recruitment_data',
    'generate_grouped_data',
]


# Package-level configuration
def get_config():
    """Get current package configuration."""
    return {
        'version': __version__,
        'author': __author__,
        'license': __license__,
        'likelihoods': sorted(set(cls.name for cls in LIKELIHOODS.values())),
        'recruitment_modes': ['random_walk', 'ricker', 'beverton_holt'],
    }


def print_info():
    """Print package information."""
    print(f"Laplace GMRF v{__version__}")
    print(f"Author: {__author__}")
    print(f"License: {__license__}")
    print("\nLatent-field families:")
    print("  - SPDEPrecision: Matern field on a triangulated domain")
    print("  - SplinePrecision: Penalized spline smooths")
    print("  - RandomWalkPrecision: First-order random walk")
    print("  - IIDPrecision: Independent random effects")
    print("  - RecruitmentProcess: Random walk / Ricker / Beverton-Holt recruitment")
    print("\nObservation likelihoods:")
    for name in get_config()['likelihoods']:
        print(f"  - {name}")

"""
Exception hierarchy for latent Gaussian model estimation.
"""


class LaplaceGMRFError(Exception):
    """Base class for all package errors."""


class StructuralError(LaplaceGMRFError, ValueError):
    """Invalid geometry or basis input (degenerate mesh, bad penalty, size mismatch)."""


class SingularPrecisionError(LaplaceGMRFError, ArithmeticError):
    """Precision (or Hessian) matrix is not positive-definite where a determinant is required."""


class InnerConvergenceError(LaplaceGMRFError, RuntimeError):
    """Inner optimization over the latent field failed to converge."""

    def __init__(self, message: str, n_iterations: int = 0, grad_norm: float = float('nan')):
        super().__init__(message)
        self.n_iterations = n_iterations
        self.grad_norm = grad_norm


class ConfigurationError(LaplaceGMRFError, ValueError):
    """Unrecognized family, mode or parameter selection, or invalid data at load time."""

"""
Flat-vector layout of named parameters.

The outer optimizer works on a flat vector; the model works on a dict of
named tensors. ParameterLayout converts between the two.
"""
from collections import OrderedDict
from typing import Dict, List

import torch

from laplace_gmrf.exceptions import ConfigurationError


class ParameterLayout:
    """
    Ordered collection of named parameter blocks with their initial values.

    Example:
        >>> layout = ParameterLayout()
        >>> layout.add('beta', torch.zeros(3))
        >>> layout.add('likelihood.log_sigma', torch.tensor(0.0))
        >>> layout.size
        4
    """

    def __init__(self):
        self._init = OrderedDict()

    def add(self, name: str, init: torch.Tensor) -> None:
        if name in self._init:
            raise ConfigurationError(f"duplicate parameter name: {name!r}")
        self._init[name] = torch.as_tensor(init, dtype=torch.float64).detach().clone()

    def __contains__(self, name: str) -> bool:
        return name in self._init

    def __len__(self) -> int:
        return len(self._init)

    @property
    def names(self) -> List[str]:
        return list(self._init)

    @property
    def size(self) -> int:
        return int(sum(t.numel() for t in self._init.values()))

    def shape(self, name: str) -> torch.Size:
        return self._init[name].shape

    def initial_vector(self) -> torch.Tensor:
        if not self._init:
            return torch.zeros(0, dtype=torch.float64)
        return torch.cat([t.reshape(-1) for t in self._init.values()])

    def unflatten(self, vector: torch.Tensor) -> Dict[str, torch.Tensor]:
        """Split a flat vector into named tensors (views keep autograd history)."""
        if vector.numel() != self.size:
            raise ConfigurationError(f"expected {self.size} parameter values, got {vector.numel()}")
        out = OrderedDict()
        offset = 0
        for name, init in self._init.items():
            n = init.numel()
            out[name] = vector[offset:offset + n].reshape(init.shape)
            offset += n
        return out

    def flatten(self, params: Dict[str, torch.Tensor]) -> torch.Tensor:
        missing = [name for name in self._init if name not in params]
        if missing:
            raise ConfigurationError(f"missing parameters: {missing}")
        extra = [name for name in params if name not in self._init]
        if extra:
            raise ConfigurationError(f"unknown parameters: {extra}")
        if not self._init:
            return torch.zeros(0, dtype=torch.float64)
        parts = []
        for name, init in self._init.items():
            value = torch.as_tensor(params[name], dtype=torch.float64)
            if value.shape != init.shape:
                raise ConfigurationError(
                    f"parameter {name!r} has shape {tuple(value.shape)}, expected {tuple(init.shape)}"
                )
            parts.append(value.reshape(-1))
        return torch.cat(parts)

    def labels(self) -> List[str]:
        """One label per flat entry, e.g. 'beta[1]' for vector blocks."""
        labels = []
        for name, init in self._init.items():
            if init.dim() == 0:
                labels.append(name)
            else:
                labels.extend(f"{name}[{i}]" for i in range(init.numel()))
        return labels

    def __repr__(self) -> str:
        body = ', '.join(f"{n}{tuple(t.shape)}" for n, t in self._init.items())
        return f"ParameterLayout({body})"

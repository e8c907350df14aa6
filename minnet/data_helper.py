"""
Helpers for synthesizing small regression and sequence datasets.

Training code consumes plain lists of row tensors; the containers here keep the
dense tensors around and hand out rows on demand.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Union

import torch


def as_rows(data: Union[torch.Tensor, Sequence]) -> List[torch.Tensor]:
    """Split a 2-D tensor (or convert a row sequence) into a list of flat float rows."""
    if isinstance(data, torch.Tensor):
        return [row for row in data.reshape(data.shape[0], -1).to(torch.float32)]
    return [torch.as_tensor(row, dtype=torch.float32).reshape(-1) for row in data]


@dataclass
class RegressionDataset:
    """
    Paired ``[N, n_in]`` inputs and ``[N, n_out]`` targets.
    """

    x: torch.Tensor
    y: torch.Tensor

    def __post_init__(self) -> None:
        if self.x.dim() != 2 or self.y.dim() != 2:
            raise ValueError("RegressionDataset expects 2-D x and y tensors.")
        if self.x.shape[0] != self.y.shape[0]:
            raise ValueError("x and y must hold the same number of samples.")
        self.x = self.x.to(torch.float32).contiguous()
        self.y = self.y.to(torch.float32).contiguous()

    def __len__(self) -> int:
        return int(self.x.shape[0])

    @property
    def n_in(self) -> int:
        return int(self.x.shape[1])

    @property
    def n_out(self) -> int:
        return int(self.y.shape[1])

    def metadata(self) -> Dict[str, int]:
        return {"num_samples": len(self), "n_in": self.n_in, "n_out": self.n_out}

    def summary(self) -> str:
        meta = self.metadata()
        return f"{meta['num_samples']} samples × {meta['n_in']} inputs → {meta['n_out']} outputs"


def synthesize_regression(
    n: int,
    n_in: int,
    n_out: int,
    *,
    seed: int = 7,
    noise: float = 0.01,
) -> RegressionDataset:
    """
    Targets are a fixed random linear map of the inputs squashed through ``tanh``, plus noise.
    """
    generator = torch.Generator().manual_seed(seed)
    x = torch.rand(n, n_in, generator=generator) * 2.0 - 1.0
    weight = torch.randn(n_in, n_out, generator=generator) / math.sqrt(n_in)
    y = torch.tanh(x @ weight)
    if noise > 0:
        y = y + noise * torch.randn(n, n_out, generator=generator)
    return RegressionDataset(x=x, y=y)


@dataclass
class SequenceDataset:
    """
    ``[N, T, n_in]`` inputs with ``[N, T, n_out]`` per-step targets.
    """

    x: torch.Tensor
    y: torch.Tensor

    def __post_init__(self) -> None:
        if self.x.dim() != 3 or self.y.dim() != 3:
            raise ValueError("SequenceDataset expects [N, T, D] tensors.")
        if self.x.shape[:2] != self.y.shape[:2]:
            raise ValueError("x and y must agree on samples and sequence length.")

    def __len__(self) -> int:
        return int(self.x.shape[0])

    @property
    def seq_len(self) -> int:
        return int(self.x.shape[1])

    def step_buffers(self, index: Optional[Sequence[int]] = None) -> Tuple[List[torch.Tensor], List[torch.Tensor]]:
        """
        Per-step dense buffers for a batch of sequences, one ``[B * D]`` tensor per step.

        This is the layout an unrolled model binds: one INPUT and one TRUTH leaf per step.
        """
        idx = torch.arange(len(self)) if index is None else torch.as_tensor(list(index))
        xs = [self.x[idx, t, :].reshape(-1).contiguous() for t in range(self.seq_len)]
        ys = [self.y[idx, t, :].reshape(-1).contiguous() for t in range(self.seq_len)]
        return xs, ys


def synthesize_running_mean(
    n: int,
    seq_len: int,
    *,
    seed: int = 7,
) -> SequenceDataset:
    """
    Scalar sequences whose per-step target is the running mean of the inputs so far.
    """
    generator = torch.Generator().manual_seed(seed)
    x = torch.rand(n, seq_len, 1, generator=generator) * 2.0 - 1.0
    steps = torch.arange(1, seq_len + 1, dtype=torch.float32).view(1, seq_len, 1)
    y = torch.cumsum(x, dim=1) / steps
    return SequenceDataset(x=x, y=y)

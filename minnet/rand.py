# minnet/rand.py

from __future__ import annotations

from typing import List, Optional

import torch


class RandomSource:
    """
    Seeded generator shared by a model and the models unrolled from it.

    Used for shuffling training rows and for weight initialisation.
    """

    def __init__(self, seed: int = 11) -> None:
        self.seed = int(seed)
        self.generator = torch.Generator().manual_seed(self.seed)

    def drand(self) -> float:
        """Uniform float in [0, 1)."""
        return float(torch.rand(1, generator=self.generator).item())

    def uniform(self, *shape: int, low: float = 0.0, high: float = 1.0) -> torch.Tensor:
        return low + (high - low) * torch.rand(*shape, generator=self.generator)

    def shuffle(self, n: int, *arrays: Optional[List]) -> None:
        """
        Apply one random permutation to the first ``n`` entries of every array, in place.

        ``None`` entries are skipped so optional parallel arrays can be passed through.
        """
        targets = [a for a in arrays if a is not None]
        for a in targets:
            if len(a) < n:
                raise ValueError(f"Cannot shuffle {n} entries of an array of length {len(a)}.")
        for i in range(n, 1, -1):
            j = int(self.drand() * i)
            for a in targets:
                a[i - 1], a[j] = a[j], a[i - 1]


def glorot(rng: RandomSource, n_out: int, n_in: int) -> torch.Tensor:
    """Uniform Glorot/Xavier initialisation for an ``[n_out, n_in]`` weight."""
    bound = (6.0 / (n_in + n_out)) ** 0.5
    return rng.uniform(n_out, n_in, low=-bound, high=bound)

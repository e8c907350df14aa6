# minnet/arena.py

from __future__ import annotations

from typing import Iterable, List, Sequence, Tuple

import torch

from .errors import CollationError
from .graph import Node


class ParamArena:
    """
    Owner of the flat parameter and gradient buffers of a model.

    Variable nodes keep an (offset, length) pair into the arena and resolve their
    ``x``/``g`` through ``param_view``/``grad_view``; nothing else owns trainable
    storage once a model is collated.
    """

    def __init__(self, n_par: int) -> None:
        if n_par < 0:
            raise ValueError("n_par must be >= 0")
        self.params = torch.zeros(n_par, dtype=torch.float32)
        self.grads = torch.zeros(n_par, dtype=torch.float32)

    def __len__(self) -> int:
        return int(self.params.numel())

    def param_view(self, offset: int, shape: Sequence[int]) -> torch.Tensor:
        n = _numel(shape)
        return self.params.narrow(0, offset, n).view(list(shape))

    def grad_view(self, offset: int, shape: Sequence[int]) -> torch.Tensor:
        n = _numel(shape)
        return self.grads.narrow(0, offset, n).view(list(shape))

    def attach(self, nodes: Iterable[Node], *, copy_values: bool) -> List[Tuple[Node, int]]:
        """
        Assign every variable in ``nodes`` the next free slice, scanning left to right.

        With ``copy_values`` the variable's private values are moved into the arena first
        (collation); without it the arena already holds the values (deserialisation).
        Returns the ``(node, offset)`` layout. The scan must end exactly at ``len(self)``.
        """
        layout: List[Tuple[Node, int]] = []
        j = 0
        for p in nodes:
            if not p.is_var:
                continue
            n = p.size
            if j + n > len(self):
                raise CollationError(
                    f"Variable {p!r} does not fit in the arena ({j + n} > {len(self)})."
                )
            if copy_values:
                if p.x is None:
                    raise CollationError(f"Variable {p!r} has no values to collate.")
                self.params.narrow(0, j, n).copy_(p.x.reshape(-1))
            p.attach(self, j)
            layout.append((p, j))
            j += n
        if j != len(self):
            raise CollationError(f"Parameter offsets end at {j}, expected {len(self)}.")
        return layout


def _numel(shape: Sequence[int]) -> int:
    n = 1
    for dim in shape:
        n *= int(dim)
    return n

# minnet/optim.py

from __future__ import annotations

import enum
from typing import Optional

import torch


class UpdateRule(str, enum.Enum):
    SGD = "sgd"
    RMSPROP = "rmsprop"
    ADAM = "adam"


class BatchMode(str, enum.Enum):
    CONST = "const"  # gradients arrive already averaged over the mini-batch
    SUM = "sum"  # gradients are summed over the mini-batch; divide by its size


class Minimizer:
    """
    In-place optimizer over a flat parameter vector.

    Responsibilities:
      - Keep per-parameter state for the selected update rule.
      - Apply one step to ``params`` from ``grads`` (both flat, same length).
    """

    def __init__(
        self,
        rule: UpdateRule = UpdateRule.RMSPROP,
        batch_mode: BatchMode = BatchMode.CONST,
        n_par: int = 0,
        *,
        lr: float = 0.01,
        decay: float = 0.9,
        beta2: float = 0.999,
        eps: float = 1e-6,
    ) -> None:
        self.rule = UpdateRule(rule)
        self.batch_mode = BatchMode(batch_mode)
        self.n_par = int(n_par)
        self.lr = float(lr)
        self.decay = float(decay)
        self.beta2 = float(beta2)
        self.eps = float(eps)
        self.steps = 0
        self._first: Optional[torch.Tensor] = None
        self._second: Optional[torch.Tensor] = None
        self._init_state()

    def _init_state(self) -> None:
        if self.rule in (UpdateRule.RMSPROP, UpdateRule.ADAM):
            self._second = torch.zeros(self.n_par)
        if self.rule == UpdateRule.ADAM:
            self._first = torch.zeros(self.n_par)

    def mini_update(
        self,
        grads: torch.Tensor,
        params: torch.Tensor,
        batch_size: Optional[int] = None,
    ) -> None:
        """Apply one update to ``params`` in place."""
        if grads.numel() != self.n_par or params.numel() != self.n_par:
            raise ValueError(
                f"Minimizer expects {self.n_par} parameters, got params={params.numel()} grads={grads.numel()}"
            )
        g = grads
        if self.batch_mode == BatchMode.SUM:
            if not batch_size:
                raise ValueError("BatchMode.SUM requires the mini-batch size.")
            g = grads / float(batch_size)
        self.steps += 1
        if self.rule == UpdateRule.SGD:
            params.sub_(self.lr * g)
        elif self.rule == UpdateRule.RMSPROP:
            assert self._second is not None
            self._second.mul_(self.decay).add_((1.0 - self.decay) * g * g)
            params.sub_(self.lr * g / torch.sqrt(self._second + self.eps))
        else:
            assert self._first is not None and self._second is not None
            self._first.mul_(self.decay).add_((1.0 - self.decay) * g)
            self._second.mul_(self.beta2).add_((1.0 - self.beta2) * g * g)
            m_hat = self._first / (1.0 - self.decay ** self.steps)
            v_hat = self._second / (1.0 - self.beta2 ** self.steps)
            params.sub_(self.lr * m_hat / (torch.sqrt(v_hat) + self.eps))

    def close(self) -> None:
        """Release optimizer state."""
        self._first = None
        self._second = None

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, List, Mapping, Optional, Sequence

import torch

from . import diagnostics as minnet_diagnostics
from .data_helper import as_rows
from .model import Model
from .optim import BatchMode, Minimizer, UpdateRule


@dataclass(frozen=True)
class TrainConfig:
    lr: float = 0.01
    validation_fraction: float = 0.1
    mb_size: int = 64
    # Reserved: carried with the configuration but not consulted by the loop.
    epoch_lazy: int = 10
    max_epoch: int = 100
    decay: float = 0.9
    update_rule: str = "rmsprop"
    verbose: int = 3
    log_gradients: bool = False

    def __post_init__(self) -> None:
        if self.mb_size < 1:
            raise ValueError("mb_size must be >= 1")
        if self.max_epoch < 0:
            raise ValueError("max_epoch must be >= 0")
        UpdateRule(self.update_rule)

    def minimizer(self, n_par: int) -> Minimizer:
        return Minimizer(
            UpdateRule(self.update_rule),
            BatchMode.CONST,
            n_par,
            lr=self.lr,
            decay=self.decay,
        )


@dataclass
class EpochStats:
    train_cost: float
    val_cost: Optional[float]


def validation_size(n: int, fraction: float) -> int:
    """Rows held out for validation; zero unless ``0 < fraction < 1``."""
    if 0.0 < fraction < 1.0:
        return int(fraction * n + 0.499)
    return 0


class Trainer:
    """
    Mini-batch training of a feed-forward Model over paired input/target rows.

    Responsibilities:
      - Shuffle all rows once and split off a validation suffix.
      - Per epoch: reshuffle the training prefix, step the minimizer over contiguous
        mini-batches, then evaluate the validation suffix without stepping.
      - Report per-epoch average costs through ``print`` when ``config.verbose >= 3``.
    """

    def __init__(
        self,
        model: Model,
        x: Sequence,
        y: Sequence,
        config: TrainConfig,
    ) -> None:
        # Row lists are private copies; the row tensors stay caller-owned.
        self.model = model
        self.config = config
        self.x: List[torch.Tensor] = as_rows(x)
        self.y: List[torch.Tensor] = as_rows(y)
        if len(self.x) != len(self.y):
            raise ValueError(f"Got {len(self.x)} inputs but {len(self.y)} targets.")
        self.n_validate = 0
        self.n_train = len(self.x)
        self.minimizer: Optional[Minimizer] = None
        self._bx: Optional[torch.Tensor] = None
        self._by: Optional[torch.Tensor] = None

    @property
    def train_rows(self) -> List[torch.Tensor]:
        return self.x[: self.n_train]

    @property
    def validation_rows(self) -> List[torch.Tensor]:
        return self.x[self.n_train :]

    def partition(self) -> None:
        n = len(self.x)
        self.model.rng.shuffle(n, self.x, self.y)
        self.n_validate = validation_size(n, self.config.validation_fraction)
        self.n_train = n - self.n_validate

    def run(self) -> List[EpochStats]:
        history: List[EpochStats] = []
        self.partition()
        n_in = self.model.n_in
        n_out = self.model.n_out
        self._bx = torch.empty(self.config.mb_size * n_in)
        self._by = torch.empty(self.config.mb_size * n_out)
        self.minimizer = self.config.minimizer(self.model.n_par)
        try:
            for epoch in range(1, self.config.max_epoch + 1):
                self.model.rng.shuffle(self.n_train, self.x, self.y)
                train_cost = self._run_split(0, self.n_train, self.minimizer)
                val_cost = (
                    self._run_split(self.n_train, self.n_validate, None) if self.n_validate > 0 else None
                )
                stats = EpochStats(
                    train_cost=train_cost / max(1, self.n_train),
                    val_cost=None if val_cost is None else val_cost / self.n_validate,
                )
                history.append(stats)
                self._log_epoch(epoch, stats)
        finally:
            self._release()
        return history

    def _run_split(self, start: int, count: int, minimizer: Optional[Minimizer]) -> float:
        assert self._bx is not None and self._by is not None
        n_in = self.model.n_in
        n_out = self.model.n_out
        total = 0.0
        n_proc = 0
        while n_proc < count:
            mb = min(self.config.mb_size, count - n_proc)
            bx = self._bx[: mb * n_in]
            by = self._by[: mb * n_out]
            for j in range(mb):
                row = start + n_proc + j
                bx[j * n_in : (j + 1) * n_in].copy_(self.x[row])
                by[j * n_out : (j + 1) * n_out].copy_(self.y[row])
            total += self.model.train_minibatch(minimizer, mb, [bx], [by]) * mb
            n_proc += mb
        return total

    def _log_epoch(self, epoch: int, stats: EpochStats) -> None:
        if self.config.verbose < 3:
            return
        if stats.val_cost is None:
            print(f"[epoch {epoch}] running cost: {stats.train_cost:.6g}")
        else:
            print(
                f"[epoch {epoch}] running cost: {stats.train_cost:.6g}; "
                f"validation cost: {stats.val_cost:.6g}"
            )
        if self.config.log_gradients:
            text = minnet_diagnostics.summarize_gradients(self.model).to_text(top_k=5)
            for line in text.splitlines():
                print(f"    {line}")

    def _release(self) -> None:
        if self.minimizer is not None:
            self.minimizer.close()
        self.minimizer = None
        self._bx = None
        self._by = None


def train_fnn(
    config: TrainConfig,
    model: Model,
    x: Sequence,
    y: Sequence,
) -> List[EpochStats]:
    """
    Train a feed-forward model on paired rows for exactly ``config.max_epoch`` epochs.

    Returns the per-epoch average training (and validation) costs.
    """
    return Trainer(model, x, y, config).run()


def train_config_from_mapping(cfg: Mapping[str, Any]) -> TrainConfig:
    """
    Build a TrainConfig from a plain mapping (e.g. a parsed YAML/JSON block).

    ``lr`` and ``max_epoch`` are required; other known keys are copied when present.
    """
    required = ("lr", "max_epoch")
    missing = [key for key in required if key not in cfg]
    if missing:
        raise KeyError(f"Training config missing required keys: {', '.join(missing)}")
    known = {f.name for f in fields(TrainConfig)}
    unknown = sorted(set(cfg) - known)
    if unknown:
        raise KeyError(f"Unknown training config keys: {', '.join(unknown)}")
    return TrainConfig(**{key: cfg[key] for key in cfg})

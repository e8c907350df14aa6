from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional, Sequence

import torch

from .graph import variables

if TYPE_CHECKING:
    import matplotlib.axes

    from .model import Model
    from .training import EpochStats


@dataclass
class StatRecord:
    name: str
    offset: int
    size: int
    l2: float
    max_abs: float
    mean_abs: float
    zero_frac: float


@dataclass
class GradientSummary:
    variables: List[StatRecord]

    def to_text(self, top_k: Optional[int] = None) -> str:
        if not self.variables:
            return ""
        rows = sorted(self.variables, key=lambda rec: -rec.l2)
        limit = rows if top_k is None else rows[:top_k]
        lines = ["Variable gradients:"]
        for rec in limit:
            lines.append(
                f"  {rec.name:<20} [{rec.offset}:{rec.offset + rec.size}] |l2|={rec.l2:.4e} "
                f"|max|={rec.max_abs:.4e} mean|g|={rec.mean_abs:.4e} "
                f"zero%={rec.zero_frac * 100:5.2f}"
            )
        return "\n".join(lines)


def _stat(name: str, offset: int, grad: torch.Tensor) -> StatRecord:
    data = grad.detach().reshape(-1)
    if data.numel() == 0:
        return StatRecord(name, offset, 0, 0.0, 0.0, 0.0, 0.0)
    abs_val = data.abs()
    return StatRecord(
        name=name,
        offset=offset,
        size=int(data.numel()),
        l2=float(data.norm().item()),
        max_abs=float(abs_val.max().item()),
        mean_abs=float(abs_val.mean().item()),
        zero_frac=float((abs_val <= 1e-9).sum().item()) / data.numel(),
    )


def summarize_gradients(model: "Model") -> GradientSummary:
    """
    Per-variable statistics of the gradients currently held in the model's arena.
    """
    records = []
    for i, p in enumerate(variables(model.nodes)):
        if p.g is None:
            continue
        records.append(_stat(p.name or f"var{i}", p.offset, p.g))
    return GradientSummary(variables=records)


def plot_cost_history(
    history: Sequence["EpochStats"],
    *,
    ax: Optional["matplotlib.axes.Axes"] = None,
    save_path: Optional[str] = None,
    title: str = "training cost",
) -> "matplotlib.axes.Axes":
    """
    Plot per-epoch training (and validation) cost returned by ``train_fnn``.

    Args:
        history: Per-epoch stats, oldest first.
        ax: Optional matplotlib axes to draw on; when omitted, a new figure is created.
        save_path: When given, the figure is written there as an image and closed.
        title: Plot title.
    Returns:
        The matplotlib Axes containing the plot.
    """
    try:
        import matplotlib.pyplot as plt  # type: ignore
    except Exception as exc:  # pragma: no cover - optional dependency
        raise RuntimeError("matplotlib is required for cost plots.") from exc

    if not history:
        raise ValueError("History is empty; nothing to plot.")
    if ax is None:
        _, ax = plt.subplots(figsize=(6, 4))
    epochs = list(range(1, len(history) + 1))
    ax.plot(epochs, [s.train_cost for s in history], label="train")
    val = [s.val_cost for s in history]
    if any(v is not None for v in val):
        ax.plot(epochs, [float("nan") if v is None else v for v in val], label="validation")
    ax.set_xlabel("epoch")
    ax.set_ylabel("cost")
    ax.set_title(title)
    ax.legend()
    if save_path is not None:
        fig = ax.figure
        fig.tight_layout()
        fig.savefig(save_path)
        plt.close(fig)
    return ax


def plot_gradient_heatmap(
    summary: GradientSummary,
    *,
    metric: str = "l2",
    ax: Optional["matplotlib.axes.Axes"] = None,
) -> "matplotlib.axes.Axes":
    """
    Render a 1×N heatmap of one gradient metric across the model's variables.
    """
    rows = summary.variables
    if not rows:
        raise ValueError("No variables available in the gradient summary.")
    values = [getattr(row, metric) for row in rows]
    labels = [row.name for row in rows]
    try:
        import matplotlib.pyplot as plt  # type: ignore
        import numpy as np
    except Exception as exc:  # pragma: no cover - optional dependency
        raise RuntimeError("matplotlib is required for heatmap rendering.") from exc

    if ax is None:
        _, ax = plt.subplots(figsize=(max(4, len(values)), 2))
    data = np.array([values], dtype=float)
    im = ax.imshow(data, aspect="auto", cmap="magma")
    ax.set_yticks([])
    ax.set_xticks(range(len(labels)))
    ax.set_xticklabels(labels, rotation=45, ha="right")
    ax.set_title(f"{metric} per variable")
    ax.figure.colorbar(im, ax=ax)
    return ax

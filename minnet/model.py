# minnet/model.py

from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional, Sequence, Tuple, Union

import torch

from . import graph as kg
from . import ops
from .arena import ParamArena
from .errors import BindError, CollationError, CostNodeError, UnrollError
from .graph import Label, Node
from .rand import RandomSource

if TYPE_CHECKING:
    from .optim import Minimizer

Buffer = Union[torch.Tensor, Sequence[float]]


class Model:
    """
    A compiled graph plus its parameter arena and random source.

    Responsibilities:
      - Collate variable storage into one flat parameter/gradient arena.
      - Resize the graph for a batch size and bind external buffers by role label.
      - Train or evaluate a single mini-batch; apply the network to one sample.
      - Unroll a one-step recurrent template into a sequence model sharing the arena.
    """

    def __init__(
        self,
        nodes: Sequence[Node],
        *,
        seed: int = 11,
        rng: Optional[RandomSource] = None,
    ) -> None:
        self.nodes: List[Node] = list(nodes)
        self.rng = rng or RandomSource(seed)
        self.arena: Optional[ParamArena] = None

    @classmethod
    def from_roots(cls, *roots: Node, seed: int = 11, collate: bool = True) -> "Model":
        """Compile the graph reachable from ``roots`` and (by default) collate it."""
        model = cls(kg.compile_graph(roots), seed=seed)
        if collate:
            model.collate()
        return model

    # --- Queries -------------------------------------------------------------

    @property
    def collated(self) -> bool:
        return self.arena is not None

    @property
    def params(self) -> torch.Tensor:
        return self._require_arena().params

    @property
    def grads(self) -> torch.Tensor:
        return self._require_arena().grads

    @property
    def n_par(self) -> int:
        return kg.n_params(self.nodes)

    def _n_by_label(self, label: Label) -> int:
        n = 0
        for p in self.nodes:
            if p.label == label:
                # the first dimension is the batch size
                n += p.size // p.d[0] if len(p.d) > 1 else 1
        return n

    @property
    def n_in(self) -> int:
        return self._n_by_label(Label.INPUT)

    @property
    def n_out(self) -> int:
        return self._n_by_label(Label.OUTPUT)

    def cost_index(self) -> int:
        """Index of the unique COST node."""
        found = [i for i, p in enumerate(self.nodes) if p.label == Label.COST]
        if len(found) != 1:
            raise CostNodeError(f"Expected exactly one COST node, found {len(found)}.")
        return found[0]

    def _require_arena(self) -> ParamArena:
        if self.arena is None:
            raise CollationError("Model has not been collated.")
        return self.arena

    # --- Parameters ----------------------------------------------------------

    def collate(self) -> List[Tuple[Node, int]]:
        """
        Move all variable values into a fresh arena and attach the variables to it.

        Returns the ``(node, offset)`` layout. A model can only be collated once.
        """
        if self.arena is not None:
            raise CollationError("Model is already collated.")
        arena = ParamArena(self.n_par)
        layout = arena.attach(self.nodes, copy_values=True)
        self.arena = arena
        return layout

    # --- Shapes & binding ----------------------------------------------------

    def set_batch_size(self, batch_size: int) -> None:
        """Set the batch dimension of INPUT/TRUTH feeds and re-derive every operation shape."""
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        for p in self.nodes:
            if p.label in (Label.INPUT, Label.TRUTH) and p.d:
                p.d[0] = batch_size
        for p in self.nodes:
            if p.op is None:
                continue
            p.op.sync_dim(p)
            p.op.alloc(p)
            p.alloc()

    def bind_by_label(self, label: Label, buffers: Sequence[Buffer]) -> int:
        """
        Point each non-trainable leaf labelled ``label``, in node order, at the next buffer.

        Buffers are viewed in the leaf's current shape, so call ``set_batch_size`` first.
        Returns the number of leaves bound.
        """
        leaves = [p for p in self.nodes if p.is_leaf and not p.is_var and p.label == label]
        if len(buffers) != len(leaves):
            raise BindError(
                f"{label.name} has {len(leaves)} leaves but {len(buffers)} buffers were given."
            )
        for p, buf in zip(leaves, buffers):
            tensor = torch.as_tensor(buf, dtype=torch.float32)
            if tensor.numel() != p.size:
                raise BindError(
                    f"Buffer for {p!r} holds {tensor.numel()} values, expected {p.size}."
                )
            p.x = tensor.reshape(p.d)
        return len(leaves)

    # --- Evaluation ----------------------------------------------------------

    def train_minibatch(
        self,
        minimizer: Optional["Minimizer"],
        batch_size: int,
        x: Sequence[Buffer],
        y: Optional[Sequence[Buffer]] = None,
    ) -> float:
        """
        Evaluate the cost for one mini-batch; with ``minimizer`` also backpropagate and step.

        Without a minimizer this is evaluation only and parameters are left untouched.
        """
        i_cost = self.cost_index()
        self.set_batch_size(batch_size)
        self.bind_by_label(Label.INPUT, x)
        self.bind_by_label(Label.TRUTH, [] if y is None else y)
        cost = float(kg.eval_at(self.nodes, i_cost).item())
        if minimizer is not None:
            arena = self._require_arena()
            kg.grad(self.nodes, i_cost)
            minimizer.mini_update(arena.grads, arena.params, batch_size)
        return cost

    def apply1(self, x: Buffer) -> Optional[torch.Tensor]:
        """
        Run the network on a single sample; returns a flat view of the first OUTPUT buffer.

        Not meant for unrolled graphs, whose several INPUT leaves cannot take one buffer.
        """
        self.set_batch_size(1)
        self.bind_by_label(Label.INPUT, [x])
        outputs = kg.eval_by_label(self.nodes, Label.OUTPUT)
        if not outputs:
            return None
        return outputs[0].x.reshape(-1)

    # --- Recurrence ----------------------------------------------------------

    def unroll(self, length: int, pool_hidden: bool = False) -> "Model":
        """
        Unroll a one-step recurrent template ``length`` times.

        The result shares this model's arena and random source; its cost is the
        average of the per-step costs.
        """
        if pool_hidden:
            raise NotImplementedError("Pooled hidden-state unrolling is not implemented.")
        arena = self._require_arena()
        unrolled = kg.unroll(self.nodes, length)
        roots: List[Node] = []
        costs: List[Node] = []
        for p in unrolled:
            if p.label == Label.OUTPUT:
                roots.append(p)
            elif p.label == Label.COST:
                p.label = Label.NONE
                costs.append(p)
        if len(costs) != length or len(roots) != length:
            raise UnrollError(
                f"Unrolling {length} steps produced {len(roots)} outputs and {len(costs)} costs."
            )
        avg_cost = ops.avg(costs)
        avg_cost.label = Label.COST
        roots.append(avg_cost)
        model = Model(kg.compile_graph(roots), rng=self.rng)
        model.arena = arena
        return model

    # --- I/O -----------------------------------------------------------------

    def save(self, path: str) -> None:
        from .io import save_model

        save_model(path, self)

    @classmethod
    def load(cls, path: str) -> Optional["Model"]:
        from .io import load_model

        return load_model(path)

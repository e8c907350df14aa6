# minnet/graph.py

from __future__ import annotations

import enum
import math
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Sequence, Set

import torch

if TYPE_CHECKING:
    from .arena import ParamArena
    from .ops import Op


class Label(enum.IntEnum):
    """Role of a node inside a network."""

    NONE = 0
    INPUT = 1
    OUTPUT = 2
    TRUTH = 3
    COST = 4


class NodeKind(enum.IntEnum):
    VAR = 0  # trainable leaf
    CONST = 1  # fixed leaf, e.g. an initial recurrent state
    FEED = 2  # leaf bound to external buffers (inputs, targets)
    OP = 3  # computed from children


class Node:
    """
    One element of a computation graph.

    Responsibilities:
      - Carry the shape ``d``; for INPUT/TRUTH feeds the first dimension is the batch size.
      - Hold the output buffer ``x`` and gradient buffer ``g``. Variables attached to a
        ParamArena resolve both through the arena instead of owning storage.
      - Record role label, kind, children and the optional recurrence link ``pre``.
    """

    def __init__(
        self,
        kind: NodeKind,
        shape: Sequence[int],
        *,
        op: Optional["Op"] = None,
        children: Optional[Sequence["Node"]] = None,
        label: Label = Label.NONE,
        name: Optional[str] = None,
    ) -> None:
        self.kind = NodeKind(kind)
        self.d: List[int] = [int(n) for n in shape]
        self.op = op
        self.children: List[Node] = list(children or [])
        self.label = Label(label)
        self.name = name
        self.pre: Optional[Node] = None
        self.to_back = self.kind == NodeKind.VAR

        self._x: Optional[torch.Tensor] = None
        self._g: Optional[torch.Tensor] = None
        self._arena: Optional["ParamArena"] = None
        self._offset: int = -1

    def __repr__(self) -> str:
        name = self.name or (self.op.name if self.op is not None else self.kind.name.lower())
        return f"Node({name!r}, d={self.d}, label={self.label.name})"

    # --- Queries -------------------------------------------------------------

    @property
    def size(self) -> int:
        """Element count; a zero-dimensional node holds one value."""
        return math.prod(self.d) if self.d else 1

    @property
    def is_leaf(self) -> bool:
        return not self.children

    @property
    def is_var(self) -> bool:
        return self.kind == NodeKind.VAR

    @property
    def offset(self) -> int:
        """Start of this variable's slice in its arena, or -1 when detached."""
        return self._offset

    @property
    def arena(self) -> Optional["ParamArena"]:
        return self._arena

    # --- Buffers -------------------------------------------------------------

    @property
    def x(self) -> Optional[torch.Tensor]:
        if self._arena is not None:
            return self._arena.param_view(self._offset, self.d)
        return self._x

    @x.setter
    def x(self, value: Optional[torch.Tensor]) -> None:
        if self._arena is not None:
            raise RuntimeError(f"{self!r} is attached to a parameter arena; write through the arena.")
        self._x = value

    @property
    def g(self) -> Optional[torch.Tensor]:
        if self._arena is not None:
            return self._arena.grad_view(self._offset, self.d)
        return self._g

    @g.setter
    def g(self, value: Optional[torch.Tensor]) -> None:
        if self._arena is not None:
            raise RuntimeError(f"{self!r} is attached to a parameter arena; write through the arena.")
        self._g = value

    def attach(self, arena: "ParamArena", offset: int) -> None:
        """Drop private storage and resolve buffers through ``arena`` from ``offset``."""
        self._x = None
        self._g = None
        self._arena = arena
        self._offset = int(offset)

    def alloc(self) -> None:
        """(Re)allocate output and gradient buffers to the current shape."""
        self._x = torch.zeros(self.d)
        self._g = torch.zeros(self.d)


# ---------------------------------------------------------------------------
# Leaf constructors
# ---------------------------------------------------------------------------

def feed(*shape: int, label: Label = Label.NONE, name: Optional[str] = None) -> Node:
    """Leaf whose buffer is bound externally (e.g. network input or target)."""
    return Node(NodeKind.FEED, shape, label=label, name=name)


def var(value: torch.Tensor, name: Optional[str] = None) -> Node:
    """Trainable leaf initialised from ``value``."""
    value = torch.as_tensor(value, dtype=torch.float32)
    node = Node(NodeKind.VAR, value.shape, name=name)
    node._x = value.clone().contiguous()
    node._g = torch.zeros_like(node._x)
    return node


def const(value: torch.Tensor, name: Optional[str] = None) -> Node:
    """Fixed leaf holding ``value``."""
    value = torch.as_tensor(value, dtype=torch.float32)
    node = Node(NodeKind.CONST, value.shape, name=name)
    node._x = value.clone().contiguous()
    return node


def set_recurrence(state: Node, source: Node) -> None:
    """
    Mark ``state`` (a leaf) as the recurrent input fed by ``source`` at the next time step.
    """
    if not state.is_leaf:
        raise ValueError("Only leaf nodes can receive a recurrent link.")
    state.pre = source


# ---------------------------------------------------------------------------
# Compilation & evaluation
# ---------------------------------------------------------------------------

def compile_graph(roots: Sequence[Node]) -> List[Node]:
    """
    Collect every node reachable from ``roots`` in topological order.

    Children are visited in declaration order and roots in the given order, so the
    resulting order (and therefore parameter offsets and binding order) is stable.
    """
    order: List[Node] = []
    seen: Set[int] = set()
    for root in roots:
        if id(root) in seen:
            continue
        stack = [(root, 0)]
        seen.add(id(root))
        while stack:
            node, k = stack[-1]
            if k < len(node.children):
                stack[-1] = (node, k + 1)
                child = node.children[k]
                if id(child) not in seen:
                    seen.add(id(child))
                    stack.append((child, 0))
            else:
                stack.pop()
                order.append(node)
    _propagate_to_back(order)
    return order


def _propagate_to_back(nodes: Iterable[Node]) -> None:
    for p in nodes:
        if p.children:
            p.to_back = any(c.to_back for c in p.children)
        else:
            p.to_back = p.is_var


def n_params(nodes: Iterable[Node]) -> int:
    return sum(p.size for p in nodes if p.is_var)


def variables(nodes: Iterable[Node]) -> List[Node]:
    return [p for p in nodes if p.is_var]


def _mark_needed(nodes: Sequence[Node], targets: Iterable[Node]) -> Set[int]:
    needed = {id(p) for p in targets}
    for p in reversed(nodes):
        if id(p) in needed:
            needed.update(id(c) for c in p.children)
    return needed


def eval_nodes(nodes: Sequence[Node], targets: Iterable[Node]) -> None:
    """Run forward kernels for every operation the given targets depend on."""
    needed = _mark_needed(nodes, targets)
    for p in nodes:
        if id(p) not in needed or p.op is None:
            continue
        for c in p.children:
            if c.x is None:
                raise RuntimeError(f"{c!r} has no buffer; bind or resize the graph first.")
        p.op.forward(p)


def eval_at(nodes: Sequence[Node], index: int) -> torch.Tensor:
    """Evaluate up to ``nodes[index]`` and return its output buffer."""
    target = nodes[index]
    eval_nodes(nodes[: index + 1], [target])
    assert target.x is not None
    return target.x


def eval_by_label(nodes: Sequence[Node], label: Label) -> List[Node]:
    """Evaluate every node carrying ``label``; returns those nodes."""
    targets = [p for p in nodes if p.label == label]
    eval_nodes(nodes, targets)
    return targets


def grad(nodes: Sequence[Node], index: int) -> None:
    """
    Backpropagate from the scalar ``nodes[index]``.

    All gradient buffers of nodes that require gradients are zeroed first, so
    variable gradients hold exactly this call's contribution afterwards.
    """
    sub = nodes[: index + 1]
    cost = sub[-1]
    if cost.size != 1:
        raise ValueError(f"Gradient source must be a scalar, got shape {cost.d}.")
    if not cost.to_back:
        return
    for p in sub:
        if p.to_back:
            if p.g is None:
                raise RuntimeError(f"{p!r} has no gradient buffer; resize the graph first.")
            p.g.zero_()
    cost.g.fill_(1.0)
    needed = _mark_needed(sub, [cost])
    for p in reversed(sub):
        if id(p) in needed and p.op is not None and p.to_back:
            p.op.backward(p)


# ---------------------------------------------------------------------------
# Recurrence
# ---------------------------------------------------------------------------

def _copy_node(p: Node, children: List[Node]) -> Node:
    q = Node(p.kind, p.d, op=p.op, children=children, label=p.label, name=p.name)
    q.to_back = p.to_back
    return q


def unroll(nodes: Sequence[Node], length: int) -> List[Node]:
    """
    Replicate a one-step template ``length`` times.

    Variables and constants without a recurrent link are shared by all steps.
    Feeds and operations are copied per step. A leaf with ``pre`` set is replaced,
    from the second step on, by the previous step's copy of its ``pre`` node.
    The returned list holds shared nodes first, then each step's copies in order.
    """
    if length < 1:
        raise ValueError("length must be >= 1")
    shared: List[Node] = [
        p for p in nodes if p.is_leaf and p.pre is None and p.kind in (NodeKind.VAR, NodeKind.CONST)
    ]
    shared_ids = {id(p) for p in shared}
    out: List[Node] = list(shared)
    prev: Dict[int, Node] = {}
    for t in range(length):
        cur: Dict[int, Node] = {}
        for p in nodes:
            if id(p) in shared_ids:
                cur[id(p)] = p
            elif p.pre is not None and t > 0:
                cur[id(p)] = prev[id(p.pre)]
            elif p.is_leaf and p.kind == NodeKind.CONST:
                # initial recurrent state, used by the first step only
                cur[id(p)] = p
                if t == 0:
                    out.append(p)
            else:
                q = _copy_node(p, [cur[id(c)] for c in p.children])
                cur[id(p)] = q
                out.append(q)
        prev = cur
    _propagate_to_back(out)
    return out

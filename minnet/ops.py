# minnet/ops.py

from __future__ import annotations

from typing import Dict, List, Sequence, Tuple

import torch

from .errors import ShapeMismatchError
from .graph import Label, Node, NodeKind


def _reduce_to(grad: torch.Tensor, shape: Sequence[int]) -> torch.Tensor:
    """Sum a broadcast gradient back down to ``shape``."""
    shape = tuple(shape)
    if tuple(grad.shape) == shape:
        return grad
    while grad.dim() > len(shape):
        grad = grad.sum(dim=0)
    for i, n in enumerate(shape):
        if n == 1 and grad.shape[i] != 1:
            grad = grad.sum(dim=i, keepdim=True)
    return grad


def _accumulate(child: Node, contrib: torch.Tensor) -> None:
    if child.to_back:
        child.g.add_(_reduce_to(contrib, child.d))


class Op:
    """
    Kernel bundle for one operation kind.

    Responsibilities:
      - sync_dim: derive the node shape from its children (run after batch edits).
      - alloc: reserve auxiliary buffers; most operations need none.
      - forward: write the node output into ``node.x``.
      - backward: accumulate ``node.g`` into the children's gradients.
    """

    name = "op"
    op_id = -1
    arity: Tuple[int, int] = (1, 1)

    def check_arity(self, n: int) -> None:
        lo, hi = self.arity
        if n < lo or (hi >= 0 and n > hi):
            raise ValueError(f"{self.name} expects {lo}..{hi if hi >= 0 else 'n'} children, got {n}")

    def sync_dim(self, node: Node) -> None:
        raise NotImplementedError

    def alloc(self, node: Node) -> None:
        del node

    def forward(self, node: Node) -> None:
        raise NotImplementedError

    def backward(self, node: Node) -> None:
        raise NotImplementedError


class _Broadcast(Op):
    arity = (2, 2)

    def sync_dim(self, node: Node) -> None:
        a, b = node.children
        try:
            node.d = list(torch.broadcast_shapes(tuple(a.d), tuple(b.d)))
        except RuntimeError as exc:
            raise ShapeMismatchError(f"{self.name}: cannot broadcast {a.d} with {b.d}") from exc


class Add(_Broadcast):
    name = "add"
    op_id = 1

    def forward(self, node: Node) -> None:
        a, b = node.children
        node.x.copy_(a.x + b.x)

    def backward(self, node: Node) -> None:
        a, b = node.children
        _accumulate(a, node.g)
        _accumulate(b, node.g)


class Sub(_Broadcast):
    name = "sub"
    op_id = 2

    def forward(self, node: Node) -> None:
        a, b = node.children
        node.x.copy_(a.x - b.x)

    def backward(self, node: Node) -> None:
        a, b = node.children
        _accumulate(a, node.g)
        _accumulate(b, -node.g)


class Mul(_Broadcast):
    name = "mul"
    op_id = 3

    def forward(self, node: Node) -> None:
        a, b = node.children
        node.x.copy_(a.x * b.x)

    def backward(self, node: Node) -> None:
        a, b = node.children
        if a.to_back:
            _accumulate(a, node.g * b.x)
        if b.to_back:
            _accumulate(b, node.g * a.x)


class CMul(Op):
    """``a @ w.T`` with ``a`` of shape [B, n_in] and ``w`` of shape [n_out, n_in]."""

    name = "cmul"
    op_id = 4
    arity = (2, 2)

    def sync_dim(self, node: Node) -> None:
        a, w = node.children
        if len(a.d) != 2 or len(w.d) != 2 or a.d[1] != w.d[1]:
            raise ShapeMismatchError(f"cmul: incompatible shapes {a.d} and {w.d}")
        node.d = [a.d[0], w.d[0]]

    def forward(self, node: Node) -> None:
        a, w = node.children
        torch.matmul(a.x, w.x.t(), out=node.x)

    def backward(self, node: Node) -> None:
        a, w = node.children
        if a.to_back:
            a.g.add_(node.g @ w.x)
        if w.to_back:
            w.g.add_(node.g.t() @ a.x)


class MatMul(Op):
    name = "matmul"
    op_id = 5
    arity = (2, 2)

    def sync_dim(self, node: Node) -> None:
        a, b = node.children
        if len(a.d) != 2 or len(b.d) != 2 or a.d[1] != b.d[0]:
            raise ShapeMismatchError(f"matmul: incompatible shapes {a.d} and {b.d}")
        node.d = [a.d[0], b.d[1]]

    def forward(self, node: Node) -> None:
        a, b = node.children
        torch.matmul(a.x, b.x, out=node.x)

    def backward(self, node: Node) -> None:
        a, b = node.children
        if a.to_back:
            a.g.add_(node.g @ b.x.t())
        if b.to_back:
            b.g.add_(a.x.t() @ node.g)


class _Unary(Op):
    def sync_dim(self, node: Node) -> None:
        node.d = list(node.children[0].d)


class Sigm(_Unary):
    name = "sigm"
    op_id = 6

    def forward(self, node: Node) -> None:
        torch.sigmoid(node.children[0].x, out=node.x)

    def backward(self, node: Node) -> None:
        child = node.children[0]
        if child.to_back:
            child.g.add_(node.g * node.x * (1.0 - node.x))


class Tanh(_Unary):
    name = "tanh"
    op_id = 7

    def forward(self, node: Node) -> None:
        torch.tanh(node.children[0].x, out=node.x)

    def backward(self, node: Node) -> None:
        child = node.children[0]
        if child.to_back:
            child.g.add_(node.g * (1.0 - node.x * node.x))


class Relu(_Unary):
    name = "relu"
    op_id = 8

    def forward(self, node: Node) -> None:
        torch.clamp(node.children[0].x, min=0.0, out=node.x)

    def backward(self, node: Node) -> None:
        child = node.children[0]
        if child.to_back:
            child.g.add_(node.g * (child.x > 0).to(node.g.dtype))


class MSE(Op):
    """Mean squared error between a prediction and a truth node of equal size."""

    name = "mse"
    op_id = 9
    arity = (2, 2)

    def sync_dim(self, node: Node) -> None:
        pred, truth = node.children
        if pred.size != truth.size:
            raise ShapeMismatchError(f"mse: prediction {pred.d} and truth {truth.d} differ in size")
        node.d = []

    def forward(self, node: Node) -> None:
        pred, truth = node.children
        diff = pred.x - truth.x.reshape(pred.x.shape)
        node.x.copy_((diff * diff).mean())

    def backward(self, node: Node) -> None:
        pred, truth = node.children
        diff = pred.x - truth.x.reshape(pred.x.shape)
        scale = 2.0 * node.g / pred.size
        if pred.to_back:
            pred.g.add_(scale * diff)
        if truth.to_back:
            truth.g.add_((-scale * diff).reshape(truth.g.shape))


class Avg(Op):
    """Elementwise mean of any number of equally shaped children."""

    name = "avg"
    op_id = 10
    arity = (1, -1)

    def sync_dim(self, node: Node) -> None:
        first = node.children[0].d
        for child in node.children[1:]:
            if child.d != first:
                raise ShapeMismatchError(f"avg: child shapes differ ({first} vs {child.d})")
        node.d = list(first)

    def forward(self, node: Node) -> None:
        total = torch.zeros_like(node.x)
        for child in node.children:
            total.add_(child.x)
        node.x.copy_(total / len(node.children))

    def backward(self, node: Node) -> None:
        share = node.g / len(node.children)
        for child in node.children:
            if child.to_back:
                child.g.add_(share)


OPS: Dict[str, Op] = {
    op.name: op
    for op in (Add(), Sub(), Mul(), CMul(), MatMul(), Sigm(), Tanh(), Relu(), MSE(), Avg())
}
OPS_BY_ID: Dict[int, Op] = {op.op_id: op for op in OPS.values()}


def make(name: str, *children: Node, label: Label = Label.NONE) -> Node:
    """Create an operation node and derive its shape from the children."""
    op = OPS[name]
    op.check_arity(len(children))
    node = Node(NodeKind.OP, [], op=op, children=children, label=label)
    op.sync_dim(node)
    node.to_back = any(c.to_back for c in children)
    return node


# --- Builders ---------------------------------------------------------------

def add(a: Node, b: Node) -> Node:
    return make("add", a, b)


def sub(a: Node, b: Node) -> Node:
    return make("sub", a, b)


def mul(a: Node, b: Node) -> Node:
    return make("mul", a, b)


def cmul(a: Node, w: Node) -> Node:
    return make("cmul", a, w)


def matmul(a: Node, b: Node) -> Node:
    return make("matmul", a, b)


def sigm(a: Node) -> Node:
    return make("sigm", a)


def tanh(a: Node) -> Node:
    return make("tanh", a)


def relu(a: Node) -> Node:
    return make("relu", a)


def mse(pred: Node, truth: Node) -> Node:
    return make("mse", pred, truth)


def avg(nodes: List[Node]) -> Node:
    return make("avg", *nodes)

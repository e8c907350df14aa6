# minnet/layers.py

from __future__ import annotations

from typing import Callable, Dict, Optional, Sequence

import torch

from . import graph as kg
from . import ops
from .graph import Label, Node
from .rand import RandomSource, glorot

ACTIVATIONS: Dict[str, Callable[[Node], Node]] = {
    "sigm": ops.sigm,
    "tanh": ops.tanh,
    "relu": ops.relu,
}


def _rng(rng: Optional[RandomSource]) -> RandomSource:
    return rng if rng is not None else RandomSource()


def input_layer(n_in: int, name: str = "in") -> Node:
    """Feed for ``[batch, n_in]`` network inputs."""
    return kg.feed(1, n_in, label=Label.INPUT, name=name)


def dense(
    inp: Node,
    n_out: int,
    *,
    rng: Optional[RandomSource] = None,
    name: Optional[str] = None,
) -> Node:
    """Fully connected layer ``inp @ W.T + b``."""
    if len(inp.d) != 2:
        raise ValueError(f"dense expects a [batch, features] input, got {inp.d}")
    n_in = inp.d[1]
    prefix = name or "dense"
    w = kg.var(glorot(_rng(rng), n_out, n_in), name=f"{prefix}.w")
    b = kg.var(torch.zeros(n_out), name=f"{prefix}.b")
    return ops.add(ops.cmul(inp, w), b)


def activation(node: Node, act: str) -> Node:
    if act not in ACTIVATIONS:
        raise ValueError(f"Unknown activation {act!r}; expected one of {sorted(ACTIVATIONS)}")
    return ACTIVATIONS[act](node)


def mse_cost(out: Node, name: str = "truth") -> Node:
    """
    Label ``out`` as the network output and attach a squared-error cost against a TRUTH feed.

    Returns the COST node.
    """
    out.label = Label.OUTPUT
    truth = kg.feed(*out.d, label=Label.TRUTH, name=name)
    cost = ops.mse(out, truth)
    cost.label = Label.COST
    return cost


def rnn_cell(
    inp: Node,
    n_hidden: int,
    *,
    rng: Optional[RandomSource] = None,
    name: str = "rnn",
) -> Node:
    """
    Elman cell ``h = tanh(x @ Wx.T + h_prev @ Wh.T + b)``.

    ``h_prev`` is a zero constant for the first step and, once unrolled, the previous
    step's ``h``.
    """
    rng = _rng(rng)
    n_in = inp.d[1]
    h0 = kg.const(torch.zeros(1, n_hidden), name=f"{name}.h0")
    wx = kg.var(glorot(rng, n_hidden, n_in), name=f"{name}.wx")
    wh = kg.var(glorot(rng, n_hidden, n_hidden), name=f"{name}.wh")
    b = kg.var(torch.zeros(n_hidden), name=f"{name}.b")
    h = ops.tanh(ops.add(ops.add(ops.cmul(inp, wx), ops.cmul(h0, wh)), b))
    kg.set_recurrence(h0, h)
    return h


def mlp(
    n_in: int,
    hidden: Sequence[int],
    n_out: int,
    *,
    act: str = "sigm",
    rng: Optional[RandomSource] = None,
) -> Node:
    """
    Build a fully connected regression network and return its COST node.
    """
    rng = _rng(rng)
    h = input_layer(n_in)
    for i, width in enumerate(hidden):
        h = activation(dense(h, width, rng=rng, name=f"h{i}"), act)
    out = dense(h, n_out, rng=rng, name="out")
    return mse_cost(out)


def rnn_template(
    n_in: int,
    n_hidden: int,
    n_out: int,
    *,
    rng: Optional[RandomSource] = None,
) -> Node:
    """
    One time step of a recurrent regression network; returns its COST node.
    """
    rng = _rng(rng)
    h = rnn_cell(input_layer(n_in), n_hidden, rng=rng)
    out = dense(h, n_out, rng=rng, name="out")
    return mse_cost(out)

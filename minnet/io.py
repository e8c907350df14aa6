# minnet/io.py

"""
Binary model files.

Layout, host byte order, no compression:

    [4 bytes]  magic b"KAN\\x01"
    [...]      graph topology (see ``write_graph``)
    [N floats] flat parameter arena, N = parameter count, in collation order

Topology block: an int32 node count, then per node in topological order

    int32 n_child, int32 kind, int32 label, int32 n_d, int32 dims[n_d],
    int32 pre index (-1 when absent), int32 name length, utf-8 name bytes,
    and for operations int32 op id + int32 child indices[n_child],
    or for constants float32 values[size].
"""

from __future__ import annotations

import struct
import sys
from contextlib import contextmanager
from typing import BinaryIO, Dict, Iterator, List, Optional, Sequence

import numpy as np
import torch

from .arena import ParamArena
from .errors import CollationError, ModelFormatError
from .graph import Label, Node, NodeKind, n_params, variables
from .model import Model
from .ops import OPS_BY_ID

MAGIC = b"KAN\x01"
LOAD_SEED = 11

_INT = struct.Struct("=i")


# ---------------------------------------------------------------------------
# Low-level helpers
# ---------------------------------------------------------------------------

def _read_exact(fp: BinaryIO, n: int, what: str) -> bytes:
    data = fp.read(n)
    if len(data) != n:
        raise ModelFormatError(f"Unexpected end of file while reading {what}.")
    return data


def _write_int(fp: BinaryIO, value: int) -> None:
    fp.write(_INT.pack(int(value)))


def _read_int(fp: BinaryIO, what: str) -> int:
    return _INT.unpack(_read_exact(fp, _INT.size, what))[0]


def _write_floats(fp: BinaryIO, values: torch.Tensor) -> None:
    fp.write(values.detach().reshape(-1).to(torch.float32).numpy().tobytes())


def _read_floats(fp: BinaryIO, n: int, what: str) -> torch.Tensor:
    raw = _read_exact(fp, 4 * n, what)
    return torch.from_numpy(np.frombuffer(raw, dtype=np.float32).copy())


@contextmanager
def _open(path: str, mode: str) -> Iterator[BinaryIO]:
    if path == "-":
        yield sys.stdout.buffer if "w" in mode else sys.stdin.buffer
        return
    with open(path, mode) as fp:
        yield fp


# ---------------------------------------------------------------------------
# Graph topology
# ---------------------------------------------------------------------------

def write_graph(fp: BinaryIO, nodes: Sequence[Node]) -> None:
    """Serialise node shapes, kinds, labels, links and constant values."""
    index: Dict[int, int] = {id(p): i for i, p in enumerate(nodes)}
    _write_int(fp, len(nodes))
    for p in nodes:
        _write_int(fp, len(p.children))
        _write_int(fp, int(p.kind))
        _write_int(fp, int(p.label))
        _write_int(fp, len(p.d))
        for dim in p.d:
            _write_int(fp, dim)
        _write_int(fp, index.get(id(p.pre), -1) if p.pre is not None else -1)
        name = (p.name or "").encode("utf-8")
        _write_int(fp, len(name))
        fp.write(name)
        if p.children:
            assert p.op is not None
            _write_int(fp, p.op.op_id)
            for child in p.children:
                _write_int(fp, index[id(child)])
        elif p.kind == NodeKind.CONST:
            assert p.x is not None
            _write_floats(fp, p.x)


def read_graph(fp: BinaryIO) -> List[Node]:
    """Inverse of ``write_graph``; variables come back with zeroed private storage."""
    n = _read_int(fp, "node count")
    if n < 0:
        raise ModelFormatError(f"Negative node count {n}.")
    nodes: List[Node] = []
    pre_links: List[int] = []
    for i in range(n):
        n_child = _read_int(fp, "child count")
        try:
            kind = NodeKind(_read_int(fp, "node kind"))
            label = Label(_read_int(fp, "node label"))
        except ValueError as exc:
            raise ModelFormatError(f"Bad node header at node {i}: {exc}") from exc
        n_d = _read_int(fp, "rank")
        dims = [_read_int(fp, "dimension") for _ in range(n_d)]
        pre_links.append(_read_int(fp, "recurrent link"))
        name_len = _read_int(fp, "name length")
        if name_len < 0:
            raise ModelFormatError(f"Negative name length at node {i}.")
        raw_name = _read_exact(fp, name_len, "node name")
        try:
            name = raw_name.decode("utf-8") or None
        except UnicodeDecodeError as exc:
            raise ModelFormatError(f"Node {i} has a malformed name.") from exc
        if n_child > 0:
            op_id = _read_int(fp, "op id")
            if op_id not in OPS_BY_ID:
                raise ModelFormatError(f"Unknown op id {op_id} at node {i}.")
            children = []
            for _ in range(n_child):
                k = _read_int(fp, "child index")
                if not 0 <= k < i:
                    raise ModelFormatError(f"Node {i} refers to child {k} out of order.")
                children.append(nodes[k])
            p = Node(kind, dims, op=OPS_BY_ID[op_id], children=children, label=label, name=name)
        else:
            p = Node(kind, dims, label=label, name=name)
            if kind == NodeKind.CONST:
                p.x = _read_floats(fp, p.size, "constant values").reshape(dims)
            elif kind == NodeKind.VAR:
                p.x = torch.zeros(dims)
                p.g = torch.zeros(dims)
        nodes.append(p)
    for p, k in zip(nodes, pre_links):
        if k >= 0:
            if k >= n:
                raise ModelFormatError(f"Recurrent link {k} out of range.")
            p.pre = nodes[k]
    # stored order is topological
    for p in nodes:
        p.to_back = any(c.to_back for c in p.children) if p.children else p.is_var
    return nodes


# ---------------------------------------------------------------------------
# Model files
# ---------------------------------------------------------------------------

def save_model(path: str, model: Model) -> None:
    """
    Write ``model`` to ``path`` ("-" for stdout).

    Parameters are written in the order the stored nodes list their variables, which
    is the offset order ``load_model`` assigns. An unrolled model shares its template's
    arena, whose layout can differ from that order.
    """
    if not model.collated:
        raise CollationError("Only collated models can be saved.")
    chunks = [p.x.reshape(-1) for p in variables(model.nodes)]
    params = torch.cat(chunks) if chunks else torch.zeros(0)
    with _open(path, "wb") as fp:
        fp.write(MAGIC)
        write_graph(fp, model.nodes)
        _write_floats(fp, params)
        fp.flush()


def load_model(path: str) -> Optional[Model]:
    """
    Read a model written by ``save_model``.

    Returns ``None`` when the file does not start with the expected magic tag.
    """
    with _open(path, "rb") as fp:
        magic = fp.read(len(MAGIC))
        if magic != MAGIC:
            return None
        nodes = read_graph(fp)
        n_par = n_params(nodes)
        values = _read_floats(fp, n_par, "parameters")
    arena = ParamArena(n_par)
    arena.params.copy_(values)
    arena.attach(nodes, copy_values=False)
    model = Model(nodes, seed=LOAD_SEED)
    model.arena = arena
    return model

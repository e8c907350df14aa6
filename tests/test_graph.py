import os
import sys

import pytest
import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import minnet  # noqa: E402
from minnet import graph as kg  # noqa: E402
from minnet import layers, ops  # noqa: E402
from minnet.graph import Label, NodeKind  # noqa: E402


def test_compile_orders_children_before_parents():
    a = kg.feed(1, 3, label=Label.INPUT, name="a")
    w = kg.var(torch.ones(2, 3), name="w")
    h = ops.cmul(a, w)
    out = ops.tanh(h)
    nodes = kg.compile_graph([out])
    assert nodes == [a, w, h, out]
    position = {id(p): i for i, p in enumerate(nodes)}
    for p in nodes:
        for c in p.children:
            assert position[id(c)] < position[id(p)]


def test_compile_is_stable_and_deduplicates_shared_nodes():
    a = kg.feed(1, 2, label=Label.INPUT)
    b = kg.var(torch.zeros(2))
    s1 = ops.add(a, b)
    s2 = ops.mul(s1, s1)
    first = kg.compile_graph([s2, s1])
    second = kg.compile_graph([s2, s1])
    assert first == second
    assert len(first) == 4


def test_gradient_flags_follow_variables():
    a = kg.feed(1, 2, label=Label.INPUT)
    c = kg.const(torch.ones(1, 2))
    w = kg.var(torch.ones(2))
    no_grad = ops.add(a, c)
    with_grad = ops.mul(no_grad, w)
    kg.compile_graph([with_grad])
    assert not a.to_back and not c.to_back
    assert w.to_back
    assert not no_grad.to_back
    assert with_grad.to_back


def test_shape_mismatch_is_reported_at_construction():
    a = kg.feed(1, 3, label=Label.INPUT)
    w = kg.var(torch.ones(2, 4))
    with pytest.raises(minnet.ShapeMismatchError):
        ops.cmul(a, w)
    with pytest.raises(minnet.ShapeMismatchError):
        ops.avg([kg.feed(1, 2), kg.feed(1, 3)])


def test_eval_requires_bound_leaves():
    cost = layers.mlp(3, [4], 2, rng=minnet.RandomSource(0))
    model = minnet.Model.from_roots(cost)
    model.set_batch_size(2)
    with pytest.raises(RuntimeError):
        kg.eval_at(model.nodes, model.cost_index())


def _assert_grads_match_finite_differences(model, batch, x, y):
    model.set_batch_size(batch)
    model.bind_by_label(Label.INPUT, [x])
    model.bind_by_label(Label.TRUTH, [y])
    i_cost = model.cost_index()
    kg.eval_at(model.nodes, i_cost)
    kg.grad(model.nodes, i_cost)
    analytic = model.grads.clone()

    eps = 1e-3
    params = model.params
    for k in range(model.n_par):
        saved = float(params[k])
        params[k] = saved + eps
        plus = float(kg.eval_at(model.nodes, i_cost))
        params[k] = saved - eps
        minus = float(kg.eval_at(model.nodes, i_cost))
        params[k] = saved
        numeric = (plus - minus) / (2 * eps)
        assert abs(numeric - float(analytic[k])) < 2e-3


@pytest.mark.parametrize("act", ["tanh", "sigm"])
def test_backward_matches_finite_differences(act):
    torch.manual_seed(0)
    cost = layers.mlp(3, [5], 2, act=act, rng=minnet.RandomSource(4))
    model = minnet.Model.from_roots(cost)
    batch = 6
    _assert_grads_match_finite_differences(model, batch, torch.randn(batch * 3), torch.randn(batch * 2))


def test_matmul_sub_relu_mul_backward_matches_finite_differences():
    # inputs in [0.5, 1] and these weights keep relu inputs at least 0.75 away from zero:
    # columns 0-1 stay active, columns 2-3 stay clamped
    inp = kg.feed(1, 2, label=Label.INPUT, name="x")
    w = kg.var(torch.tensor([[1.0, 1.0, -1.0, -1.0], [1.0, 1.0, -1.0, -1.0]]), name="w")
    shift = kg.var(torch.full((4,), 0.25), name="shift")
    scale = kg.var(torch.tensor([0.5, -1.0, 2.0, 1.5]), name="scale")
    out = ops.mul(ops.relu(ops.sub(ops.matmul(inp, w), shift)), scale)
    model = minnet.Model.from_roots(layers.mse_cost(out))

    gen = torch.Generator().manual_seed(1)
    batch = 6
    x = torch.rand(batch * 2, generator=gen) * 0.5 + 0.5
    y = torch.randn(batch * 4, generator=gen)
    _assert_grads_match_finite_differences(model, batch, x, y)

    # clamped relu columns pass no gradient to their weights
    assert torch.count_nonzero(w.g[:, 2:]) == 0
    assert torch.count_nonzero(w.g[:, :2]) > 0


def test_grad_zeroes_previous_contributions():
    cost = layers.mlp(2, [3], 1, rng=minnet.RandomSource(1))
    model = minnet.Model.from_roots(cost)
    model.set_batch_size(4)
    model.bind_by_label(Label.INPUT, [torch.randn(8)])
    model.bind_by_label(Label.TRUTH, [torch.randn(4)])
    i_cost = model.cost_index()
    kg.eval_at(model.nodes, i_cost)
    kg.grad(model.nodes, i_cost)
    once = model.grads.clone()
    kg.grad(model.nodes, i_cost)
    torch.testing.assert_close(model.grads, once)


def test_unroll_shares_variables_and_copies_feeds():
    cost = layers.rnn_template(2, 3, 1, rng=minnet.RandomSource(2))
    template = kg.compile_graph([cost])
    unrolled = kg.unroll(template, 4)

    template_vars = [p for p in template if p.kind == NodeKind.VAR]
    unrolled_vars = [p for p in unrolled if p.kind == NodeKind.VAR]
    assert unrolled_vars == template_vars

    inputs = [p for p in unrolled if p.label == Label.INPUT]
    truths = [p for p in unrolled if p.label == Label.TRUTH]
    assert len(inputs) == 4 and len(truths) == 4
    assert all(p not in template for p in inputs)

    states = [p for p in unrolled if p.kind == NodeKind.CONST]
    assert len(states) == 1


def test_unroll_threads_state_between_steps():
    cost = layers.rnn_template(1, 2, 1, rng=minnet.RandomSource(3))
    template = kg.compile_graph([cost])
    h_template = next(p for p in template if p.kind == NodeKind.CONST).pre
    unrolled = kg.unroll(template, 2)
    tanh_nodes = [p for p in unrolled if p.op is not None and p.op.name == "tanh"]
    assert len(tanh_nodes) == 2
    assert h_template not in unrolled

    # step 1 consumes step 0's hidden state through its recurrent matmul
    def _reaches(node, target):
        stack = [node]
        while stack:
            cur = stack.pop()
            if cur is target:
                return True
            stack.extend(cur.children)
        return False

    assert _reaches(tanh_nodes[1], tanh_nodes[0])
    assert not _reaches(tanh_nodes[0], tanh_nodes[1])

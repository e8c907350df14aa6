import os
import sys

import pytest
import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
from minnet.optim import BatchMode, Minimizer, UpdateRule  # noqa: E402


def test_sgd_step():
    params = torch.tensor([1.0, 2.0])
    grads = torch.tensor([0.5, -1.0])
    Minimizer(UpdateRule.SGD, BatchMode.CONST, 2, lr=0.1).mini_update(grads, params)
    torch.testing.assert_close(params, torch.tensor([0.95, 2.1]))


def test_sum_mode_divides_by_batch_size():
    params = torch.tensor([1.0, 2.0])
    grads = torch.tensor([4.0, -8.0])
    Minimizer(UpdateRule.SGD, BatchMode.SUM, 2, lr=0.1).mini_update(grads, params, batch_size=4)
    torch.testing.assert_close(params, torch.tensor([0.9, 2.2]))


def test_sum_mode_requires_batch_size():
    minimizer = Minimizer(UpdateRule.SGD, BatchMode.SUM, 1)
    with pytest.raises(ValueError):
        minimizer.mini_update(torch.ones(1), torch.ones(1))


def test_rmsprop_first_step():
    params = torch.tensor([0.0])
    grads = torch.tensor([2.0])
    minimizer = Minimizer(UpdateRule.RMSPROP, BatchMode.CONST, 1, lr=0.01, decay=0.9)
    minimizer.mini_update(grads, params)
    r = 0.1 * 4.0
    expected = -0.01 * 2.0 / (r + 1e-6) ** 0.5
    assert float(params[0]) == pytest.approx(expected, rel=1e-5)


def test_adam_first_step_moves_by_learning_rate():
    params = torch.tensor([1.0, -1.0])
    grads = torch.tensor([3.0, -0.5])
    Minimizer(UpdateRule.ADAM, BatchMode.CONST, 2, lr=0.01).mini_update(grads, params)
    # bias-corrected first step is lr * sign(g)
    torch.testing.assert_close(params, torch.tensor([0.99, -0.99]), rtol=1e-4, atol=1e-5)


def test_size_mismatch_is_rejected():
    minimizer = Minimizer(UpdateRule.SGD, BatchMode.CONST, 3)
    with pytest.raises(ValueError):
        minimizer.mini_update(torch.ones(2), torch.ones(2))


def test_close_releases_state():
    minimizer = Minimizer(UpdateRule.ADAM, BatchMode.CONST, 4)
    minimizer.close()
    assert minimizer._first is None and minimizer._second is None

import os
import sys

import pytest
import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import minnet  # noqa: E402
from minnet import layers  # noqa: E402
from minnet.training import validation_size  # noqa: E402


def _regression_model(seed: int = 3) -> minnet.Model:
    cost = layers.mlp(3, [8], 2, act="tanh", rng=minnet.RandomSource(seed))
    return minnet.Model.from_roots(cost, seed=seed)


def _tagged_rows(n: int):
    # x[:, 0] is a unique tag; y is derived from x so pairing can be checked.
    x = torch.stack([torch.tensor([float(i), 0.5, -0.5]) for i in range(n)])
    y = x[:, :2] * 2.0
    return x, y


def test_validation_size_rounds_and_requires_open_interval():
    assert validation_size(100, 0.2) == 20
    assert validation_size(10, 0.25) == 3
    assert validation_size(7, 0.0) == 0
    assert validation_size(7, 1.0) == 0
    assert validation_size(7, -0.5) == 0


def test_partition_conserves_every_sample_once():
    x, y = _tagged_rows(100)
    config = minnet.TrainConfig(validation_fraction=0.2, mb_size=10, max_epoch=0, verbose=0)
    trainer = minnet.Trainer(_regression_model(), x, y, config)
    trainer.partition()

    assert trainer.n_train == 80
    assert trainer.n_validate == 20
    train_tags = {float(row[0]) for row in trainer.train_rows}
    val_tags = {float(row[0]) for row in trainer.validation_rows}
    assert len(train_tags) == 80 and len(val_tags) == 20
    assert train_tags.isdisjoint(val_tags)
    assert train_tags | val_tags == {float(i) for i in range(100)}
    for xi, yi in zip(trainer.x, trainer.y):
        torch.testing.assert_close(yi, xi[:2] * 2.0)


def test_partition_without_validation_uses_all_rows():
    x, y = _tagged_rows(12)
    config = minnet.TrainConfig(validation_fraction=0.0, max_epoch=0, verbose=0)
    trainer = minnet.Trainer(_regression_model(), x, y, config)
    trainer.partition()
    assert trainer.n_train == 12 and trainer.n_validate == 0
    assert trainer.validation_rows == []


def test_epoch_reshuffle_touches_training_prefix_only():
    x, y = _tagged_rows(30)
    config = minnet.TrainConfig(validation_fraction=0.2, mb_size=8, max_epoch=2, verbose=0)
    trainer = minnet.Trainer(_regression_model(), x, y, config)
    original_partition = trainer.partition
    held_out = []

    def _partition():
        original_partition()
        held_out.extend(float(row[0]) for row in trainer.validation_rows)

    trainer.partition = _partition
    trainer.run()
    assert [float(row[0]) for row in trainer.x[trainer.n_train :]] == held_out


def test_caller_rows_are_not_reordered():
    x, y = _tagged_rows(20)
    rows_x = list(x)
    rows_y = list(y)
    config = minnet.TrainConfig(mb_size=5, max_epoch=1, verbose=0)
    minnet.train_fnn(config, _regression_model(), rows_x, rows_y)
    assert [float(r[0]) for r in rows_x] == [float(i) for i in range(20)]


def test_mini_batches_cover_uneven_splits(monkeypatch):
    x, y = _tagged_rows(100)
    model = _regression_model()
    sizes = []
    original = model.train_minibatch

    def _spy(minimizer, batch_size, xs, ys=None):
        sizes.append((minimizer is not None, batch_size))
        assert xs[0].numel() == batch_size * 3
        assert ys[0].numel() == batch_size * 2
        return original(minimizer, batch_size, xs, ys)

    monkeypatch.setattr(model, "train_minibatch", _spy)
    config = minnet.TrainConfig(validation_fraction=0.2, mb_size=30, max_epoch=2, verbose=0)
    minnet.train_fnn(config, model, x, y)

    per_epoch = [(True, 30), (True, 30), (True, 20), (False, 20)]
    assert sizes == per_epoch * 2


def test_end_to_end_regression_scenario():
    data = minnet.synthesize_regression(100, 3, 2, seed=5)
    model = _regression_model()
    config = minnet.TrainConfig(
        lr=0.01,
        validation_fraction=0.2,
        mb_size=10,
        max_epoch=5,
        verbose=0,
    )
    trainer = minnet.Trainer(model, data.x, data.y, config)
    history = trainer.run()

    assert trainer.n_train == 80
    assert trainer.n_validate == 20
    assert len(history) == 5
    assert all(stats.val_cost is not None for stats in history)
    assert history[-1].train_cost < history[0].train_cost


def test_progress_is_printed_when_verbose(capsys):
    data = minnet.synthesize_regression(20, 3, 2, seed=1)
    config = minnet.TrainConfig(validation_fraction=0.25, mb_size=4, max_epoch=2, verbose=3)
    minnet.train_fnn(config, _regression_model(), data.x, data.y)
    lines = capsys.readouterr().out.strip().splitlines()
    assert len(lines) == 2
    assert lines[0].startswith("[epoch 1] running cost: ")
    assert "validation cost: " in lines[1]


def test_quiet_training_prints_nothing(capsys):
    data = minnet.synthesize_regression(10, 3, 2, seed=1)
    config = minnet.TrainConfig(validation_fraction=0.0, mb_size=4, max_epoch=2, verbose=0)
    history = minnet.train_fnn(config, _regression_model(), data.x, data.y)
    assert capsys.readouterr().out == ""
    assert all(stats.val_cost is None for stats in history)


def test_gradient_summary_is_logged_on_request(capsys):
    data = minnet.synthesize_regression(10, 3, 2, seed=1)
    config = minnet.TrainConfig(validation_fraction=0.0, mb_size=5, max_epoch=1, log_gradients=True)
    minnet.train_fnn(config, _regression_model(), data.x, data.y)
    out = capsys.readouterr().out
    assert "Variable gradients:" in out
    assert "h0.w" in out


def test_resources_are_released_on_failure(monkeypatch):
    x, y = _tagged_rows(10)
    model = _regression_model()
    trainer = minnet.Trainer(model, x, y, minnet.TrainConfig(mb_size=5, max_epoch=1, verbose=0))

    def _boom(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(model, "train_minibatch", _boom)
    with pytest.raises(RuntimeError, match="boom"):
        trainer.run()
    assert trainer.minimizer is None
    assert trainer._bx is None and trainer._by is None


def test_mismatched_rows_are_rejected():
    x, y = _tagged_rows(5)
    with pytest.raises(ValueError):
        minnet.Trainer(_regression_model(), x, y[:4], minnet.TrainConfig())


def test_config_from_mapping():
    cfg = minnet.train_config_from_mapping({"lr": 0.05, "max_epoch": 3, "mb_size": 16})
    assert cfg.lr == 0.05 and cfg.max_epoch == 3 and cfg.mb_size == 16
    assert cfg.decay == 0.9 and cfg.epoch_lazy == 10

    with pytest.raises(KeyError):
        minnet.train_config_from_mapping({"lr": 0.05})
    with pytest.raises(KeyError):
        minnet.train_config_from_mapping({"lr": 0.05, "max_epoch": 1, "patience": 3})
    with pytest.raises(ValueError):
        minnet.TrainConfig(update_rule="lbfgs")

"""
Demo script: fully connected regression network trained on synthetic data.

  - Synthesises targets as a squashed random linear map of the inputs.
  - Builds an MLP with one tanh hidden layer and a squared-error cost.
  - Trains with RMSprop, holding out a validation split, then saves and reloads
    the model and compares one prediction before and after.
"""

from __future__ import annotations

import os
import sys
import tempfile

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import minnet
from minnet import layers

CONFIG = {
    "seed": 11,
    "samples": 500,
    "n_in": 4,
    "hidden": [16],
    "n_out": 2,
    "train": {
        "lr": 0.01,
        "max_epoch": 20,
        "mb_size": 32,
        "validation_fraction": 0.2,
        "update_rule": "rmsprop",
    },
    "plot_path": None,
}


def run() -> None:
    cfg = CONFIG
    data = minnet.synthesize_regression(cfg["samples"], cfg["n_in"], cfg["n_out"], seed=cfg["seed"])
    print(f"Dataset: {data.summary()}")

    rng = minnet.RandomSource(cfg["seed"])
    cost = layers.mlp(cfg["n_in"], cfg["hidden"], cfg["n_out"], act="tanh", rng=rng)
    model = minnet.Model.from_roots(cost, seed=cfg["seed"])
    print(f"Model: {len(model.nodes)} nodes, {model.n_par} parameters")

    train_cfg = minnet.train_config_from_mapping(cfg["train"])
    history = minnet.train_fnn(train_cfg, model, data.x, data.y)

    sample = data.x[0]
    before = model.apply1(sample).clone()
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "regression.kan")
        model.save(path)
        loaded = minnet.load_model(path)
    after = loaded.apply1(sample)
    print(f"Prediction before save: {before.tolist()}")
    print(f"Prediction after load:  {after.tolist()}")

    if cfg["plot_path"]:
        minnet.plot_cost_history(history, save_path=cfg["plot_path"])
        print(f"Saved cost plot to {cfg['plot_path']}")

    print("Done.")


if __name__ == "__main__":
    run()

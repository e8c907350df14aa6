"""
Demo script: a one-step recurrent template unrolled over whole sequences.

The template is an Elman cell with a dense readout; unrolling it shares the
template's parameter arena, so training the unrolled model trains the template.
The task is predicting the running mean of a scalar sequence.
"""

from __future__ import annotations

import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import minnet
from minnet import layers

CONFIG = {
    "seed": 5,
    "samples": 256,
    "seq_len": 8,
    "hidden": 8,
    "batch_size": 32,
    "epochs": 15,
    "lr": 0.01,
}


def run() -> None:
    cfg = CONFIG
    data = minnet.synthesize_running_mean(cfg["samples"], cfg["seq_len"], seed=cfg["seed"])
    rng = minnet.RandomSource(cfg["seed"])
    template = minnet.Model.from_roots(
        layers.rnn_template(1, cfg["hidden"], 1, rng=rng),
        seed=cfg["seed"],
    )
    model = template.unroll(cfg["seq_len"])
    print(f"Template: {len(template.nodes)} nodes; unrolled: {len(model.nodes)} nodes; "
          f"{model.n_par} shared parameters")

    minimizer = minnet.Minimizer(minnet.UpdateRule.RMSPROP, minnet.BatchMode.CONST, model.n_par, lr=cfg["lr"])
    order = list(range(len(data)))
    batch = cfg["batch_size"]
    try:
        for epoch in range(1, cfg["epochs"] + 1):
            model.rng.shuffle(len(order), order)
            total = 0.0
            for start in range(0, len(order), batch):
                idx = order[start : start + batch]
                xs, ys = data.step_buffers(idx)
                total += model.train_minibatch(minimizer, len(idx), xs, ys) * len(idx)
            print(f"[epoch {epoch}] running cost: {total / len(order):.6g}")
    finally:
        minimizer.close()

    # the template now holds the trained weights
    xs, ys = data.step_buffers([0])
    step0 = template.train_minibatch(None, 1, [xs[0]], [ys[0]])
    print(f"Template cost on the first step of sample 0: {step0:.6g}")
    print("Done.")


if __name__ == "__main__":
    run()

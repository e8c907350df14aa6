# minnet/__init__.py

from .graph import (
    Label,
    Node,
    NodeKind,
    compile_graph,
    const,
    feed,
    set_recurrence,
    var,
)
from .arena import ParamArena
from .model import Model
from .optim import BatchMode, Minimizer, UpdateRule
from .rand import RandomSource
from .training import EpochStats, TrainConfig, Trainer, train_config_from_mapping, train_fnn
from .io import MAGIC, load_model, save_model
from .data_helper import (
    RegressionDataset,
    SequenceDataset,
    synthesize_regression,
    synthesize_running_mean,
)
from .diagnostics import GradientSummary, plot_cost_history, plot_gradient_heatmap, summarize_gradients
from .errors import (
    BindError,
    CollationError,
    CostNodeError,
    MinnetError,
    ModelFormatError,
    ShapeMismatchError,
    UnrollError,
)
from . import layers
from . import ops

__all__ = [
    "Label",
    "Node",
    "NodeKind",
    "compile_graph",
    "const",
    "feed",
    "set_recurrence",
    "var",
    "ParamArena",
    "Model",
    "BatchMode",
    "Minimizer",
    "UpdateRule",
    "RandomSource",
    "EpochStats",
    "TrainConfig",
    "Trainer",
    "train_config_from_mapping",
    "train_fnn",
    "MAGIC",
    "load_model",
    "save_model",
    "RegressionDataset",
    "SequenceDataset",
    "synthesize_regression",
    "synthesize_running_mean",
    "GradientSummary",
    "plot_cost_history",
    "plot_gradient_heatmap",
    "summarize_gradients",
    "BindError",
    "CollationError",
    "CostNodeError",
    "MinnetError",
    "ModelFormatError",
    "ShapeMismatchError",
    "UnrollError",
    "layers",
    "ops",
]

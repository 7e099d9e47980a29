# Experiment Registry モジュール
from headline_ab.registry.experiment_registry import ExperimentRegistry

__all__ = [
    "ExperimentRegistry",
]

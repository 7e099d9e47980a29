# Models モジュール
from headline_ab.models.experiment import (
    Event,
    EventKind,
    Experiment,
    ExperimentState,
    ExperimentSummary,
    Provenance,
    VariantStat,
)

__all__ = [
    "Event",
    "EventKind",
    "Experiment",
    "ExperimentState",
    "ExperimentSummary",
    "Provenance",
    "VariantStat",
]

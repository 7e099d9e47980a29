# Inference Engine モジュール
from headline_ab.stats.inference import (
    AnalysisResult,
    VariantResult,
    analyze,
    normal_cdf,
    significance_test,
    wilson_interval,
    z_score,
)

__all__ = [
    "AnalysisResult",
    "VariantResult",
    "analyze",
    "normal_cdf",
    "significance_test",
    "wilson_interval",
    "z_score",
]

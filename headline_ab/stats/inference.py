# 統計推論エンジン
"""
集計値から信頼区間と勝率を計算する純粋関数群

永続化には依存しない。

- Wilsonスコア区間: 少数サンプルでも破綻しない二項比率の信頼区間
- 2標本比率のz検定: バリアントAの真の率がBを上回る確信度
- 正規分布CDF: Abramowitz-Stegun 7.1.26（最大誤差 1.5e-7 未満）
- 逆正規分布CDF: Acklam の有理近似（相対誤差 約1.15e-9）
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Tuple

from headline_ab.models.experiment import Experiment, VariantStat

DEFAULT_CONFIDENCE = 0.95
SIGNIFICANCE_THRESHOLD = 0.95

# 標準的な表の値と一致させる信頼水準
_Z_TABLE = {
    0.80: 1.28,
    0.85: 1.44,
    0.90: 1.645,
    0.95: 1.96,
    0.99: 2.576,
}

# Acklam の係数
_A = (
    -3.969683028665376e01,
    2.209460984245205e02,
    -2.759285104469687e02,
    1.383577518672690e02,
    -3.066479806614716e01,
    2.506628277459239e00,
)
_B = (
    -5.447609879822406e01,
    1.615858368580409e02,
    -1.556989798598866e02,
    6.680131188771972e01,
    -1.328068155288572e01,
)
_C = (
    -7.784894002430293e-03,
    -3.223964580411365e-01,
    -2.400758277161838e00,
    -2.549732539343734e00,
    4.374664141464968e00,
    2.938163982698783e00,
)
_D = (
    7.784695709041462e-03,
    3.224671290700398e-01,
    2.445134137142996e00,
    3.754408661907416e00,
)
_P_LOW = 0.02425
_P_HIGH = 1 - _P_LOW


def normal_cdf(x: float) -> float:
    """標準正規分布の累積分布関数（Abramowitz-Stegun 7.1.26）"""
    a1 = 0.254829592
    a2 = -0.284496736
    a3 = 1.421413741
    a4 = -1.453152027
    a5 = 1.061405429
    p = 0.3275911

    sign = 1.0 if x >= 0 else -1.0
    x = abs(x) / math.sqrt(2.0)

    t = 1.0 / (1.0 + p * x)
    y = 1.0 - (((((a5 * t + a4) * t) + a3) * t + a2) * t + a1) * t * math.exp(-x * x)

    return 0.5 * (1.0 + sign * y)


def inverse_normal_cdf(p: float) -> float:
    """標準正規分布の分位点（Acklam の有理近似）

    Raises:
        ValueError: p が (0, 1) の範囲外の場合
    """
    if not (0.0 < p < 1.0):
        raise ValueError(f"p must be in (0, 1), got {p}")

    if p < _P_LOW:
        q = math.sqrt(-2.0 * math.log(p))
        return (((((_C[0] * q + _C[1]) * q + _C[2]) * q + _C[3]) * q + _C[4]) * q + _C[5]) / (
            (((_D[0] * q + _D[1]) * q + _D[2]) * q + _D[3]) * q + 1.0
        )
    if p <= _P_HIGH:
        q = p - 0.5
        r = q * q
        return (
            (((((_A[0] * r + _A[1]) * r + _A[2]) * r + _A[3]) * r + _A[4]) * r + _A[5]) * q
        ) / (((((_B[0] * r + _B[1]) * r + _B[2]) * r + _B[3]) * r + _B[4]) * r + 1.0)

    q = math.sqrt(-2.0 * math.log(1.0 - p))
    return -(((((_C[0] * q + _C[1]) * q + _C[2]) * q + _C[3]) * q + _C[4]) * q + _C[5]) / (
        (((_D[0] * q + _D[1]) * q + _D[2]) * q + _D[3]) * q + 1.0
    )


def z_score(confidence: float) -> float:
    """両側信頼水準に対応するz値

    0.80/0.85/0.90/0.95/0.99 は表の値をそのまま返し、
    それ以外は逆正規分布CDFで計算する。

    Raises:
        ValueError: confidence が (0, 1) の範囲外の場合
    """
    if not (0.0 < confidence < 1.0):
        raise ValueError(f"confidence must be in (0, 1), got {confidence}")

    for level, z in _Z_TABLE.items():
        if math.isclose(confidence, level, abs_tol=1e-12):
            return z
    return inverse_normal_cdf((1.0 + confidence) / 2.0)


def wilson_interval(
    successes: int,
    trials: int,
    confidence: float = DEFAULT_CONFIDENCE,
) -> Tuple[float, float]:
    """Wilsonスコア区間

    Args:
        successes: 成功数
        trials: 試行数
        confidence: 信頼水準

    Returns:
        (lower, upper)。trials が0なら (0, 0)。両端は [0, 1] に丸める。
    """
    if trials == 0:
        return 0.0, 0.0

    z = z_score(confidence)
    p = successes / trials
    n = float(trials)

    denominator = 1.0 + z * z / n
    center = (p + z * z / (2.0 * n)) / denominator
    spread = (z / denominator) * math.sqrt(p * (1.0 - p) / n + z * z / (4.0 * n * n))

    lower = max(0.0, center - spread)
    upper = min(1.0, center + spread)
    return lower, upper


def significance_test(a_conv: int, a_views: int, b_conv: int, b_views: int) -> float:
    """2標本比率のz検定

    Returns:
        Aの真の率がBを上回る確信度（0-1）。どちらかの表示数が0なら0.5。
    """
    if a_views == 0 or b_views == 0:
        return 0.5

    p_a = a_conv / a_views
    p_b = b_conv / b_views

    # 帰無仮説（pA = pB）のもとでのプール比率
    pooled = (a_conv + b_conv) / (a_views + b_views)
    se = math.sqrt(pooled * (1.0 - pooled) * (1.0 / a_views + 1.0 / b_views))

    if se == 0:
        if p_a > p_b:
            return 1.0
        if p_a < p_b:
            return 0.0
        return 0.5

    z = (p_a - p_b) / se
    return normal_cdf(z)


@dataclass
class VariantResult:
    """バリアントごとの分析結果"""

    index: int
    name: str
    views: int
    conversions: int
    rate: float
    ci_lower: float
    ci_upper: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "name": self.name,
            "views": self.views,
            "conversions": self.conversions,
            "rate": self.rate,
            "ci_lower": self.ci_lower,
            "ci_upper": self.ci_upper,
        }


@dataclass
class AnalysisResult:
    """実験全体の分析結果

    Attributes:
        variants: バリアントごとの結果（インデックス順）
        leading_variant: 率が最大のバリアント（同率なら小さいインデックス）
        confidence_level: 先頭バリアントと比較対象との確信度（0-1）
        confident: confidence_level が閾値以上か
    """

    variants: List[VariantResult] = field(default_factory=list)
    leading_variant: int = 0
    confidence_level: float = 0.0
    confident: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variants": [v.to_dict() for v in self.variants],
            "leading_variant": self.leading_variant,
            "confidence_level": self.confidence_level,
            "confident": self.confident,
        }


def analyze(
    experiment: Experiment,
    variant_stats: Iterable[VariantStat],
    threshold: float = SIGNIFICANCE_THRESHOLD,
    confidence: float = DEFAULT_CONFIDENCE,
) -> AnalysisResult:
    """実験の集計値を分析

    イベントのないバリアントも表示数0として含める。
    先頭がコントロール（0番）なら最良のチャレンジャーと、
    そうでなければ先頭とコントロールを比較する。

    Args:
        experiment: 実験定義
        variant_stats: EventLedger.aggregate の結果
        threshold: confident と判定する確信度の閾値
        confidence: 信頼区間の信頼水準

    Returns:
        AnalysisResult
    """
    stats_by_variant = {s.variant: s for s in variant_stats}

    variants: List[VariantResult] = []
    leading = 0
    max_rate = 0.0
    for i, name in enumerate(experiment.variants):
        stat = stats_by_variant.get(i, VariantStat(variant=i))
        rate = stat.conversions / stat.views if stat.views > 0 else 0.0
        ci_lower, ci_upper = wilson_interval(stat.conversions, stat.views, confidence)
        variants.append(
            VariantResult(
                index=i,
                name=name,
                views=stat.views,
                conversions=stat.conversions,
                rate=rate,
                ci_lower=ci_lower,
                ci_upper=ci_upper,
            )
        )
        # 厳密な > で走査するため同率は先に現れたものが残る
        if rate > max_rate:
            max_rate = rate
            leading = i

    confidence_level = 0.0
    if len(variants) >= 2:
        control = variants[0]
        if leading == 0:
            challenger = variants[1]
            for candidate in variants[2:]:
                if candidate.rate > challenger.rate:
                    challenger = candidate
            confidence_level = significance_test(
                control.conversions, control.views,
                challenger.conversions, challenger.views,
            )
        else:
            leader = variants[leading]
            confidence_level = significance_test(
                leader.conversions, leader.views,
                control.conversions, control.views,
            )

    return AnalysisResult(
        variants=variants,
        leading_variant=leading,
        confidence_level=confidence_level,
        confident=confidence_level >= threshold,
    )

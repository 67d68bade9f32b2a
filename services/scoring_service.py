"""
評分服務：加權總分、平均與排名

純計算邏輯，分數鎖定與可見規則在 core.score_manager。
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Sequence

# 各項權重，總和為 1.0
WEIGHTS = {
    "nose": 0.25,
    "palate": 0.35,
    "finish": 0.25,
    "overall": 0.15,
}

SUBSCORE_FIELDS = tuple(WEIGHTS.keys())
MIN_SUBSCORE = 1
MAX_SUBSCORE = 10


def round1(value: float) -> float:
    """
    四捨五入到小數第一位（0.5 遠離零進位）

    注意：經過 repr()，7.199999999999999 這類浮點誤差會進位為 7.2 而不是被截斷。
    """
    return float(Decimal(repr(value)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def calculate_total_score(nose: int, palate: int, finish: int, overall: int) -> float:
    """
    四項加權總分

    範例：
        nose=8, palate=6, finish=7, overall=9
        -> 2.0 + 2.1 + 1.75 + 1.35 = 7.2
    """
    weighted = (
        nose * WEIGHTS["nose"]
        + palate * WEIGHTS["palate"]
        + finish * WEIGHTS["finish"]
        + overall * WEIGHTS["overall"]
    )
    return round1(weighted)


def is_valid_subscore(value: Any) -> bool:
    # bool 是 int 的子類別，但不是合法分數
    if isinstance(value, bool) or not isinstance(value, int):
        return False
    return MIN_SUBSCORE <= value <= MAX_SUBSCORE


def average(values: Sequence[float]) -> float:
    """平均值取到小數第一位，空序列為 0"""
    if not values:
        return 0.0
    return round1(sum(values) / len(values))


def category_averages(scores: Sequence[Any]) -> Dict[str, float]:
    """
    一組 Score 資料列的各項平均

    返回：
        {"nose": .., "palate": .., "finish": .., "overall": ..}
    """
    return {
        field: average([getattr(score, field) for score in scores])
        for field in SUBSCORE_FIELDS
    }


def rank_results(results: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    排序酒款結果並加上 dense ranking

    排序：
    - averageScore 由高到低
    - 平均相同時 display number 由小到大

    dense ranking：平均相同者同名次，下一個不同平均的名次為 rank + 1。

    前置條件：每筆資料需有 "averageScore" 與含 "displayNumber" 的 "whiskey"。
    """
    ordered = sorted(
        results,
        key=lambda r: (-r["averageScore"], r["whiskey"]["displayNumber"])
    )

    rank = 0
    previous = None
    for entry in ordered:
        if entry["averageScore"] != previous:
            rank += 1
            previous = entry["averageScore"]
        entry["ranking"] = rank

    return ordered

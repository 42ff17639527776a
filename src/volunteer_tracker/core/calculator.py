"""
集計計算 - 袋数・重量からボランティア実績の派生値を算出する純粋関数群
"""

import math
from dataclasses import dataclass
from typing import Iterable, List, Optional

from .models import BagResult, Entry


@dataclass(frozen=True)
class BagInput:
    """フォーム入力1行分の袋情報"""
    count: float
    weight: float
    bag_type: Optional[str] = None


def convert_to_hours(duration: float, unit: str) -> float:
    """作業時間を時間単位に変換"""
    if unit == 'minutes':
        return duration / 60
    return duration


def _safe_divide(numerator: float, denominator: float) -> float:
    if denominator == 0:
        # 入力検証は呼び出し側の責務。ゼロ除算は無限大として返す
        return math.copysign(math.inf, numerator) if numerator else math.nan
    return numerator / denominator


def calculate_results(group_name: str,
                      num_volunteers: float,
                      duration_hours: float,
                      bags: Iterable[BagInput]) -> Entry:
    """集計結果を計算する

    グループ名は加工せずそのまま保持する。idとtimestampは保存時に採番されるため空。
    """
    bag_results: List[BagResult] = []
    total_pounds = 0.0

    for index, bag in enumerate(bags):
        total_for_bag_type = bag.count * bag.weight
        bag_results.append(BagResult(
            type=bag.bag_type or f"Type {index + 1}",
            count=bag.count,
            weight=bag.weight,
            total=total_for_bag_type,
        ))
        total_pounds += total_for_bag_type

    pounds_per_volunteer = _safe_divide(total_pounds, num_volunteers)
    pounds_per_volunteer_per_hour = _safe_divide(pounds_per_volunteer, duration_hours)

    return Entry(
        group_name=group_name,
        num_volunteers=num_volunteers,
        duration_hours=duration_hours,
        bag_results=tuple(bag_results),
        total_pounds=total_pounds,
        pounds_per_volunteer=pounds_per_volunteer,
        pounds_per_volunteer_per_hour=pounds_per_volunteer_per_hour,
    )


def _format_weight(weight: Optional[float]) -> str:
    if weight is None:
        return "?"
    return f"{weight:g}"


def generate_markdown_table(entry: Entry) -> str:
    """クリップボード共有用のMarkdown表を生成"""
    lines = [
        f"# {entry.group_name} - Volunteer Results",
        "",
        "## Input Data",
        "",
        "| Metric | Value |",
        "|--------|-------|",
        f"| Volunteer Group | {entry.group_name} |",
        f"| Number of Volunteers | {entry.num_volunteers:g} |",
        f"| Time Volunteered | {entry.duration_hours:.2f} hours |",
        "",
        "## Bags Processed",
        "",
        "| Bag Type | Number of Bags | Pounds per Bag | Total Pounds |",
        "|----------|----------------|----------------|-------------|",
    ]

    for bag in entry.bag_results:
        total = f"{bag.total:.2f} lbs" if bag.total is not None else "?"
        lines.append(f"| {bag.type} | {bag.count:g} | {_format_weight(bag.weight)} lbs | {total} |")

    lines.extend([
        "",
        "## Summary Results",
        "",
        "| Metric | Value |",
        "|--------|-------|",
        f"| Total Pet Food Processed | {entry.total_pounds:.2f} lbs |",
        f"| Amount per Volunteer | {entry.pounds_per_volunteer:.2f} lbs |",
        f"| Amount per Volunteer per Hour | {entry.pounds_per_volunteer_per_hour:.2f} lbs/hour |",
    ])

    return "\n".join(lines) + "\n"

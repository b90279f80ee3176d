"""
Popularity ranking over recent interactions.
"""
from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Tuple

import pandas as pd

from ..ports import InteractionLog


def popular_items(
    interaction_log: InteractionLog,
    since: datetime,
    limit: int,
    exclude_ids: Iterable[str] = (),
) -> List[Tuple[str, int, float]]:
    """
    Items with positive-weight interactions since ``since``.

    Returns ``(item_id, interaction_count, avg_weight)`` ordered by count then
    average weight, both descending; remaining ties keep item id order.
    """
    rows = [
        {"item_id": row.item_id, "weight": row.weight}
        for row in interaction_log.since(since)
        if row.item_id and row.weight > 0
    ]
    if not rows:
        return []
    excluded = set(exclude_ids)
    df = pd.DataFrame(rows)
    if excluded:
        df = df[~df["item_id"].isin(excluded)]
    if df.empty:
        return []
    stats = (
        df.groupby("item_id")
        .agg(interaction_count=("weight", "size"), avg_weight=("weight", "mean"))
        .reset_index()
        .sort_values(
            ["interaction_count", "avg_weight"],
            ascending=[False, False],
            kind="mergesort",
        )
    )
    return [
        (str(row.item_id), int(row.interaction_count), float(row.avg_weight))
        for row in stats.head(limit).itertuples(index=False)
    ]


__all__ = ["popular_items"]

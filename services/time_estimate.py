"""
Rough duration estimate for an import, shown before starting and used to
size the import lease.
"""
from __future__ import annotations

import math
from typing import Dict

from settings import IMPORT_SECONDS_PER_ROW


def estimate_seconds(paid_rows: int, seconds_per_row: float = IMPORT_SECONDS_PER_ROW, delay_ms: int = 0) -> int:
    if paid_rows <= 0:
        return 0
    per_row = seconds_per_row + max(0, delay_ms) / 1000.0
    return int(math.ceil(paid_rows * per_row))


def format_duration(seconds: int) -> str:
    if seconds < 60:
        return f"{seconds} segundos"
    minutes = int(math.ceil(seconds / 60))
    if minutes == 1:
        return "1 minuto"
    return f"{minutes} minutos"


def build_estimate(total_rows: int, paid_rows: int, delay_ms: int = 0) -> Dict[str, object]:
    seconds = estimate_seconds(paid_rows, delay_ms=delay_ms)
    return {
        "totalRows": total_rows,
        "paidRows": paid_rows,
        "estimatedSeconds": seconds,
        "estimatedMinutes": int(math.ceil(seconds / 60)) if seconds else 0,
        "formattedTime": format_duration(seconds),
    }

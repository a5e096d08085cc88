"""Keyword hints from program logs, used only when balance deltas say nothing."""

from __future__ import annotations

from typing import Iterable

from ..datalake.schemas import EventType


def classify_event_logs(logs: Iterable[str]) -> EventType:
    joined = "\n".join(logs).lower()
    if "purchase" in joined or "acquire" in joined:
        return EventType.BUY
    if "redeem" in joined and "buy" not in joined and "purchase" not in joined:
        return EventType.SELL
    if "update" in joined or "configure" in joined:
        return EventType.UPDATE
    return EventType.UNKNOWN


__all__ = ["classify_event_logs"]

"""Choose the token a transaction actually traded."""

from __future__ import annotations

from typing import Mapping, Optional, Tuple

from ..datalake.schemas import BalanceJoin, MintDelta, PrimarySelection


def _largest_magnitude(
    deltas: Mapping[str, float], exclude: Optional[str]
) -> Tuple[Optional[str], float]:
    best_mint: Optional[str] = None
    best_delta = 0.0
    for mint, delta in deltas.items():
        if mint == exclude:
            continue
        if abs(delta) > abs(best_delta):
            best_mint = mint
            best_delta = delta
    return best_mint, best_delta


def select_primary_asset(
    source: BalanceJoin | MintDelta,
    reference_mint: str,
    gross_flow: Optional[Mapping[str, float]] = None,
) -> PrimarySelection:
    """Pick the primary mint of a transaction.

    The magnitude pass takes the non-reference mint with the largest absolute
    net delta, considering the reference asset only when nothing else moved.
    When that yields no mint, the reference asset, or a zero delta, the flow
    pass picks the non-reference mint with the largest gross (absolute,
    per-account) flow, which recovers multi-hop transactions whose net delta
    cancels out. Gross flow comes from ``source`` when it is a
    :class:`BalanceJoin`, otherwise from ``gross_flow``.
    """

    if isinstance(source, BalanceJoin):
        mint_delta: Mapping[str, float] = source.mint_delta
        if gross_flow is None:
            gross_flow = source.gross_flow(exclude=reference_mint)
    else:
        mint_delta = source

    mint, delta = _largest_magnitude(mint_delta, exclude=reference_mint)
    method = "magnitude"
    if mint is None:
        mint, delta = _largest_magnitude(mint_delta, exclude=None)
        method = "reference"

    if mint is None or mint == reference_mint or delta == 0:
        best_mint: Optional[str] = None
        best_flow = 0.0
        for candidate, flow in (gross_flow or {}).items():
            if candidate == reference_mint:
                continue
            if flow > best_flow:
                best_mint = candidate
                best_flow = flow
        if best_mint is not None:
            return PrimarySelection(
                mint=best_mint,
                net_delta=float(mint_delta.get(best_mint, 0.0)),
                method="flow",
            )

    if mint is None or mint == reference_mint:
        return PrimarySelection()
    return PrimarySelection(mint=mint, net_delta=delta, method=method)


__all__ = ["select_primary_asset"]

"""Fixed-point money helpers.

All ledger amounts are integers in minor units of their currency. Decimal is
used only at the edges (human input, display) and for split fractions; float
never touches an amount.
"""

from __future__ import annotations

from decimal import ROUND_DOWN, ROUND_FLOOR, Decimal, InvalidOperation

from escrow_engine.domain.exceptions import InvalidAmountError


def to_minor_units(amount: Decimal | str | int, decimals: int) -> int:
    """Convert a major-unit amount (e.g. ``"12.5"`` USDT) to integer minor units.

    Raises InvalidAmountError if the amount carries more precision than the
    currency supports, rather than silently truncating it.
    """
    try:
        value = Decimal(str(amount))
    except InvalidOperation as err:
        raise InvalidAmountError(f"Not a decimal amount: {amount!r}") from err

    scaled = value.scaleb(decimals)
    whole = scaled.to_integral_value(rounding=ROUND_DOWN)
    if whole != scaled:
        raise InvalidAmountError(
            f"Amount {amount} has more than {decimals} decimal places"
        )
    return int(whole)


def from_minor_units(amount: int, decimals: int) -> Decimal:
    """Convert integer minor units back to a Decimal in major units."""
    return Decimal(amount).scaleb(-decimals)


def split_amount(held: int, fraction: Decimal | str) -> tuple[int, int]:
    """Split a held amount between beneficiary and depositor.

    ``fraction`` is the beneficiary's share in [0, 1]. Returns
    ``(release_amount, refund_amount)``; the two always sum exactly to
    ``held`` and any rounding remainder goes to the beneficiary.
    """
    try:
        share = Decimal(str(fraction))
    except InvalidOperation as err:
        raise InvalidAmountError(f"Not a decimal fraction: {fraction!r}") from err
    if not share.is_finite() or not Decimal(0) <= share <= Decimal(1):
        raise InvalidAmountError(f"Split fraction must be within [0, 1], got {share}")
    if held < 0:
        raise InvalidAmountError(f"Held amount must be non-negative, got {held}")

    refund = int((Decimal(held) * (Decimal(1) - share)).to_integral_value(rounding=ROUND_FLOOR))
    release = held - refund
    return release, refund

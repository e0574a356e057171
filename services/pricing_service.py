from decimal import Decimal, ROUND_HALF_UP
from math import ceil

from models.raffle import PriceQuote
from services.exceptions import ValidationFailed

FREE_RAFFLE_MAX_TICKETS = 100
FIXED_FEE = Decimal("20")
PROMOTION_FEE_PER_MONTH = Decimal("500")
PER_TICKET_RATE = Decimal("0.01")

# (max tickets, commission per 10 tickets)
COMMISSION_TIERS = [
    (100, Decimal("1.00")),
    (1_000, Decimal("0.80")),
    (10_000, Decimal("0.70")),
    (50_000, Decimal("0.50")),
    (1_000_000, Decimal("0.30")),
]

ZERO = Decimal("0")


def tiered_commission(ticket_count: int) -> Decimal:
    """Commission for a raffle of ``ticket_count`` tickets.

    Tiers charge per started block of ten tickets; above the last tier the
    rate becomes a flat amount per ticket.
    """
    for max_tickets, rate in COMMISSION_TIERS:
        if ticket_count <= max_tickets:
            return ceil(ticket_count / 10) * rate
    return ticket_count * PER_TICKET_RATE


def quote(ticket_count: int, is_promoted: bool = False, promotion_months: int = 1,
          prior_active_raffle_count: int = 0) -> PriceQuote:
    """Price a raffle creation. Pure: the same inputs always give the same quote."""
    if isinstance(ticket_count, bool) or not isinstance(ticket_count, int) or ticket_count < 1:
        raise ValidationFailed("Ticket count must be a positive integer")
    if prior_active_raffle_count < 0:
        raise ValidationFailed("Active raffle count cannot be negative")
    if is_promoted and not 1 <= promotion_months <= 12:
        raise ValidationFailed("Promotion months must be between 1 and 12")

    if prior_active_raffle_count == 0 and ticket_count <= FREE_RAFFLE_MAX_TICKETS:
        return PriceQuote(
            fixed_fee=ZERO,
            tiered_commission=ZERO,
            promotion_fee=ZERO,
            total=ZERO,
            is_free_raffle=True,
        )

    commission = tiered_commission(ticket_count)
    promotion_fee = PROMOTION_FEE_PER_MONTH * promotion_months if is_promoted else ZERO
    return PriceQuote(
        fixed_fee=FIXED_FEE,
        tiered_commission=commission,
        promotion_fee=promotion_fee,
        total=FIXED_FEE + commission + promotion_fee,
        is_free_raffle=False,
    )


def ticket_purchase_amount(ticket_price, ticket_count: int) -> Decimal:
    if ticket_count < 1:
        raise ValidationFailed("At least one ticket must be purchased")
    return Decimal(str(ticket_price)) * ticket_count


def to_minor_units(amount) -> int:
    """MXN to centavos, as the gateway expects."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

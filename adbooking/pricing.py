import logging
import math
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional

from sqlalchemy.orm import Session

from . import models
from .errors import NotFoundError

logger = logging.getLogger("adbooking")

# cost(duration_seconds, show_id) -> amount
PricingFunction = Callable[[int, int], Decimal]

# Set at startup when an external tariff service is wired in
primary_pricing: Optional[PricingFunction] = None


def billable_minutes(duration_seconds: int) -> int:
    return math.ceil(duration_seconds / 60)


def fallback_cost(show: models.Show, duration_seconds: int) -> Decimal:
    """Per-minute base price times the duration rounded up to whole minutes."""
    return Decimal(show.base_price_per_min or 0) * billable_minutes(duration_seconds)


def calculate_cost(
        db: Session,
        duration_seconds: int,
        show_id: int,
        pricing: Optional[PricingFunction] = None,
) -> Decimal:
    """
    Prices an ad placement. The primary pricing function wins when it returns
    a usable amount; any failure falls back to the show's base price.
    """
    show = db.get(models.Show, show_id)
    if show is None:
        raise NotFoundError(f"Show {show_id} not found")

    pricing = pricing or primary_pricing
    if pricing is not None:
        try:
            cost = Decimal(pricing(duration_seconds, show_id))
            if cost.is_finite() and cost >= 0:
                return cost
            logger.warning(f"Pricing function returned unusable cost {cost} for show {show_id}, using fallback.")
        except (InvalidOperation, TypeError, ValueError) as e:
            logger.warning(f"Pricing function failed for show {show_id}: {e}. Using fallback.")
        except Exception as e:
            logger.error(f"Unexpected pricing failure for show {show_id}: {e}. Using fallback.")

    return fallback_cost(show, duration_seconds)

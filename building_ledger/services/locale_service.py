"""Locale-aware money formatting.

Uses the babel library. Locale and currency come from settings
(LOCALE / CURRENCY env vars, default es_AR / ARS).
"""

import logging
from decimal import Decimal

from babel import Locale, UnknownLocaleError
from babel.numbers import (
    format_currency as babel_format_currency,
)
from babel.numbers import (
    format_decimal as babel_format_decimal,
)
from babel.numbers import (
    format_percent as babel_format_percent,
)

from building_ledger.services.config import settings

logger = logging.getLogger(__name__)

# Default locale if LOCALE is invalid
DEFAULT_LOCALE = "es_AR"


def _get_locale(locale_str: str) -> str:
    """Validate a locale string, falling back to DEFAULT_LOCALE."""
    try:
        Locale.parse(locale_str)
        return locale_str
    except (UnknownLocaleError, ValueError) as e:
        logger.warning(f"Invalid LOCALE '{locale_str}': {e}. Falling back to '{DEFAULT_LOCALE}'")
        return DEFAULT_LOCALE


# Module-level constants (computed once at import)
LOCALE = _get_locale(settings.locale)
CURRENCY = settings.currency


def format_amount(amount: float | Decimal, include_symbol: bool = True) -> str:
    """Format monetary amount according to locale.

    Args:
        amount: Numeric amount to format
        include_symbol: Whether to include currency symbol (default True)

    Returns:
        Formatted currency string (e.g., '$ 1.234,56')
    """
    if include_symbol:
        return babel_format_currency(Decimal(str(amount)), CURRENCY, locale=LOCALE)
    return babel_format_decimal(Decimal(str(amount)), format="#,##0.00", locale=LOCALE)


def format_share(percentage: Decimal) -> str:
    """Format a unit's expense share given in percent, e.g. 12.5 -> '12,5%'."""
    return babel_format_percent(Decimal(str(percentage)) / 100, format="#,##0.##%", locale=LOCALE)


__all__ = [
    "LOCALE",
    "CURRENCY",
    "format_amount",
    "format_share",
]

"""
Quantity & Density Model

Fixed-precision conversions between liters and kilograms using an operational density.
All ledger arithmetic goes through Decimal; raw binary floats are converted through
their string form and never compared directly.
"""

import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Iterable, Optional, Tuple

from ledger_config import LedgerConfig
from ledger_errors import InvalidQuantity

logger = logging.getLogger(__name__)

_DEFAULT_CONFIG = LedgerConfig()

ZERO = Decimal("0")


def to_decimal(value: Any, field: str = "quantity") -> Decimal:
    """
    Coerce a numeric input into a finite Decimal.

    Floats are converted through str() so 0.1 becomes Decimal("0.1"), not its binary expansion.

    Raises:
        InvalidQuantity: If value is missing, boolean, unparseable or not finite
    """
    if value is None or isinstance(value, bool):
        raise InvalidQuantity(f"{field} is required", field=field, value=value)
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise InvalidQuantity(f"{field} is not a number: {value!r}", field=field, value=str(value))
    if not result.is_finite():
        raise InvalidQuantity(f"{field} must be finite, got {value!r}", field=field, value=str(value))
    return result


def quantize(value: Decimal, places: int = 3) -> Decimal:
    """Round half-up to a fixed number of decimal places."""
    return to_decimal(value).quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


def approx_equal(a: Any, b: Any, epsilon: Optional[Decimal] = None) -> bool:
    eps = _DEFAULT_CONFIG.epsilon if epsilon is None else to_decimal(epsilon, "epsilon")
    return abs(to_decimal(a) - to_decimal(b)) <= eps


def _require_non_negative(value: Any, field: str) -> Decimal:
    amount = to_decimal(value, field)
    if amount < 0:
        raise InvalidQuantity(f"{field} cannot be negative: {amount}", field=field, value=amount)
    return amount


def _require_positive_density(density: Any) -> Decimal:
    d = to_decimal(density, "density")
    if d <= 0:
        raise InvalidQuantity(f"Density must be positive, got {d}", field="density", value=d)
    return d


def to_kg(liters: Any, density: Any) -> Decimal:
    """
    Convert liters to kilograms.

    Args:
        liters: Non-negative volume
        density: Operational density in kg/L, must be positive

    Returns:
        Unrounded kilograms; callers quantize when persisting

    Raises:
        InvalidQuantity: If liters is negative or density is non-positive
    """
    return _require_non_negative(liters, "liters") * _require_positive_density(density)


def to_liters(kg: Any, density: Any) -> Decimal:
    """Convert kilograms to liters. Same validation as to_kg."""
    return _require_non_negative(kg, "kg") / _require_positive_density(density)


def normalize_density(density: Any, config: Optional[LedgerConfig] = None) -> Decimal:
    """
    Normalize an operational density reading.

    Missing or invalid values fall back to the configured default with a warning;
    values outside the Jet A-1 band are kept but logged.
    """
    config = config or _DEFAULT_CONFIG
    if density is None or (isinstance(density, str) and not density.strip()):
        return config.default_density
    try:
        d = to_decimal(density, "density")
    except InvalidQuantity:
        logger.warning(f"Invalid density {density!r}, using default {config.default_density}")
        return config.default_density
    if d <= 0:
        logger.warning(f"Non-positive density {d}, using default {config.default_density}")
        return config.default_density
    if d < config.density_min or d > config.density_max:
        logger.warning(
            f"Density {d} kg/L outside expected range [{config.density_min}-{config.density_max}]"
        )
    return d


def calculate_density(kg: Any, liters: Any, config: Optional[LedgerConfig] = None) -> Decimal:
    """
    Derive density from a known kg/liters pair.

    Falls back to the default density when liters is zero or the result is implausible
    (more than 10% outside the operating band).
    """
    config = config or _DEFAULT_CONFIG
    kg_d = to_decimal(kg, "kg")
    liters_d = to_decimal(liters, "liters")
    if liters_d <= 0:
        return config.default_density
    density = kg_d / liters_d
    low = config.density_min * Decimal("0.9")
    high = config.density_max * Decimal("1.1")
    if density < low or density > high:
        logger.warning(
            f"Calculated density {density:.4f} kg/L outside plausible range [{low:.4f}-{high:.4f}], "
            f"using default {config.default_density}"
        )
        return config.default_density
    return quantize(density, config.density_places)


def weighted_average_density(
    balances: Iterable[Tuple[Any, Any]],
    config: Optional[LedgerConfig] = None
) -> Decimal:
    """Weighted average density over (liters, kg) balances. Default density if nothing is held."""
    total_liters = ZERO
    total_kg = ZERO
    for liters, kg in balances:
        total_liters += to_decimal(liters, "liters")
        total_kg += to_decimal(kg, "kg")
    return calculate_density(total_kg, total_liters, config)


def density_tolerance_kg(liters: Any, density: Any, config: Optional[LedgerConfig] = None) -> Decimal:
    """Largest kg deviation from liters x density that still counts as consistent."""
    config = config or _DEFAULT_CONFIG
    expected = abs(to_decimal(liters, "liters")) * to_decimal(density, "density")
    return max(config.epsilon, expected * config.density_tolerance)


def is_density_consistent(liters: Any, kg: Any, density: Any, config: Optional[LedgerConfig] = None) -> bool:
    """True if |kg| agrees with |liters| x density within the density tolerance."""
    liters_d = abs(to_decimal(liters, "liters"))
    kg_d = abs(to_decimal(kg, "kg"))
    density_d = _require_positive_density(density)
    return abs(kg_d - liters_d * density_d) <= density_tolerance_kg(liters_d, density_d, config)

"""
Variant generation from product options.
Produces the cartesian product of option values as variant skeletons.
"""

from itertools import product as cartesian

import structlog

from app.config import settings
from app.errors import ValidationError
from app.models.database import ProductOption, Variant, VariantOptionValue

logger = structlog.get_logger()


def generate_variants(
    options: list[ProductOption],
    max_options: int | None = None,
    max_combinations: int | None = None,
) -> list[Variant]:
    """
    Build one variant per combination of option values.

    The first option varies slowest. Each variant gets a 1-based position
    matching its generation order and one option value per input option.

    Args:
        options: Ordered product options
        max_options: Upper bound on option count (defaults to settings)
        max_combinations: Upper bound on generated variants (defaults to settings)

    Returns:
        List of variant skeletons (empty when no options are given)

    Raises:
        ValidationError: Too many options, an option without values,
            duplicate names, or too many combinations
    """
    max_options = max_options if max_options is not None else settings.max_product_options
    max_combinations = (
        max_combinations if max_combinations is not None else settings.max_variant_combinations
    )

    if not options:
        return []

    if len(options) > max_options:
        raise ValidationError(f"At most {max_options} options are allowed, got {len(options)}")

    names = [o.name.strip() for o in options]
    if any(not name for name in names):
        raise ValidationError("Option names must not be empty")
    if len(set(names)) != len(names):
        raise ValidationError("Option names must be unique")

    value_lists = []
    total = 1
    for option in options:
        values = option.value_names()
        if not values:
            raise ValidationError(f"Option {option.name!r} has no values")
        if len(set(values)) != len(values):
            raise ValidationError(f"Option {option.name!r} has duplicate values")
        value_lists.append(values)
        total *= len(values)

    if total > max_combinations:
        raise ValidationError(
            f"Options produce {total} combinations, more than the allowed {max_combinations}"
        )

    variants = [
        Variant(
            position=position,
            option_values=[
                VariantOptionValue(option_name=option.name, name=value)
                for option, value in zip(options, combo)
            ],
        )
        for position, combo in enumerate(cartesian(*value_lists), start=1)
    ]

    logger.debug("Generated variants", options=names, count=len(variants))
    return variants

"""
Ступенчатые скидки кампании.

Ступени задаются в Campaign.tier_thresholds по порядку, каждая со своим
количеством кодов. Границы ступеней накопительные и исключающие сверху:
при ступенях 50 и 30 кодов первая действует для уже выданных [0, 50),
вторая для [50, 80), последняя ступень без "codes" - для всех остальных.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)

Tier = Tuple[Optional[int], Decimal]


def parse_tiers(raw) -> List[Tier]:
    """
    Разбирает и проверяет список ступеней.
    Бросает ValueError если данные некорректны.
    """
    if not isinstance(raw, (list, tuple)):
        raise ValueError("tiers must be a list")

    tiers = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ValueError(f"tier #{index + 1} must be an object")

        codes = item.get('codes', item.get('code_count'))
        discount = item.get('discount', item.get('discount_value'))
        if discount is None:
            raise ValueError(f"tier #{index + 1} has no discount")

        try:
            discount = Decimal(str(discount))
        except InvalidOperation:
            raise ValueError(f"tier #{index + 1} discount is not a number")
        if not discount.is_finite() or discount < 0:
            raise ValueError(f"tier #{index + 1} discount must be non-negative")

        if codes is None:
            # ступень без лимита допустима только последней
            if index != len(raw) - 1:
                raise ValueError(f"tier #{index + 1} without codes must be the last one")
        else:
            if isinstance(codes, bool) or not isinstance(codes, int) or codes < 1:
                raise ValueError(f"tier #{index + 1} codes must be a positive integer")

        tiers.append((codes, discount))
    return tiers


def discount_for(campaign, codes_claimed_so_far: int) -> Decimal:
    """
    Скидка для очередной заявки.
    codes_claimed_so_far = total_codes - codes_remaining до резервирования.
    """
    base = Decimal(campaign.discount_value)
    if not campaign.tier_thresholds:
        return base

    try:
        tiers = parse_tiers(campaign.tier_thresholds)
    except ValueError as e:
        logger.warning(f"Malformed tiers for campaign {campaign.pk}, using base discount: {e}")
        return base

    boundary = 0
    for codes, discount in tiers:
        if codes is None:
            return discount
        boundary += codes
        if codes_claimed_so_far < boundary:
            return discount

    # все ступени исчерпаны, а замыкающей нет
    return base

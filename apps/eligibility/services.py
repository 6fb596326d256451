"""
Проверка права на получение кода.

check() - быстрая предварительная проверка без побочных эффектов.
Те же правила о дубликатах и лимите IP повторно выполняются
в ClaimService.reserve под блокировкой кампании (check_business_rules).
"""

import ipaddress
import logging
from typing import Optional, Tuple

from django.core.exceptions import ValidationError
from django.core.validators import validate_email, validate_ipv46_address

from apps.claims.conf import get_claim_settings
from apps.claims.models import RejectReason
from apps.claims import store

logger = logging.getLogger(__name__)

MAX_EMAIL_LENGTH = 254


def normalize_identity(identity) -> str:
    return str(identity or '').strip().lower()


def is_valid_identity(identity: str) -> bool:
    """Синтаксическая проверка email плюс одноразовые домены"""
    if not identity or len(identity) > MAX_EMAIL_LENGTH:
        return False
    try:
        validate_email(identity)
    except ValidationError:
        return False

    domain = identity.rsplit('@', 1)[-1]
    disposable = {d.lower() for d in get_claim_settings()['DISPOSABLE_DOMAINS']}
    return domain not in disposable


def is_valid_ip(ip) -> bool:
    if not ip:
        return False
    try:
        validate_ipv46_address(ip)
    except ValidationError:
        return False
    return True


def is_ip_banned(ip) -> bool:
    """Адрес в списке BANNED_IPS: точное совпадение или попадание в подсеть"""
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return False

    for entry in get_claim_settings()['BANNED_IPS']:
        try:
            if '/' in entry:
                if address in ipaddress.ip_network(entry, strict=False):
                    return True
            elif address == ipaddress.ip_address(entry):
                return True
        except ValueError:
            logger.warning(f"Ignoring malformed BANNED_IPS entry: {entry!r}")
    return False


def check_business_rules(campaign, identity: str, ip) -> Optional[str]:
    """
    Правила, зависящие от уже выданных кодов: повтор email и лимит на IP.
    Возвращает причину отказа или None.
    """
    if store.has_verified_claim(campaign.pk, identity):
        return RejectReason.ALREADY_CLAIMED

    if campaign.ip_limit_enabled and ip:
        if store.count_claims_by_ip(campaign.pk, ip) >= campaign.max_claims_per_ip:
            return RejectReason.IP_QUOTA_EXCEEDED

    return None


def check(campaign, identity, ip) -> Tuple[bool, str]:
    """
    Проверяет можно ли выдать код: (True, '') или (False, причина).
    """
    identity = normalize_identity(identity)
    if not is_valid_identity(identity):
        return False, RejectReason.INVALID_IDENTITY

    if ip:
        if not is_valid_ip(ip):
            return False, RejectReason.INVALID_IP
        if is_ip_banned(ip):
            logger.info(f"Banned IP {ip} tried campaign {campaign.pk}")
            return False, RejectReason.IP_BLOCKED

    reason = check_business_rules(campaign, identity, ip)
    if reason:
        return False, reason
    return True, ''

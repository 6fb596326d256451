"""
Хранилище заявок. Все изменения записей Claim проходят через эти функции,
переходы статусов сделаны условными UPDATE, чтобы параллельные
подтверждение и освобождение слота не могли выиграть оба.
"""

import secrets
import string
from typing import Optional

from django.utils import timezone

from .conf import get_claim_settings
from .models import Claim, ClaimStatus

CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_issued_code() -> str:
    """Генерирует уникальный код вида FOMOAB12CD34"""
    cfg = get_claim_settings()
    max_attempts = 100
    for _ in range(max_attempts):
        suffix = ''.join(secrets.choice(CODE_ALPHABET) for _ in range(cfg['CODE_LENGTH']))
        code = f"{cfg['CODE_PREFIX']}{suffix}"
        if not Claim.objects.filter(issued_code=code).exists():
            return code
    raise ValueError("Не удалось сгенерировать уникальный код")


def insert_claim(*, campaign, identity: str, ip_address, discount_value, expires_at,
                 verified: bool = False, user=None, issued_code: str = '') -> Claim:
    now = timezone.now()
    return Claim.objects.create(
        campaign=campaign,
        identity=identity,
        user=user,
        issued_code=issued_code or generate_issued_code(),
        status=ClaimStatus.VERIFIED if verified else ClaimStatus.RESERVED,
        verified=verified,
        verified_at=now if verified else None,
        ip_address=ip_address,
        discount_value_applied=discount_value,
        reserved_at=now,
        expires_at=expires_at,
    )


def find_claim(campaign_id, identity: str) -> Optional[Claim]:
    """Подтвержденная заявка email в кампании, иначе самая свежая"""
    qs = Claim.objects.filter(campaign_id=campaign_id, identity=identity)
    return qs.filter(verified=True).first() or qs.order_by('-reserved_at', '-id').first()


def has_verified_claim(campaign_id, identity: str) -> bool:
    return Claim.objects.filter(campaign_id=campaign_id, identity=identity, verified=True).exists()


def find_pending_claim(campaign_id, identity: str, now=None) -> Optional[Claim]:
    """Неподтвержденная заявка, срок подтверждения которой еще не вышел"""
    now = now or timezone.now()
    return Claim.objects.filter(
        campaign_id=campaign_id,
        identity=identity,
        status=ClaimStatus.RESERVED,
        expires_at__gt=now,
    ).first()


def count_claims_by_ip(campaign_id, ip_address) -> int:
    """Считаются только подтвержденные заявки"""
    return Claim.objects.filter(campaign_id=campaign_id, ip_address=ip_address, verified=True).count()


def mark_verified(claim: Claim, coupon_expires_at, now=None) -> bool:
    now = now or timezone.now()
    updated = Claim.objects.filter(pk=claim.pk, status=ClaimStatus.RESERVED, expires_at__gt=now).update(
        status=ClaimStatus.VERIFIED,
        verified=True,
        verified_at=now,
        expires_at=coupon_expires_at,
    )
    if updated:
        claim.status = ClaimStatus.VERIFIED
        claim.verified = True
        claim.verified_at = now
        claim.expires_at = coupon_expires_at
    return updated == 1


def mark_finalized(claim: Claim, coupon_id: str, now=None) -> bool:
    now = now or timezone.now()
    updated = Claim.objects.filter(pk=claim.pk, status=ClaimStatus.VERIFIED).update(
        status=ClaimStatus.FINALIZED,
        coupon_id=coupon_id or '',
        finalized_at=now,
        last_issuer_error='',
    )
    if updated:
        claim.status = ClaimStatus.FINALIZED
        claim.coupon_id = coupon_id or ''
        claim.finalized_at = now
        claim.last_issuer_error = ''
    return updated == 1


def record_issuer_failure(claim: Claim, error: str) -> None:
    claim.issuer_attempts += 1
    claim.last_issuer_error = error[:2000]
    claim.save(update_fields=['issuer_attempts', 'last_issuer_error'])


def release_claim(claim_id, now=None, require_expired: bool = True) -> bool:
    """Освобождает неподтвержденную заявку, по умолчанию только просроченную"""
    now = now or timezone.now()
    qs = Claim.objects.filter(pk=claim_id, status=ClaimStatus.RESERVED, verified=False)
    if require_expired:
        qs = qs.filter(expires_at__lt=now)
    return qs.update(status=ClaimStatus.RELEASED, released_at=now) == 1


def expire_claim(claim_id, now=None) -> bool:
    """Помечает истекший выданный купон"""
    now = now or timezone.now()
    updated = Claim.objects.filter(
        pk=claim_id,
        status__in=[ClaimStatus.VERIFIED, ClaimStatus.FINALIZED],
        expires_at__lt=now,
    ).update(status=ClaimStatus.EXPIRED)
    return updated == 1

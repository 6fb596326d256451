import logging
from datetime import timedelta

from django.core.cache import cache
from django.db import DatabaseError, IntegrityError, transaction
from django.utils import timezone

from apps.campaigns.models import CampaignStatus
from apps.campaigns.services import get_campaign, lock_campaign, update_remaining
from apps.campaigns.tiers import discount_for
from apps.eligibility.services import check, check_business_rules, normalize_identity
from apps.integrations.issuers import CouponIssuerError, get_coupon_issuer
from apps.integrations.notifiers import get_notifier
from apps.verification.services import VerificationManager
from . import store
from .conf import get_claim_settings
from .finalization import finalize_claim
from .models import Claim, ClaimStatus, RejectReason
from .results import ClaimResult

logger = logging.getLogger(__name__)


def rate_limited(key: str, scope: str, limit: int = 5, window_sec: int = 3600) -> bool:
    """
    Простой rate-limiting на основе кэша
    Возвращает True если лимит превышен
    """
    cache_key = f"rl:{scope}:{key}"
    cache.add(cache_key, 0, timeout=window_sec)
    try:
        val = cache.incr(cache_key)
    except ValueError:
        # ключ истек между add и incr
        cache.set(cache_key, 1, timeout=window_sec)
        val = 1
    return val > limit


class ClaimService:
    """
    Выдача кодов: резервирование слота, подтверждение email, выдача купона.
    Внешние системы передаются явно, по умолчанию берутся из настроек.
    """

    def __init__(self, issuer=None, notifier=None):
        self.issuer = issuer or get_coupon_issuer()
        self.notifier = notifier or get_notifier()
        self.verification = VerificationManager(self.issuer, self.notifier)

    def reserve(self, campaign_id, identity: str, ip, *, trusted: bool = False, user=None) -> ClaimResult:
        """
        Резервирует один код кампании в одной транзакции под блокировкой
        строки кампании. Правила о повторе email и лимите IP проверяются
        повторно под блокировкой. Любая ошибка БД откатывает и списание
        остатка, и запись заявки.
        """
        identity = normalize_identity(identity)
        cfg = get_claim_settings()

        try:
            with transaction.atomic():
                campaign = lock_campaign(campaign_id)
                if campaign is None:
                    return ClaimResult.rejected(RejectReason.CAMPAIGN_NOT_FOUND)
                if campaign.status != CampaignStatus.ACTIVE:
                    return ClaimResult.rejected(RejectReason.CAMPAIGN_INACTIVE,
                                                codes_remaining=campaign.codes_remaining)
                if campaign.codes_remaining <= 0:
                    return ClaimResult.rejected(RejectReason.SOLD_OUT, codes_remaining=0)

                reason = check_business_rules(campaign, identity, ip)
                if reason:
                    return ClaimResult.rejected(reason, codes_remaining=campaign.codes_remaining)

                if not trusted and store.find_pending_claim(campaign.pk, identity):
                    return ClaimResult.rejected(RejectReason.VERIFICATION_PENDING,
                                                codes_remaining=campaign.codes_remaining)

                # скидка по числу кодов, выданных до этой заявки
                discount = discount_for(campaign, campaign.claimed_count())

                if not update_remaining(campaign.pk, -1):
                    return ClaimResult.rejected(RejectReason.SOLD_OUT, codes_remaining=0)

                now = timezone.now()
                if trusted:
                    expires_at = now + timedelta(hours=campaign.expiry_hours)
                else:
                    expires_at = now + timedelta(minutes=cfg['VERIFICATION_TTL_MINUTES'])

                claim = store.insert_claim(
                    campaign=campaign,
                    identity=identity,
                    ip_address=ip or None,
                    discount_value=discount,
                    expires_at=expires_at,
                    verified=trusted,
                    user=user,
                )
                campaign.refresh_from_db(fields=['codes_remaining'])
        except IntegrityError as e:
            if store.has_verified_claim(campaign_id, identity):
                return ClaimResult.rejected(RejectReason.ALREADY_CLAIMED)
            logger.error(f"Integrity error reserving campaign {campaign_id} for {identity}: {e}")
            return ClaimResult.rejected(RejectReason.TRANSIENT_ERROR)
        except DatabaseError as e:
            logger.error(f"Database error reserving campaign {campaign_id}: {e}")
            return ClaimResult.rejected(RejectReason.TRANSIENT_ERROR)

        logger.info(
            f"Reserved {claim.issued_code} in campaign {campaign.pk} for {identity} "
            f"(discount {discount}, remaining {campaign.codes_remaining})"
        )
        return ClaimResult.ok(claim, codes_remaining=campaign.codes_remaining)

    def claim(self, campaign_id, identity: str, ip, user=None) -> ClaimResult:
        """
        Полный сценарий заявки. Для авторизованного пользователя (user передан)
        код выдается сразу, иначе отправляется письмо с подтверждением.
        """
        identity = normalize_identity(identity)
        campaign = get_campaign(campaign_id)
        if campaign is None:
            return ClaimResult.rejected(RejectReason.CAMPAIGN_NOT_FOUND)

        ok, reason = check(campaign, identity, ip)
        if not ok:
            return ClaimResult.rejected(reason, codes_remaining=campaign.codes_remaining)

        trusted = user is not None
        result = self.reserve(campaign_id, identity, ip, trusted=trusted, user=user)
        if not result.success:
            return result

        claim = result.claim
        if trusted:
            finalized = finalize_claim(claim, self.issuer, self.notifier)
            finalized.codes_remaining = result.codes_remaining
            return finalized

        try:
            self.verification.start_verification(claim)
        except DatabaseError as e:
            logger.error(f"Could not start verification for claim {claim.pk}: {e}")
            self.cancel_reservation(claim)
            return ClaimResult.rejected(RejectReason.TRANSIENT_ERROR)

        result.message = 'Проверьте почту и подтвердите email, чтобы получить код'
        return result

    def cancel_reservation(self, claim: Claim) -> bool:
        """Сразу возвращает слот неподтвержденной заявки"""
        try:
            with transaction.atomic():
                lock_campaign(claim.campaign_id)
                if not store.release_claim(claim.pk, require_expired=False):
                    return False
                if not update_remaining(claim.campaign_id, 1, expected_status=None):
                    transaction.set_rollback(True)
                    return False
        except DatabaseError as e:
            logger.error(f"Could not cancel reservation {claim.pk}: {e}")
            return False
        logger.info(f"Reservation {claim.pk} cancelled, slot returned")
        return True

    def confirm(self, token: str) -> ClaimResult:
        return self.verification.confirm(token)

    def sweep_expired(self, now=None) -> int:
        return self.verification.sweep_expired(now=now)

    def cleanup_expired(self, now=None) -> int:
        """
        Помечает выданные купоны с истекшим сроком как EXPIRED и удаляет
        их во внешней системе. Слот не возвращается: код уже был выдан.
        """
        now = now or timezone.now()
        candidates = Claim.objects.filter(
            status__in=[ClaimStatus.VERIFIED, ClaimStatus.FINALIZED],
            expires_at__lt=now,
        )
        expired = 0
        for claim in candidates.iterator():
            if not store.expire_claim(claim.pk, now=now):
                continue
            expired += 1
            try:
                self.issuer.revoke(claim.issued_code, claim.coupon_id)
            except CouponIssuerError as e:
                logger.error(f"Failed to revoke coupon {claim.issued_code}: {e}")

        if expired:
            logger.info(f"Expired {expired} issued coupons")
        return expired

    def retry_pending_issuance(self, limit: int = 100, now=None) -> int:
        """Повторная выдача купонов для подтвержденных заявок после ошибки внешней системы"""
        now = now or timezone.now()
        pending = (
            Claim.objects.select_related('campaign')
            .filter(status=ClaimStatus.VERIFIED, expires_at__gt=now)
            .order_by('verified_at', 'id')[:limit]
        )
        finalized = 0
        for claim in pending:
            if finalize_claim(claim, self.issuer, self.notifier).success:
                finalized += 1

        if finalized:
            logger.info(f"Retried issuance: {finalized} coupons created")
        return finalized


def get_claim_service(issuer=None, notifier=None) -> ClaimService:
    return ClaimService(issuer=issuer, notifier=notifier)

"""
Подтверждение email для неавторизованных покупателей.

Заявка резервирует слот сразу, а код выдается только после перехода
по ссылке из письма. Неподтвержденные заявки с истекшим сроком
освобождаются sweep_expired, слот возвращается в пул кампании.
"""

import logging
from collections import defaultdict
from datetime import timedelta

from django.db import DatabaseError, IntegrityError, transaction
from django.utils import timezone

from apps.campaigns.services import get_campaign, lock_campaign, update_remaining
from apps.claims import store
from apps.claims.finalization import finalize_claim
from apps.claims.models import Claim, ClaimStatus, RejectReason
from apps.claims.results import ClaimResult
from apps.integrations.notifiers import NotifierError
from apps.waitlist.services import notify_waitlist
from .models import VerificationToken

logger = logging.getLogger(__name__)


class VerificationManager:

    def __init__(self, issuer, notifier):
        self.issuer = issuer
        self.notifier = notifier

    def start_verification(self, claim: Claim) -> str:
        """Создает одноразовый токен для заявки и отправляет письмо со ссылкой"""
        verification = VerificationToken.objects.create(claim=claim, expires_at=claim.expires_at)
        try:
            self.notifier.send_verification(claim.identity, verification.token, claim.campaign)
        except NotifierError as e:
            logger.error(f"Verification email failed for claim {claim.pk}: {e}")
        return verification.token

    def confirm(self, token: str) -> ClaimResult:
        """
        Подтверждает заявку по токену и выдает купон.
        Повторный переход по той же ссылке возвращает тот же результат,
        купон не создается второй раз и остаток не меняется.
        """
        token = (token or '').strip()
        verification = None
        if token:
            verification = (
                VerificationToken.objects.select_related('claim__campaign').filter(token=token).first()
            )
        if verification is None:
            return ClaimResult.rejected(RejectReason.TOKEN_NOT_FOUND)

        claim = verification.claim
        if verification.is_consumed:
            return self._replay(claim)

        now = timezone.now()
        if verification.is_expired(now) or claim.status != ClaimStatus.RESERVED:
            return ClaimResult.rejected(RejectReason.TOKEN_EXPIRED)

        coupon_expires_at = now + timedelta(hours=claim.campaign.expiry_hours)
        try:
            with transaction.atomic():
                locked = VerificationToken.objects.select_for_update().get(pk=verification.pk)
                if locked.is_consumed:
                    already_consumed = True
                else:
                    already_consumed = False
                    if not store.mark_verified(claim, coupon_expires_at, now=now):
                        # заявку успели освободить
                        return ClaimResult.rejected(RejectReason.TOKEN_EXPIRED)
                    locked.consumed_at = now
                    locked.save(update_fields=['consumed_at'])
        except IntegrityError:
            return ClaimResult.rejected(RejectReason.ALREADY_CLAIMED)
        except DatabaseError as e:
            logger.error(f"Database error confirming claim {claim.pk}: {e}")
            return ClaimResult.rejected(RejectReason.TRANSIENT_ERROR)

        if already_consumed:
            return self._replay(claim)

        logger.info(f"Claim {claim.pk} verified by {claim.identity}")
        return finalize_claim(claim, self.issuer, self.notifier)

    def _replay(self, claim: Claim) -> ClaimResult:
        claim.refresh_from_db()
        if claim.status == ClaimStatus.FINALIZED:
            return ClaimResult.ok(claim)
        if claim.status == ClaimStatus.VERIFIED:
            # купон еще не создан, пробуем снова по тому же коду
            return finalize_claim(claim, self.issuer, self.notifier)
        return ClaimResult.rejected(RejectReason.TOKEN_EXPIRED, claim=claim)

    def sweep_expired(self, now=None) -> int:
        """
        Освобождает неподтвержденные заявки с истекшим сроком и возвращает
        слоты кампаниям. Каждая заявка в своей транзакции под той же
        блокировкой кампании, что и резервирование.
        """
        now = now or timezone.now()
        candidates = list(self.expired_candidates(now).values_list('pk', 'campaign_id'))

        released = defaultdict(int)
        for claim_id, campaign_id in candidates:
            try:
                with transaction.atomic():
                    lock_campaign(campaign_id)
                    if not store.release_claim(claim_id, now=now):
                        continue
                    if not update_remaining(campaign_id, 1, expected_status=None):
                        logger.error(f"Campaign {campaign_id} pool is full, claim {claim_id} not released")
                        transaction.set_rollback(True)
                        continue
            except DatabaseError as e:
                logger.error(f"Failed to release claim {claim_id}: {e}")
                continue
            released[campaign_id] += 1

        for campaign_id, slots in released.items():
            logger.info(f"Released {slots} expired reservations in campaign {campaign_id}")
            campaign = get_campaign(campaign_id)
            if campaign is not None and campaign.is_claimable():
                notify_waitlist(campaign, slots, self.notifier)

        return sum(released.values())

    def expired_candidates(self, now=None):
        """Заявки, которые освободит следующий sweep_expired"""
        now = now or timezone.now()
        return Claim.objects.filter(status=ClaimStatus.RESERVED, verified=False, expires_at__lt=now)

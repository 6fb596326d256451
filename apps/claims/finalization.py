import logging

from django.db import transaction

from apps.integrations.issuers import CouponIssuerError
from apps.integrations.notifiers import NotifierError
from . import store
from .models import Claim, ClaimStatus, RejectReason
from .results import ClaimResult

logger = logging.getLogger(__name__)


def finalize_claim(claim: Claim, issuer, notifier) -> ClaimResult:
    """
    Создает купон во внешней системе для подтвержденной заявки.

    Купон создается под блокировкой строки заявки: параллельные вызовы
    ждут первый и видят уже выданную заявку, внешняя система вызывается
    один раз. Повторный вызов безопасен, купон создается по тому же
    issued_code. При ошибке системы купонов заявка остается VERIFIED
    и подхватывается retry_pending_issuance.
    """
    if claim.status == ClaimStatus.FINALIZED:
        return ClaimResult.ok(claim)

    with transaction.atomic():
        locked = Claim.objects.select_for_update().filter(pk=claim.pk).first()
        if locked is None:
            return ClaimResult.rejected(RejectReason.TOKEN_EXPIRED, claim=claim)
        if locked.status == ClaimStatus.FINALIZED:
            return ClaimResult.ok(locked)
        if locked.status != ClaimStatus.VERIFIED:
            return ClaimResult.rejected(RejectReason.TOKEN_EXPIRED, claim=locked)

        campaign = locked.campaign
        try:
            coupon_id = issuer.issue(
                locked.issued_code,
                campaign.discount_type,
                locked.discount_value_applied,
                locked.identity,
                campaign.scope,
                locked.expires_at,
            )
        except CouponIssuerError as e:
            logger.error(f"Coupon issue failed for claim {locked.pk} ({locked.issued_code}): {e}")
            store.record_issuer_failure(locked, str(e))
            return ClaimResult.rejected(RejectReason.ISSUER_FAILURE, claim=locked, issuer_error=str(e))

        store.mark_finalized(locked, coupon_id)

    logger.info(f"Claim {locked.pk} finalized, coupon {locked.issued_code} (id={coupon_id})")

    try:
        notifier.send_confirmation(locked.identity, locked.issued_code, campaign, claim=locked)
    except NotifierError as e:
        logger.error(f"Confirmation notice failed for claim {locked.pk}: {e}")

    return ClaimResult.ok(locked)

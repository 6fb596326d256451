from django.conf import settings
from django.db import models
from django.db.models import Q
from django.utils import timezone

from apps.campaigns.models import Campaign

User = settings.AUTH_USER_MODEL


class ClaimStatus(models.TextChoices):
    RESERVED = 'reserved', 'Reserved'      # слот занят, email не подтвержден
    VERIFIED = 'verified', 'Verified'      # email подтвержден, купон еще не создан
    FINALIZED = 'finalized', 'Finalized'   # купон создан во внешней системе
    RELEASED = 'released', 'Released'      # подтверждение просрочено, слот возвращен
    EXPIRED = 'expired', 'Expired'         # срок действия купона истек


class RejectReason(models.TextChoices):
    INVALID_IDENTITY = 'invalid_identity', 'Укажите корректный email'
    INVALID_IP = 'invalid_ip', 'Некорректный IP адрес'
    IP_BLOCKED = 'ip_blocked', 'Доступ запрещен'
    ALREADY_CLAIMED = 'already_claimed', 'Вы уже получили код в этой акции'
    IP_QUOTA_EXCEEDED = 'ip_quota_exceeded', 'С вашего IP адреса получено максимальное количество кодов'
    VERIFICATION_PENDING = 'verification_pending', 'Письмо с подтверждением уже отправлено, проверьте почту'
    RATE_LIMITED = 'rate_limited', 'Слишком много запросов, попробуйте позже'
    SOLD_OUT = 'sold_out', 'Все коды уже разобраны'
    CAMPAIGN_INACTIVE = 'campaign_inactive', 'Акция недоступна или завершена'
    CAMPAIGN_NOT_FOUND = 'campaign_not_found', 'Акция не найдена'
    TOKEN_EXPIRED = 'token_expired', 'Срок действия ссылки истек, запросите код заново'
    TOKEN_NOT_FOUND = 'token_not_found', 'Ссылка недействительна'
    TRANSIENT_ERROR = 'transient_error', 'Временная ошибка, попробуйте еще раз'
    ISSUER_FAILURE = 'issuer_failure', 'Код зарезервирован, купон будет активирован в ближайшее время'


class Claim(models.Model):
    campaign = models.ForeignKey(Campaign, on_delete=models.CASCADE, related_name='claims')
    identity = models.EmailField(max_length=254)
    user = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name='fomo_claims')

    issued_code = models.CharField(max_length=50, unique=True)
    status = models.CharField(max_length=16, choices=ClaimStatus.choices, default=ClaimStatus.RESERVED)
    verified = models.BooleanField(default=False)
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    # скидка фиксируется в момент резервирования по действующей ступени
    discount_value_applied = models.DecimalField(max_digits=10, decimal_places=2)

    reserved_at = models.DateTimeField(default=timezone.now)
    # пока не подтвержден - дедлайн подтверждения, после - срок действия купона
    expires_at = models.DateTimeField()
    verified_at = models.DateTimeField(null=True, blank=True)
    finalized_at = models.DateTimeField(null=True, blank=True)
    released_at = models.DateTimeField(null=True, blank=True)

    coupon_id = models.CharField(max_length=64, blank=True)  # id купона во внешней системе
    issuer_attempts = models.PositiveIntegerField(default=0)
    last_issuer_error = models.TextField(blank=True)

    class Meta:
        ordering = ['-reserved_at']
        indexes = [
            models.Index(fields=['campaign', 'identity'], name='claim_campaign_identity_idx'),
            models.Index(fields=['campaign', 'ip_address', 'verified'], name='claim_campaign_ip_idx'),
            models.Index(fields=['status', 'expires_at'], name='claim_status_expires_idx'),
        ]
        constraints = [
            # не больше одной подтвержденной заявки на email в кампании
            models.UniqueConstraint(
                fields=['campaign', 'identity'],
                condition=Q(verified=True),
                name='unique_verified_claim_per_identity',
            ),
        ]

    def __str__(self):
        return f"{self.issued_code} ({self.identity}, {self.get_status_display()})"

    def is_expired(self, now=None) -> bool:
        return (now or timezone.now()) >= self.expires_at

    def is_pending_verification(self, now=None) -> bool:
        return self.status == ClaimStatus.RESERVED and not self.is_expired(now)

from decimal import Decimal

from django.db import models
from django.db.models import F, Q


class DiscountType(models.TextChoices):
    PERCENTAGE = 'percentage', 'Percentage'
    FIXED_AMOUNT = 'fixed_amount', 'Fixed amount'


class ScopeType(models.TextChoices):
    ALL = 'all', 'All products'
    PRODUCTS = 'products', 'Products'
    CATEGORIES = 'categories', 'Categories'


class CampaignStatus(models.TextChoices):
    ACTIVE = 'active', 'Active'
    PAUSED = 'paused', 'Paused'
    ENDED = 'ended', 'Ended'


POOL_FIELDS = ('total_codes', 'codes_remaining')


class Campaign(models.Model):
    name = models.CharField(max_length=255)

    discount_type = models.CharField(max_length=16, choices=DiscountType.choices, default=DiscountType.PERCENTAGE)
    discount_value = models.DecimalField(max_digits=10, decimal_places=2)
    # [{"codes": 50, "discount": 25}, {"codes": 30, "discount": 15}, {"discount": 10}]
    tier_thresholds = models.JSONField(default=list, blank=True)

    # Пул кодов. Меняется только через services.update_remaining и services.resize_pool
    total_codes = models.PositiveIntegerField(default=100)
    codes_remaining = models.PositiveIntegerField(blank=True)
    expiry_hours = models.PositiveIntegerField(default=24, help_text="Сколько часов действует выданный купон")

    ip_limit_enabled = models.BooleanField(default=False)
    max_claims_per_ip = models.PositiveIntegerField(default=1)

    scope_type = models.CharField(max_length=16, choices=ScopeType.choices, default=ScopeType.ALL)
    scope_ids = models.JSONField(default=list, blank=True)  # id товаров или категорий

    status = models.CharField(max_length=16, choices=CampaignStatus.choices, default=CampaignStatus.ACTIVE)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-id']
        indexes = [models.Index(fields=['status', 'codes_remaining'], name='campaign_status_remaining_idx')]
        constraints = [
            models.CheckConstraint(
                condition=Q(codes_remaining__lte=F('total_codes')),
                name='campaign_remaining_within_total',
            ),
        ]

    def clean(self):
        from .services import validate_campaign_data
        validate_campaign_data({
            'name': self.name,
            'discount_type': self.discount_type,
            'discount_value': self.discount_value,
            'tier_thresholds': self.tier_thresholds,
            'total_codes': self.total_codes,
            'scope_type': self.scope_type,
            'scope_ids': self.scope_ids,
            'max_claims_per_ip': self.max_claims_per_ip,
        })

    def save(self, *args, **kwargs):
        if self._state.adding:
            if self.codes_remaining is None:
                self.codes_remaining = self.total_codes
        elif kwargs.get('update_fields') is None:
            # размер пула меняют только update_remaining и resize_pool
            kwargs['update_fields'] = [
                f.name for f in self._meta.concrete_fields
                if not f.primary_key and f.name not in POOL_FIELDS
            ]
        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.name} ({self.codes_remaining}/{self.total_codes})"

    def claimed_count(self) -> int:
        """Сколько кодов уже зарезервировано (до текущей заявки)"""
        return self.total_codes - self.codes_remaining

    def is_sold_out(self) -> bool:
        return self.codes_remaining <= 0

    def is_claimable(self) -> bool:
        return self.status == CampaignStatus.ACTIVE and not self.is_sold_out()

    @property
    def scope(self) -> dict:
        if self.scope_type == ScopeType.ALL:
            return {'type': ScopeType.ALL, 'ids': []}
        return {'type': self.scope_type, 'ids': [int(i) for i in (self.scope_ids or [])]}

    def discount_label(self, value=None) -> str:
        """Подпись скидки для писем: '25% OFF' или 'SAVE 10.00'"""
        value = Decimal(value if value is not None else self.discount_value)
        if self.discount_type == DiscountType.PERCENTAGE:
            return f"{value.normalize():f}% OFF"
        return f"SAVE {value:.2f}"

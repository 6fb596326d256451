from django.db import models
from django.db.models import Q

from apps.campaigns.models import Campaign


class WaitlistEntry(models.Model):
    """Подписка на освободившиеся коды. Без кампании - на любую акцию"""
    campaign = models.ForeignKey(Campaign, on_delete=models.CASCADE, null=True, blank=True, related_name='waitlist')
    email = models.EmailField(max_length=254)
    joined_at = models.DateTimeField(auto_now_add=True)
    notified = models.BooleanField(default=False)
    notified_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ['joined_at']
        constraints = [
            models.UniqueConstraint(fields=['campaign', 'email'], name='unique_waitlist_campaign_email'),
            models.UniqueConstraint(
                fields=['email'],
                condition=Q(campaign__isnull=True),
                name='unique_waitlist_global_email',
            ),
        ]

    def __str__(self):
        return f"{self.email} -> {self.campaign_id or 'any'}"

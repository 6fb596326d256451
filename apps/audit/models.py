from django.conf import settings
from django.db import models


class AuditAction(models.TextChoices):
    CAMPAIGN_CREATED = 'campaign_created', 'Campaign created'
    CAMPAIGN_UPDATED = 'campaign_updated', 'Campaign updated'
    CAMPAIGN_STATUS_CHANGED = 'campaign_status_changed', 'Campaign status changed'


class AuditLog(models.Model):
    user = models.ForeignKey(settings.AUTH_USER_MODEL, null=True, blank=True, on_delete=models.SET_NULL,
                             related_name='audit_entries')
    action = models.CharField(max_length=100, choices=AuditAction.choices)
    object_type = models.CharField(max_length=50, blank=True)
    object_id = models.BigIntegerField(null=True, blank=True)

    old_value = models.JSONField(null=True, blank=True)
    new_value = models.JSONField(null=True, blank=True)  # только измененные поля

    ip_address = models.GenericIPAddressField(null=True, blank=True)
    user_agent = models.TextField(blank=True)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at', '-id']
        indexes = [
            models.Index(fields=['object_type', 'object_id'], name='audit_object_idx'),
            models.Index(fields=['action'], name='audit_action_idx'),
            models.Index(fields=['created_at'], name='audit_created_idx'),
        ]

    def __str__(self):
        return f"{self.get_action_display()} {self.object_type}#{self.object_id} ({self.created_at:%Y-%m-%d %H:%M})"

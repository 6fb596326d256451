import secrets

from django.db import models
from django.utils import timezone

from apps.claims.models import Claim


def generate_token() -> str:
    """64 hex символа, 256 бит случайности"""
    return secrets.token_hex(32)


class VerificationToken(models.Model):
    token = models.CharField(max_length=64, unique=True, default=generate_token)
    claim = models.OneToOneField(Claim, on_delete=models.CASCADE, related_name='verification_token')
    expires_at = models.DateTimeField()
    consumed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return f"Token for claim {self.claim_id}"

    def is_expired(self, now=None) -> bool:
        return (now or timezone.now()) >= self.expires_at

    @property
    def is_consumed(self) -> bool:
        return self.consumed_at is not None

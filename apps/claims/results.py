from typing import Optional

from .models import Claim, ClaimStatus, RejectReason

# HTTP статусы для отказов API
HTTP_STATUS = {
    RejectReason.INVALID_IDENTITY: 400,
    RejectReason.INVALID_IP: 400,
    RejectReason.IP_BLOCKED: 403,
    RejectReason.CAMPAIGN_NOT_FOUND: 404,
    RejectReason.TOKEN_NOT_FOUND: 404,
    RejectReason.ALREADY_CLAIMED: 409,
    RejectReason.VERIFICATION_PENDING: 409,
    RejectReason.SOLD_OUT: 409,
    RejectReason.CAMPAIGN_INACTIVE: 409,
    RejectReason.TOKEN_EXPIRED: 410,
    RejectReason.IP_QUOTA_EXCEEDED: 429,
    RejectReason.RATE_LIMITED: 429,
    RejectReason.TRANSIENT_ERROR: 503,
    RejectReason.ISSUER_FAILURE: 202,
}


class ClaimResult:
    """Результат операции с заявкой: успех с заявкой или отказ с причиной"""

    def __init__(self, success: bool, claim: Optional[Claim] = None, reason: str = '',
                 message: str = '', codes_remaining: Optional[int] = None, issuer_error: str = ''):
        self.success = success
        self.claim = claim
        self.reason = reason
        self.message = message or (RejectReason(reason).label if reason else '')
        self.codes_remaining = codes_remaining
        self.issuer_error = issuer_error

    @classmethod
    def ok(cls, claim: Claim, codes_remaining: Optional[int] = None, message: str = ''):
        return cls(True, claim=claim, codes_remaining=codes_remaining, message=message)

    @classmethod
    def rejected(cls, reason: str, claim: Optional[Claim] = None, codes_remaining: Optional[int] = None,
                 issuer_error: str = ''):
        return cls(False, claim=claim, reason=reason, codes_remaining=codes_remaining,
                   issuer_error=issuer_error)

    @property
    def is_finalized(self) -> bool:
        return self.claim is not None and self.claim.status == ClaimStatus.FINALIZED

    def http_status(self) -> int:
        if self.success:
            return 200
        return http_status_for(self.reason)

    def to_payload(self) -> dict:
        """JSON ответа API. Код показывается только после выдачи купона"""
        if not self.success and self.reason != RejectReason.ISSUER_FAILURE:
            payload = {'success': False, 'error_code': self.reason, 'message': self.message}
            if self.codes_remaining is not None:
                payload['codes_remaining'] = self.codes_remaining
            return payload

        claim = self.claim
        payload = {
            'success': self.success,
            'status': claim.status,
            'issued_code': claim.issued_code if claim.status == ClaimStatus.FINALIZED else None,
            'expires_at': claim.expires_at.isoformat(),
            'discount_value': str(claim.discount_value_applied),
            'verification_required': claim.status == ClaimStatus.RESERVED,
            'message': self.message,
        }
        if self.codes_remaining is not None:
            payload['codes_remaining'] = self.codes_remaining
        if self.reason:
            payload['error_code'] = self.reason
        return payload

    def __repr__(self):
        if self.success:
            return f"<ClaimResult ok claim={getattr(self.claim, 'pk', None)}>"
        return f"<ClaimResult rejected {self.reason}>"


def http_status_for(reason: str) -> int:
    return HTTP_STATUS.get(reason, 400)

from datetime import timedelta
from decimal import Decimal

from django.test import TestCase, override_settings
from django.utils import timezone

from apps.campaigns.models import Campaign
from apps.claims.models import Claim, ClaimStatus, RejectReason
from apps.eligibility.services import check, is_ip_banned, is_valid_identity, normalize_identity


def make_claim(campaign, identity, ip='10.0.0.1', verified=True, code=None):
    return Claim.objects.create(
        campaign=campaign,
        identity=identity,
        issued_code=code or f"FOMO{Claim.objects.count() + 1:08d}",
        status=ClaimStatus.FINALIZED if verified else ClaimStatus.RESERVED,
        verified=verified,
        ip_address=ip,
        discount_value_applied=Decimal('10'),
        expires_at=timezone.now() + timedelta(hours=1),
    )


class EligibilityTestCase(TestCase):

    def setUp(self):
        self.campaign = Campaign.objects.create(name='Test', discount_value=Decimal('10'), total_codes=10)

    def test_valid_identity(self):
        self.assertTrue(is_valid_identity('buyer@example.com'))
        self.assertEqual(normalize_identity('  Buyer@Example.COM '), 'buyer@example.com')

    def test_invalid_identity(self):
        """Невалидный email, слишком длинный и одноразовый домен"""
        for identity in ['', 'not-an-email', 'a@', '@example.com', 'x' * 250 + '@ex.com', 'spam@mailinator.com']:
            with self.subTest(identity=identity):
                ok, reason = check(self.campaign, identity, '10.0.0.1')
                self.assertFalse(ok)
                self.assertEqual(reason, RejectReason.INVALID_IDENTITY)

    def test_ok(self):
        self.assertEqual(check(self.campaign, 'buyer@example.com', '10.0.0.1'), (True, ''))

    def test_invalid_ip(self):
        ok, reason = check(self.campaign, 'buyer@example.com', '999.1.1.1')
        self.assertFalse(ok)
        self.assertEqual(reason, RejectReason.INVALID_IP)

    def test_duplicate_verified_claim(self):
        """Повтор отклоняется только при подтвержденной заявке"""
        make_claim(self.campaign, 'buyer@example.com', verified=False)
        self.assertTrue(check(self.campaign, 'buyer@example.com', '10.0.0.2')[0])

        make_claim(self.campaign, 'buyer@example.com', verified=True)
        self.assertEqual(check(self.campaign, 'BUYER@example.com', '10.0.0.2'), (False, RejectReason.ALREADY_CLAIMED))

    def test_ip_quota_counts_verified_only(self):
        self.campaign.ip_limit_enabled = True
        self.campaign.max_claims_per_ip = 2
        self.campaign.save()

        make_claim(self.campaign, 'a@example.com', ip='10.0.0.5', verified=False)
        make_claim(self.campaign, 'b@example.com', ip='10.0.0.5', verified=True)
        self.assertTrue(check(self.campaign, 'c@example.com', '10.0.0.5')[0])

        make_claim(self.campaign, 'd@example.com', ip='10.0.0.5', verified=True)
        self.assertEqual(check(self.campaign, 'c@example.com', '10.0.0.5'), (False, RejectReason.IP_QUOTA_EXCEEDED))

    def test_ip_quota_disabled(self):
        make_claim(self.campaign, 'b@example.com', ip='10.0.0.5')
        make_claim(self.campaign, 'd@example.com', ip='10.0.0.5')
        self.assertTrue(check(self.campaign, 'c@example.com', '10.0.0.5')[0])

    @override_settings(FOMO_CLAIMS={'BANNED_IPS': ['192.168.1.10', '10.20.0.0/16', 'garbage']})
    def test_banned_ips(self):
        """Точные адреса и подсети CIDR"""
        self.assertTrue(is_ip_banned('192.168.1.10'))
        self.assertTrue(is_ip_banned('10.20.3.4'))
        self.assertFalse(is_ip_banned('10.21.0.1'))
        self.assertEqual(check(self.campaign, 'buyer@example.com', '10.20.3.4'), (False, RejectReason.IP_BLOCKED))

    @override_settings(FOMO_CLAIMS={'DISPOSABLE_DOMAINS': ['junk.test']})
    def test_custom_disposable_domains(self):
        self.assertFalse(is_valid_identity('x@junk.test'))
        self.assertTrue(is_valid_identity('x@mailinator.com'))

import json
from datetime import timedelta
from decimal import Decimal
from unittest import mock

from django.core import mail
from django.test import Client, TestCase, override_settings
from django.urls import reverse
from django.utils import timezone

from apps.campaigns.models import Campaign
from apps.claims.models import Claim, ClaimStatus, RejectReason
from apps.claims.services import ClaimService
from apps.integrations.issuers import CouponIssuerError, DummyCouponIssuer
from apps.integrations.notifiers import DummyNotifier
from apps.verification.models import VerificationToken
from apps.waitlist.models import WaitlistEntry


def expire(claim, minutes=1):
    past = timezone.now() - timedelta(minutes=minutes)
    Claim.objects.filter(pk=claim.pk).update(expires_at=past)
    VerificationToken.objects.filter(claim=claim).update(expires_at=past)


class ConfirmTestCase(TestCase):

    def setUp(self):
        self.campaign = Campaign.objects.create(name='Verify', discount_value=Decimal('10'), total_codes=3,
                                                expiry_hours=48)
        self.issuer = DummyCouponIssuer({})
        self.notifier = DummyNotifier({})
        self.service = ClaimService(issuer=self.issuer, notifier=self.notifier)

    def start(self, identity='guest@example.com'):
        result = self.service.claim(self.campaign.pk, identity, '10.0.0.1')
        self.assertTrue(result.success)
        return result.claim, VerificationToken.objects.get(claim=result.claim).token

    def test_confirm_finalizes(self):
        """Подтверждение выдает купон, срок купона считается от подтверждения"""
        claim, token = self.start()

        result = self.service.confirm(token)

        self.assertTrue(result.success)
        claim.refresh_from_db()
        self.assertEqual(claim.status, ClaimStatus.FINALIZED)
        self.assertTrue(claim.verified)
        self.assertEqual(claim.coupon_id, self.issuer.coupons[claim.issued_code]['id'])
        ttl = claim.expires_at - claim.verified_at
        self.assertAlmostEqual(ttl.total_seconds(), 48 * 3600, delta=5)
        self.assertEqual(result.to_payload()['issued_code'], claim.issued_code)
        self.assertEqual(self.notifier.sent[-1], ('confirmation', 'guest@example.com', claim.issued_code))
        self.assertIsNotNone(VerificationToken.objects.get(token=token).consumed_at)

    def test_confirm_is_idempotent(self):
        """Повторное подтверждение возвращает тот же результат без повторной выдачи"""
        claim, token = self.start()

        first = self.service.confirm(token)
        second = self.service.confirm(token)

        self.assertTrue(second.success)
        self.assertEqual(second.claim.pk, first.claim.pk)
        self.assertEqual(second.claim.issued_code, first.claim.issued_code)
        self.assertEqual(self.issuer.calls, [claim.issued_code])
        self.campaign.refresh_from_db()
        self.assertEqual(self.campaign.codes_remaining, 2)

    def test_token_not_found(self):
        for token in ['', 'deadbeef', None]:
            result = self.service.confirm(token)
            self.assertFalse(result.success)
            self.assertEqual(result.reason, RejectReason.TOKEN_NOT_FOUND)

    def test_expired_token_rejected(self):
        claim, token = self.start()
        expire(claim)

        result = self.service.confirm(token)

        self.assertEqual(result.reason, RejectReason.TOKEN_EXPIRED)
        claim.refresh_from_db()
        self.assertEqual(claim.status, ClaimStatus.RESERVED)
        self.assertEqual(self.issuer.calls, [])

    def test_confirm_after_sweep_rejected(self):
        claim, token = self.start()
        expire(claim)
        self.service.sweep_expired()

        result = self.service.confirm(token)
        self.assertEqual(result.reason, RejectReason.TOKEN_EXPIRED)

    def test_confirm_when_already_claimed(self):
        """Email успел получить код другим путем"""
        claim, token = self.start()
        Claim.objects.create(
            campaign=self.campaign, identity='guest@example.com', issued_code='FOMOOTHER001',
            status=ClaimStatus.FINALIZED, verified=True, discount_value_applied=Decimal('10'),
            expires_at=timezone.now() + timedelta(hours=1),
        )

        result = self.service.confirm(token)
        self.assertEqual(result.reason, RejectReason.ALREADY_CLAIMED)
        claim.refresh_from_db()
        self.assertEqual(claim.status, ClaimStatus.RESERVED)

    def test_replay_retries_failed_issuance(self):
        claim, token = self.start()

        with mock.patch.object(self.issuer, 'issue', side_effect=CouponIssuerError('timeout')):
            result = self.service.confirm(token)
        self.assertEqual(result.reason, RejectReason.ISSUER_FAILURE)
        claim.refresh_from_db()
        self.assertEqual(claim.status, ClaimStatus.VERIFIED)

        result = self.service.confirm(token)
        self.assertTrue(result.success)
        self.assertEqual(result.claim.status, ClaimStatus.FINALIZED)

    def test_notifier_failure_does_not_block(self):
        from apps.integrations.notifiers import NotifierError

        with mock.patch.object(self.notifier, 'send_verification', side_effect=NotifierError('smtp down')):
            claim, token = self.start()
        self.assertTrue(self.service.confirm(token).success)


class SweepTestCase(TestCase):

    def setUp(self):
        self.campaign = Campaign.objects.create(name='Sweep', discount_value=Decimal('10'), total_codes=5)
        self.notifier = DummyNotifier({})
        self.service = ClaimService(issuer=DummyCouponIssuer({}), notifier=self.notifier)

    def test_sweep_releases_exactly_expired_unverified(self):
        """Остаток растет ровно на число освобожденных заявок"""
        expired = [self.service.reserve(self.campaign.pk, f'old{i}@example.com', '10.0.0.1').claim for i in range(3)]
        self.service.reserve(self.campaign.pk, 'fresh@example.com', '10.0.0.1')
        trusted = self.service.reserve(self.campaign.pk, 'member@example.com', '10.0.0.1', trusted=True).claim
        for claim in expired:
            expire(claim)
        Claim.objects.filter(pk=trusted.pk).update(expires_at=timezone.now() - timedelta(minutes=1))

        self.campaign.refresh_from_db()
        self.assertEqual(self.campaign.codes_remaining, 0)

        self.assertEqual(self.service.sweep_expired(), 3)

        self.campaign.refresh_from_db()
        self.assertEqual(self.campaign.codes_remaining, 3)
        for claim in expired:
            claim.refresh_from_db()
            self.assertEqual(claim.status, ClaimStatus.RELEASED)
            self.assertIsNotNone(claim.released_at)
        trusted.refresh_from_db()
        self.assertEqual(trusted.status, ClaimStatus.VERIFIED)

        # повторный прогон ничего не меняет
        self.assertEqual(self.service.sweep_expired(), 0)

    def test_sweep_reopens_sold_out_campaign_and_notifies_waitlist(self):
        campaign = Campaign.objects.create(name='One', discount_value=Decimal('10'), total_codes=1)
        claim = self.service.reserve(campaign.pk, 'guest@example.com', '10.0.0.1').claim
        WaitlistEntry.objects.create(campaign=campaign, email='first@example.com')
        WaitlistEntry.objects.create(campaign=campaign, email='second@example.com')
        expire(claim)

        self.assertEqual(self.service.sweep_expired(), 1)

        campaign.refresh_from_db()
        self.assertTrue(campaign.is_claimable())
        self.assertEqual(self.notifier.sent, [('waitlist', 'first@example.com', campaign.pk)])
        self.assertTrue(WaitlistEntry.objects.get(email='first@example.com').notified)
        self.assertFalse(WaitlistEntry.objects.get(email='second@example.com').notified)

    def test_sweep_skips_full_pool(self):
        """Если пул уже полон, заявка не освобождается"""
        claim = self.service.reserve(self.campaign.pk, 'guest@example.com', '10.0.0.1').claim
        Campaign.objects.filter(pk=self.campaign.pk).update(codes_remaining=5)
        expire(claim)

        self.assertEqual(self.service.sweep_expired(), 0)
        claim.refresh_from_db()
        self.assertEqual(claim.status, ClaimStatus.RESERVED)


@override_settings(FOMO_CLAIMS={'ISSUER': {'provider_type': 'dummy'}, 'NOTIFIER': {'provider_type': 'email'}})
class VerifyViewTestCase(TestCase):

    def setUp(self):
        self.client = Client()
        self.campaign = Campaign.objects.create(name='View', discount_value=Decimal('10'), total_codes=3)
        service = ClaimService(issuer=DummyCouponIssuer({}), notifier=DummyNotifier({}))
        self.claim = service.claim(self.campaign.pk, 'guest@example.com', '10.0.0.1').claim
        self.token = VerificationToken.objects.get(claim=self.claim).token
        self.url = reverse('verification:verify')

    def test_verify_by_link(self):
        resp = self.client.get(self.url, {'token': self.token})

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()['issued_code'], self.claim.issued_code)
        self.assertEqual(len(mail.outbox), 1)
        self.assertIn(self.claim.issued_code, mail.outbox[0].body)

    def test_verify_by_post_twice(self):
        for _ in range(2):
            resp = self.client.post(self.url, data=json.dumps({'token': self.token}), content_type='application/json')
            self.assertEqual(resp.status_code, 200)
            self.assertEqual(resp.json()['issued_code'], self.claim.issued_code)
        self.assertEqual(len(mail.outbox), 1)

    def test_unknown_token(self):
        resp = self.client.get(self.url, {'token': 'nope'})
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()['error_code'], RejectReason.TOKEN_NOT_FOUND)

    def test_expired_token(self):
        expire(self.claim)
        resp = self.client.get(self.url, {'token': self.token})
        self.assertEqual(resp.status_code, 410)

    def test_bad_body(self):
        resp = self.client.post(self.url, data=json.dumps({'token': 42}), content_type='application/json')
        self.assertEqual(resp.status_code, 400)

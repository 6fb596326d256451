import json
import threading
from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest import mock

import pytest
from django.contrib.auth import get_user_model
from django.core import mail
from django.core.cache import cache
from django.core.management import call_command
from django.db import DatabaseError, connection
from django.test import Client, TestCase, TransactionTestCase, override_settings
from django.urls import reverse
from django.utils import timezone

from apps.campaigns.models import Campaign, CampaignStatus
from apps.claims import store
from apps.claims.models import Claim, ClaimStatus, RejectReason
from apps.claims.results import http_status_for
from apps.claims.services import ClaimService, rate_limited
from apps.claims.tasks import cleanup_expired_claims_task, retry_pending_issuance_task, sweep_expired_claims_task
from apps.integrations.issuers import CouponIssuerError, DummyCouponIssuer
from apps.integrations.notifiers import DummyNotifier
from apps.verification.models import VerificationToken

User = get_user_model()

EMAIL_NOTIFIER = {'ISSUER': {'provider_type': 'dummy'}, 'NOTIFIER': {'provider_type': 'email'}}


def make_service(issuer=None):
    return ClaimService(issuer=issuer or DummyCouponIssuer({}), notifier=DummyNotifier({}))


def live_claims(campaign):
    return Claim.objects.filter(
        campaign=campaign,
        status__in=[ClaimStatus.RESERVED, ClaimStatus.VERIFIED, ClaimStatus.FINALIZED],
    ).count()


class FailingIssuer(DummyCouponIssuer):
    def issue(self, *args, **kwargs):
        raise CouponIssuerError('WooCommerce error: 500 - down')


class ReserveTestCase(TestCase):

    def setUp(self):
        self.campaign = Campaign.objects.create(name='Test', discount_value=Decimal('10'), total_codes=3)
        self.service = make_service()

    def test_reserve_untrusted(self):
        """Неподтвержденная заявка занимает слот до дедлайна подтверждения"""
        result = self.service.reserve(self.campaign.pk, 'Buyer@Example.com', '10.0.0.1')

        self.assertTrue(result.success)
        claim = result.claim
        self.assertEqual(claim.status, ClaimStatus.RESERVED)
        self.assertFalse(claim.verified)
        self.assertEqual(claim.identity, 'buyer@example.com')
        self.assertTrue(claim.issued_code.startswith('FOMO'))
        self.assertEqual(len(claim.issued_code), 12)
        self.assertEqual(claim.discount_value_applied, Decimal('10'))
        self.assertEqual(result.codes_remaining, 2)

        ttl = claim.expires_at - claim.reserved_at
        self.assertAlmostEqual(ttl.total_seconds(), 30 * 60, delta=5)

    def test_reserve_trusted(self):
        """Доверенная заявка сразу подтверждена, срок - срок купона"""
        result = self.service.reserve(self.campaign.pk, 'buyer@example.com', '10.0.0.1', trusted=True)

        claim = result.claim
        self.assertEqual(claim.status, ClaimStatus.VERIFIED)
        self.assertTrue(claim.verified)
        ttl = claim.expires_at - claim.reserved_at
        self.assertAlmostEqual(ttl.total_seconds(), 24 * 3600, delta=5)

    def test_campaign_not_found(self):
        result = self.service.reserve(999999, 'buyer@example.com', '10.0.0.1')
        self.assertFalse(result.success)
        self.assertEqual(result.reason, RejectReason.CAMPAIGN_NOT_FOUND)

    def test_campaign_inactive(self):
        self.campaign.status = CampaignStatus.PAUSED
        self.campaign.save()

        result = self.service.reserve(self.campaign.pk, 'buyer@example.com', '10.0.0.1')
        self.assertEqual(result.reason, RejectReason.CAMPAIGN_INACTIVE)
        self.campaign.refresh_from_db()
        self.assertEqual(self.campaign.codes_remaining, 3)

    def test_sold_out(self):
        for i in range(3):
            self.assertTrue(self.service.reserve(self.campaign.pk, f'user{i}@example.com', '10.0.0.1').success)

        result = self.service.reserve(self.campaign.pk, 'late@example.com', '10.0.0.1')
        self.assertFalse(result.success)
        self.assertEqual(result.reason, RejectReason.SOLD_OUT)
        self.assertEqual(result.codes_remaining, 0)
        self.assertEqual(Claim.objects.filter(campaign=self.campaign).count(), 3)

    def test_pending_verification_rejected(self):
        """Второй запрос до подтверждения не занимает еще один слот"""
        self.service.reserve(self.campaign.pk, 'buyer@example.com', '10.0.0.1')
        result = self.service.reserve(self.campaign.pk, 'buyer@example.com', '10.0.0.1')

        self.assertEqual(result.reason, RejectReason.VERIFICATION_PENDING)
        self.campaign.refresh_from_db()
        self.assertEqual(self.campaign.codes_remaining, 2)

    def test_duplicate_after_verification(self):
        self.service.reserve(self.campaign.pk, 'buyer@example.com', '10.0.0.1', trusted=True)

        for trusted in (False, True):
            result = self.service.reserve(self.campaign.pk, 'buyer@example.com', '10.0.0.9', trusted=trusted)
            self.assertEqual(result.reason, RejectReason.ALREADY_CLAIMED)

    def test_ip_quota_under_lock(self):
        self.campaign.ip_limit_enabled = True
        self.campaign.max_claims_per_ip = 1
        self.campaign.save()

        self.service.reserve(self.campaign.pk, 'a@example.com', '10.0.0.1', trusted=True)
        result = self.service.reserve(self.campaign.pk, 'b@example.com', '10.0.0.1', trusted=True)
        self.assertEqual(result.reason, RejectReason.IP_QUOTA_EXCEEDED)

    def test_database_error_rolls_back(self):
        """Ошибка записи заявки откатывает и списание остатка"""
        with mock.patch.object(store, 'insert_claim', side_effect=DatabaseError('disk I/O error')):
            result = self.service.reserve(self.campaign.pk, 'buyer@example.com', '10.0.0.1')

        self.assertEqual(result.reason, RejectReason.TRANSIENT_ERROR)
        self.assertEqual(http_status_for(result.reason), 503)
        self.campaign.refresh_from_db()
        self.assertEqual(self.campaign.codes_remaining, 3)
        self.assertFalse(Claim.objects.exists())

    def test_tier_boundaries(self):
        """1-50: 25, 51-80: 15, 81-100: 10"""
        campaign = Campaign.objects.create(
            name='Tiers', discount_value=Decimal('5'), total_codes=100,
            tier_thresholds=[{'codes': 50, 'discount': 25}, {'codes': 30, 'discount': 15}, {'discount': 10}],
        )
        discounts = []
        for i in range(100):
            result = self.service.reserve(campaign.pk, f'user{i}@example.com', None)
            discounts.append(result.claim.discount_value_applied)

        self.assertEqual(discounts[:50], [Decimal('25')] * 50)
        self.assertEqual(discounts[50:80], [Decimal('15')] * 30)
        self.assertEqual(discounts[80:], [Decimal('10')] * 20)

    def test_conservation(self):
        """Остаток + живые заявки == total_codes"""
        self.service.reserve(self.campaign.pk, 'a@example.com', '10.0.0.1')
        self.service.reserve(self.campaign.pk, 'b@example.com', '10.0.0.1', trusted=True)
        self.campaign.refresh_from_db()
        self.assertEqual(self.campaign.codes_remaining + live_claims(self.campaign), self.campaign.total_codes)


class ClaimFlowTestCase(TestCase):

    def setUp(self):
        self.campaign = Campaign.objects.create(name='Flow', discount_value=Decimal('20'), total_codes=5)
        self.issuer = DummyCouponIssuer({})
        self.notifier = DummyNotifier({})
        self.service = ClaimService(issuer=self.issuer, notifier=self.notifier)
        self.user = User.objects.create_user(username='member', email='member@example.com', password='pass')

    def test_trusted_claim_is_finalized(self):
        result = self.service.claim(self.campaign.pk, 'member@example.com', '10.0.0.1', user=self.user)

        self.assertTrue(result.success)
        self.assertTrue(result.is_finalized)
        self.assertIn(result.claim.issued_code, self.issuer.coupons)
        self.assertEqual(self.notifier.sent[-1], ('confirmation', 'member@example.com', result.claim.issued_code))
        self.assertEqual(result.to_payload()['issued_code'], result.claim.issued_code)
        self.assertEqual(result.codes_remaining, 4)

    def test_untrusted_claim_starts_verification(self):
        result = self.service.claim(self.campaign.pk, 'guest@example.com', '10.0.0.1')

        self.assertTrue(result.success)
        payload = result.to_payload()
        self.assertIsNone(payload['issued_code'])
        self.assertTrue(payload['verification_required'])

        token = VerificationToken.objects.get(claim=result.claim)
        self.assertEqual(len(token.token), 64)
        self.assertEqual(self.notifier.sent, [('verification', 'guest@example.com', token.token)])
        self.assertEqual(self.issuer.calls, [])

    def test_fast_path_rejection(self):
        result = self.service.claim(self.campaign.pk, 'bad-email', '10.0.0.1')
        self.assertEqual(result.reason, RejectReason.INVALID_IDENTITY)
        self.assertEqual(result.codes_remaining, 5)

    def test_verification_start_failure_returns_slot(self):
        with mock.patch.object(self.service.verification, 'start_verification', side_effect=DatabaseError('locked')):
            result = self.service.claim(self.campaign.pk, 'guest@example.com', '10.0.0.1')

        self.assertEqual(result.reason, RejectReason.TRANSIENT_ERROR)
        self.campaign.refresh_from_db()
        self.assertEqual(self.campaign.codes_remaining, 5)
        self.assertEqual(Claim.objects.get().status, ClaimStatus.RELEASED)

    def test_issuer_failure_keeps_reservation(self):
        """Ошибка магазина не откатывает резерв, купон выдается повторной попыткой"""
        service = ClaimService(issuer=FailingIssuer({}), notifier=self.notifier)
        result = service.claim(self.campaign.pk, 'member@example.com', '10.0.0.1', user=self.user)

        self.assertFalse(result.success)
        self.assertEqual(result.reason, RejectReason.ISSUER_FAILURE)
        self.assertEqual(result.http_status(), 202)
        claim = Claim.objects.get()
        self.assertEqual(claim.status, ClaimStatus.VERIFIED)
        self.assertEqual(claim.issuer_attempts, 1)
        self.assertIn('down', claim.last_issuer_error)
        self.campaign.refresh_from_db()
        self.assertEqual(self.campaign.codes_remaining, 4)

        self.assertEqual(self.service.retry_pending_issuance(), 1)
        claim.refresh_from_db()
        self.assertEqual(claim.status, ClaimStatus.FINALIZED)
        self.assertEqual(self.issuer.calls, [claim.issued_code])
        self.assertEqual(claim.last_issuer_error, '')

    def test_cleanup_expired_coupons(self):
        """Истекший купон удаляется в магазине, слот не возвращается"""
        result = self.service.claim(self.campaign.pk, 'member@example.com', '10.0.0.1', user=self.user)
        code = result.claim.issued_code

        later = timezone.now() + timedelta(hours=25)
        self.assertEqual(self.service.cleanup_expired(now=later), 1)

        claim = Claim.objects.get(issued_code=code)
        self.assertEqual(claim.status, ClaimStatus.EXPIRED)
        self.assertNotIn(code, self.issuer.coupons)
        self.campaign.refresh_from_db()
        self.assertEqual(self.campaign.codes_remaining, 4)
        self.assertEqual(self.service.cleanup_expired(now=later), 0)


def run_concurrently(fn, args_list):
    """Запускает fn в отдельных потоках одновременно, у каждого свое соединение с БД"""
    barrier = threading.Barrier(len(args_list))
    results = [None] * len(args_list)

    def worker(index, args):
        try:
            barrier.wait()
            results[index] = fn(*args)
        finally:
            connection.close()

    threads = [threading.Thread(target=worker, args=(i, args)) for i, args in enumerate(args_list)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return results


class ConcurrencyTestCase(TransactionTestCase):

    def setUp(self):
        self.service = make_service()

    def test_no_oversell(self):
        """K=10 параллельных заявок при R=3: ровно 3 успеха"""
        campaign = Campaign.objects.create(name='Race', discount_value=Decimal('10'), total_codes=3)
        results = run_concurrently(
            self.service.reserve,
            [(campaign.pk, f'user{i}@example.com', f'10.0.0.{i}') for i in range(10)],
        )

        self.assertEqual(sum(1 for r in results if r.success), 3)
        self.assertEqual(sum(1 for r in results if r.reason == RejectReason.SOLD_OUT), 7)
        campaign.refresh_from_db()
        self.assertEqual(campaign.codes_remaining, 0)
        self.assertEqual(Claim.objects.filter(campaign=campaign).count(), 3)

    def test_last_code_single_winner(self):
        campaign = Campaign.objects.create(name='Last', discount_value=Decimal('10'), total_codes=1)
        results = run_concurrently(
            self.service.reserve,
            [(campaign.pk, 'a@example.com', '10.0.0.1'), (campaign.pk, 'b@example.com', '10.0.0.2')],
        )

        self.assertEqual(sorted(r.success for r in results), [False, True])
        loser = next(r for r in results if not r.success)
        self.assertEqual(loser.reason, RejectReason.SOLD_OUT)
        campaign.refresh_from_db()
        self.assertEqual(campaign.codes_remaining, 0)

    def test_same_identity_concurrently(self):
        """Один email параллельно получает не больше одного кода"""
        campaign = Campaign.objects.create(name='Dup', discount_value=Decimal('10'), total_codes=5)

        def reserve_trusted(identity, ip):
            return self.service.reserve(campaign.pk, identity, ip, trusted=True)

        results = run_concurrently(reserve_trusted, [('same@example.com', f'10.0.0.{i}') for i in range(5)])

        self.assertEqual(sum(1 for r in results if r.success), 1)
        self.assertTrue(all(r.reason == RejectReason.ALREADY_CLAIMED for r in results if not r.success))
        campaign.refresh_from_db()
        self.assertEqual(campaign.codes_remaining, 4)
        self.assertEqual(Claim.objects.filter(campaign=campaign, verified=True).count(), 1)

    def test_sweep_and_reserve_concurrently(self):
        """Освобождение и новые заявки идут под одной блокировкой, остаток сходится"""
        campaign = Campaign.objects.create(name='Sweep race', discount_value=Decimal('10'), total_codes=3)
        for i in range(3):
            claim = self.service.reserve(campaign.pk, f'old{i}@example.com', '10.0.0.1').claim
            Claim.objects.filter(pk=claim.pk).update(expires_at=timezone.now() - timedelta(minutes=1))

        def act(kind, identity):
            if kind == 'sweep':
                return self.service.sweep_expired()
            return self.service.reserve(campaign.pk, identity, '10.0.0.2')

        results = run_concurrently(act, [('sweep', None)] + [('reserve', f'new{i}@example.com') for i in range(6)])

        self.assertEqual(results[0], 3)
        reserved = [r for r in results[1:] if r.success]
        self.assertTrue(all(r.reason == RejectReason.SOLD_OUT for r in results[1:] if not r.success))
        self.assertLessEqual(len(reserved), 3)
        campaign.refresh_from_db()
        self.assertEqual(campaign.codes_remaining, 3 - len(reserved))
        self.assertEqual(campaign.codes_remaining + live_claims(campaign), campaign.total_codes)
        self.assertEqual(Claim.objects.filter(campaign=campaign, status=ClaimStatus.RELEASED).count(), 3)

    def test_confirm_same_token_concurrently(self):
        """Два перехода по одной ссылке: один купон, одна выдача"""
        issuer = DummyCouponIssuer({})
        notifier = DummyNotifier({})
        service = ClaimService(issuer=issuer, notifier=notifier)
        campaign = Campaign.objects.create(name='Confirm race', discount_value=Decimal('10'), total_codes=2)
        claim = service.claim(campaign.pk, 'guest@example.com', '10.0.0.1').claim
        token = VerificationToken.objects.get(claim=claim).token

        results = run_concurrently(service.confirm, [(token,), (token,)])

        self.assertTrue(all(r.success for r in results))
        self.assertEqual({r.claim.issued_code for r in results}, {claim.issued_code})
        self.assertEqual(issuer.calls, [claim.issued_code])
        confirmations = [entry for entry in notifier.sent if entry[0] == 'confirmation']
        self.assertEqual(len(confirmations), 1)
        claim.refresh_from_db()
        self.assertEqual(claim.status, ClaimStatus.FINALIZED)
        campaign.refresh_from_db()
        self.assertEqual(campaign.codes_remaining, 1)
        self.assertEqual(campaign.codes_remaining + live_claims(campaign), campaign.total_codes)

    def test_rate_limit_concurrently(self):
        cache.clear()
        results = run_concurrently(rate_limited, [('1.2.3.4:9', 'claim', 3) for _ in range(8)])
        self.assertEqual(results.count(False), 3)


@override_settings(FOMO_CLAIMS=EMAIL_NOTIFIER)
class ClaimApiTestCase(TestCase):

    def setUp(self):
        cache.clear()
        self.client = Client()
        self.campaign = Campaign.objects.create(name='API', discount_value=Decimal('15'), total_codes=2)
        self.url = reverse('claims:claim')

    def post(self, data, **extra):
        return self.client.post(self.url, data=json.dumps(data), content_type='application/json', **extra)

    def test_guest_claim_requires_verification(self):
        resp = self.post({'campaign_id': self.campaign.pk, 'identity': 'guest@example.com'})

        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertTrue(data['success'])
        self.assertIsNone(data['issued_code'])
        self.assertTrue(data['verification_required'])
        self.assertEqual(data['codes_remaining'], 1)

        self.assertEqual(len(mail.outbox), 1)
        token = VerificationToken.objects.get().token
        self.assertIn(f'/api/claims/verify/?token={token}', mail.outbox[0].body)

    def test_client_ip_from_proxy_header(self):
        self.post({'campaign_id': self.campaign.pk, 'email': 'guest@example.com'},
                  HTTP_X_FORWARDED_FOR='203.0.113.7, 10.0.0.1')
        self.assertEqual(Claim.objects.get().ip_address, '203.0.113.7')

    def test_logged_in_user_gets_code(self):
        user = User.objects.create_user(username='member', email='member@example.com', password='pass')
        self.client.force_login(user)

        resp = self.post({'campaign_id': self.campaign.pk, 'identity': 'someone-else@example.com'})

        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        claim = Claim.objects.get()
        self.assertEqual(claim.identity, 'member@example.com')
        self.assertEqual(claim.user, user)
        self.assertEqual(data['issued_code'], claim.issued_code)
        self.assertEqual(data['status'], ClaimStatus.FINALIZED)
        self.assertIn(claim.issued_code, mail.outbox[-1].body)

    def test_sold_out(self):
        self.post({'campaign_id': self.campaign.pk, 'identity': 'a@example.com'})
        self.post({'campaign_id': self.campaign.pk, 'identity': 'b@example.com'})
        resp = self.post({'campaign_id': self.campaign.pk, 'identity': 'c@example.com'})

        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()['error_code'], RejectReason.SOLD_OUT)

    def test_bad_requests(self):
        resp = self.client.post(self.url, data='not json', content_type='application/json')
        self.assertEqual(resp.status_code, 400)

        resp = self.post({'identity': 'a@example.com'})
        self.assertEqual(resp.status_code, 400)

        resp = self.post({'campaign_id': 999999, 'identity': 'a@example.com'})
        self.assertEqual(resp.status_code, 404)

        resp = self.post({'campaign_id': self.campaign.pk, 'identity': 'nope'})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()['error_code'], RejectReason.INVALID_IDENTITY)

        resp = self.client.get(self.url)
        self.assertEqual(resp.status_code, 405)

    @override_settings(FOMO_CLAIMS={**EMAIL_NOTIFIER, 'RATE_LIMIT_PER_HOUR': 2})
    def test_rate_limit(self):
        campaign = Campaign.objects.create(name='Big', discount_value=Decimal('15'), total_codes=10)
        for i in range(2):
            self.post({'campaign_id': campaign.pk, 'identity': f'user{i}@example.com'})

        resp = self.post({'campaign_id': campaign.pk, 'identity': 'user9@example.com'})
        self.assertEqual(resp.status_code, 429)
        self.assertEqual(resp.json()['error_code'], RejectReason.RATE_LIMITED)

        # другая кампания считается отдельно
        resp = self.post({'campaign_id': self.campaign.pk, 'identity': 'user9@example.com'})
        self.assertEqual(resp.status_code, 200)


class RateLimitTestCase(TestCase):

    def setUp(self):
        cache.clear()

    def test_rate_limited(self):
        self.assertFalse(rate_limited('1.2.3.4:1', 'claim', limit=2))
        self.assertFalse(rate_limited('1.2.3.4:1', 'claim', limit=2))
        self.assertTrue(rate_limited('1.2.3.4:1', 'claim', limit=2))
        self.assertFalse(rate_limited('1.2.3.4:2', 'claim', limit=2))


@override_settings(FOMO_CLAIMS=EMAIL_NOTIFIER)
class MaintenanceTestCase(TestCase):

    def setUp(self):
        self.campaign = Campaign.objects.create(name='Sweep', discount_value=Decimal('10'), total_codes=3)
        self.service = make_service()
        self.claim = self.service.reserve(self.campaign.pk, 'guest@example.com', '10.0.0.1').claim
        Claim.objects.filter(pk=self.claim.pk).update(expires_at=timezone.now() - timedelta(minutes=1))

    def test_sweep_task(self):
        self.assertEqual(sweep_expired_claims_task(), 1)
        self.campaign.refresh_from_db()
        self.assertEqual(self.campaign.codes_remaining, 3)

    def test_cleanup_and_retry_tasks(self):
        self.assertEqual(cleanup_expired_claims_task(), 0)
        self.assertEqual(retry_pending_issuance_task(), 0)

    def test_command_dry_run(self):
        out = StringIO()
        call_command('sweep_claims', '--dry-run', stdout=out)

        self.assertIn(self.claim.issued_code, out.getvalue())
        self.claim.refresh_from_db()
        self.assertEqual(self.claim.status, ClaimStatus.RESERVED)

    def test_command_sweeps(self):
        out = StringIO()
        call_command('sweep_claims', '--cleanup', '--retry-issuance', stdout=out)

        self.assertIn('Освобождено заявок: 1', out.getvalue())
        self.claim.refresh_from_db()
        self.assertEqual(self.claim.status, ClaimStatus.RELEASED)

    def test_sweep_task_retries_on_error(self):
        with mock.patch('apps.claims.services.ClaimService.sweep_expired', side_effect=DatabaseError('locked')):
            with pytest.raises(DatabaseError):
                sweep_expired_claims_task()

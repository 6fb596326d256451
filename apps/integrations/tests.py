from datetime import datetime, timezone as dt_timezone
from decimal import Decimal
from unittest import mock

import pytest
import requests
from django.core import mail
from django.test import TestCase, override_settings

from apps.campaigns.models import Campaign, DiscountType
from apps.integrations.issuers import (
    CouponIssuerError, DummyCouponIssuer, WooCommerceCouponIssuer, get_coupon_issuer,
)
from apps.integrations.notifiers import (
    DummyNotifier, EmailNotifier, NotifierError, build_verify_url, get_notifier,
)

WC_CONFIG = {
    'provider_type': 'woocommerce',
    'base_url': 'https://shop.example.com/',
    'consumer_key': 'ck_test',
    'consumer_secret': 'cs_test',
    'timeout': 5,
}
EXPIRES = datetime(2030, 1, 2, 3, 4, 5, tzinfo=dt_timezone.utc)


def response(status_code, payload=None, text=''):
    resp = mock.Mock()
    resp.status_code = status_code
    resp.json.return_value = payload
    resp.text = text
    if status_code >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f'{status_code}')
    else:
        resp.raise_for_status.return_value = None
    return resp


class WooCommerceIssuerTestCase(TestCase):

    def setUp(self):
        self.issuer = WooCommerceCouponIssuer(WC_CONFIG)

    def test_payload(self):
        payload = self.issuer.build_payload(
            'FOMOABCDEFGH', DiscountType.PERCENTAGE, Decimal('25'), 'buyer@example.com',
            {'type': 'categories', 'ids': [7, 9]}, EXPIRES,
        )
        self.assertEqual(payload['discount_type'], 'percent')
        self.assertEqual(payload['amount'], '25.00')
        self.assertEqual(payload['usage_limit'], 1)
        self.assertTrue(payload['individual_use'])
        self.assertEqual(payload['email_restrictions'], ['buyer@example.com'])
        self.assertEqual(payload['date_expires_gmt'], '2030-01-02T03:04:05')
        self.assertEqual(payload['product_categories'], [7, 9])
        self.assertNotIn('product_ids', payload)

        payload = self.issuer.build_payload('FOMO1', DiscountType.FIXED_AMOUNT, Decimal('10'), 'b@example.com',
                                            {'type': 'all', 'ids': []}, EXPIRES)
        self.assertEqual(payload['discount_type'], 'fixed_cart')
        self.assertNotIn('product_categories', payload)

    @mock.patch('apps.integrations.issuers.requests.post')
    def test_issue(self, post):
        post.return_value = response(201, {'id': 321})

        coupon_id = self.issuer.issue('FOMOABCDEFGH', DiscountType.PERCENTAGE, Decimal('25'), 'buyer@example.com',
                                      {'type': 'all', 'ids': []}, EXPIRES)

        self.assertEqual(coupon_id, '321')
        url = post.call_args[0][0]
        self.assertEqual(url, 'https://shop.example.com/wp-json/wc/v3/coupons')
        self.assertEqual(post.call_args[1]['auth'], ('ck_test', 'cs_test'))
        self.assertEqual(post.call_args[1]['timeout'], 5)

    @mock.patch('apps.integrations.issuers.requests.get')
    @mock.patch('apps.integrations.issuers.requests.post')
    def test_issue_is_idempotent_on_code(self, post, get):
        """Купон с тем же кодом уже есть: возвращаем его id"""
        post.return_value = response(400, {'code': 'woocommerce_rest_coupon_code_already_exists'})
        get.return_value = response(200, [{'id': 77, 'code': 'fomoabcdefgh'}])

        coupon_id = self.issuer.issue('FOMOABCDEFGH', DiscountType.PERCENTAGE, Decimal('25'), 'buyer@example.com',
                                      {'type': 'all', 'ids': []}, EXPIRES)

        self.assertEqual(coupon_id, '77')
        self.assertEqual(get.call_args[1]['params'], {'code': 'FOMOABCDEFGH'})

    @mock.patch('apps.integrations.issuers.requests.post')
    def test_issue_errors(self, post):
        post.return_value = response(500, {'code': 'internal'}, text='boom')
        with pytest.raises(CouponIssuerError):
            self.issuer.issue('FOMO1', DiscountType.PERCENTAGE, Decimal('5'), 'b@example.com', {}, EXPIRES)

        post.side_effect = requests.ConnectionError('refused')
        with pytest.raises(CouponIssuerError):
            self.issuer.issue('FOMO1', DiscountType.PERCENTAGE, Decimal('5'), 'b@example.com', {}, EXPIRES)

    def test_missing_base_url(self):
        issuer = WooCommerceCouponIssuer({'provider_type': 'woocommerce'})
        with pytest.raises(CouponIssuerError):
            issuer.issue('FOMO1', DiscountType.PERCENTAGE, Decimal('5'), 'b@example.com', {}, EXPIRES)

    @mock.patch('apps.integrations.issuers.requests.delete')
    def test_revoke(self, delete):
        delete.return_value = response(200, {'id': 321})
        self.issuer.revoke('FOMO1', '321')

        self.assertEqual(delete.call_args[0][0], 'https://shop.example.com/wp-json/wc/v3/coupons/321')
        self.assertEqual(delete.call_args[1]['params'], {'force': 'true'})

    @mock.patch('apps.integrations.issuers.requests.delete')
    @mock.patch('apps.integrations.issuers.requests.get')
    def test_revoke_unknown_code(self, get, delete):
        get.return_value = response(200, [])
        self.issuer.revoke('FOMO1')
        delete.assert_not_called()


class DummyIssuerTestCase(TestCase):

    def test_factory(self):
        self.assertIsInstance(get_coupon_issuer({'provider_type': 'woocommerce'}), WooCommerceCouponIssuer)
        self.assertIsInstance(get_coupon_issuer({'provider_type': 'unknown'}), DummyCouponIssuer)

    def test_dummy_is_idempotent(self):
        issuer = DummyCouponIssuer({})
        first = issuer.issue('FOMO1', DiscountType.PERCENTAGE, Decimal('5'), 'b@example.com', {}, EXPIRES)
        second = issuer.issue('FOMO1', DiscountType.PERCENTAGE, Decimal('5'), 'b@example.com', {}, EXPIRES)
        self.assertEqual(first, second)
        self.assertEqual(len(issuer.coupons), 1)


class EmailNotifierTestCase(TestCase):

    def setUp(self):
        self.campaign = Campaign.objects.create(name='Лето', discount_value=Decimal('30'), total_codes=10)
        self.notifier = EmailNotifier({})

    @override_settings(SITE_URL='https://shop.example.com/')
    def test_verification_email(self):
        self.notifier.send_verification('buyer@example.com', 'abc123', self.campaign)

        self.assertEqual(len(mail.outbox), 1)
        message = mail.outbox[0]
        self.assertEqual(message.to, ['buyer@example.com'])
        self.assertIn('Лето', message.subject)
        self.assertIn('https://shop.example.com/api/claims/verify/?token=abc123', message.body)
        self.assertIn('30% OFF', message.body)

    def test_confirmation_email(self):
        self.notifier.send_confirmation('buyer@example.com', 'FOMOABCDEFGH', self.campaign)
        self.assertIn('FOMOABCDEFGH', mail.outbox[0].body)

    def test_waitlist_email(self):
        self.notifier.send_waitlist_notice('fan@example.com', self.campaign)
        self.assertIn('Лето', mail.outbox[0].subject)

    @mock.patch('apps.integrations.notifiers.send_mail', side_effect=OSError('connection refused'))
    def test_send_failure_raises_notifier_error(self, send_mail):
        with pytest.raises(NotifierError):
            self.notifier.send_verification('buyer@example.com', 'abc123', self.campaign)

    def test_factory(self):
        self.assertIsInstance(get_notifier({'provider_type': 'email'}), EmailNotifier)
        self.assertIsInstance(get_notifier({'provider_type': 'dummy'}), DummyNotifier)

    def test_build_verify_url(self):
        self.assertTrue(build_verify_url('t0k').endswith('/api/claims/verify/?token=t0k'))

import pytest
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.test import TestCase, Client
from django.urls import reverse

from apps.audit.models import AuditAction, AuditLog
from apps.campaigns.models import Campaign, CampaignStatus, DiscountType, ScopeType
from apps.campaigns.services import (
    create_campaign, end_campaign, pause_campaign, resize_pool, resume_campaign, update_campaign,
    update_remaining, validate_campaign_data,
)
from apps.campaigns.tiers import discount_for, parse_tiers
from apps.claims.models import Claim, RejectReason
from apps.claims.services import ClaimService
from apps.integrations.issuers import DummyCouponIssuer
from apps.integrations.notifiers import DummyNotifier

User = get_user_model()


TIERS = [{'codes': 50, 'discount': 25}, {'codes': 30, 'discount': 15}, {'discount': 10}]


class TierCalculatorTestCase(TestCase):

    def setUp(self):
        self.campaign = Campaign(name='Tiers', discount_value=Decimal('5'), total_codes=100, tier_thresholds=TIERS)

    def test_no_tiers_returns_base(self):
        """Без ступеней всегда базовая скидка"""
        campaign = Campaign(name='Flat', discount_value=Decimal('12.50'), total_codes=10)
        self.assertEqual(discount_for(campaign, 0), Decimal('12.50'))
        self.assertEqual(discount_for(campaign, 9), Decimal('12.50'))

    def test_tier_boundaries_are_exclusive(self):
        """1-50 заявки: 25, 51-80: 15, 81-100: 10"""
        for claimed in range(0, 50):
            self.assertEqual(discount_for(self.campaign, claimed), Decimal('25'))
        for claimed in range(50, 80):
            self.assertEqual(discount_for(self.campaign, claimed), Decimal('15'))
        for claimed in range(80, 100):
            self.assertEqual(discount_for(self.campaign, claimed), Decimal('10'))

    def test_exhausted_tiers_without_catch_all_use_base(self):
        self.campaign.tier_thresholds = [{'codes': 2, 'discount': 30}]
        self.assertEqual(discount_for(self.campaign, 1), Decimal('30'))
        self.assertEqual(discount_for(self.campaign, 2), Decimal('5'))

    def test_malformed_tiers_fall_back_to_base(self):
        """Некорректные ступени не ломают расчет"""
        for raw in ['oops', [{'codes': 'x', 'discount': 5}], [{'discount': 5}, {'codes': 3, 'discount': 1}],
                    [{'codes': 3}], [{'codes': 3, 'discount': 'abc'}]]:
            self.campaign.tier_thresholds = raw
            self.assertEqual(discount_for(self.campaign, 0), Decimal('5'))

    def test_parse_tiers_accepts_alternative_keys(self):
        tiers = parse_tiers([{'code_count': 5, 'discount_value': '7.5'}])
        self.assertEqual(tiers, [(5, Decimal('7.5'))])

    def test_parse_tiers_rejects_negative_discount(self):
        with pytest.raises(ValueError):
            parse_tiers([{'codes': 5, 'discount': -1}])


class CampaignStoreTestCase(TestCase):

    def setUp(self):
        self.campaign = Campaign.objects.create(name='Store', discount_value=Decimal('10'), total_codes=3)

    def test_codes_remaining_defaults_to_total(self):
        self.assertEqual(self.campaign.codes_remaining, 3)
        self.assertEqual(self.campaign.claimed_count(), 0)

    def test_update_remaining_never_negative(self):
        """Счетчик не уходит ниже нуля"""
        for _ in range(3):
            self.assertTrue(update_remaining(self.campaign.pk, -1))
        self.assertFalse(update_remaining(self.campaign.pk, -1))
        self.campaign.refresh_from_db()
        self.assertEqual(self.campaign.codes_remaining, 0)
        self.assertTrue(self.campaign.is_sold_out())

    def test_update_remaining_never_exceeds_total(self):
        self.assertFalse(update_remaining(self.campaign.pk, 1, expected_status=None))
        update_remaining(self.campaign.pk, -2)
        self.assertTrue(update_remaining(self.campaign.pk, 2, expected_status=None))
        self.assertFalse(update_remaining(self.campaign.pk, 1, expected_status=None))

    def test_update_remaining_requires_expected_status(self):
        """Списание только у активной кампании"""
        pause_campaign(self.campaign)
        self.assertFalse(update_remaining(self.campaign.pk, -1))
        self.campaign.refresh_from_db()
        self.assertEqual(self.campaign.codes_remaining, 3)

    def test_status_actions(self):
        campaign = pause_campaign(self.campaign)
        self.assertEqual(campaign.status, CampaignStatus.PAUSED)
        self.assertFalse(campaign.is_claimable())

        campaign = resume_campaign(self.campaign)
        self.assertEqual(campaign.status, CampaignStatus.ACTIVE)

        campaign = end_campaign(self.campaign)
        self.assertEqual(campaign.status, CampaignStatus.ENDED)
        with pytest.raises(ValidationError):
            resume_campaign(self.campaign)

    def test_stale_instance_save_keeps_pool(self):
        """Сохранение устаревшего экземпляра не возвращает списанные коды"""
        campaign = Campaign.objects.create(name='Last code', discount_value=Decimal('10'), total_codes=1)
        stale = Campaign.objects.get(pk=campaign.pk)
        service = ClaimService(issuer=DummyCouponIssuer({}), notifier=DummyNotifier({}))
        self.assertTrue(service.reserve(campaign.pk, 'a@example.com', '10.0.0.1').success)

        stale.name = 'Renamed'
        stale.total_codes = 50
        stale.save()

        campaign.refresh_from_db()
        self.assertEqual(campaign.name, 'Renamed')
        self.assertEqual(campaign.total_codes, 1)
        self.assertEqual(campaign.codes_remaining, 0)
        second = service.reserve(campaign.pk, 'b@example.com', '10.0.0.2')
        self.assertEqual(second.reason, RejectReason.SOLD_OUT)
        self.assertEqual(Claim.objects.filter(campaign=campaign).count(), 1)

    def test_resize_pool(self):
        update_remaining(self.campaign.pk, -2)

        self.assertTrue(resize_pool(self.campaign.pk, 10))
        self.campaign.refresh_from_db()
        self.assertEqual((self.campaign.total_codes, self.campaign.codes_remaining), (10, 8))

        self.assertTrue(resize_pool(self.campaign.pk, 2))
        self.campaign.refresh_from_db()
        self.assertEqual((self.campaign.total_codes, self.campaign.codes_remaining), (2, 0))

        self.assertFalse(resize_pool(self.campaign.pk, 1))
        self.campaign.refresh_from_db()
        self.assertEqual((self.campaign.total_codes, self.campaign.codes_remaining), (2, 0))

    def test_discount_label(self):
        self.assertEqual(self.campaign.discount_label(), '10% OFF')
        self.campaign.discount_type = DiscountType.FIXED_AMOUNT
        self.assertEqual(self.campaign.discount_label(Decimal('7.5')), 'SAVE 7.50')


class CampaignAdministrationTestCase(TestCase):

    def valid_data(self, **overrides):
        data = {
            'name': 'Черная пятница',
            'discount_type': DiscountType.PERCENTAGE,
            'discount_value': 20,
            'total_codes': 100,
        }
        data.update(overrides)
        return data

    def test_create_campaign(self):
        campaign = create_campaign(**self.valid_data(tier_thresholds=TIERS, scope_type=ScopeType.PRODUCTS,
                                                     scope_ids=['12', 15]))
        self.assertEqual(campaign.codes_remaining, 100)
        self.assertEqual(campaign.status, CampaignStatus.ACTIVE)
        self.assertEqual(campaign.scope, {'type': ScopeType.PRODUCTS, 'ids': [12, 15]})

    def test_validation_errors(self):
        """Ошибки валидации как в исходном плагине"""
        cases = [
            ({'name': '  '}, 'name'),
            ({'discount_value': 150}, 'discount_value'),
            ({'discount_value': -1}, 'discount_value'),
            ({'discount_type': DiscountType.FIXED_AMOUNT, 'discount_value': 10001}, 'discount_value'),
            ({'discount_value': None}, 'discount_value'),
            ({'total_codes': 0}, 'total_codes'),
            ({'total_codes': 10001}, 'total_codes'),
            ({'tier_thresholds': [{'codes': 0, 'discount': 5}]}, 'tier_thresholds'),
            ({'tier_thresholds': [{'codes': 5, 'discount': 101}]}, 'tier_thresholds'),
            ({'scope_type': ScopeType.CATEGORIES, 'scope_ids': []}, 'scope_ids'),
            ({'max_claims_per_ip': 0}, 'max_claims_per_ip'),
        ]
        for overrides, field in cases:
            with self.subTest(field=field, overrides=overrides):
                with pytest.raises(ValidationError) as exc:
                    validate_campaign_data(self.valid_data(**overrides))
                self.assertIn(field, exc.value.message_dict)

    def test_fixed_amount_up_to_limit_is_valid(self):
        validate_campaign_data(self.valid_data(discount_type=DiscountType.FIXED_AMOUNT, discount_value=10000))

    def test_create_campaign_writes_audit(self):
        campaign = create_campaign(**self.valid_data())

        entry = AuditLog.objects.get(action=AuditAction.CAMPAIGN_CREATED)
        self.assertEqual((entry.object_type, entry.object_id), ('campaign', campaign.pk))
        self.assertEqual(entry.new_value['total_codes'], 100)
        self.assertEqual(entry.new_value['discount_value'], '20.00')
        self.assertIsNone(entry.user)

    def test_update_campaign_grows_pool(self):
        campaign = create_campaign(**self.valid_data(total_codes=3))
        update_remaining(campaign.pk, -1)

        campaign = update_campaign(campaign, {'total_codes': 10, 'name': 'Больше кодов'})

        self.assertEqual((campaign.total_codes, campaign.codes_remaining), (10, 9))
        self.assertEqual(campaign.name, 'Больше кодов')
        entry = AuditLog.objects.get(action=AuditAction.CAMPAIGN_UPDATED)
        self.assertEqual(entry.old_value, {'name': 'Черная пятница', 'total_codes': 3, 'codes_remaining': 2})
        self.assertEqual(entry.new_value, {'name': 'Больше кодов', 'total_codes': 10, 'codes_remaining': 9})

    def test_update_campaign_shrinks_to_claimed(self):
        """Меньше уже выданных нельзя, ровно столько можно"""
        campaign = create_campaign(**self.valid_data(total_codes=3))
        update_remaining(campaign.pk, -2)

        with pytest.raises(ValidationError) as exc:
            update_campaign(campaign, {'total_codes': 1})
        self.assertIn('total_codes', exc.value.message_dict)
        campaign.refresh_from_db()
        self.assertEqual((campaign.total_codes, campaign.codes_remaining), (3, 1))

        campaign = update_campaign(campaign, {'total_codes': 2})
        self.assertEqual((campaign.total_codes, campaign.codes_remaining), (2, 0))
        self.assertTrue(campaign.is_sold_out())

    def test_update_campaign_validates(self):
        campaign = create_campaign(**self.valid_data())

        with pytest.raises(ValidationError):
            update_campaign(campaign, {'discount_value': Decimal('150')})
        with pytest.raises(ValidationError):
            update_campaign(campaign, {'status': CampaignStatus.ENDED})
        with pytest.raises(ValidationError):
            update_campaign(campaign, {'codes_remaining': 100})

        campaign.refresh_from_db()
        self.assertEqual(campaign.discount_value, Decimal('20'))
        self.assertEqual(campaign.status, CampaignStatus.ACTIVE)
        self.assertFalse(AuditLog.objects.filter(action=AuditAction.CAMPAIGN_UPDATED).exists())

    def test_update_without_changes_skips_audit(self):
        campaign = create_campaign(**self.valid_data())
        update_campaign(campaign, {'name': 'Черная пятница', 'discount_value': Decimal('20.00')})
        self.assertFalse(AuditLog.objects.filter(action=AuditAction.CAMPAIGN_UPDATED).exists())

    def test_status_change_writes_audit(self):
        campaign = create_campaign(**self.valid_data())
        pause_campaign(campaign)
        pause_campaign(campaign)

        entries = AuditLog.objects.filter(action=AuditAction.CAMPAIGN_STATUS_CHANGED)
        self.assertEqual(entries.count(), 1)
        self.assertEqual(entries[0].old_value, {'status': 'active'})
        self.assertEqual(entries[0].new_value, {'status': 'paused'})


class CampaignAdminTestCase(TestCase):

    def setUp(self):
        self.admin_user = User.objects.create_superuser(username='admin', email='admin@example.com', password='pass')
        self.client = Client()
        self.client.force_login(self.admin_user)
        self.campaign = Campaign.objects.create(name='Admin', discount_value=Decimal('10'), total_codes=3)
        update_remaining(self.campaign.pk, -1)
        self.url = reverse('admin:campaigns_campaign_change', args=[self.campaign.pk])

    def form_data(self, **overrides):
        data = {
            'name': 'Admin',
            'discount_type': DiscountType.PERCENTAGE,
            'discount_value': '10',
            'tier_thresholds': '[]',
            'total_codes': '3',
            'expiry_hours': '24',
            'max_claims_per_ip': '1',
            'scope_type': ScopeType.ALL,
            'scope_ids': '[]',
            '_save': 'Save',
        }
        data.update(overrides)
        return data

    def test_raise_total_adds_codes(self):
        resp = self.client.post(self.url, self.form_data(total_codes='10'), REMOTE_ADDR='10.1.1.1')

        self.assertEqual(resp.status_code, 302)
        self.campaign.refresh_from_db()
        self.assertEqual((self.campaign.total_codes, self.campaign.codes_remaining), (10, 9))
        entry = AuditLog.objects.get(action=AuditAction.CAMPAIGN_UPDATED)
        self.assertEqual(entry.user, self.admin_user)
        self.assertEqual(entry.ip_address, '10.1.1.1')

    def test_total_below_claimed_is_form_error(self):
        update_remaining(self.campaign.pk, -1)

        resp = self.client.post(self.url, self.form_data(total_codes='1'))

        self.assertEqual(resp.status_code, 200)
        self.assertContains(resp, 'не может быть меньше уже выданных')
        self.campaign.refresh_from_db()
        self.assertEqual((self.campaign.total_codes, self.campaign.codes_remaining), (3, 1))

    def test_lower_total_to_claimed(self):
        resp = self.client.post(self.url, self.form_data(total_codes='1'))

        self.assertEqual(resp.status_code, 302)
        self.campaign.refresh_from_db()
        self.assertEqual((self.campaign.total_codes, self.campaign.codes_remaining), (1, 0))

    def test_status_is_not_editable(self):
        end_campaign(self.campaign)

        resp = self.client.post(self.url, self.form_data(status=CampaignStatus.ACTIVE, name='Renamed'))

        self.assertEqual(resp.status_code, 302)
        self.campaign.refresh_from_db()
        self.assertEqual(self.campaign.status, CampaignStatus.ENDED)
        self.assertEqual(self.campaign.name, 'Renamed')

    def test_add_campaign_writes_audit(self):
        resp = self.client.post(reverse('admin:campaigns_campaign_add'), self.form_data(name='New', total_codes='7'))

        self.assertEqual(resp.status_code, 302)
        campaign = Campaign.objects.get(name='New')
        self.assertEqual(campaign.codes_remaining, 7)
        entry = AuditLog.objects.get(action=AuditAction.CAMPAIGN_CREATED)
        self.assertEqual((entry.object_id, entry.user), (campaign.pk, self.admin_user))

    def test_pause_action_writes_audit(self):
        resp = self.client.post(reverse('admin:campaigns_campaign_changelist'), {
            'action': 'pause_selected',
            '_selected_action': [self.campaign.pk],
        })

        self.assertEqual(resp.status_code, 302)
        self.campaign.refresh_from_db()
        self.assertEqual(self.campaign.status, CampaignStatus.PAUSED)
        self.assertEqual(AuditLog.objects.get(action=AuditAction.CAMPAIGN_STATUS_CHANGED).user, self.admin_user)


class CampaignViewsTestCase(TestCase):

    def setUp(self):
        self.client = Client()
        self.campaign = Campaign.objects.create(name='Весна', discount_value=Decimal('15'), total_codes=5)

    def test_status(self):
        resp = self.client.get(reverse('campaigns:status', args=[self.campaign.pk]))
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data['codes_remaining'], 5)
        self.assertEqual(data['status'], 'active')
        self.assertFalse(data['sold_out'])

    def test_status_not_found(self):
        resp = self.client.get(reverse('campaigns:status', args=[999999]))
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()['error_code'], 'campaign_not_found')

    def test_active_list_skips_sold_out_and_paused(self):
        sold_out = Campaign.objects.create(name='Все', discount_value=Decimal('5'), total_codes=1, codes_remaining=0)
        paused = Campaign.objects.create(name='Пауза', discount_value=Decimal('5'), total_codes=1,
                                         status=CampaignStatus.PAUSED)

        resp = self.client.get(reverse('campaigns:active'))
        ids = [c['id'] for c in resp.json()['campaigns']]
        self.assertIn(self.campaign.pk, ids)
        self.assertNotIn(sold_out.pk, ids)
        self.assertNotIn(paused.pk, ids)

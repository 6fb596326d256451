from decimal import Decimal

from django.contrib.auth import get_user_model
from django.contrib.auth.models import AnonymousUser
from django.test import RequestFactory, TestCase

from apps.audit.models import AuditAction, AuditLog
from apps.audit.services import log_audit
from apps.campaigns.models import Campaign

User = get_user_model()


class AuditLogTestCase(TestCase):

    def setUp(self):
        self.factory = RequestFactory()
        self.user = User.objects.create_user(username='manager', email='manager@example.com', password='pass')
        self.campaign = Campaign.objects.create(name='Audit', discount_value=Decimal('10'), total_codes=5)

    def test_log_from_request(self):
        """Пользователь, IP из прокси и User-Agent берутся из запроса"""
        request = self.factory.post('/admin/', HTTP_X_FORWARDED_FOR='203.0.113.7, 10.0.0.1',
                                    HTTP_USER_AGENT='Mozilla/5.0')
        request.user = self.user

        entry = log_audit(AuditAction.CAMPAIGN_UPDATED, self.campaign,
                          old_value={'name': 'Old'}, new_value={'name': 'Audit'}, request=request)

        entry.refresh_from_db()
        self.assertEqual(entry.user, self.user)
        self.assertEqual(entry.ip_address, '203.0.113.7')
        self.assertEqual(entry.user_agent, 'Mozilla/5.0')
        self.assertEqual((entry.object_type, entry.object_id), ('campaign', self.campaign.pk))
        self.assertEqual(entry.old_value, {'name': 'Old'})

    def test_anonymous_and_system_entries(self):
        request = self.factory.get('/')
        request.user = AnonymousUser()

        anonymous = log_audit(AuditAction.CAMPAIGN_CREATED, self.campaign, request=request)
        system = log_audit(AuditAction.CAMPAIGN_CREATED)

        self.assertIsNone(anonymous.user)
        self.assertEqual(anonymous.ip_address, '127.0.0.1')
        self.assertIsNone(system.user)
        self.assertIsNone(system.ip_address)
        self.assertEqual(system.object_type, '')
        self.assertEqual(AuditLog.objects.count(), 2)

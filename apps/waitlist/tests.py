import json
from decimal import Decimal
from unittest import mock

from django.test import Client, TestCase
from django.urls import reverse

from apps.campaigns.models import Campaign
from apps.integrations.notifiers import DummyNotifier, NotifierError
from apps.waitlist.models import WaitlistEntry
from apps.waitlist.services import join_waitlist, notify_waitlist


class WaitlistTestCase(TestCase):

    def setUp(self):
        self.campaign = Campaign.objects.create(name='Wait', discount_value=Decimal('10'), total_codes=1)
        self.notifier = DummyNotifier({})

    def test_join(self):
        success, message, entry = join_waitlist(' Fan@Example.com ', campaign=self.campaign)
        self.assertTrue(success)
        self.assertEqual(entry.email, 'fan@example.com')
        self.assertFalse(entry.notified)

    def test_join_duplicate(self):
        """Повторная запись отклоняется, в том числе в общий лист"""
        join_waitlist('fan@example.com', campaign=self.campaign)
        success, message, _ = join_waitlist('FAN@example.com', campaign=self.campaign)
        self.assertFalse(success)

        self.assertTrue(join_waitlist('fan@example.com')[0])
        self.assertFalse(join_waitlist('fan@example.com')[0])
        self.assertEqual(WaitlistEntry.objects.count(), 2)

    def test_join_invalid_email(self):
        for email in ['', 'nope', 'x@mailinator.com', None]:
            self.assertFalse(join_waitlist(email)[0])

    def test_notify_campaign_entries_first(self):
        join_waitlist('global@example.com')
        join_waitlist('fan@example.com', campaign=self.campaign)
        other = Campaign.objects.create(name='Other', discount_value=Decimal('5'), total_codes=1)
        join_waitlist('other@example.com', campaign=other)

        self.assertEqual(notify_waitlist(self.campaign, 1, self.notifier), 1)
        self.assertEqual(self.notifier.sent, [('waitlist', 'fan@example.com', self.campaign.pk)])

        self.assertEqual(notify_waitlist(self.campaign, 5, self.notifier), 1)
        self.assertEqual(self.notifier.sent[-1], ('waitlist', 'global@example.com', self.campaign.pk))
        self.assertFalse(WaitlistEntry.objects.get(email='other@example.com').notified)

    def test_notify_failure_leaves_entry_pending(self):
        join_waitlist('fan@example.com', campaign=self.campaign)
        with mock.patch.object(self.notifier, 'send_waitlist_notice', side_effect=NotifierError('smtp')):
            self.assertEqual(notify_waitlist(self.campaign, 1, self.notifier), 0)
        self.assertFalse(WaitlistEntry.objects.get().notified)

    def test_notify_zero_slots(self):
        join_waitlist('fan@example.com', campaign=self.campaign)
        self.assertEqual(notify_waitlist(self.campaign, 0, self.notifier), 0)


class WaitlistViewTestCase(TestCase):

    def setUp(self):
        self.client = Client()
        self.campaign = Campaign.objects.create(name='Wait', discount_value=Decimal('10'), total_codes=1)
        self.url = reverse('waitlist:join')

    def post(self, data):
        return self.client.post(self.url, data=json.dumps(data), content_type='application/json')

    def test_join_campaign(self):
        resp = self.post({'email': 'fan@example.com', 'campaign_id': self.campaign.pk})
        self.assertEqual(resp.status_code, 201)
        self.assertTrue(WaitlistEntry.objects.filter(campaign=self.campaign).exists())

    def test_join_global(self):
        resp = self.post({'email': 'fan@example.com'})
        self.assertEqual(resp.status_code, 201)
        self.assertIsNone(WaitlistEntry.objects.get().campaign)

    def test_errors(self):
        self.assertEqual(self.post({'email': 'fan@example.com', 'campaign_id': 999999}).status_code, 404)
        self.assertEqual(self.post({'email': 'bad'}).status_code, 400)
        self.assertEqual(self.post({'email': 'fan@example.com', 'campaign_id': 'x'}).status_code, 400)

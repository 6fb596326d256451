import logging
from typing import Optional, Tuple

from django.db import IntegrityError
from django.db.models import Q
from django.utils import timezone

from apps.eligibility.services import is_valid_identity, normalize_identity
from apps.integrations.notifiers import NotifierError
from .models import WaitlistEntry

logger = logging.getLogger(__name__)


def join_waitlist(email, campaign=None) -> Tuple[bool, str, Optional[WaitlistEntry]]:
    """Добавляет email в лист ожидания кампании (или общий, если кампании нет)"""
    email = normalize_identity(email)
    if not is_valid_identity(email):
        return False, 'Укажите корректный email', None

    if WaitlistEntry.objects.filter(campaign=campaign, email=email).exists():
        return False, 'Вы уже в листе ожидания', None

    try:
        entry = WaitlistEntry.objects.create(campaign=campaign, email=email)
    except IntegrityError:
        return False, 'Вы уже в листе ожидания', None

    return True, 'Мы сообщим, когда появятся коды', entry


def notify_waitlist(campaign, slots: int, notifier) -> int:
    """
    Оповещает ожидающих об освободившихся кодах, не больше slots человек:
    сначала подписанные на эту кампанию, затем на любую.
    """
    if slots <= 0:
        return 0

    pending = (
        WaitlistEntry.objects.filter(Q(campaign=campaign) | Q(campaign__isnull=True), notified=False)
        .order_by('joined_at', 'id')
    )
    # NULL сортируется по-разному в разных БД, поэтому сортируем сами
    entries = sorted(pending, key=lambda e: (e.campaign_id is None, e.joined_at, e.pk))[:slots]

    notified = 0
    for entry in entries:
        try:
            notifier.send_waitlist_notice(entry.email, campaign)
        except NotifierError as e:
            logger.error(f"Waitlist notice to {entry.email} failed: {e}")
            continue
        entry.notified = True
        entry.notified_at = timezone.now()
        entry.save(update_fields=['notified', 'notified_at'])
        notified += 1

    if notified:
        logger.info(f"Notified {notified} waitlist entries for campaign {campaign.pk}")
    return notified

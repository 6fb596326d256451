"""
Уведомления покупателей: письмо с подтверждением, выданный код, лист ожидания
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from django.conf import settings
from django.core.mail import send_mail
from django.urls import reverse

logger = logging.getLogger(__name__)


class NotifierError(Exception):
    """Исключение для ошибок отправки уведомлений"""
    pass


def build_verify_url(token: str) -> str:
    path = reverse('verification:verify')
    return f"{settings.SITE_URL.rstrip('/')}{path}?{urlencode({'token': token})}"


class BaseNotifier(ABC):

    def __init__(self, config: Dict[str, Any]):
        self.config = config

    @abstractmethod
    def send_verification(self, identity: str, token: str, campaign) -> None:
        pass

    @abstractmethod
    def send_confirmation(self, identity: str, issued_code: str, campaign, claim=None) -> None:
        pass

    @abstractmethod
    def send_waitlist_notice(self, email: str, campaign) -> None:
        pass


class EmailNotifier(BaseNotifier):
    """Отправка писем через почтовый backend Django"""

    def _send(self, to: str, subject: str, body: str) -> None:
        from_email = self.config.get('from_email') or settings.DEFAULT_FROM_EMAIL
        try:
            sent = send_mail(subject, body, from_email, [to], fail_silently=False)
        except Exception as e:
            raise NotifierError(f"Failed to send email to {to}: {e}")
        if not sent:
            raise NotifierError(f"Email to {to} was not sent")

    def send_verification(self, identity, token, campaign) -> None:
        subject = f'Подтвердите email, чтобы получить скидку "{campaign.name}"'
        body = (
            f"Здравствуйте!\n\n"
            f"Вы запросили эксклюзивный код скидки ({campaign.discount_label()}).\n"
            f"Подтвердите email по ссылке:\n\n{build_verify_url(token)}\n\n"
            f"Ссылка действует ограниченное время. Если вы не запрашивали код, просто проигнорируйте письмо."
        )
        self._send(identity, subject, body)

    def send_confirmation(self, identity, issued_code, campaign, claim=None) -> None:
        label = campaign.discount_label(claim.discount_value_applied if claim else None)
        subject = 'Ваш эксклюзивный код скидки'
        body = f"Ваш код: {issued_code}\nСкидка: {label}\n"
        if claim is not None:
            body += f"Действует до: {claim.expires_at:%d.%m.%Y %H:%M} (UTC)\n"
        body += "\nКод одноразовый и привязан к вашему email."
        self._send(identity, subject, body)

    def send_waitlist_notice(self, email, campaign) -> None:
        subject = f'Появились коды в акции "{campaign.name}"'
        body = (
            f"Вы были в листе ожидания. В акции \"{campaign.name}\" освободились коды "
            f"({campaign.discount_label()}), успейте получить свой!"
        )
        self._send(email, subject, body)


class DummyNotifier(BaseNotifier):
    """Складывает уведомления в список вместо отправки"""

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.sent = []

    def send_verification(self, identity, token, campaign) -> None:
        self.sent.append(('verification', identity, token))
        logger.info(f"[DUMMY] Verification for {identity}: {token}")

    def send_confirmation(self, identity, issued_code, campaign, claim=None) -> None:
        self.sent.append(('confirmation', identity, issued_code))
        logger.info(f"[DUMMY] Code {issued_code} sent to {identity}")

    def send_waitlist_notice(self, email, campaign) -> None:
        self.sent.append(('waitlist', email, campaign.pk))


def get_notifier(config: Optional[Dict[str, Any]] = None) -> BaseNotifier:
    """Создает отправителя уведомлений по настройкам FOMO_CLAIMS['NOTIFIER']"""
    if config is None:
        from apps.claims.conf import get_claim_settings
        config = get_claim_settings()['NOTIFIER']

    notifiers = {
        'email': EmailNotifier,
        'dummy': DummyNotifier,
    }
    return notifiers.get(config.get('provider_type', 'dummy'), DummyNotifier)(config)

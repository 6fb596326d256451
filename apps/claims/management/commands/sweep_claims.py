"""
Команда для ручного освобождения просроченных заявок
"""
from django.core.management.base import BaseCommand
from django.utils import timezone

from apps.claims.services import get_claim_service


class Command(BaseCommand):
    help = "Освобождает неподтвержденные заявки с истекшим сроком и возвращает коды в пул"

    def add_arguments(self, parser):
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Показать, что будет освобождено, без изменений'
        )
        parser.add_argument(
            '--cleanup',
            action='store_true',
            help='Также пометить истекшие выданные купоны и удалить их в магазине'
        )
        parser.add_argument(
            '--retry-issuance',
            action='store_true',
            help='Повторить создание купонов после ошибок магазина'
        )

    def handle(self, *args, **options):
        service = get_claim_service()
        now = timezone.now()

        if options['dry_run']:
            candidates = service.verification.expired_candidates(now).select_related('campaign')
            self.stdout.write(f'Будет освобождено заявок: {candidates.count()}')
            for claim in candidates:
                self.stdout.write(f'  {claim.issued_code} ({claim.identity}) - {claim.campaign.name}')
            return

        released = service.sweep_expired(now=now)
        self.stdout.write(self.style.SUCCESS(f'Освобождено заявок: {released}'))

        if options['cleanup']:
            expired = service.cleanup_expired(now=now)
            self.stdout.write(self.style.SUCCESS(f'Истекших купонов: {expired}'))

        if options['retry_issuance']:
            finalized = service.retry_pending_issuance()
            self.stdout.write(self.style.SUCCESS(f'Выдано купонов повторно: {finalized}'))

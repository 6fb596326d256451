import logging
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from django.core.exceptions import ValidationError
from django.db import transaction
from django.db.models import F

from apps.audit.models import AuditAction
from apps.audit.services import log_audit
from apps.claims.conf import get_claim_settings
from .models import Campaign, CampaignStatus, DiscountType, ScopeType
from .tiers import parse_tiers

logger = logging.getLogger(__name__)


def get_client_ip(request):
    """Получает IP адрес клиента с учетом прокси"""
    x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
    if x_forwarded_for:
        return x_forwarded_for.split(',')[0].strip()
    x_real_ip = request.META.get('HTTP_X_REAL_IP')
    if x_real_ip:
        return x_real_ip.strip()
    return request.META.get('REMOTE_ADDR')


# ===== Хранилище кампаний =====

def get_campaign(campaign_id) -> Optional[Campaign]:
    return Campaign.objects.filter(pk=campaign_id).first()


def lock_campaign(campaign_id) -> Optional[Campaign]:
    """
    Читает кампанию под блокировкой строки (SELECT ... FOR UPDATE).
    Вызывать только внутри transaction.atomic().
    """
    return Campaign.objects.select_for_update().filter(pk=campaign_id).first()


def update_remaining(campaign_id, delta: int, expected_status=CampaignStatus.ACTIVE) -> bool:
    """
    Изменяет codes_remaining на delta, размер пула меняет только resize_pool.
    Условный UPDATE: счетчик не уходит ниже нуля и не превышает total_codes,
    при expected_status кампания должна быть в этом статусе.
    Возвращает True если строка обновлена.
    """
    qs = Campaign.objects.filter(pk=campaign_id)
    if expected_status is not None:
        qs = qs.filter(status=expected_status)
    if delta < 0:
        qs = qs.filter(codes_remaining__gte=-delta)
    else:
        qs = qs.filter(codes_remaining__lte=F('total_codes') - delta)
    return qs.update(codes_remaining=F('codes_remaining') + delta) == 1


def active_campaigns(limit: int = 10, offset: int = 0) -> List[Campaign]:
    qs = Campaign.objects.filter(status=CampaignStatus.ACTIVE, codes_remaining__gt=0).order_by('-created_at', '-id')
    return list(qs[offset:offset + limit])


def campaign_status(campaign: Campaign) -> dict:
    return {
        'campaign_id': campaign.id,
        'codes_remaining': campaign.codes_remaining,
        'total_codes': campaign.total_codes,
        'status': campaign.status,
        'sold_out': campaign.is_sold_out(),
    }


# ===== Администрирование кампаний =====

def validate_campaign_data(data: dict) -> None:
    """Проверяет данные новой кампании, бросает ValidationError со всеми ошибками"""
    cfg = get_claim_settings()
    errors = {}

    if not (data.get('name') or '').strip():
        errors['name'] = 'Название кампании обязательно'

    discount_type = data.get('discount_type', DiscountType.PERCENTAGE)
    if discount_type not in DiscountType.values:
        errors['discount_type'] = 'Неизвестный тип скидки'

    try:
        value = Decimal(str(data.get('discount_value')))
        if not value.is_finite():
            raise InvalidOperation
    except (InvalidOperation, TypeError):
        errors['discount_value'] = 'Размер скидки обязателен'
    else:
        if value < 0:
            errors['discount_value'] = 'Скидка не может быть отрицательной'
        elif discount_type == DiscountType.PERCENTAGE and value > 100:
            errors['discount_value'] = 'Процентная скидка не может превышать 100%'
        elif discount_type == DiscountType.FIXED_AMOUNT and value > cfg['MAX_FIXED_DISCOUNT']:
            errors['discount_value'] = f"Фиксированная скидка не может превышать {cfg['MAX_FIXED_DISCOUNT']}"

    total = data.get('total_codes')
    if isinstance(total, bool) or not isinstance(total, int) or not 1 <= total <= cfg['MAX_TOTAL_CODES']:
        errors['total_codes'] = f"Количество кодов должно быть от 1 до {cfg['MAX_TOTAL_CODES']}"

    if data.get('tier_thresholds'):
        try:
            tiers = parse_tiers(data['tier_thresholds'])
        except ValueError as e:
            errors['tier_thresholds'] = f'Некорректные ступени скидок: {e}'
        else:
            if discount_type == DiscountType.PERCENTAGE and any(d > 100 for _, d in tiers):
                errors['tier_thresholds'] = 'Процентная скидка ступени не может превышать 100%'

    scope_type = data.get('scope_type', ScopeType.ALL)
    if scope_type not in ScopeType.values:
        errors['scope_type'] = 'Неизвестная область действия'
    elif scope_type != ScopeType.ALL:
        ids = data.get('scope_ids') or []
        if not ids or not all(str(i).isdigit() and int(i) > 0 for i in ids):
            errors['scope_ids'] = 'Укажите id товаров или категорий'

    max_per_ip = data.get('max_claims_per_ip', 1)
    if isinstance(max_per_ip, bool) or not isinstance(max_per_ip, int) or max_per_ip < 1:
        errors['max_claims_per_ip'] = 'Лимит на IP должен быть не меньше 1'

    if errors:
        raise ValidationError(errors)


EDITABLE_FIELDS = (
    'name', 'discount_type', 'discount_value', 'tier_thresholds', 'total_codes', 'expiry_hours',
    'ip_limit_enabled', 'max_claims_per_ip', 'scope_type', 'scope_ids',
)


def campaign_snapshot(campaign: Campaign) -> dict:
    """Поля кампании в виде, пригодном для JSON журнала аудита"""
    data = {name: getattr(campaign, name) for name in EDITABLE_FIELDS}
    data['discount_value'] = f"{Decimal(str(data['discount_value'])):.2f}"
    data['codes_remaining'] = campaign.codes_remaining
    data['status'] = campaign.status
    return data


def create_campaign(request=None, **data) -> Campaign:
    """Создает кампанию с полным пулом кодов"""
    validate_campaign_data(data)
    scope_type = data.get('scope_type', ScopeType.ALL)
    with transaction.atomic():
        campaign = Campaign.objects.create(
            name=data['name'].strip(),
            discount_type=data.get('discount_type', DiscountType.PERCENTAGE),
            discount_value=Decimal(str(data['discount_value'])),
            tier_thresholds=data.get('tier_thresholds') or [],
            total_codes=data['total_codes'],
            codes_remaining=data['total_codes'],
            expiry_hours=data.get('expiry_hours', 24),
            ip_limit_enabled=bool(data.get('ip_limit_enabled', False)),
            max_claims_per_ip=data.get('max_claims_per_ip', 1),
            scope_type=scope_type,
            scope_ids=[int(i) for i in data.get('scope_ids') or []] if scope_type != ScopeType.ALL else [],
            status=CampaignStatus.ACTIVE,
        )
        log_audit(AuditAction.CAMPAIGN_CREATED, campaign, new_value=campaign_snapshot(campaign), request=request)
    logger.info(f"Campaign {campaign.id} created with {campaign.total_codes} codes")
    return campaign


def resize_pool(campaign_id, new_total: int) -> bool:
    """
    Меняет total_codes и сдвигает codes_remaining на ту же разницу одним
    условным UPDATE. Не срабатывает, если новый размер меньше числа уже
    зарезервированных кодов.
    """
    return Campaign.objects.filter(
        pk=campaign_id,
        codes_remaining__gte=F('total_codes') - new_total,
    ).update(
        total_codes=new_total,
        codes_remaining=F('codes_remaining') + new_total - F('total_codes'),
    ) == 1


def update_campaign(campaign: Campaign, data: dict, request=None) -> Campaign:
    """
    Изменяет настройки кампании под блокировкой строки.
    Статус меняется только через pause/resume/end, пул через resize_pool.
    """
    unknown = set(data) - set(EDITABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Эти поля нельзя изменить: {', '.join(sorted(unknown))}")

    with transaction.atomic():
        locked = lock_campaign(campaign.pk)
        if locked is None:
            raise Campaign.DoesNotExist(f"Campaign {campaign.pk} not found")

        old = campaign_snapshot(locked)
        merged = {name: getattr(locked, name) for name in EDITABLE_FIELDS}
        merged.update(data)
        validate_campaign_data(merged)

        new_total = merged['total_codes']
        claimed = locked.claimed_count()
        if new_total < claimed:
            raise ValidationError({
                'total_codes': f'Количество кодов не может быть меньше уже выданных ({claimed})'
            })

        for name in EDITABLE_FIELDS:
            if name != 'total_codes':
                setattr(locked, name, merged[name])
        locked.name = locked.name.strip()
        locked.discount_value = Decimal(str(locked.discount_value))
        if locked.scope_type == ScopeType.ALL:
            locked.scope_ids = []
        else:
            locked.scope_ids = [int(i) for i in locked.scope_ids]
        locked.save()

        if new_total != locked.total_codes and not resize_pool(locked.pk, new_total):
            raise ValidationError({'total_codes': 'Не удалось изменить количество кодов'})
        locked.refresh_from_db(fields=['total_codes', 'codes_remaining'])

        new = campaign_snapshot(locked)
        changes = {key: value for key, value in new.items() if old.get(key) != value}
        if changes:
            log_audit(AuditAction.CAMPAIGN_UPDATED, locked,
                      old_value={key: old[key] for key in changes}, new_value=changes, request=request)

    logger.info(f"Campaign {locked.pk} updated: {', '.join(changes) or 'no changes'}")
    return locked


def _set_status(campaign: Campaign, status: str, request=None) -> Campaign:
    with transaction.atomic():
        locked = lock_campaign(campaign.pk)
        if locked is None:
            raise Campaign.DoesNotExist(f"Campaign {campaign.pk} not found")
        if locked.status == CampaignStatus.ENDED and status != CampaignStatus.ENDED:
            raise ValidationError('Завершенную кампанию нельзя возобновить')
        old_status = locked.status
        locked.status = status
        locked.save(update_fields=['status', 'updated_at'])
        if old_status != status:
            log_audit(AuditAction.CAMPAIGN_STATUS_CHANGED, locked,
                      old_value={'status': old_status}, new_value={'status': status}, request=request)
    logger.info(f"Campaign {campaign.pk} status -> {status}")
    return locked


def pause_campaign(campaign: Campaign, request=None) -> Campaign:
    return _set_status(campaign, CampaignStatus.PAUSED, request=request)


def resume_campaign(campaign: Campaign, request=None) -> Campaign:
    return _set_status(campaign, CampaignStatus.ACTIVE, request=request)


def end_campaign(campaign: Campaign, request=None) -> Campaign:
    return _set_status(campaign, CampaignStatus.ENDED, request=request)

import json
import logging

from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from apps.campaigns.services import get_client_ip
from .conf import get_claim_settings
from .models import RejectReason
from .results import ClaimResult
from .services import get_claim_service, rate_limited

logger = logging.getLogger(__name__)


def parse_json_body(request):
    """Тело запроса как dict или None, если это не JSON-объект"""
    try:
        data = json.loads(request.body or b'{}')
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return data if isinstance(data, dict) else None


def bad_request(message='Некорректные данные запроса'):
    return JsonResponse({'success': False, 'error_code': 'invalid_request', 'message': message}, status=400)


@csrf_exempt
@require_POST
def claim_code(request):
    """
    Заявка на код скидки.
    Авторизованный пользователь получает код сразу на свой email,
    остальным отправляется письмо с подтверждением.
    """
    data = parse_json_body(request)
    if data is None:
        return bad_request()

    try:
        campaign_id = int(data.get('campaign_id'))
    except (TypeError, ValueError):
        return bad_request('Не указана акция')

    ip = get_client_ip(request)
    cfg = get_claim_settings()
    if rate_limited(f"{ip}:{campaign_id}", 'claim', limit=cfg['RATE_LIMIT_PER_HOUR'], window_sec=3600):
        result = ClaimResult.rejected(RejectReason.RATE_LIMITED)
        return JsonResponse(result.to_payload(), status=result.http_status())

    user = request.user if request.user.is_authenticated and request.user.email else None
    identity = user.email if user else (data.get('identity') or data.get('email') or '')

    result = get_claim_service().claim(campaign_id, identity, ip, user=user)
    if not result.success:
        logger.info(f"Claim rejected for campaign {campaign_id} from {ip}: {result.reason}")
    return JsonResponse(result.to_payload(), status=result.http_status())

from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from apps.campaigns.services import get_campaign
from apps.claims.views import bad_request, parse_json_body
from .services import join_waitlist


@csrf_exempt
@require_POST
def join(request):
    """Запись в лист ожидания кампании или общий"""
    data = parse_json_body(request)
    if data is None:
        return bad_request()

    campaign = None
    if data.get('campaign_id') is not None:
        try:
            campaign = get_campaign(int(data['campaign_id']))
        except (TypeError, ValueError):
            return bad_request('Не указана акция')
        if campaign is None:
            return JsonResponse({'success': False, 'error_code': 'campaign_not_found', 'message': 'Акция не найдена'},
                                status=404)

    success, message, _ = join_waitlist(data.get('email'), campaign=campaign)
    return JsonResponse({'success': success, 'message': message}, status=201 if success else 400)

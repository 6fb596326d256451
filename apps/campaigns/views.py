from django.http import JsonResponse
from django.views.decorators.http import require_GET

from .services import active_campaigns, campaign_status, get_campaign


@require_GET
def status(request, campaign_id):
    """Остаток кодов кампании"""
    campaign = get_campaign(campaign_id)
    if campaign is None:
        return JsonResponse({'success': False, 'error_code': 'campaign_not_found', 'message': 'Акция не найдена'},
                            status=404)
    return JsonResponse(campaign_status(campaign))


@require_GET
def active_list(request):
    """Активные кампании, в которых еще остались коды"""
    try:
        limit = min(max(int(request.GET.get('limit', 10)), 1), 100)
        offset = max(int(request.GET.get('offset', 0)), 0)
    except ValueError:
        limit, offset = 10, 0

    campaigns = [
        {
            'id': c.id,
            'name': c.name,
            'discount': c.discount_label(),
            'codes_remaining': c.codes_remaining,
            'total_codes': c.total_codes,
        }
        for c in active_campaigns(limit=limit, offset=offset)
    ]
    return JsonResponse({'campaigns': campaigns})

from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods

from apps.claims.services import get_claim_service
from apps.claims.views import bad_request, parse_json_body


@csrf_exempt
@require_http_methods(["GET", "POST"])
def verify(request):
    """Подтверждение email: ссылка из письма (GET ?token=) или POST {token}"""
    if request.method == 'GET':
        token = request.GET.get('token', '')
    else:
        data = parse_json_body(request)
        if data is None:
            return bad_request()
        token = data.get('token') or ''

    if not isinstance(token, str):
        return bad_request()

    result = get_claim_service().confirm(token)
    return JsonResponse(result.to_payload(), status=result.http_status())

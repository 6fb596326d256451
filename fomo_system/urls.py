"""
URL configuration for fomo_system project.

Публичный JSON API выдачи кодов:
    POST api/claims/                      - заявка на код
    GET|POST api/claims/verify/           - подтверждение email по токену
    GET  api/campaigns/<id>/status/       - остаток кодов кампании
    GET  api/campaigns/active/            - активные кампании
    POST api/waitlist/                    - лист ожидания
"""
from django.contrib import admin
from django.urls import path, include

urlpatterns = [
    path('admin/', admin.site.urls),
    path('api/', include('apps.campaigns.urls')),
    path('api/', include('apps.claims.urls')),
    path('api/', include('apps.verification.urls')),
    path('api/', include('apps.waitlist.urls')),
]

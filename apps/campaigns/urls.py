from django.urls import path
from . import views

app_name = 'campaigns'

urlpatterns = [
    path('campaigns/active/', views.active_list, name='active'),
    path('campaigns/<int:campaign_id>/status/', views.status, name='status'),
]

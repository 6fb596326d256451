from django.urls import path
from . import views

app_name = 'verification'

urlpatterns = [
    path('claims/verify/', views.verify, name='verify'),
]

"""
Triage URL Configuration
"""

from django.urls import path

from apps.triage import views

app_name = 'triage'

urlpatterns = [
    path('intake/', views.IntakeView.as_view(), name='intake'),
    path('sessions/<str:session_id>/', views.SessionStatusView.as_view(), name='session-status'),
    path('health/', views.TriageHealthCheckView.as_view(), name='health'),
]

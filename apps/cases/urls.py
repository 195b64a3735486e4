"""
Case URL Configuration
"""

from django.urls import path

from apps.cases import views

app_name = 'cases'

urlpatterns = [
    path('', views.CaseListView.as_view(), name='list'),
    path('reminders/due/', views.DueRemindersView.as_view(), name='due-reminders'),
    path('users/<str:user_id>/', views.UserCasesView.as_view(), name='user-cases'),
    path('<str:case_id>/', views.CaseDetailView.as_view(), name='detail'),
    path('<str:case_id>/status/', views.CaseStatusView.as_view(), name='status'),
    path('<str:case_id>/follow-ups/', views.CaseFollowUpView.as_view(), name='follow-ups'),
    path('<str:case_id>/reminders/', views.CaseReminderView.as_view(), name='reminders'),
    path('<str:case_id>/assign/', views.CaseAssignView.as_view(), name='assign'),
]

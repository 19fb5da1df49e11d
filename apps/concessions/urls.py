# concessions/urls.py

from django.urls import path
from . import views

app_name = 'concessions'

urlpatterns = [
    # =============================================================================
    # CONCESSION TYPE URLS
    # =============================================================================
    path('types/', views.concession_type_list, name='concession_type_list'),
    path('types/create/', views.concession_type_create, name='concession_type_create'),
    path('types/<uuid:pk>/edit/', views.concession_type_edit, name='concession_type_edit'),
    path('types/<uuid:pk>/delete/', views.concession_type_delete, name='concession_type_delete'),


    # =============================================================================
    # STUDENT CONCESSION URLS
    # =============================================================================
    path('', views.student_concession_list, name='student_concession_list'),
    path('assign/', views.concession_assign, name='concession_assign'),
    path('<uuid:pk>/approve/', views.concession_approve, name='concession_approve'),
    path('<uuid:pk>/reject/', views.concession_reject, name='concession_reject'),
    path('<uuid:pk>/suspend/', views.concession_suspend, name='concession_suspend'),
    path('<uuid:pk>/history/', views.concession_history, name='concession_history'),


    # =============================================================================
    # APPROVAL SETTINGS URLS
    # =============================================================================
    path('approval-settings/', views.approval_settings, name='approval_settings'),
]

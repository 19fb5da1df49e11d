# payments/urls.py

from django.urls import path

from . import views

app_name = 'payments'

urlpatterns = [
    # Payment requests
    path('requests/', views.payment_request_create, name='payment_request_create'),
    path('requests/<uuid:pk>/', views.payment_request_detail, name='payment_request_detail'),
    path('requests/<uuid:pk>/cancel/', views.payment_request_cancel, name='payment_request_cancel'),
    path('verify/', views.verify_checkout, name='verify_checkout'),

    # Gateway callbacks
    path('webhooks/<str:gateway>/', views.gateway_webhook, name='gateway_webhook'),

    # Payment links
    path('links/', views.payment_link_create, name='payment_link_create'),
    path('links/<uuid:pk>/deactivate/', views.payment_link_deactivate, name='payment_link_deactivate'),
    path('pay/<str:token>/', views.payment_link_detail, name='payment_link_detail'),

    # Monitor & reconciliation
    path('monitor/', views.transaction_monitor_view, name='transaction_monitor'),
    path('reconciliation/', views.reconciliation_exception_list, name='reconciliation_exception_list'),
    path('reconciliation/scan/', views.reconciliation_scan, name='reconciliation_scan'),
    path('reconciliation/<uuid:pk>/resolve/', views.reconciliation_exception_resolve, name='reconciliation_exception_resolve'),
]

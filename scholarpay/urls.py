"""
URL configuration for scholarpay project.

Every app exposes JSON endpoints under its own prefix and namespace.
"""
from django.urls import path, include

urlpatterns = [
    # Fees app - fee heads, terms, section slabs, ledger, manual collections
    path('fees/', include(('fees.urls', 'fees'), namespace='fees')),

    # Concessions app - concession types, assignment and approval workflow
    path('concessions/', include(('concessions.urls', 'concessions'), namespace='concessions')),

    # Payments app - gateway requests, webhooks, payment links, reconciliation
    path('payments/', include(('payments.urls', 'payments'), namespace='payments')),
]

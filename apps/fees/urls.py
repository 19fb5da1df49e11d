# fees/urls.py

from django.urls import path
from . import views

app_name = 'fees'

urlpatterns = [
    # =============================================================================
    # FEE HEAD URLS
    # =============================================================================
    path('fee-heads/', views.fee_head_list, name='fee_head_list'),
    path('fee-heads/create/', views.fee_head_create, name='fee_head_create'),
    path('fee-heads/<uuid:pk>/edit/', views.fee_head_edit, name='fee_head_edit'),
    path('fee-heads/<uuid:pk>/delete/', views.fee_head_delete, name='fee_head_delete'),


    # =============================================================================
    # FEE TERM URLS
    # =============================================================================
    path('fee-terms/', views.fee_term_list, name='fee_term_list'),
    path('fee-terms/create/', views.fee_term_create, name='fee_term_create'),
    path('fee-terms/reorder/', views.fee_term_reorder, name='fee_term_reorder'),
    path('fee-terms/<uuid:pk>/edit/', views.fee_term_edit, name='fee_term_edit'),
    path('fee-terms/<uuid:pk>/delete/', views.fee_term_delete, name='fee_term_delete'),
    path('fee-terms/<uuid:pk>/move/', views.fee_term_move, name='fee_term_move'),


    # =============================================================================
    # CLASSWISE FEE URLS
    # =============================================================================
    path('sections/<uuid:section_pk>/fees/', views.section_fees, name='section_fees'),
    path('section-fees/set/', views.section_fees_set, name='section_fees_set'),
    path('section-fees/copy/', views.section_fees_copy, name='section_fees_copy'),


    # =============================================================================
    # STUDENT LEDGER URLS
    # =============================================================================
    path('students/<uuid:student_pk>/details/', views.student_fee_details, name='student_fee_details'),
    path('outstanding/', views.outstanding_fees, name='outstanding_fees'),


    # =============================================================================
    # COLLECTION URLS
    # =============================================================================
    path('collections/', views.collection_history, name='collection_history'),
    path('collections/create/', views.collection_create, name='collection_create'),
    path('collections/bulk/', views.collection_bulk_create, name='collection_bulk_create'),
    path('collections/export/', views.collection_history_export, name='collection_history_export'),
    path('collections/<uuid:pk>/edit/', views.collection_edit, name='collection_edit'),
    path('collections/<uuid:pk>/delete/', views.collection_delete, name='collection_delete'),
]

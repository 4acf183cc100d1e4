# billing/urls.py
from django.urls import path
from . import views

app_name = 'billing'

urlpatterns = [
    path('catalog/total/', views.catalog_total, name='catalog_total'),
    path('records/', views.create_record, name='create_record'),
    path('records/<int:record_id>/', views.record_detail, name='record_detail'),
    path('records/<int:record_id>/update/', views.update_record, name='update_record'),
]

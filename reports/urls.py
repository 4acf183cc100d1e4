# reports/urls.py
from django.urls import path
from . import views

app_name = 'reports'

urlpatterns = [
    path('revenue/', views.RevenueReportView.as_view(), name='revenue'),
    path('revenue/monthly/', views.MonthlyRevenueView.as_view(), name='monthly_revenue'),
]

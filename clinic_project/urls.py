# clinic_project/urls.py
from django.contrib import admin
from django.urls import path, include

urlpatterns = [
    path('admin/', admin.site.urls),
    path('', include('core.urls', namespace='core')),
    path('billing/', include('billing.urls', namespace='billing')),
    path('reports/', include('reports.urls', namespace='reports')),
]

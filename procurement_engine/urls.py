from django.contrib import admin
from django.urls import path, include

urlpatterns = [
    path('admin/', admin.site.urls),

    # Engine endpoints
    path('', include('procurement.urls')),
]

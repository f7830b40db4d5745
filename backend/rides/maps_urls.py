from django.urls import path
from . import views

app_name = 'maps'

urlpatterns = [
    path('geocode/', views.geocode, name='geocode'),
    path('suggestions/', views.suggestions, name='suggestions'),
    path('route/', views.route, name='route'),
]

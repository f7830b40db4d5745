from django.urls import path
from . import views

app_name = 'rides'

urlpatterns = [
    # Rider APIs
    path('', views.create_ride, name='create-ride'),
    path('fare/', views.fare_estimate, name='fare'),
    path('active/', views.active_rides, name='active-rides'),
    path('history/', views.ride_history, name='ride-history'),
    path('<uuid:ride_id>/', views.ride_detail, name='ride-detail'),
    path('<uuid:ride_id>/cancel/', views.cancel, name='cancel-ride'),
    path('<uuid:ride_id>/rate/', views.rate, name='rate-ride'),
    path('<uuid:ride_id>/messages/', views.chat_messages, name='ride-messages'),
    path('<uuid:ride_id>/messages/read/', views.chat_read, name='ride-messages-read'),

    # Driver Ride Actions
    path('<uuid:ride_id>/confirm/', views.confirm, name='confirm-ride'),
    path('<uuid:ride_id>/en-route/', views.en_route, name='en-route-ride'),
    path('<uuid:ride_id>/start/', views.start, name='start-ride'),
    path('<uuid:ride_id>/end/', views.end, name='end-ride'),
]

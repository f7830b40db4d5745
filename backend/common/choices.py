"""Enumerations shared by models, services and serializers."""

from django.db import models


class VehicleClass(models.TextChoices):
    ECONOMY = 'economy', 'Economy'
    STANDARD = 'standard', 'Standard'
    PREMIUM = 'premium', 'Premium'


class RideStatus(models.TextChoices):
    REQUESTED = 'requested', 'Requested'
    ACCEPTED = 'accepted', 'Accepted'
    ON_THE_WAY = 'on-the-way', 'On the way'
    IN_PROGRESS = 'in-progress', 'In progress'
    COMPLETED = 'completed', 'Completed'
    CANCELLED = 'cancelled', 'Cancelled'


class PaymentMethod(models.TextChoices):
    CASH = 'cash', 'Cash'
    CARD = 'card', 'Card'
    WALLET = 'wallet', 'Wallet'


class CancelledBy(models.TextChoices):
    RIDER = 'rider', 'Rider'
    DRIVER = 'driver', 'Driver'
    SYSTEM = 'system', 'System'


class ChatRole(models.TextChoices):
    RIDER = 'rider', 'Rider'
    DRIVER = 'driver', 'Driver'


class MessageStatus(models.TextChoices):
    SENT = 'sent', 'Sent'
    READ = 'read', 'Read'

from rest_framework import serializers
from django.contrib.auth import get_user_model

User = get_user_model()


class UserBasicSerializer(serializers.ModelSerializer):
    """
    Basic rider/driver representation used inside ride responses.
    """
    class Meta:
        model = User
        fields = ['id', 'username', 'phone_number']

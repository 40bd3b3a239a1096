"""
Serializers for authentication models.

Only the public, read-only user representation lives here. It is embedded
in chat payloads (message sender, conversation participants), so it must
stay JSON-serializable for the channel layer.
"""

from rest_framework import serializers

from authentication.models import User


class UserSerializer(serializers.ModelSerializer):
    """Public user fields shown to other participants."""

    display_name = serializers.SerializerMethodField()

    class Meta:
        model = User
        fields = ["id", "email", "display_name"]
        read_only_fields = fields

    def get_display_name(self, obj: User) -> str:
        return obj.get_short_name()

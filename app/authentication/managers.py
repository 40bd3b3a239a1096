"""
User manager for the email-keyed User model.

Chat accounts are provisioned by the identity provider that issues access
tokens, so a local password is optional; admins log in with one.
"""

from django.contrib.auth.models import BaseUserManager


class UserManager(BaseUserManager):
    use_in_migrations = True

    def _create(self, email, password, **fields):
        if not email:
            raise ValueError("Users need an email address")

        user = self.model(email=self.normalize_email(email), **fields)
        if password:
            user.set_password(password)
        else:
            user.set_unusable_password()
        user.save(using=self._db)
        return user

    def create_user(self, email, password=None, **fields):
        """Chat participant. is_staff and is_superuser default to False."""
        fields.setdefault("is_staff", False)
        fields.setdefault("is_superuser", False)
        return self._create(email, password, **fields)

    def create_superuser(self, email, password, **fields):
        """Admin site account. Always staff and superuser."""
        fields.update(is_staff=True, is_superuser=True)
        return self._create(email, password, **fields)

"""
Bearer token handling.

Tokens are HS256 JWTs carrying the user id and the organization the user
belonged to when the token was issued. The organization on the user row is
authoritative; a token whose claim disagrees is rejected.
"""
from datetime import datetime, timedelta, timezone as dt_timezone
from typing import Any, Dict, Optional

import jwt
from django.conf import settings


class AuthService:

    @classmethod
    def generate_jwt(cls, user, expires_in_hours=None) -> str:
        """
        Generate JWT token for a user.

        Args:
            user: User instance
            expires_in_hours: Override for JWT_EXPIRATION_HOURS

        Returns:
            JWT token string
        """
        now = datetime.now(dt_timezone.utc)
        hours = expires_in_hours or getattr(settings, 'JWT_EXPIRATION_HOURS', 24)
        payload = {
            'user_id': str(user.id),
            'organization_id': str(user.organization_id),
            'exp': now + timedelta(hours=hours),
            'iat': now,
        }

        return jwt.encode(
            payload,
            settings.JWT_SECRET_KEY,
            algorithm=getattr(settings, 'JWT_ALGORITHM', 'HS256')
        )

    @classmethod
    def validate_jwt(cls, token: str) -> Optional[Dict[str, Any]]:
        """
        Validate JWT token and return payload.

        Returns:
            Decoded payload dict or None if invalid or expired
        """
        try:
            return jwt.decode(
                token,
                settings.JWT_SECRET_KEY,
                algorithms=[getattr(settings, 'JWT_ALGORITHM', 'HS256')],
                options={'require': ['exp', 'user_id']},
            )
        except jwt.InvalidTokenError:
            return None

    @staticmethod
    def extract_bearer_token(request) -> Optional[str]:
        header = request.META.get('HTTP_AUTHORIZATION', '')
        scheme, _, token = header.partition(' ')
        if scheme.lower() != 'bearer' or not token.strip():
            return None
        return token.strip()

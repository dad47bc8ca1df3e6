"""Secret handling helpers for KeyRelay."""
import hmac
import re
from typing import List, Optional


class SecurityManager:
    """Masking, token comparison and credential input parsing."""

    MAX_KEY_LENGTH = 512

    @staticmethod
    def mask_secret(secret: str) -> str:
        """
        Mask a secret for display (keep the first and last 4 characters).

        Args:
            secret: Secret to mask

        Returns:
            Masked secret; short secrets are masked entirely
        """
        if len(secret) <= 8:
            return "*" * len(secret)
        return secret[:4] + "*" * (len(secret) - 8) + secret[-4:]

    @staticmethod
    def verify_token(provided: Optional[str], expected: str) -> bool:
        """Constant-time comparison of a presented token against the expected one."""
        if not provided:
            return False
        return hmac.compare_digest(provided.encode(), expected.encode())

    @staticmethod
    def extract_bearer(authorization: Optional[str]) -> Optional[str]:
        """Return the token of an ``Authorization: Bearer <token>`` header."""
        if not authorization or not authorization.startswith("Bearer "):
            return None
        token = authorization[len("Bearer "):].strip()
        return token or None

    @staticmethod
    def parse_batch_input(text: str) -> List[str]:
        """Split pasted credentials on newlines, commas and whitespace."""
        return [part.strip() for part in re.split(r"[\n,\s]+", text) if part.strip()]

    @staticmethod
    def validate_secret(secret: str) -> Optional[str]:
        """
        Check a credential secret before it is stored.

        Returns:
            Error message, or None if the secret is acceptable
        """
        if not secret:
            return "Credential must not be empty"
        if len(secret) > SecurityManager.MAX_KEY_LENGTH:
            return f"Credential too long (maximum {SecurityManager.MAX_KEY_LENGTH} characters)"
        if any(ch.isspace() for ch in secret):
            return "Credential must not contain whitespace"
        return None

"""
Webhook security utilities.

Provides HMAC signing for outbound deliveries and constant-time verification
of inbound signatures, including Stripe's timestamped multi-signature format.
"""

import base64
import hashlib
import hmac
import logging
import secrets
import time
from typing import Dict, List, Optional, Tuple, Union

from .models import (
    SignatureAlgorithm, SignatureEncoding, SignedPayload, SignOptions, VerificationResult
)

logger = logging.getLogger(__name__)

USER_AGENT = "OSS-Hero-Webhooks/1.0"
TIMESTAMP_HEADER = "X-Timestamp"
STRIPE_SIGNATURE_HEADER = "Stripe-Signature"
DEFAULT_STRIPE_TOLERANCE_SECONDS = 300

_HASH_FUNCTIONS = {
    SignatureAlgorithm.SHA256: hashlib.sha256,
    SignatureAlgorithm.SHA1: hashlib.sha1,
}

_DEFAULT_SIGNATURE_HEADERS = {
    SignatureAlgorithm.SHA256: "X-Hub-Signature-256",
    SignatureAlgorithm.SHA1: "X-Hub-Signature",
}


class WebhookConfigurationError(ValueError):
    """Raised when signing is attempted with an unusable configuration."""


def _to_bytes(value: Union[str, bytes]) -> bytes:
    if isinstance(value, bytes):
        return value
    return value.encode('utf-8')


class WebhookSecurity:
    """Handles webhook security operations."""

    @staticmethod
    def generate_secret() -> str:
        """
        Generate a secure webhook secret.

        Returns:
            URL-safe random secret
        """
        return secrets.token_urlsafe(32)

    @staticmethod
    def generate_signature(
        payload: Union[str, bytes],
        secret: str,
        algorithm: SignatureAlgorithm = SignatureAlgorithm.SHA256,
        encoding: SignatureEncoding = SignatureEncoding.HEX
    ) -> str:
        """
        Generate HMAC digest for a payload.

        Args:
            payload: Exact bytes (or text) that were sent
            secret: Shared secret
            algorithm: Hash algorithm (sha256, sha1)
            encoding: hex or base64

        Returns:
            Encoded digest without any prefix
        """
        try:
            hash_func = _HASH_FUNCTIONS[SignatureAlgorithm(algorithm)]
        except (KeyError, ValueError):
            raise WebhookConfigurationError(f"Unsupported algorithm: {algorithm}")

        digest = hmac.new(_to_bytes(secret), _to_bytes(payload), hash_func).digest()

        if encoding == SignatureEncoding.HEX:
            return digest.hex()
        if encoding == SignatureEncoding.BASE64:
            return base64.b64encode(digest).decode('ascii')
        raise WebhookConfigurationError(f"Unsupported encoding: {encoding}")

    @staticmethod
    def sign(
        payload: str,
        secret: str,
        options: Optional[SignOptions] = None
    ) -> SignedPayload:
        """
        Sign a webhook payload.

        With ``include_timestamp`` the signed string is ``"{timestamp}.{payload}"``
        (Stripe-compatible); otherwise the raw payload is signed (GitHub-compatible).

        Args:
            payload: Serialized request body
            secret: Endpoint secret
            options: Signing options

        Returns:
            SignedPayload with signature and request headers

        Raises:
            WebhookConfigurationError: secret is empty or options are unsupported
        """
        if not secret:
            raise WebhookConfigurationError("Webhook secret is required for signing")

        options = options or SignOptions()

        timestamp = None
        signature_payload = payload
        if options.include_timestamp:
            timestamp = options.timestamp if options.timestamp is not None else int(time.time())
            signature_payload = f"{timestamp}.{payload}"

        digest = WebhookSecurity.generate_signature(
            signature_payload, secret, options.algorithm, options.encoding
        )
        signature = f"{options.get_prefix()}{digest}"

        header_name = options.header_name or _DEFAULT_SIGNATURE_HEADERS[options.algorithm]
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            header_name: signature,
        }
        if timestamp is not None:
            headers[TIMESTAMP_HEADER] = str(timestamp)

        return SignedPayload(
            payload=payload,
            signature=signature,
            timestamp=timestamp,
            headers=headers
        )

    @staticmethod
    def verify(
        payload: Union[str, bytes],
        signature: Optional[str],
        secret: Optional[str],
        prefix: Optional[str] = "sha256="
    ) -> VerificationResult:
        """
        Verify a GitHub-style ``sha256=<hex>`` signature.

        Never raises on attacker-controlled input.

        Args:
            payload: Raw request body exactly as received
            signature: Signature header value
            secret: Shared secret
            prefix: Required prefix, or None/"" for a bare digest

        Returns:
            VerificationResult
        """
        if not signature:
            return VerificationResult(is_valid=False, error="Missing signature header")
        if not secret:
            return VerificationResult(is_valid=False, error="Missing webhook secret")

        received = signature
        if prefix:
            if not signature.startswith(prefix):
                return VerificationResult(
                    is_valid=False,
                    error=f"Invalid signature format: expected prefix '{prefix}'"
                )
            received = signature[len(prefix):]

        expected = WebhookSecurity.generate_signature(payload, secret)

        # Byte comparison: unequal lengths compare False, non-ASCII input never raises
        if not hmac.compare_digest(_to_bytes(received), _to_bytes(expected)):
            return VerificationResult(is_valid=False, error="Invalid signature")

        return VerificationResult(is_valid=True)

    @staticmethod
    def parse_stripe_header(header: str) -> Optional[Tuple[int, List[str]]]:
        """
        Parse a ``t=<ts>,v1=<sig>[,v1=<sig>...]`` header.

        Returns:
            (timestamp, v1 signatures) or None when malformed
        """
        timestamp = None
        signatures = []

        for item in header.split(','):
            key, sep, value = item.strip().partition('=')
            if not sep:
                return None
            if key == 't':
                try:
                    timestamp = int(value)
                except ValueError:
                    return None
            elif key == 'v1' and value:
                signatures.append(value)

        if timestamp is None or not signatures:
            return None
        return timestamp, signatures

    @staticmethod
    def verify_stripe(
        payload: Union[str, bytes],
        header: Optional[str],
        secret: Optional[str],
        tolerance_seconds: int = DEFAULT_STRIPE_TOLERANCE_SECONDS,
        now: Optional[int] = None
    ) -> VerificationResult:
        """
        Verify a Stripe-Signature header.

        Accepts when any ``v1`` entry matches, so both signatures are valid
        while a secret is being rotated.

        Args:
            payload: Raw request body exactly as received
            header: Stripe-Signature header value
            secret: Endpoint secret
            tolerance_seconds: Maximum allowed clock skew
            now: Current epoch seconds override

        Returns:
            VerificationResult
        """
        if not header:
            return VerificationResult(is_valid=False, error="Missing Stripe-Signature header")
        if not secret:
            return VerificationResult(is_valid=False, error="Missing webhook secret")

        parsed = WebhookSecurity.parse_stripe_header(header)
        if parsed is None:
            return VerificationResult(is_valid=False, error="Invalid Stripe signature format")

        timestamp, signatures = parsed
        current_time = int(time.time()) if now is None else now
        if abs(current_time - timestamp) > tolerance_seconds:
            return VerificationResult(is_valid=False, error="Timestamp outside the tolerance window")

        body = payload.decode('utf-8', errors='replace') if isinstance(payload, bytes) else payload
        expected = _to_bytes(WebhookSecurity.generate_signature(f"{timestamp}.{body}", secret))

        matched = False
        for candidate in signatures:
            # Check every entry so timing does not reveal which one matched
            if hmac.compare_digest(_to_bytes(candidate), expected):
                matched = True

        if not matched:
            return VerificationResult(is_valid=False, error="No matching signature found")

        return VerificationResult(is_valid=True)

    @staticmethod
    def sanitize_headers(headers: Dict[str, str]) -> Dict[str, str]:
        """
        Sanitize custom endpoint headers.

        Args:
            headers: Headers dictionary

        Returns:
            Sanitized headers dictionary
        """
        sanitized = {}

        blocked_headers = [
            'host', 'connection', 'content-length', 'transfer-encoding', 'upgrade',
            'proxy-', 'x-forwarded-', 'x-real-ip'
        ]

        for key, value in headers.items():
            key_lower = key.lower()

            if any(key_lower.startswith(blocked) for blocked in blocked_headers):
                logger.warning(f"Blocked header: {key}")
                continue

            # Drop control characters
            sanitized[key] = ''.join(
                char for char in str(value) if ord(char) >= 32 or char == '\t'
            )[:1000]

        return sanitized

    @staticmethod
    def create_delivery_id() -> str:
        """
        Create a unique delivery ID for tracking.

        Returns:
            Unique delivery identifier
        """
        return f"whd_{secrets.token_urlsafe(16)}"

    @staticmethod
    def mask_secret(secret: Optional[str]) -> str:
        """
        Mask webhook secret for logging/display.

        Args:
            secret: Secret to mask

        Returns:
            Masked secret string
        """
        if not secret:
            return ""
        if len(secret) <= 8:
            return "*" * len(secret)

        return secret[:4] + "*" * (len(secret) - 8) + secret[-4:]

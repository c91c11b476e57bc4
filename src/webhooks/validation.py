"""
Webhook validation utilities.

Provides validation for endpoint configurations, outbound events, inbound
payloads and delivery responses.
"""

import ipaddress
import json
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlparse

from .models import EventTypeConfig, WebhookEndpointConfig, WebhookEvent

logger = logging.getLogger(__name__)

EVENT_TYPE_PATTERN = re.compile(r'^[A-Za-z][A-Za-z0-9_.:-]{0,99}$')
MAX_EVENT_DATA_BYTES = 1024 * 1024
MAX_METADATA_BYTES = 10 * 1024


class WebhookValidator:
    """Validates webhook configurations and data."""

    @staticmethod
    def validate_endpoint(endpoint: WebhookEndpointConfig) -> Tuple[bool, List[str]]:
        """
        Validate webhook endpoint configuration.

        Args:
            endpoint: Webhook endpoint to validate

        Returns:
            Tuple of (is_valid, list_of_errors)
        """
        errors = []

        url_valid, url_error = WebhookValidator.validate_url(endpoint.url)
        if not url_valid:
            errors.append(f"Invalid URL: {url_error}")

        if not endpoint.secret:
            errors.append("Secret is required")

        if endpoint.max_retries < 1 or endpoint.max_retries > 10:
            errors.append("Max retries must be between 1 and 10")

        if endpoint.base_delay_ms > endpoint.max_delay_ms:
            errors.append("Base delay must not exceed max delay")

        if endpoint.timeout_ms < 1 or endpoint.timeout_ms > 300000:
            errors.append("Timeout must be between 1 and 300000 milliseconds")

        if not re.match(r'^[a-zA-Z0-9-_]+$', endpoint.signature_header):
            errors.append(f"Invalid signature header name: {endpoint.signature_header}")

        errors.extend(WebhookValidator.validate_headers(endpoint.headers))

        return len(errors) == 0, errors

    @staticmethod
    def validate_url(url: str) -> Tuple[bool, Optional[str]]:
        """
        Validate webhook URL.

        Args:
            url: URL to validate

        Returns:
            Tuple of (is_valid, error_message)
        """
        try:
            parsed = urlparse(url)

            if parsed.scheme not in ['http', 'https']:
                return False, "URL must use HTTP or HTTPS protocol"

            if not parsed.hostname:
                return False, "URL must have a valid hostname"

            hostname = parsed.hostname.lower()

            if not re.match(r'^[a-z0-9.:-]+$', hostname):
                return False, "Invalid hostname format"

            if '.' not in hostname and ':' not in hostname and hostname != 'localhost':
                return False, "Hostname must have a valid domain"

            # .port raises ValueError when out of range
            port = parsed.port
            if port == 0:
                return False, "Port must be between 1 and 65535"

            if len(url) > 2048:
                return False, "URL must be 2048 characters or less"

            return True, None

        except ValueError as e:
            return False, f"Invalid URL format: {str(e)}"

    @staticmethod
    def validate_headers(headers: Dict[str, str]) -> List[str]:
        """
        Validate custom endpoint headers.

        Args:
            headers: Headers dictionary

        Returns:
            List of validation errors
        """
        errors = []

        if len(headers) > 20:
            errors.append("Maximum 20 custom headers allowed")

        for key, value in headers.items():
            if not re.match(r'^[a-zA-Z0-9-_]+$', key):
                errors.append(f"Invalid header name format: {key}")
                continue

            if len(key) > 100:
                errors.append(f"Header name too long: {key}")
                continue

            if len(value) > 1000:
                errors.append(f"Header value too long: {key}")
                continue

            if any(ord(c) < 32 and c != '\t' for c in value):
                errors.append(f"Header value contains invalid characters: {key}")

        return errors

    @staticmethod
    def validate_event_type(event_type: str) -> Optional[str]:
        """Return an error message when the event type name is malformed."""
        if not EVENT_TYPE_PATTERN.match(event_type or ""):
            return f"Invalid event type: {event_type!r}"
        return None

    @staticmethod
    def validate_event_config(event_type: str, config: EventTypeConfig) -> List[str]:
        """
        Validate one event type entry of the registry.

        Returns:
            List of validation errors prefixed with the event type
        """
        errors = []

        type_error = WebhookValidator.validate_event_type(event_type)
        if type_error:
            errors.append(type_error)

        for index, endpoint in enumerate(config.endpoints):
            _, endpoint_errors = WebhookValidator.validate_endpoint(endpoint)
            errors.extend(f"{event_type}.endpoints[{index}]: {error}" for error in endpoint_errors)

        return errors

    @staticmethod
    def validate_event(event: WebhookEvent) -> Tuple[bool, List[str]]:
        """
        Validate an outbound event.

        Args:
            event: Webhook event to validate

        Returns:
            Tuple of (is_valid, list_of_errors)
        """
        errors = []

        type_error = WebhookValidator.validate_event_type(event.type)
        if type_error:
            errors.append(type_error)

        try:
            if len(json.dumps(event.data, default=str)) > MAX_EVENT_DATA_BYTES:
                errors.append("Event data payload too large (max 1MB)")
        except (TypeError, ValueError):
            errors.append("Event data is not JSON serializable")

        if event.metadata is not None:
            metadata = event.metadata.model_dump(mode='json', exclude_none=True)
            if len(json.dumps(metadata)) > MAX_METADATA_BYTES:
                errors.append("Event metadata too large (max 10KB)")

        return len(errors) == 0, errors

    @staticmethod
    def validate_required_fields(payload: Any, required_fields: Iterable[str]) -> List[str]:
        """
        Check that an inbound payload carries every required field.

        Dotted names address nested objects, e.g. ``data.object.id``.
        """
        errors = []

        if not isinstance(payload, dict):
            return ["Payload must be a JSON object"]

        for field_name in required_fields:
            current = payload
            for part in field_name.split('.'):
                if not isinstance(current, dict) or part not in current:
                    errors.append(f"Missing required field: {field_name}")
                    break
                current = current[part]

        return errors

    @staticmethod
    def is_source_ip_allowed(source_ip: Optional[str], allowed: Iterable[str]) -> bool:
        """
        Check an inbound source address against allowed addresses or networks.

        An empty allow list admits every source.
        """
        allowed = list(allowed)
        if not allowed:
            return True
        if not source_ip:
            return False

        try:
            address = ipaddress.ip_address(source_ip)
        except ValueError:
            return False

        for entry in allowed:
            try:
                if address in ipaddress.ip_network(entry, strict=False):
                    return True
            except ValueError:
                logger.warning(f"Ignoring malformed allowed IP entry: {entry}")

        return False

    @staticmethod
    def validate_webhook_response(status_code: int) -> Tuple[bool, Optional[str]]:
        """
        Classify a delivery response.

        Args:
            status_code: HTTP status code

        Returns:
            Tuple of (is_success, error_message)
        """
        if 200 <= status_code < 300:
            return True, None

        if 400 <= status_code < 500:
            return False, f"Client error: {status_code}"

        if 500 <= status_code < 600:
            return False, f"Server error: {status_code}"

        return False, f"Unexpected status code: {status_code}"

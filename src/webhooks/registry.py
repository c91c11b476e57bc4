"""
Webhook registry.

Holds the per-event-type configuration (enabled flag, destination endpoints,
payload field toggles) consumed by the emitter. Configuration is loaded from a
JSON file or a dict; ``${VAR}`` references in endpoint URLs and secrets are
resolved from the environment at load time.
"""

import json
import logging
import os
import re
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .models import EventTypeConfig, WebhookEndpointConfig
from .security import WebhookSecurity
from .validation import WebhookValidator

logger = logging.getLogger(__name__)

_ENV_REFERENCE = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}')


def _resolve_env(value: Any) -> Any:
    """Replace ``${VAR}`` references with environment values (missing ones become '')."""
    if not isinstance(value, str):
        return value

    def replace(match):
        name = match.group(1)
        resolved = os.environ.get(name)
        if resolved is None:
            logger.warning(f"Environment variable {name} referenced by webhook config is not set")
            return ""
        return resolved

    return _ENV_REFERENCE.sub(replace, value)


class WebhookRegistry:
    """Event type configuration store."""

    def __init__(self, events: Optional[Dict[str, EventTypeConfig]] = None):
        self.events: Dict[str, EventTypeConfig] = dict(events or {})

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WebhookRegistry':
        """
        Build a registry from a mapping.

        Accepts either ``{"events": {...}}`` or the event mapping itself.

        Raises:
            ValueError: an entry does not match the configuration schema
        """
        raw_events = data.get("events", data) if isinstance(data, dict) else None
        if not isinstance(raw_events, dict):
            raise ValueError("Webhook configuration must be a JSON object")

        events = {}
        for event_type, raw in raw_events.items():
            if raw is None:
                raw = {}
            if not isinstance(raw, dict):
                raise ValueError(f"Configuration for event type {event_type} must be an object")
            raw = dict(raw)
            endpoints = raw.get("endpoints", [])
            if not isinstance(endpoints, list):
                raise ValueError(f"{event_type}.endpoints must be a list")

            resolved = []
            for index, endpoint in enumerate(endpoints):
                if not isinstance(endpoint, dict):
                    raise ValueError(f"{event_type}.endpoints[{index}] must be an object")
                resolved.append({
                    **endpoint,
                    "url": _resolve_env(endpoint.get("url")),
                    "secret": _resolve_env(endpoint.get("secret", "")),
                })
            raw["endpoints"] = resolved
            try:
                events[event_type] = EventTypeConfig.model_validate(raw)
            except ValidationError as e:
                raise ValueError(f"Invalid configuration for event type {event_type}: {e}") from e

        return cls(events)

    @classmethod
    def from_file(cls, path: str) -> 'WebhookRegistry':
        """Load a registry from a JSON file."""
        with open(path, encoding="utf-8") as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise ValueError(f"Webhook config is not valid JSON: {e}") from e

        registry = cls.from_dict(data)
        logger.info(f"Loaded {len(registry.events)} webhook event types from {path}")
        return registry

    def get(self, event_type: str) -> Optional[EventTypeConfig]:
        """Get configuration for an event type, or None when unconfigured."""
        return self.events.get(event_type)

    def event_types(self) -> List[str]:
        return sorted(self.events)

    def set_event(self, event_type: str, config: EventTypeConfig) -> bool:
        """Add or replace an event type after validation."""
        errors = WebhookValidator.validate_event_config(event_type, config)
        if errors:
            logger.error(f"Invalid webhook event configuration: {errors}")
            return False

        self.events[event_type] = config
        logger.info(f"Configured webhook event type {event_type} ({len(config.endpoints)} endpoints)")
        return True

    def set_enabled(self, event_type: str, enabled: bool) -> bool:
        config = self.events.get(event_type)
        if config is None:
            return False
        self.events[event_type] = config.model_copy(update={"enabled": enabled})
        return True

    def register_endpoint(self, event_type: str, endpoint: WebhookEndpointConfig) -> bool:
        """Register an endpoint for an event type, creating the type if needed."""
        is_valid, errors = WebhookValidator.validate_endpoint(endpoint)
        if not is_valid:
            logger.error(f"Invalid webhook endpoint: {errors}")
            return False

        config = self.events.get(event_type) or EventTypeConfig()
        if any(existing.url == endpoint.url for existing in config.endpoints):
            logger.warning(f"Endpoint {endpoint.url} already registered for {event_type}")
            return False

        self.events[event_type] = config.model_copy(
            update={"endpoints": [*config.endpoints, endpoint]}
        )
        logger.info(f"Registered webhook endpoint {endpoint.url} for {event_type}")
        return True

    def update_endpoint(self, event_type: str, url: str, endpoint: WebhookEndpointConfig) -> bool:
        """Replace the endpoint registered under ``url``."""
        config = self.events.get(event_type)
        if config is None:
            return False

        is_valid, errors = WebhookValidator.validate_endpoint(endpoint)
        if not is_valid:
            logger.error(f"Invalid webhook endpoint update: {errors}")
            return False

        endpoints = list(config.endpoints)
        for index, existing in enumerate(endpoints):
            if existing.url == url:
                endpoints[index] = endpoint
                self.events[event_type] = config.model_copy(update={"endpoints": endpoints})
                logger.info(f"Updated webhook endpoint {url} for {event_type}")
                return True
        return False

    def unregister_endpoint(self, event_type: str, url: str) -> bool:
        """Remove the endpoint registered under ``url``."""
        config = self.events.get(event_type)
        if config is None:
            return False

        remaining = [endpoint for endpoint in config.endpoints if endpoint.url != url]
        if len(remaining) == len(config.endpoints):
            return False

        self.events[event_type] = config.model_copy(update={"endpoints": remaining})
        logger.info(f"Unregistered webhook endpoint {url} for {event_type}")
        return True

    def validate(self) -> List[str]:
        """
        Validate every enabled event type.

        Returns:
            List of validation errors, empty when the registry is usable
        """
        errors = []
        for event_type, config in self.events.items():
            if config.enabled:
                errors.extend(WebhookValidator.validate_event_config(event_type, config))
        return errors

    def to_dict(self) -> Dict[str, Any]:
        """Serializable view with secrets masked."""
        summary = {}
        for event_type, config in self.events.items():
            data = config.model_dump(mode="json")
            for endpoint in data["endpoints"]:
                endpoint["secret"] = WebhookSecurity.mask_secret(endpoint["secret"])
            summary[event_type] = data
        return summary

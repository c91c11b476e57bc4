"""
Webhook system for OSS Hero.

Provides outbound signing and delivery, inbound verification and
idempotency, and delivery tracking.
"""

from .models import (
    WebhookEvent,
    EventMetadata,
    PayloadConfig,
    WebhookEndpointConfig,
    EventTypeConfig,
    SignOptions,
    SignedPayload,
    VerificationResult,
    IdempotencyConfig,
    IdempotencyCheckResult,
    InboundRequest,
    WebhookDelivery,
    DeliveryMetrics,
    ErrorAnalysisEntry,
    EndpointDeliveryResult,
    WebhookEmissionResult,
    WebhookSecurityConfig,
    WebhookResponse,
    WebhookProvider,
    SignatureAlgorithm,
    SignatureEncoding,
    DeliveryErrorCode
)

from .security import WebhookSecurity, WebhookConfigurationError
from .validation import WebhookValidator
from .registry import WebhookRegistry
from .idempotency import IdempotencyStore, extract_event_id
from .tracker import DeliveryTracker
from .emitter import WebhookEmitter, calculate_backoff_ms
from .wrapper import WebhookSecurityWrapper

__all__ = [
    # Models
    'WebhookEvent',
    'EventMetadata',
    'PayloadConfig',
    'WebhookEndpointConfig',
    'EventTypeConfig',
    'SignOptions',
    'SignedPayload',
    'VerificationResult',
    'IdempotencyConfig',
    'IdempotencyCheckResult',
    'InboundRequest',
    'WebhookDelivery',
    'DeliveryMetrics',
    'ErrorAnalysisEntry',
    'EndpointDeliveryResult',
    'WebhookEmissionResult',
    'WebhookSecurityConfig',
    'WebhookResponse',
    'WebhookProvider',
    'SignatureAlgorithm',
    'SignatureEncoding',
    'DeliveryErrorCode',

    # Services
    'WebhookSecurity',
    'WebhookConfigurationError',
    'WebhookValidator',
    'WebhookRegistry',
    'IdempotencyStore',
    'DeliveryTracker',
    'WebhookEmitter',
    'WebhookSecurityWrapper',

    # Functions
    'extract_event_id',
    'calculate_backoff_ms'
]

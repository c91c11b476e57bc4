"""
Webhook data models.

Defines the data structures used for outbound events, endpoint configuration,
signing, inbound verification, idempotency and delivery tracking.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class SignatureAlgorithm(str, Enum):
    """Supported HMAC digests."""
    SHA256 = "sha256"
    SHA1 = "sha1"


class SignatureEncoding(str, Enum):
    """Digest encodings."""
    HEX = "hex"
    BASE64 = "base64"


class WebhookProvider(str, Enum):
    """Inbound webhook providers with known event ID shapes."""
    STRIPE = "stripe"
    GITHUB = "github"
    GENERIC = "generic"


class DeliveryErrorCode(str, Enum):
    """Terminal failure codes written to the delivery log."""
    MAX_RETRIES_EXCEEDED = "MAX_RETRIES_EXCEEDED"
    DELIVERY_FAILED = "DELIVERY_FAILED"


class EventMetadata(BaseModel):
    """Caller-supplied event context."""
    model_config = ConfigDict(extra="allow")

    timestamp: Optional[datetime] = Field(None, description="Event timestamp")
    session_id: Optional[str] = Field(None, description="Originating session")
    user_id: Optional[str] = Field(None, description="Originating user")
    source: Optional[str] = Field(None, description="Event source")


class WebhookEvent(BaseModel):
    """Outbound event. Built per emission and never persisted."""
    type: str = Field(..., min_length=1, description="Event type, e.g. lead_captured")
    data: Dict[str, Any] = Field(default_factory=dict, description="Event payload")
    metadata: Optional[EventMetadata] = Field(None, description="Event metadata")


class PayloadConfig(BaseModel):
    """Which metadata fields are included in the outbound payload."""
    include_timestamp: bool = Field(default=True, description="Add metadata.timestamp")
    include_session_id: bool = Field(default=False, description="Add metadata.sessionId")
    include_user_id: bool = Field(default=False, description="Add metadata.userId")
    static_fields: Dict[str, Any] = Field(default_factory=dict, description="Fixed metadata fields")


class WebhookEndpointConfig(BaseModel):
    """One destination for an event type. Immutable once loaded."""
    model_config = ConfigDict(frozen=True)

    url: str = Field(..., description="Destination URL")
    secret: str = Field(..., description="HMAC signing secret")
    max_retries: int = Field(default=3, ge=1, le=10, description="Total delivery attempts")
    base_delay_ms: int = Field(default=1000, ge=0, description="Initial backoff delay")
    max_delay_ms: int = Field(default=30000, ge=0, description="Backoff ceiling")
    timeout_ms: int = Field(default=10000, ge=1, description="Per-attempt request timeout")
    signature_header: str = Field(default="X-Hub-Signature-256", description="Signature header name")
    signature_prefix: str = Field(default="sha256=", description="Signature value prefix")
    algorithm: SignatureAlgorithm = Field(default=SignatureAlgorithm.SHA256, description="HMAC digest")
    include_timestamp: bool = Field(default=False, description="Sign '{timestamp}.{payload}'")
    headers: Dict[str, str] = Field(default_factory=dict, description="Additional headers to send")


class EventTypeConfig(BaseModel):
    """Configuration for one event type."""
    enabled: bool = Field(default=True, description="Whether events of this type are emitted")
    endpoints: List[WebhookEndpointConfig] = Field(default_factory=list)
    payload: PayloadConfig = Field(default_factory=PayloadConfig)


class SignOptions(BaseModel):
    """Options for HMAC signing."""
    algorithm: SignatureAlgorithm = SignatureAlgorithm.SHA256
    prefix: Optional[str] = Field(None, description="Defaults to '{algorithm}='")
    encoding: SignatureEncoding = SignatureEncoding.HEX
    include_timestamp: bool = False
    timestamp: Optional[int] = Field(None, description="Epoch seconds override")
    header_name: Optional[str] = Field(None, description="Signature header override")

    def get_prefix(self) -> str:
        if self.prefix is not None:
            return self.prefix
        return f"{self.algorithm.value}="


class SignedPayload(BaseModel):
    """A payload with its signature, created fresh for every attempt."""
    payload: str
    signature: str
    timestamp: Optional[int] = None
    headers: Dict[str, str] = Field(default_factory=dict)


class VerificationResult(BaseModel):
    """Outcome of an inbound signature check."""
    is_valid: bool
    error: Optional[str] = None


class IdempotencyCheckResult(BaseModel):
    """Whether an inbound event was already processed."""
    was_processed: bool
    event_id: Optional[str] = None
    processed_at: Optional[datetime] = None


class IdempotencyConfig(BaseModel):
    """Idempotency behaviour for one inbound provider."""
    namespace: str = Field(..., min_length=1, description="Isolates providers sharing one table")
    provider: WebhookProvider = WebhookProvider.GENERIC
    ttl_seconds: int = Field(default=86400, ge=1)


class InboundRequest(BaseModel):
    """Raw inbound webhook request as seen by the verifier and wrapper."""
    body: str
    headers: Dict[str, str] = Field(default_factory=dict)
    source_ip: Optional[str] = None

    def get_header(self, name: str) -> Optional[str]:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


class WebhookDelivery(BaseModel):
    """Terminal outcome of delivering one event to one endpoint."""
    id: Optional[str] = None
    event_id: str
    event_type: str
    endpoint: str
    success: bool
    status_code: Optional[int] = None
    response_time: Optional[int] = Field(None, description="Milliseconds")
    retry_count: int = 0
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    request_headers: Optional[Dict[str, str]] = None
    response_headers: Optional[Dict[str, str]] = None
    request_body: Optional[str] = None
    response_body: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class DeliveryMetrics(BaseModel):
    """Aggregates over the delivery log."""
    total_deliveries: int = 0
    successful_deliveries: int = 0
    failed_deliveries: int = 0
    success_rate: float = 0.0
    average_response_time: float = 0.0
    p95_response_time: float = 0.0
    p99_response_time: float = 0.0
    total_retries: int = 0
    average_retries: float = 0.0


class ErrorAnalysisEntry(BaseModel):
    """Failed deliveries grouped by error message."""
    error_message: str
    count: int
    endpoints: List[str] = Field(default_factory=list)
    event_types: List[str] = Field(default_factory=list)
    last_occurrence: datetime


class EndpointDeliveryResult(BaseModel):
    """Result of the retry loop against one endpoint."""
    endpoint: str
    success: bool
    status_code: Optional[int] = None
    response_time: Optional[int] = None
    retry_count: int = 0
    attempts: int = 0
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    delivery_id: str = ""


class WebhookEmissionResult(BaseModel):
    """Result of emitting one event to every configured endpoint."""
    success: bool
    event_type: str
    event_id: str
    skipped: bool = False
    reason: Optional[str] = None
    deliveries: List[EndpointDeliveryResult] = Field(default_factory=list)


class WebhookSecurityConfig(BaseModel):
    """Inbound verification settings for one provider route."""
    provider: WebhookProvider = WebhookProvider.GENERIC
    secret: Optional[str] = Field(None, description="Shared secret; missing fails verification")
    signature_header: str = Field(default="X-Hub-Signature-256")
    signature_prefix: str = Field(default="sha256=")
    tolerance_seconds: int = Field(default=300, ge=1, description="Stripe timestamp tolerance")
    enable_idempotency: bool = True
    namespace: Optional[str] = Field(None, description="Defaults to the provider name")
    ttl_seconds: int = Field(default=86400, ge=1)
    required_fields: List[str] = Field(default_factory=list)
    allowed_ips: List[str] = Field(default_factory=list, description="Addresses or CIDR networks")

    def idempotency_config(self) -> IdempotencyConfig:
        return IdempotencyConfig(
            namespace=self.namespace or self.provider.value,
            provider=self.provider,
            ttl_seconds=self.ttl_seconds,
        )


class WebhookResponse(BaseModel):
    """HTTP outcome of inbound webhook handling."""
    status_code: int
    body: Dict[str, Any]

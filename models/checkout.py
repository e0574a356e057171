from pydantic import BaseModel, ValidationError, field_validator, model_validator
from typing import Dict, List, Optional
from datetime import datetime
from enum import Enum

from models.raffle import RaffleCreate
from services.exceptions import ValidationFailed

METADATA_SCHEMA_VERSION = 1
# Stripe caps metadata values at 500 characters and keys at 50
METADATA_CHUNK_SIZE = 500
METADATA_MAX_CHUNKS = 45


class CheckoutKind(str, Enum):
    TICKET_PURCHASE = "ticket_purchase"
    RAFFLE_CREATION = "raffle_creation"


class PendingCheckoutStatus(str, Enum):
    PENDING = "pending"
    SETTLED = "settled"
    FAILED = "failed"
    EXPIRED = "expired"


class AnomalyStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class InvalidCheckoutMetadata(ValidationFailed):
    pass


class CheckoutMetadata(BaseModel):
    """Everything needed to settle a checkout, round-tripped through the gateway."""

    schema_version: int = METADATA_SCHEMA_VERSION
    kind: CheckoutKind
    raffle_id: Optional[str] = None
    buyer_id: Optional[str] = None
    ticket_numbers: List[int] = []
    creator_id: Optional[str] = None
    raffle: Optional[RaffleCreate] = None

    @field_validator('schema_version')
    @classmethod
    def validate_version(cls, v):
        if v != METADATA_SCHEMA_VERSION:
            raise ValueError(f"Unsupported metadata schema version {v}")
        return v

    @model_validator(mode='after')
    def validate_kind_fields(self):
        if self.kind == CheckoutKind.TICKET_PURCHASE:
            if not self.raffle_id or not self.buyer_id or not self.ticket_numbers:
                raise ValueError("Ticket purchase metadata needs raffle_id, buyer_id and ticket_numbers")
        elif not self.creator_id or self.raffle is None:
            raise ValueError("Raffle creation metadata needs creator_id and raffle")
        return self

    @classmethod
    def for_ticket_purchase(cls, raffle_id: str, buyer_id: str, ticket_numbers: List[int]):
        return cls(
            kind=CheckoutKind.TICKET_PURCHASE,
            raffle_id=raffle_id,
            buyer_id=buyer_id,
            ticket_numbers=sorted(ticket_numbers),
        )

    @classmethod
    def for_raffle_creation(cls, creator_id: str, raffle: RaffleCreate):
        return cls(kind=CheckoutKind.RAFFLE_CREATION, creator_id=creator_id, raffle=raffle)

    def to_gateway(self) -> Dict[str, str]:
        """Flatten into string key/values, splitting the JSON body into chunks."""
        body = self.model_dump_json(exclude_none=True)
        chunks = [body[i:i + METADATA_CHUNK_SIZE] for i in range(0, len(body), METADATA_CHUNK_SIZE)]
        if len(chunks) > METADATA_MAX_CHUNKS:
            raise InvalidCheckoutMetadata("Checkout metadata is too large")

        metadata = {
            "schema_version": str(self.schema_version),
            "kind": self.kind.value,
            "chunks": str(len(chunks)),
        }
        for index, chunk in enumerate(chunks):
            metadata[f"payload_{index}"] = chunk
        return metadata

    @classmethod
    def from_gateway(cls, metadata: Optional[Dict[str, str]]) -> "CheckoutMetadata":
        if not metadata:
            raise InvalidCheckoutMetadata("Checkout session has no metadata")
        try:
            count = int(metadata["chunks"])
            body = "".join(metadata[f"payload_{index}"] for index in range(count))
        except (KeyError, ValueError) as e:
            raise InvalidCheckoutMetadata(f"Malformed checkout metadata: {e}")

        try:
            parsed = cls.model_validate_json(body)
        except ValidationError as e:
            raise InvalidCheckoutMetadata(f"Checkout metadata failed validation: {e}")

        if parsed.kind.value != metadata.get("kind"):
            raise InvalidCheckoutMetadata("Checkout metadata kind mismatch")
        return parsed


class CheckoutSession(BaseModel):
    session_id: str
    url: Optional[str] = None
    payment_status: Optional[str] = None
    metadata: Dict[str, str] = {}


class ReconcileResponse(BaseModel):
    session_id: str
    paid: bool
    settled: bool
    kind: Optional[CheckoutKind] = None
    raffle_id: Optional[str] = None
    message: Optional[str] = None


class SettlementAnomalyResponse(BaseModel):
    id: str
    session_id: Optional[str] = None
    kind: Optional[CheckoutKind] = None
    reason: str
    raffle_id: Optional[str] = None
    user_id: Optional[str] = None
    ticket_numbers: List[int] = []
    details: Optional[str] = None
    status: AnomalyStatus
    created_at: datetime
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_note: Optional[str] = None


class ResolveAnomalyRequest(BaseModel):
    note: str

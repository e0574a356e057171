from pydantic import BaseModel, field_validator
from typing import List

# Keeps the purchase within the gateway's metadata allowance
MAX_TICKETS_PER_PURCHASE = 1000


class TicketPurchaseRequest(BaseModel):
    raffle_id: str
    ticket_numbers: List[int]

    @field_validator('ticket_numbers')
    @classmethod
    def validate_numbers(cls, v):
        if not v:
            raise ValueError("At least one ticket number must be selected")
        if len(v) > MAX_TICKETS_PER_PURCHASE:
            raise ValueError(f"At most {MAX_TICKETS_PER_PURCHASE} tickets can be bought at once")
        if len(v) != len(set(v)):
            raise ValueError("Ticket numbers must be unique")
        if not all(num >= 1 for num in v):
            raise ValueError("Ticket numbers must be positive")
        return sorted(v)


class TicketAvailabilityResponse(BaseModel):
    accepted: List[int]
    rejected: List[int]


class TicketCheckoutResponse(BaseModel):
    checkout_url: str
    session_id: str
    amount: float

from pydantic import BaseModel, ValidationInfo, field_serializer, field_validator, model_validator
from typing import List, Optional
from datetime import datetime
from decimal import Decimal
from enum import Enum
import re

DRAW_NUMBER_PATTERN = re.compile(r"^[0-9]+$")


class RaffleStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    DELETED = "deleted"


class WinnerSelectionMethod(str, Enum):
    RANDOM = "random"
    LOTTERY = "lottery"
    MANUAL = "manual"


class RaffleImage(BaseModel):
    url: str
    public_id: str


class SocialLinks(BaseModel):
    whatsapp: Optional[str] = None
    instagram: Optional[str] = None
    twitter: Optional[str] = None
    facebook: Optional[str] = None


class LotteryDetails(BaseModel):
    date: datetime
    draw_number: str

    @field_validator('draw_number')
    @classmethod
    def validate_draw_number(cls, v):
        v = v.strip()
        if not DRAW_NUMBER_PATTERN.match(v):
            raise ValueError("Lottery draw number must be numeric")
        return v


class RaffleCreate(BaseModel):
    title: str
    description: str
    ticket_price: float
    total_tickets: int
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    images: List[RaffleImage] = []
    social_links: SocialLinks = SocialLinks()
    is_promoted: bool = False
    promotion_months: int = 1
    winner_selection_method: WinnerSelectionMethod = WinnerSelectionMethod.RANDOM
    lottery_details: Optional[LotteryDetails] = None

    @field_validator('title', 'description')
    @classmethod
    def validate_text(cls, v):
        if not v or not v.strip():
            raise ValueError("Field is required")
        return v.strip()

    @field_validator('ticket_price')
    @classmethod
    def validate_ticket_price(cls, v):
        if v <= 0:
            raise ValueError("Ticket price must be positive")
        return v

    @field_validator('total_tickets')
    @classmethod
    def validate_total_tickets(cls, v):
        if v < 1:
            raise ValueError("A raffle needs at least one ticket")
        return v

    @field_validator('end_date')
    @classmethod
    def validate_end_date(cls, v, info: ValidationInfo):
        start = info.data.get('start_date')
        if v is not None and start is not None and v < start:
            raise ValueError("End date must be after start date")
        return v

    @field_validator('images')
    @classmethod
    def validate_images(cls, v):
        if len(v) > 5:
            raise ValueError("At most 5 images are allowed")
        return v

    @field_validator('promotion_months')
    @classmethod
    def validate_promotion_months(cls, v):
        if not 1 <= v <= 12:
            raise ValueError("Promotion months must be between 1 and 12")
        return v

    @model_validator(mode='after')
    def validate_lottery_details(self):
        if self.winner_selection_method == WinnerSelectionMethod.LOTTERY:
            if self.lottery_details is None:
                raise ValueError("Lottery date and draw number are required for the lottery method")
        else:
            self.lottery_details = None
        return self


class QuoteRequest(BaseModel):
    ticket_count: int
    is_promoted: bool = False
    promotion_months: int = 1


class PriceQuote(BaseModel):
    fixed_fee: Decimal
    tiered_commission: Decimal
    promotion_fee: Decimal
    total: Decimal
    is_free_raffle: bool

    @field_serializer('fixed_fee', 'tiered_commission', 'promotion_fee', 'total', when_used='json')
    def serialize_money(self, v: Decimal) -> float:
        return float(v)


class SoldTicketResponse(BaseModel):
    number: int
    buyer: str
    purchase_date: datetime


class RaffleResponse(BaseModel):
    id: str
    title: str
    description: str
    ticket_price: float
    total_tickets: int
    sold_count: int
    available_count: int
    status: RaffleStatus
    creator: str
    created_at: datetime
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_promoted: bool = False
    promotion_end_date: Optional[datetime] = None
    winner_selection_method: WinnerSelectionMethod
    lottery_details: Optional[LotteryDetails] = None
    images: List[RaffleImage] = []
    social_links: SocialLinks = SocialLinks()
    sold_tickets: List[SoldTicketResponse] = []
    winner: Optional[str] = None
    winning_ticket_number: Optional[int] = None
    needs_reconciliation: bool = False


class RaffleCreationResponse(BaseModel):
    raffle_id: Optional[str] = None
    checkout_url: Optional[str] = None
    session_id: Optional[str] = None
    quote: PriceQuote


class WinnerSelectionRequest(BaseModel):
    method: WinnerSelectionMethod
    manual_ticket_number: Optional[int] = None


class WinnerResponse(BaseModel):
    raffle_id: str
    winning_ticket_number: int
    winner: str
    method: WinnerSelectionMethod

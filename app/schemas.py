# app/schemas.py
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel
from typing import Literal, Optional, List
from datetime import datetime
from decimal import Decimal

MIN_PRICE = Decimal("0.99")
MAX_AUCTION_DAYS = 14
USERNAME_PATTERN = r"^[a-z0-9_]+$"

# Money columns are Numeric(12, 2): amounts are finite, whole cents, and at
# most 9,999,999,999.99. Decimal fields reject inf/nan by default.
MONEY_DIGITS = 12
MONEY_PLACES = 2


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


def _normalize_username(value):
    if isinstance(value, str):
        return value.strip().lower()
    return value


class ProfileCreate(CamelModel):
    username: Optional[str] = Field(None, min_length=3, max_length=20, pattern=USERNAME_PATTERN)

    @field_validator("username", mode="before")
    @classmethod
    def normalize_username(cls, value):
        return _normalize_username(value)

class ProfileOut(CamelModel):
    id: str
    username: Optional[str] = None
    display_preference: str
    created_at: Optional[datetime] = None

class CurrentUsername(CamelModel):
    username: Optional[str] = None
    display_preference: str

class UsernameUpdate(CamelModel):
    username: str = Field(..., min_length=3, max_length=20, pattern=USERNAME_PATTERN)
    display_preference: Optional[Literal["username_only", "display_name_only", "both"]] = None

    @field_validator("username", mode="before")
    @classmethod
    def normalize_username(cls, value):
        return _normalize_username(value)

class UsernameAvailability(CamelModel):
    available: bool
    normalized: Optional[str] = None
    error: Optional[str] = None


class ListingCreate(CamelModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=5000)
    price: Decimal = Field(..., ge=MIN_PRICE, max_digits=MONEY_DIGITS, decimal_places=MONEY_PLACES)
    shipping_cost: Decimal = Field(Decimal("0"), ge=0, max_digits=MONEY_DIGITS, decimal_places=MONEY_PLACES)
    accepts_offers: bool = False
    min_offer_amount: Optional[Decimal] = Field(
        None, ge=MIN_PRICE, max_digits=MONEY_DIGITS, decimal_places=MONEY_PLACES,
    )

    @model_validator(mode="after")
    def min_offer_below_price(self):
        if self.min_offer_amount is not None and self.min_offer_amount >= self.price:
            raise ValueError("Minimum offer must be below the asking price")
        return self

class ListingOut(CamelModel):
    id: str
    seller_id: str
    title: str
    description: Optional[str] = None
    price: float
    shipping_cost: float
    accepts_offers: bool = False
    min_offer_amount: Optional[float] = None
    status: str
    buyer_id: Optional[str] = None
    sold_price: Optional[float] = None
    payment_status: Optional[str] = None
    payment_deadline: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class AuctionCreate(CamelModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=5000)
    starting_price: Decimal = Field(..., ge=MIN_PRICE, max_digits=MONEY_DIGITS, decimal_places=MONEY_PLACES)
    buy_it_now_price: Optional[Decimal] = Field(
        None, gt=0, max_digits=MONEY_DIGITS, decimal_places=MONEY_PLACES,
    )
    duration_days: int = Field(..., ge=1, le=MAX_AUCTION_DAYS)
    shipping_cost: Decimal = Field(Decimal("0"), ge=0, max_digits=MONEY_DIGITS, decimal_places=MONEY_PLACES)

    @model_validator(mode="after")
    def buy_now_above_start(self):
        if self.buy_it_now_price is not None and self.buy_it_now_price <= self.starting_price:
            raise ValueError("Buy It Now price must be higher than starting price")
        return self

class AuctionOut(CamelModel):
    id: str
    seller_id: str
    title: str
    description: Optional[str] = None
    starting_price: float
    current_bid: Optional[float] = None
    bid_count: int
    buy_it_now_price: Optional[float] = None
    shipping_cost: float
    start_time: datetime
    end_time: datetime
    status: str
    winner_id: Optional[str] = None
    winning_bid: Optional[float] = None
    payment_status: Optional[str] = None
    payment_deadline: Optional[datetime] = None

class AuctionPage(CamelModel):
    auctions: List[AuctionOut]
    total: int
    limit: int
    offset: int


class BidCreate(CamelModel):
    amount: Decimal = Field(..., gt=0, max_digits=MONEY_DIGITS, decimal_places=MONEY_PLACES)

class BidOut(CamelModel):
    id: str
    bidder_id: str
    amount: float
    created_at: datetime

class UserBidOut(CamelModel):
    id: str
    auction_id: str
    amount: float
    created_at: datetime

class BidAccepted(CamelModel):
    success: bool = True
    bid_id: str
    current_bid: float
    message: Optional[str] = None


class PurchaseOut(CamelModel):
    success: bool = True
    transaction_id: Optional[str] = None


class OfferCreate(CamelModel):
    amount: Decimal = Field(..., ge=MIN_PRICE, max_digits=MONEY_DIGITS, decimal_places=MONEY_PLACES)

class OfferResponse(CamelModel):
    action: Literal["accept", "reject", "counter"]
    counter_amount: Optional[Decimal] = Field(
        None, ge=MIN_PRICE, max_digits=MONEY_DIGITS, decimal_places=MONEY_PLACES,
    )

    @model_validator(mode="after")
    def counter_needs_amount(self):
        if self.action == "counter" and self.counter_amount is None:
            raise ValueError("Counter amount is required")
        return self

class CounterOfferResponse(CamelModel):
    action: Literal["accept", "reject"]

class OfferOut(CamelModel):
    id: str
    listing_id: str
    buyer_id: str
    seller_id: str
    amount: float
    counter_amount: Optional[float] = None
    status: str
    round_number: int
    expires_at: datetime
    responded_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

class OfferResult(CamelModel):
    success: bool = True
    offer: Optional[OfferOut] = None
    transaction_id: Optional[str] = None


class WatchlistAdd(CamelModel):
    auction_id: str

class WatchlistItemOut(CamelModel):
    id: str
    auction_id: str
    created_at: Optional[datetime] = None
    auction: AuctionOut

class WatchStatus(CamelModel):
    watching: bool


class RatingCreate(CamelModel):
    item_id: str
    item_kind: Literal["listing", "auction"] = "auction"
    rating_type: Literal["positive", "negative"]
    comment: Optional[str] = Field(None, max_length=500)

class RatingOut(CamelModel):
    id: str
    seller_id: str
    buyer_id: str
    item_kind: str
    item_id: str
    rating_type: str
    comment: Optional[str] = None
    created_at: Optional[datetime] = None

class SellerProfileOut(CamelModel):
    id: str
    username: Optional[str] = None
    positive_ratings: int
    negative_ratings: int
    total_ratings: int
    positive_percentage: int
    reputation: Literal["hero", "villain", "neutral"]
    seller_since: Optional[datetime] = None

class SellerRatingsPage(CamelModel):
    seller: SellerProfileOut
    ratings: List[RatingOut]


class MessageCreate(CamelModel):
    recipient_id: str
    content: str = Field(..., min_length=1, max_length=5000)

class MessageOut(CamelModel):
    id: str
    conversation_id: str
    sender_id: str
    content: str
    is_read: bool = False
    created_at: Optional[datetime] = None

class ConversationPreview(CamelModel):
    id: str
    other_participant_id: str
    last_message: MessageOut
    unread_count: int
    last_message_at: Optional[datetime] = None

class ConversationMessages(CamelModel):
    conversation_id: str
    other_participant_id: str
    messages: List[MessageOut]

class UnreadCount(BaseModel):
    count: int


class NotificationOut(CamelModel):
    id: str
    type: str
    title: str
    message: str
    item_id: Optional[str] = None
    is_read: bool
    created_at: Optional[datetime] = None

class NotificationPage(CamelModel):
    notifications: List[NotificationOut]
    unread_count: int

# app/models.py
"""SQLAlchemy ORM models for persisted entities.

Profiles, the two kinds of sellable item (fixed-price `Listing` and timed
`Auction`), bids and offers, the append-only `Transaction` ledger, seller
ratings, watchlists, and the notification and messaging tables.
"""
import uuid
from sqlalchemy import (
    Column, Integer, Text, String, Numeric, Boolean, TIMESTAMP, ForeignKey,
    UniqueConstraint, func, Index,
)
from .db import Base


def _uuid():
    return str(uuid.uuid4())


# listing statuses
AVAILABLE = "available"
SOLD = "sold"
CANCELLED = "cancelled"
# auction statuses (SOLD and CANCELLED are shared)
OPEN = "open"
ENDED_UNSOLD = "ended_unsold"

LISTING = "listing"
AUCTION = "auction"

# offer statuses
PENDING = "pending"
COUNTERED = "countered"
ACCEPTED = "accepted"
REJECTED = "rejected"
EXPIRED = "expired"
AUTO_REJECTED = "auto_rejected"
ACTIVE_OFFER_STATUSES = (PENDING, COUNTERED)


class Profile(Base):
    __tablename__ = "profiles"
    id = Column(String(36), primary_key=True, default=_uuid)
    external_id = Column(Text, nullable=False, unique=True, index=True)
    username = Column(Text, unique=True)
    display_preference = Column(Text, nullable=False, default="username_only")
    is_suspended = Column(Boolean, nullable=False, default=False)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())


class Listing(Base):
    __tablename__ = "listings"
    id = Column(String(36), primary_key=True, default=_uuid)
    seller_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)
    title = Column(Text, nullable=False)
    description = Column(Text)
    price = Column(Numeric(12, 2), nullable=False)
    shipping_cost = Column(Numeric(12, 2), nullable=False, default=0)
    accepts_offers = Column(Boolean, nullable=False, default=False)
    min_offer_amount = Column(Numeric(12, 2))
    status = Column(String(20), nullable=False, default=AVAILABLE)
    buyer_id = Column(String(36), ForeignKey("profiles.id"))
    # agreed price; differs from `price` when an offer was accepted
    sold_price = Column(Numeric(12, 2))
    sold_at = Column(TIMESTAMP(timezone=True))
    payment_status = Column(String(20))
    payment_deadline = Column(TIMESTAMP(timezone=True))
    expires_at = Column(TIMESTAMP(timezone=True))
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())


class Auction(Base):
    __tablename__ = "auctions"
    id = Column(String(36), primary_key=True, default=_uuid)
    seller_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)
    title = Column(Text, nullable=False)
    description = Column(Text)
    starting_price = Column(Numeric(12, 2), nullable=False)
    current_bid = Column(Numeric(12, 2))
    high_bidder_id = Column(String(36), ForeignKey("profiles.id"))
    # doubles as the row version for conditional bid writes
    bid_count = Column(Integer, nullable=False, default=0)
    buy_it_now_price = Column(Numeric(12, 2))
    shipping_cost = Column(Numeric(12, 2), nullable=False, default=0)
    start_time = Column(TIMESTAMP(timezone=True), nullable=False)
    end_time = Column(TIMESTAMP(timezone=True), nullable=False)
    status = Column(String(20), nullable=False, default=OPEN)
    winner_id = Column(String(36), ForeignKey("profiles.id"))
    winning_bid = Column(Numeric(12, 2))
    payment_status = Column(String(20))
    payment_deadline = Column(TIMESTAMP(timezone=True))
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())


class Bid(Base):
    __tablename__ = "bids"
    id = Column(String(36), primary_key=True, default=_uuid)
    auction_id = Column(String(36), ForeignKey("auctions.id"), nullable=False, index=True)
    bidder_id = Column(String(36), ForeignKey("profiles.id"), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (UniqueConstraint("item_kind", "item_id", name="uq_transactions_item"),)
    id = Column(String(36), primary_key=True, default=_uuid)
    item_kind = Column(String(20), nullable=False)
    item_id = Column(String(36), nullable=False)
    seller_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)
    buyer_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)
    price = Column(Numeric(12, 2), nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)


class Notification(Base):
    __tablename__ = "notifications"
    id = Column(String(36), primary_key=True, default=_uuid)
    profile_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)
    type = Column(String(40), nullable=False)
    title = Column(Text, nullable=False)
    message = Column(Text, nullable=False)
    item_id = Column(String(36))
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())


class Conversation(Base):
    __tablename__ = "conversations"
    id = Column(String(36), primary_key=True, default=_uuid)
    participant_1_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)
    participant_2_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)
    last_message_at = Column(TIMESTAMP(timezone=True))
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())


class Message(Base):
    __tablename__ = "messages"
    id = Column(String(36), primary_key=True, default=_uuid)
    conversation_id = Column(String(36), ForeignKey("conversations.id"), nullable=False, index=True)
    sender_id = Column(String(36), ForeignKey("profiles.id"), nullable=False)
    content = Column(Text, nullable=False)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())


class Offer(Base):
    """Buyer's offer on a fixed-price listing, with up to three rounds of
    seller counter-offers."""
    __tablename__ = "offers"
    id = Column(String(36), primary_key=True, default=_uuid)
    listing_id = Column(String(36), ForeignKey("listings.id"), nullable=False, index=True)
    buyer_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)
    seller_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    counter_amount = Column(Numeric(12, 2))
    status = Column(String(20), nullable=False, default=PENDING)
    round_number = Column(Integer, nullable=False, default=1)
    expires_at = Column(TIMESTAMP(timezone=True), nullable=False)
    responded_at = Column(TIMESTAMP(timezone=True))
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False)


class WatchlistItem(Base):
    __tablename__ = "auction_watchlist"
    __table_args__ = (UniqueConstraint("user_id", "auction_id", name="uq_watchlist_user_auction"),)
    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)
    auction_id = Column(String(36), ForeignKey("auctions.id"), nullable=False, index=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())


class SellerRating(Base):
    __tablename__ = "seller_ratings"
    # one rating per buyer per purchased item
    __table_args__ = (UniqueConstraint("buyer_id", "item_kind", "item_id", name="uq_ratings_buyer_item"),)
    id = Column(String(36), primary_key=True, default=_uuid)
    seller_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, index=True)
    buyer_id = Column(String(36), ForeignKey("profiles.id"), nullable=False)
    item_kind = Column(String(20), nullable=False)
    item_id = Column(String(36), nullable=False)
    rating_type = Column(String(10), nullable=False)
    comment = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())

Index("idx_auctions_status_end", Auction.status, Auction.end_time)
Index("idx_listings_status_expires", Listing.status, Listing.expires_at)
Index("idx_offers_status_expires", Offer.status, Offer.expires_at)

# app/crud.py
"""Data access for the marketplace tables.

Plain reads and creates live next to the conditional writers the settlement
engine relies on. Every change to an item's status or highest bid goes
through one of the `UPDATE ... WHERE <expected state>` helpers below; they
return True only when exactly one row matched, and they never commit, so
the caller can bundle the write with its ledger rows in one transaction.
"""
from datetime import timedelta
from sqlalchemy import select, update, and_, or_, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from typing import Dict, Any, Optional
from .models import (
    Profile, Listing, Auction, Bid, Transaction, Notification, Conversation, Message,
    Offer, WatchlistItem, SellerRating,
    AVAILABLE, SOLD, CANCELLED, OPEN, ENDED_UNSOLD, LISTING,
    PENDING, AUTO_REJECTED, ACTIVE_OFFER_STATUSES,
)
from .utils import utcnow

NOTIFICATION_TEMPLATES = {
    "outbid": ("You've been outbid", "Someone placed a higher bid on an auction you were winning."),
    "won": ("You won!", "Your purchase is complete. Please pay before the payment deadline."),
    "auction_sold": ("Your item sold!", "A buyer has purchased your item."),
    "ended": ("Auction ended", "Your auction ended without any bids."),
    "listing_expiring": ("Listing expiring soon", "Your listing expires in less than 24 hours."),
    "listing_expired": ("Listing expired", "Your listing has expired and was removed from the shop."),
    "watched_ended": ("Auction ended", "An auction you were watching has ended."),
    "offer_received": ("New offer received!", "Someone has made an offer on your listing. Review and respond."),
    "offer_accepted": ("Your offer was accepted!", "The seller has accepted your offer! Complete payment within 48 hours."),
    "offer_rejected": ("Offer declined", "Unfortunately, your offer was not accepted."),
    "offer_countered": ("Counter-offer received!", "The seller has made a counter-offer. Review and respond."),
    "offer_expired": ("Offer expired", "Your offer has expired without a response."),
    "counter_accepted": ("Counter-offer accepted!", "The buyer accepted your counter-offer. Your item has sold."),
    "counter_rejected": ("Counter-offer declined", "The buyer declined your counter-offer."),
}

AUCTION_SORTS = {
    "ending_soonest": Auction.end_time.asc(),
    "ending_latest": Auction.end_time.desc(),
    "newest": Auction.created_at.desc(),
    "price_low": func.coalesce(Auction.current_bid, Auction.starting_price).asc(),
    "price_high": func.coalesce(Auction.current_bid, Auction.starting_price).desc(),
    "most_bids": Auction.bid_count.desc(),
}


def _conditional(db: Session, stmt) -> bool:
    result = db.execute(stmt.execution_options(synchronize_session=False))
    return result.rowcount == 1

# --- profiles -------------------------------------------------------------

def get_profile(db: Session, profile_id: str):
    return db.get(Profile, profile_id)

def get_profile_by_external_id(db: Session, external_id: str):
    return db.query(Profile).filter(Profile.external_id == external_id).first()

def get_or_create_profile(db: Session, external_id: str, username: Optional[str] = None):
    obj = get_profile_by_external_id(db, external_id)
    if obj:
        return obj
    obj = Profile(external_id=external_id, username=username)
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return obj

def username_taken(db: Session, username: str, exclude_profile_id: Optional[str] = None) -> bool:
    q = db.query(Profile.id).filter(Profile.username == username)
    if exclude_profile_id:
        q = q.filter(Profile.id != exclude_profile_id)
    return q.first() is not None

def set_username(db: Session, profile: Profile, username: Optional[str], display_preference: Optional[str] = None):
    profile.username = username
    if display_preference:
        profile.display_preference = display_preference
    db.commit()
    db.refresh(profile)
    return profile

# --- items ----------------------------------------------------------------

def create_listing(db: Session, seller_id: str, data: Dict[str, Any], expires_at):
    obj = Listing(seller_id=seller_id, expires_at=expires_at, status=AVAILABLE, **data)
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return obj

def create_auction(db: Session, seller_id: str, data: Dict[str, Any], start_time, end_time):
    obj = Auction(seller_id=seller_id, start_time=start_time, end_time=end_time, status=OPEN, bid_count=0, **data)
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return obj

def get_listing(db: Session, listing_id: str):
    return db.get(Listing, listing_id, populate_existing=True)

def get_auction(db: Session, auction_id: str):
    return db.get(Auction, auction_id, populate_existing=True)

def get_item(db: Session, kind: str, item_id: str):
    return get_listing(db, item_id) if kind == LISTING else get_auction(db, item_id)

def list_active_auctions(db: Session, now, skip: int = 0, limit: int = 50, filters: Dict = None,
                         sort_by: str = "ending_soonest"):
    q = db.query(Auction).filter(Auction.status == OPEN, Auction.end_time > now)
    if filters:
        conds = []
        price = func.coalesce(Auction.current_bid, Auction.starting_price)
        if filters.get("seller_id"):
            conds.append(Auction.seller_id == filters["seller_id"])
        if filters.get("min_price") is not None:
            conds.append(price >= filters["min_price"])
        if filters.get("max_price") is not None:
            conds.append(price <= filters["max_price"])
        if filters.get("has_buy_it_now"):
            conds.append(Auction.buy_it_now_price.isnot(None))
        if filters.get("ending_soon"):
            conds.append(Auction.end_time <= now + timedelta(hours=24))
        if conds:
            q = q.filter(and_(*conds))
    total = q.count()
    order = AUCTION_SORTS.get(sort_by, AUCTION_SORTS["ending_soonest"])
    items = q.order_by(order, Auction.id).offset(skip).limit(limit).all()
    return {"total": total, "items": items}

def list_seller_auctions(db: Session, seller_id: str, status: Optional[str] = None):
    q = db.query(Auction).filter(Auction.seller_id == seller_id)
    if status:
        q = q.filter(Auction.status == status)
    return q.order_by(Auction.created_at.desc(), Auction.id).all()

def list_won_auctions(db: Session, profile_id: str):
    return (
        db.query(Auction)
        .filter(Auction.winner_id == profile_id, Auction.status == SOLD)
        .order_by(Auction.end_time.desc())
        .all()
    )

def list_user_bids(db: Session, profile_id: str):
    return (
        db.query(Bid)
        .filter(Bid.bidder_id == profile_id)
        .order_by(Bid.created_at.desc(), Bid.amount.desc())
        .all()
    )

# --- conditional writes ---------------------------------------------------

def mark_listing_sold(db: Session, listing_id: str, buyer_id: str, sold_price, now, payment_deadline) -> bool:
    stmt = (
        update(Listing)
        .where(Listing.id == listing_id, Listing.status == AVAILABLE)
        .values(status=SOLD, buyer_id=buyer_id, sold_price=sold_price, sold_at=now, payment_status="pending",
                payment_deadline=payment_deadline, updated_at=now)
    )
    return _conditional(db, stmt)

def mark_auction_sold(db: Session, auction_id: str, winner_id: str, price, now, payment_deadline,
                      expected_bid_count: Optional[int] = None) -> bool:
    conds = [Auction.id == auction_id, Auction.status == OPEN]
    if expected_bid_count is not None:
        conds.append(Auction.bid_count == expected_bid_count)
    stmt = (
        update(Auction)
        .where(*conds)
        .values(status=SOLD, winner_id=winner_id, winning_bid=price, payment_status="pending",
                payment_deadline=payment_deadline, updated_at=now)
    )
    return _conditional(db, stmt)

def advance_highest_bid(db: Session, auction_id: str, expected_bid_count: int, bidder_id: str, amount, now) -> bool:
    stmt = (
        update(Auction)
        .where(Auction.id == auction_id, Auction.status == OPEN, Auction.bid_count == expected_bid_count)
        .values(current_bid=amount, high_bidder_id=bidder_id, bid_count=expected_bid_count + 1, updated_at=now)
    )
    return _conditional(db, stmt)

def close_auction_unsold(db: Session, auction_id: str, now) -> bool:
    stmt = (
        update(Auction)
        .where(Auction.id == auction_id, Auction.status == OPEN, Auction.bid_count == 0)
        .values(status=ENDED_UNSOLD, updated_at=now)
    )
    return _conditional(db, stmt)

def cancel_listing_if_available(db: Session, listing_id: str, now) -> bool:
    stmt = (
        update(Listing)
        .where(Listing.id == listing_id, Listing.status == AVAILABLE)
        .values(status=CANCELLED, updated_at=now)
    )
    return _conditional(db, stmt)

def cancel_auction_if_unbid(db: Session, auction_id: str, now) -> bool:
    stmt = (
        update(Auction)
        .where(Auction.id == auction_id, Auction.status == OPEN, Auction.bid_count == 0)
        .values(status=CANCELLED, updated_at=now)
    )
    return _conditional(db, stmt)

def transition_offer(db: Session, offer_id: str, expected_status: str, expected_round: int, now, **values) -> bool:
    """Move an offer out of `expected_status`, provided nobody else has
    responded to it since it was read (the round number acts as its version)."""
    stmt = (
        update(Offer)
        .where(Offer.id == offer_id, Offer.status == expected_status, Offer.round_number == expected_round)
        .values(updated_at=now, **values)
    )
    return _conditional(db, stmt)

def reject_open_offers(db: Session, listing_id: str, now, keep_offer_id: Optional[str] = None) -> int:
    conds = [Offer.listing_id == listing_id, Offer.status.in_(ACTIVE_OFFER_STATUSES)]
    if keep_offer_id:
        conds.append(Offer.id != keep_offer_id)
    result = db.execute(
        update(Offer)
        .where(*conds)
        .values(status=AUTO_REJECTED, responded_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount

# --- ledger rows (flushed with the caller's transaction) ------------------

def add_transaction(db: Session, kind: str, item_id: str, seller_id: str, buyer_id: str, price, now):
    obj = Transaction(item_kind=kind, item_id=item_id, seller_id=seller_id, buyer_id=buyer_id,
                      price=price, created_at=now)
    db.add(obj)
    db.flush()
    return obj

def add_bid(db: Session, auction_id: str, bidder_id: str, amount, now):
    obj = Bid(auction_id=auction_id, bidder_id=bidder_id, amount=amount, created_at=now)
    db.add(obj)
    db.flush()
    return obj

def add_notification(db: Session, profile_id: str, type_: str, item_id: Optional[str] = None):
    title, message = NOTIFICATION_TEMPLATES[type_]
    obj = Notification(profile_id=profile_id, type=type_, title=title, message=message, item_id=item_id)
    db.add(obj)
    return obj

def get_transaction_for_item(db: Session, kind: str, item_id: str):
    return db.query(Transaction).filter(Transaction.item_kind == kind, Transaction.item_id == item_id).first()

def list_bids(db: Session, auction_id: str):
    return (
        db.query(Bid)
        .filter(Bid.auction_id == auction_id)
        .order_by(Bid.amount.desc(), Bid.created_at.desc())
        .all()
    )

# --- lifecycle queries ----------------------------------------------------

def find_ended_auctions(db: Session, now):
    return db.query(Auction).filter(Auction.status == OPEN, Auction.end_time < now).all()

def find_expired_listings(db: Session, now):
    return db.query(Listing).filter(Listing.status == AVAILABLE, Listing.expires_at < now).all()

def find_expiring_listings(db: Session, now, window: timedelta):
    return (
        db.query(Listing)
        .filter(Listing.status == AVAILABLE, Listing.expires_at > now, Listing.expires_at < now + window)
        .all()
    )

def find_expired_offers(db: Session, now):
    return (
        db.query(Offer)
        .filter(Offer.status.in_(ACTIVE_OFFER_STATUSES), Offer.expires_at < now)
        .all()
    )

def has_notification(db: Session, item_id: str, type_: str) -> bool:
    stmt = select(Notification.id).where(Notification.item_id == item_id, Notification.type == type_).limit(1)
    return db.execute(stmt).first() is not None

# --- offers ---------------------------------------------------------------

def add_offer(db: Session, listing_id: str, buyer_id: str, seller_id: str, amount, now, expires_at):
    obj = Offer(listing_id=listing_id, buyer_id=buyer_id, seller_id=seller_id, amount=amount,
                status=PENDING, round_number=1, expires_at=expires_at, created_at=now, updated_at=now)
    db.add(obj)
    db.flush()
    return obj

def get_offer(db: Session, offer_id: str):
    return db.get(Offer, offer_id, populate_existing=True)

def find_active_offer(db: Session, listing_id: str, buyer_id: str):
    return (
        db.query(Offer)
        .filter(Offer.listing_id == listing_id, Offer.buyer_id == buyer_id,
                Offer.status.in_(ACTIVE_OFFER_STATUSES))
        .first()
    )

def list_offers_for_listing(db: Session, listing_id: str):
    return db.query(Offer).filter(Offer.listing_id == listing_id).order_by(Offer.created_at.desc()).all()

def list_buyer_offers(db: Session, buyer_id: str):
    return db.query(Offer).filter(Offer.buyer_id == buyer_id).order_by(Offer.created_at.desc()).all()

# --- watchlist ------------------------------------------------------------

def add_to_watchlist(db: Session, user_id: str, auction_id: str):
    """Idempotent: watching an auction twice keeps the first entry."""
    obj = get_watchlist_item(db, user_id, auction_id)
    if obj:
        return obj
    obj = WatchlistItem(user_id=user_id, auction_id=auction_id)
    db.add(obj)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return get_watchlist_item(db, user_id, auction_id)
    db.refresh(obj)
    return obj

def get_watchlist_item(db: Session, user_id: str, auction_id: str):
    return (
        db.query(WatchlistItem)
        .filter(WatchlistItem.user_id == user_id, WatchlistItem.auction_id == auction_id)
        .first()
    )

def remove_from_watchlist(db: Session, user_id: str, auction_id: str) -> bool:
    removed = (
        db.query(WatchlistItem)
        .filter(WatchlistItem.user_id == user_id, WatchlistItem.auction_id == auction_id)
        .delete(synchronize_session=False)
    )
    db.commit()
    return removed > 0

def list_watchlist(db: Session, user_id: str):
    return (
        db.query(WatchlistItem, Auction)
        .join(Auction, Auction.id == WatchlistItem.auction_id)
        .filter(WatchlistItem.user_id == user_id)
        .order_by(WatchlistItem.created_at.desc(), WatchlistItem.id)
        .all()
    )

def list_watcher_ids(db: Session, auction_id: str):
    return [row[0] for row in db.query(WatchlistItem.user_id).filter(WatchlistItem.auction_id == auction_id)]

# --- seller ratings -------------------------------------------------------

def add_rating(db: Session, seller_id: str, buyer_id: str, kind: str, item_id: str, rating_type: str,
               comment: Optional[str] = None):
    obj = SellerRating(seller_id=seller_id, buyer_id=buyer_id, item_kind=kind, item_id=item_id,
                       rating_type=rating_type, comment=comment)
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return obj

def get_rating_for_item(db: Session, buyer_id: str, kind: str, item_id: str):
    return (
        db.query(SellerRating)
        .filter(SellerRating.buyer_id == buyer_id, SellerRating.item_kind == kind, SellerRating.item_id == item_id)
        .first()
    )

def list_seller_ratings(db: Session, seller_id: str, limit: int = 20):
    return (
        db.query(SellerRating)
        .filter(SellerRating.seller_id == seller_id)
        .order_by(SellerRating.created_at.desc(), SellerRating.id)
        .limit(limit)
        .all()
    )

def rating_counts(db: Session, seller_id: str):
    rows = (
        db.query(SellerRating.rating_type, func.count(SellerRating.id))
        .filter(SellerRating.seller_id == seller_id)
        .group_by(SellerRating.rating_type)
        .all()
    )
    counts = dict(rows)
    return counts.get("positive", 0), counts.get("negative", 0)

# --- notifications --------------------------------------------------------

def list_notifications(db: Session, profile_id: str, limit: int = 50):
    return (
        db.query(Notification)
        .filter(Notification.profile_id == profile_id)
        .order_by(Notification.created_at.desc())
        .limit(limit)
        .all()
    )

def unread_notification_count(db: Session, profile_id: str) -> int:
    return (
        db.query(func.count(Notification.id))
        .filter(Notification.profile_id == profile_id, Notification.is_read.is_(False))
        .scalar()
    )

def mark_notifications_read(db: Session, profile_id: str):
    db.execute(
        update(Notification)
        .where(Notification.profile_id == profile_id, Notification.is_read.is_(False))
        .values(is_read=True)
        .execution_options(synchronize_session=False)
    )
    db.commit()

# --- messaging ------------------------------------------------------------

def get_or_create_conversation(db: Session, profile_a: str, profile_b: str):
    obj = (
        db.query(Conversation)
        .filter(or_(
            and_(Conversation.participant_1_id == profile_a, Conversation.participant_2_id == profile_b),
            and_(Conversation.participant_1_id == profile_b, Conversation.participant_2_id == profile_a),
        ))
        .first()
    )
    if obj:
        return obj
    obj = Conversation(participant_1_id=profile_a, participant_2_id=profile_b)
    db.add(obj)
    db.flush()
    return obj

def send_message(db: Session, sender_id: str, recipient_id: str, content: str, now=None):
    now = now or utcnow()
    conversation = get_or_create_conversation(db, sender_id, recipient_id)
    conversation.last_message_at = now
    obj = Message(conversation_id=conversation.id, sender_id=sender_id, content=content, created_at=now)
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return obj

def get_conversation(db: Session, conversation_id: str):
    return db.get(Conversation, conversation_id)

def other_participant(conversation: Conversation, profile_id: str) -> str:
    if conversation.participant_1_id == profile_id:
        return conversation.participant_2_id
    return conversation.participant_1_id

def list_conversations(db: Session, profile_id: str, limit: int = 50):
    """Caller's conversations with a preview of the latest message, most
    recently active first. Conversations without messages are skipped."""
    conversations = (
        db.query(Conversation)
        .filter(or_(Conversation.participant_1_id == profile_id, Conversation.participant_2_id == profile_id))
        .filter(Conversation.last_message_at.isnot(None))
        .order_by(Conversation.last_message_at.desc())
        .limit(limit)
        .all()
    )
    previews = []
    for conversation in conversations:
        last = (
            db.query(Message)
            .filter(Message.conversation_id == conversation.id)
            .order_by(Message.created_at.desc())
            .first()
        )
        if last is None:
            continue
        unread = (
            db.query(func.count(Message.id))
            .filter(
                Message.conversation_id == conversation.id,
                Message.sender_id != profile_id,
                Message.is_read.is_(False),
            )
            .scalar()
        )
        previews.append({
            "id": conversation.id,
            "other_participant_id": other_participant(conversation, profile_id),
            "last_message": last,
            "unread_count": unread,
            "last_message_at": conversation.last_message_at,
        })
    return previews

def list_messages(db: Session, conversation_id: str):
    return (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.asc(), Message.id)
        .all()
    )

def mark_conversation_read(db: Session, conversation_id: str, reader_id: str) -> int:
    """Mark the other party's unread messages read; the reader's own
    messages are left alone."""
    result = db.execute(
        update(Message)
        .where(
            Message.conversation_id == conversation_id,
            Message.sender_id != reader_id,
            Message.is_read.is_(False),
        )
        .values(is_read=True)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount

def unread_message_count(db: Session, profile_id: str) -> int:
    conversation_ids = select(Conversation.id).where(
        or_(Conversation.participant_1_id == profile_id, Conversation.participant_2_id == profile_id)
    )
    return (
        db.query(func.count(Message.id))
        .filter(
            Message.conversation_id.in_(conversation_ids),
            Message.sender_id != profile_id,
            Message.is_read.is_(False),
        )
        .scalar()
    )

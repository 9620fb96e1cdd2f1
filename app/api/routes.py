# app/api/routes.py
from fastapi import APIRouter, Depends, HTTPException, Query, Header
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from datetime import timedelta
from typing import List, Optional
from .. import crud, schemas
from ..auth import require_identity, get_current_profile, require_active_profile
from ..config import settings
from ..db import get_db
from ..models import LISTING, SOLD
from ..services import get_engine, get_seller_profile, run_lifecycle_jobs
from ..settlement import SettlementEngine, SettlementError
from ..utils import logger

router = APIRouter()


def _failure(result):
    status = 403 if result.error == SettlementError.FORBIDDEN else 400
    if result.error == SettlementError.STORE_UNAVAILABLE:
        raise HTTPException(status_code=500, detail="Service temporarily unavailable")
    return JSONResponse(status_code=status, content={"error": result.error.value, "message": result.message})


@router.get("/health")
def health():
    return {"status": "ok"}

# --- profile --------------------------------------------------------------

@router.post("/api/profile", response_model=schemas.ProfileOut)
def ensure_profile(
    payload: Optional[schemas.ProfileCreate] = None,
    identity: str = Depends(require_identity),
    db: Session = Depends(get_db),
):
    try:
        return crud.get_or_create_profile(db, identity, username=payload.username if payload else None)
    except IntegrityError:
        db.rollback()
        # a concurrent first request for the same identity created it first
        existing = crud.get_profile_by_external_id(db, identity)
        if existing:
            return existing
        raise HTTPException(status_code=409, detail="Username is taken")


@router.get("/api/username/current", response_model=schemas.CurrentUsername)
def current_username(profile=Depends(get_current_profile)):
    return schemas.CurrentUsername(
        username=profile.username or None,
        display_preference=profile.display_preference or "username_only",
    )


@router.get("/api/username", response_model=schemas.UsernameAvailability)
def check_username(username: str = Query(..., min_length=1), db: Session = Depends(get_db)):
    try:
        normalized = schemas.UsernameUpdate(username=username).username
    except ValidationError as e:
        return schemas.UsernameAvailability(available=False, error=e.errors()[0]["msg"])
    return schemas.UsernameAvailability(available=not crud.username_taken(db, normalized), normalized=normalized)


@router.post("/api/username", response_model=schemas.CurrentUsername)
def set_username(payload: schemas.UsernameUpdate, profile=Depends(get_current_profile), db: Session = Depends(get_db)):
    if crud.username_taken(db, payload.username, exclude_profile_id=profile.id):
        raise HTTPException(status_code=409, detail="Username is already taken")
    try:
        profile = crud.set_username(db, profile, payload.username, payload.display_preference)
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Username is already taken")
    logger.info("Profile %s set username %s", profile.id, profile.username)
    return schemas.CurrentUsername(username=profile.username, display_preference=profile.display_preference)


@router.delete("/api/username")
def clear_username(profile=Depends(get_current_profile), db: Session = Depends(get_db)):
    crud.set_username(db, profile, None, "username_only")
    return {"success": True}

# --- fixed-price listings -------------------------------------------------

@router.post("/api/listings", response_model=schemas.ListingOut, status_code=201)
def create_listing(
    payload: schemas.ListingCreate,
    profile=Depends(require_active_profile),
    db: Session = Depends(get_db),
    engine: SettlementEngine = Depends(get_engine),
):
    expires_at = engine.clock() + timedelta(days=engine.config.listing_duration_days)
    obj = crud.create_listing(db, profile.id, payload.model_dump(), expires_at)
    logger.info("Created listing %s for %s", obj.id, profile.id)
    return obj


@router.get("/api/listings/{listing_id}", response_model=schemas.ListingOut)
def get_listing(listing_id: str, db: Session = Depends(get_db)):
    obj = crud.get_listing(db, listing_id)
    if not obj:
        raise HTTPException(status_code=404, detail="Listing not found")
    return obj


@router.post("/api/listings/{listing_id}/purchase", response_model=schemas.PurchaseOut)
def purchase_listing(
    listing_id: str,
    profile=Depends(get_current_profile),
    db: Session = Depends(get_db),
    engine: SettlementEngine = Depends(get_engine),
):
    try:
        result = engine.purchase_fixed_price_listing(db, listing_id, profile.id)
    except Exception as e:
        logger.exception("Error purchasing listing %s: %s", listing_id, e)
        raise HTTPException(status_code=500, detail="Failed to complete purchase")
    if not result.success:
        return _failure(result)
    return schemas.PurchaseOut(transaction_id=result.transaction_id)


@router.post("/api/listings/{listing_id}/cancel", response_model=schemas.PurchaseOut)
def cancel_listing(
    listing_id: str,
    profile=Depends(get_current_profile),
    db: Session = Depends(get_db),
    engine: SettlementEngine = Depends(get_engine),
):
    result = engine.cancel_listing(db, listing_id, profile.id)
    if not result.success:
        return _failure(result)
    return schemas.PurchaseOut()

# --- offers ---------------------------------------------------------------

@router.post("/api/listings/{listing_id}/offers", response_model=schemas.OfferResult, status_code=201)
def make_offer(
    listing_id: str,
    payload: schemas.OfferCreate,
    profile=Depends(require_active_profile),
    db: Session = Depends(get_db),
    engine: SettlementEngine = Depends(get_engine),
):
    try:
        result = engine.create_offer(db, listing_id, profile.id, payload.amount)
    except Exception as e:
        logger.exception("Error creating offer on %s: %s", listing_id, e)
        raise HTTPException(status_code=500, detail="Failed to create offer")
    if not result.success:
        return _failure(result)
    return schemas.OfferResult(offer=crud.get_offer(db, result.offer_id))


@router.get("/api/listings/{listing_id}/offers", response_model=List[schemas.OfferOut])
def listing_offers(listing_id: str, profile=Depends(get_current_profile), db: Session = Depends(get_db)):
    listing = crud.get_listing(db, listing_id)
    if not listing:
        raise HTTPException(status_code=404, detail="Listing not found")
    if listing.seller_id != profile.id:
        raise HTTPException(status_code=403, detail="Only the seller can view offers on this listing")
    return crud.list_offers_for_listing(db, listing_id)


@router.get("/api/offers", response_model=List[schemas.OfferOut])
def my_offers(profile=Depends(get_current_profile), db: Session = Depends(get_db)):
    return crud.list_buyer_offers(db, profile.id)


@router.patch("/api/offers/{offer_id}", response_model=schemas.OfferResult)
def respond_to_offer(
    offer_id: str,
    payload: schemas.OfferResponse,
    profile=Depends(get_current_profile),
    db: Session = Depends(get_db),
    engine: SettlementEngine = Depends(get_engine),
):
    try:
        result = engine.respond_to_offer(db, offer_id, profile.id, payload.action, payload.counter_amount)
    except Exception as e:
        logger.exception("Error responding to offer %s: %s", offer_id, e)
        raise HTTPException(status_code=500, detail="Failed to respond to offer")
    if not result.success:
        return _failure(result)
    return schemas.OfferResult(offer=crud.get_offer(db, offer_id), transaction_id=result.transaction_id)


@router.post("/api/offers/{offer_id}", response_model=schemas.OfferResult)
def respond_to_counter_offer(
    offer_id: str,
    payload: schemas.CounterOfferResponse,
    profile=Depends(get_current_profile),
    db: Session = Depends(get_db),
    engine: SettlementEngine = Depends(get_engine),
):
    try:
        result = engine.respond_to_counter_offer(db, offer_id, profile.id, payload.action)
    except Exception as e:
        logger.exception("Error responding to counter-offer %s: %s", offer_id, e)
        raise HTTPException(status_code=500, detail="Failed to respond to counter-offer")
    if not result.success:
        return _failure(result)
    return schemas.OfferResult(offer=crud.get_offer(db, offer_id), transaction_id=result.transaction_id)

# --- auctions -------------------------------------------------------------

@router.post("/api/auctions", response_model=schemas.AuctionOut, status_code=201)
def create_auction(
    payload: schemas.AuctionCreate,
    profile=Depends(require_active_profile),
    db: Session = Depends(get_db),
    engine: SettlementEngine = Depends(get_engine),
):
    start = engine.clock()
    data = payload.model_dump(exclude={"duration_days"})
    obj = crud.create_auction(db, profile.id, data, start, start + timedelta(days=payload.duration_days))
    logger.info("Created auction %s for %s", obj.id, profile.id)
    return obj


@router.get("/api/auctions", response_model=schemas.AuctionPage)
def list_auctions(
    seller_id: str | None = Query(None, alias="sellerId"),
    min_price: float | None = Query(None, alias="minPrice"),
    max_price: float | None = Query(None, alias="maxPrice"),
    has_buy_it_now: bool = Query(False, alias="hasBuyItNow"),
    ending_soon: bool = Query(False, alias="endingSoon"),
    sort_by: str = Query("ending_soonest", alias="sortBy"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    engine: SettlementEngine = Depends(get_engine),
):
    filters = {
        "seller_id": seller_id,
        "min_price": min_price,
        "max_price": max_price,
        "has_buy_it_now": has_buy_it_now,
        "ending_soon": ending_soon,
    }
    res = crud.list_active_auctions(db, engine.clock(), skip=offset, limit=limit, filters=filters, sort_by=sort_by)
    return schemas.AuctionPage(auctions=res["items"], total=res["total"], limit=limit, offset=offset)

# declared before /api/auctions/{auction_id} so the literal segments win

@router.get("/api/auctions/mine", response_model=List[schemas.AuctionOut])
def my_auctions(
    status: str | None = Query(None),
    profile=Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    return crud.list_seller_auctions(db, profile.id, status=status)


@router.get("/api/auctions/won", response_model=List[schemas.AuctionOut])
def won_auctions(profile=Depends(get_current_profile), db: Session = Depends(get_db)):
    return crud.list_won_auctions(db, profile.id)


@router.get("/api/bids/mine", response_model=List[schemas.UserBidOut])
def my_bids(profile=Depends(get_current_profile), db: Session = Depends(get_db)):
    return crud.list_user_bids(db, profile.id)


@router.get("/api/auctions/{auction_id}", response_model=schemas.AuctionOut)
def get_auction(auction_id: str, db: Session = Depends(get_db)):
    obj = crud.get_auction(db, auction_id)
    if not obj:
        raise HTTPException(status_code=404, detail="Auction not found")
    return obj


@router.get("/api/auctions/{auction_id}/bids", response_model=List[schemas.BidOut])
def bid_history(auction_id: str, db: Session = Depends(get_db)):
    if not crud.get_auction(db, auction_id):
        raise HTTPException(status_code=404, detail="Auction not found")
    return crud.list_bids(db, auction_id)


@router.post("/api/auctions/{auction_id}/bid", response_model=schemas.BidAccepted)
def place_bid(
    auction_id: str,
    payload: schemas.BidCreate,
    profile=Depends(require_active_profile),
    db: Session = Depends(get_db),
    engine: SettlementEngine = Depends(get_engine),
):
    try:
        result = engine.place_bid(db, auction_id, profile.id, payload.amount)
    except Exception as e:
        logger.exception("Error placing bid on %s: %s", auction_id, e)
        raise HTTPException(status_code=500, detail="Failed to place bid")
    if not result.success:
        return _failure(result)
    return schemas.BidAccepted(bid_id=result.bid_id, current_bid=result.current_bid, message=result.message)


@router.post("/api/auctions/{auction_id}/buy-now", response_model=schemas.PurchaseOut)
def buy_now(
    auction_id: str,
    profile=Depends(require_active_profile),
    db: Session = Depends(get_db),
    engine: SettlementEngine = Depends(get_engine),
):
    try:
        result = engine.execute_buy_it_now(db, auction_id, profile.id)
    except Exception as e:
        logger.exception("Error executing Buy It Now on %s: %s", auction_id, e)
        raise HTTPException(status_code=500, detail="Failed to complete purchase")
    if not result.success:
        return _failure(result)
    return schemas.PurchaseOut(transaction_id=result.transaction_id)


@router.post("/api/auctions/{auction_id}/cancel", response_model=schemas.PurchaseOut)
def cancel_auction(
    auction_id: str,
    profile=Depends(get_current_profile),
    db: Session = Depends(get_db),
    engine: SettlementEngine = Depends(get_engine),
):
    result = engine.cancel_auction(db, auction_id, profile.id)
    if not result.success:
        return _failure(result)
    return schemas.PurchaseOut()

# --- watchlist ------------------------------------------------------------

@router.get("/api/watchlist", response_model=List[schemas.WatchlistItemOut])
def watchlist(profile=Depends(get_current_profile), db: Session = Depends(get_db)):
    return [
        schemas.WatchlistItemOut(id=item.id, auction_id=item.auction_id, created_at=item.created_at, auction=auction)
        for item, auction in crud.list_watchlist(db, profile.id)
    ]


@router.post("/api/watchlist")
def add_to_watchlist(payload: schemas.WatchlistAdd, profile=Depends(require_active_profile),
                     db: Session = Depends(get_db)):
    if not crud.get_auction(db, payload.auction_id):
        raise HTTPException(status_code=404, detail="Auction not found")
    crud.add_to_watchlist(db, profile.id, payload.auction_id)
    return {"success": True}


@router.get("/api/watchlist/{auction_id}", response_model=schemas.WatchStatus)
def watch_status(auction_id: str, profile=Depends(get_current_profile), db: Session = Depends(get_db)):
    return schemas.WatchStatus(watching=crud.get_watchlist_item(db, profile.id, auction_id) is not None)


@router.delete("/api/watchlist/{auction_id}")
def remove_from_watchlist(auction_id: str, profile=Depends(require_active_profile), db: Session = Depends(get_db)):
    crud.remove_from_watchlist(db, profile.id, auction_id)
    return {"success": True}

# --- sellers and ratings --------------------------------------------------

@router.get("/api/sellers/{seller_id}", response_model=schemas.SellerProfileOut)
def seller_profile(seller_id: str, db: Session = Depends(get_db)):
    seller = get_seller_profile(db, seller_id)
    if seller is None:
        raise HTTPException(status_code=404, detail="Seller not found")
    return seller


@router.get("/api/sellers/{seller_id}/ratings", response_model=schemas.SellerRatingsPage)
def seller_ratings(seller_id: str, limit: int = Query(20, ge=1, le=100), db: Session = Depends(get_db)):
    seller = get_seller_profile(db, seller_id)
    if seller is None:
        raise HTTPException(status_code=404, detail="Seller not found")
    return schemas.SellerRatingsPage(seller=seller, ratings=crud.list_seller_ratings(db, seller_id, limit=limit))


@router.post("/api/sellers/{seller_id}/ratings", response_model=schemas.RatingOut, status_code=201)
def rate_seller(
    seller_id: str,
    payload: schemas.RatingCreate,
    profile=Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    item = crud.get_item(db, payload.item_kind, payload.item_id)
    if not item:
        raise HTTPException(status_code=404, detail="Item not found")
    buyer_id = item.buyer_id if payload.item_kind == LISTING else item.winner_id
    if item.status != SOLD or buyer_id != profile.id or item.seller_id != seller_id:
        raise HTTPException(status_code=403, detail="You can only rate sellers you bought from")
    if crud.get_rating_for_item(db, profile.id, payload.item_kind, payload.item_id):
        raise HTTPException(status_code=409, detail="You have already rated this seller")
    try:
        rating = crud.add_rating(db, seller_id, profile.id, payload.item_kind, payload.item_id,
                                 payload.rating_type, payload.comment)
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="You have already rated this seller")
    logger.info("Profile %s rated seller %s %s", profile.id, seller_id, payload.rating_type)
    return rating

# --- messages and notifications -------------------------------------------

@router.get("/api/messages/unread-count", response_model=schemas.UnreadCount)
def unread_count(profile=Depends(get_current_profile), db: Session = Depends(get_db)):
    return {"count": crud.unread_message_count(db, profile.id)}


@router.get("/api/messages", response_model=List[schemas.ConversationPreview])
def conversations(profile=Depends(get_current_profile), db: Session = Depends(get_db)):
    return crud.list_conversations(db, profile.id)


@router.get("/api/messages/{conversation_id}", response_model=schemas.ConversationMessages)
def conversation_messages(conversation_id: str, profile=Depends(get_current_profile), db: Session = Depends(get_db)):
    conversation = crud.get_conversation(db, conversation_id)
    if not conversation:
        raise HTTPException(status_code=404, detail="Conversation not found")
    if profile.id not in (conversation.participant_1_id, conversation.participant_2_id):
        raise HTTPException(status_code=403, detail="Access denied")
    page = schemas.ConversationMessages(
        conversation_id=conversation.id,
        other_participant_id=crud.other_participant(conversation, profile.id),
        messages=[schemas.MessageOut.model_validate(m) for m in crud.list_messages(db, conversation.id)],
    )
    crud.mark_conversation_read(db, conversation.id, profile.id)
    return page


@router.post("/api/messages", response_model=schemas.MessageOut, status_code=201)
def send_message(payload: schemas.MessageCreate, profile=Depends(get_current_profile), db: Session = Depends(get_db)):
    if payload.recipient_id == profile.id:
        raise HTTPException(status_code=400, detail="Cannot message yourself")
    if not crud.get_profile(db, payload.recipient_id):
        raise HTTPException(status_code=404, detail="Recipient not found")
    return crud.send_message(db, profile.id, payload.recipient_id, payload.content)


@router.get("/api/notifications", response_model=schemas.NotificationPage)
def notifications(profile=Depends(get_current_profile), db: Session = Depends(get_db)):
    return schemas.NotificationPage(
        notifications=crud.list_notifications(db, profile.id),
        unread_count=crud.unread_notification_count(db, profile.id),
    )


@router.post("/api/notifications/read")
def mark_notifications_read(profile=Depends(get_current_profile), db: Session = Depends(get_db)):
    crud.mark_notifications_read(db, profile.id)
    return {"success": True}

# --- cron -----------------------------------------------------------------

@router.post("/api/cron/process-auctions")
def process_auctions(
    authorization: str | None = Header(None),
    db: Session = Depends(get_db),
    engine: SettlementEngine = Depends(get_engine),
):
    # fail closed when no secret is configured
    if not settings.cron_secret or authorization != f"Bearer {settings.cron_secret}":
        raise HTTPException(status_code=401, detail="Unauthorized")
    try:
        summary = run_lifecycle_jobs(db, engine)
    except Exception as e:
        logger.exception("Cron run failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to process cron job")
    return {"success": True, **summary}

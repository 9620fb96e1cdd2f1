# app/services.py
"""Service layer: the shared settlement engine, the lifecycle sweeps run by
the scheduler and the cron endpoint, and seller reputation."""
from datetime import timedelta
from sqlalchemy.orm import Session
from . import crud
from .config import settings
from .settlement import SettlementEngine, SettlementError
from .utils import logger

EXPIRY_WARNING_WINDOW = timedelta(hours=24)

settlement_engine = SettlementEngine(settings.engine)


def get_engine() -> SettlementEngine:
    return settlement_engine


def process_ended_auctions(db: Session, engine: SettlementEngine):
    errors = []
    processed = 0
    auction_ids = [a.id for a in crud.find_ended_auctions(db, engine.clock())]
    for auction_id in auction_ids:
        try:
            result = engine.close_auction(db, auction_id)
        except Exception as e:
            db.rollback()
            logger.exception("Failed to close auction %s", auction_id)
            errors.append(f"Failed to close auction {auction_id}: {e}")
            continue
        if result.success:
            processed += 1
        elif result.error != SettlementError.CONFLICT:
            logger.info("Auction %s not closed: %s", auction_id, result.message)
    logger.info("Processed %d of %d ended auctions", processed, len(auction_ids))
    return {"processed": processed, "errors": errors}


def expire_listings(db: Session, engine: SettlementEngine):
    errors = []
    now = engine.clock()

    expiring = 0
    for listing in crud.find_expiring_listings(db, now, EXPIRY_WARNING_WINDOW):
        # warn once per listing
        if crud.has_notification(db, listing.id, "listing_expiring"):
            continue
        crud.add_notification(db, listing.seller_id, "listing_expiring", listing.id)
        expiring += 1
    db.commit()

    expired = 0
    listing_ids = [listing.id for listing in crud.find_expired_listings(db, now)]
    for listing_id in listing_ids:
        try:
            result = engine.expire_listing(db, listing_id)
        except Exception as e:
            db.rollback()
            logger.exception("Failed to expire listing %s", listing_id)
            errors.append(f"Failed to expire listing {listing_id}: {e}")
            continue
        if result.success:
            expired += 1
    logger.info("Expired %d listings, warned %d", expired, expiring)
    return {"expired": expired, "expiring": expiring, "errors": errors}


def expire_offers(db: Session, engine: SettlementEngine):
    errors = []
    expired = 0
    offer_ids = [offer.id for offer in crud.find_expired_offers(db, engine.clock())]
    for offer_id in offer_ids:
        try:
            result = engine.expire_offer(db, offer_id)
        except Exception as e:
            db.rollback()
            logger.exception("Failed to expire offer %s", offer_id)
            errors.append(f"Failed to expire offer {offer_id}: {e}")
            continue
        if result.success:
            expired += 1
    logger.info("Expired %d offers", expired)
    return {"expired": expired, "errors": errors}


def run_lifecycle_jobs(db: Session, engine: SettlementEngine):
    return {
        "auctions": process_ended_auctions(db, engine),
        "listings": expire_listings(db, engine),
        "offers": expire_offers(db, engine),
    }


def seller_reputation(positive: int, negative: int):
    """Share of positive ratings (rounded percent) and the badge it earns:
    hero from 80%, villain under 50%, neutral otherwise or when unrated."""
    total = positive + negative
    if total == 0:
        return 0, "neutral"
    percentage = round(positive * 100 / total)
    if percentage >= 80:
        return percentage, "hero"
    if percentage < 50:
        return percentage, "villain"
    return percentage, "neutral"


def get_seller_profile(db: Session, seller_id: str):
    profile = crud.get_profile(db, seller_id)
    if profile is None:
        return None
    positive, negative = crud.rating_counts(db, seller_id)
    percentage, reputation = seller_reputation(positive, negative)
    return {
        "id": profile.id,
        "username": profile.username,
        "positive_ratings": positive,
        "negative_ratings": negative,
        "total_ratings": positive + negative,
        "positive_percentage": percentage,
        "reputation": reputation,
        "seller_since": profile.created_at,
    }

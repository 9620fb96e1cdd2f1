# app/settlement.py
"""Settlement engine: buy-now, fixed-price purchase, bid acceptance and offers.

Each operation reads the item, validates it, then tries one conditional
write (see `app.crud`) together with its ledger rows in a single database
transaction. If the conditional write matches no row, someone else changed
the item between our read and our write: the transaction is rolled back and
the whole read-validate-write cycle runs again, at most
`EngineConfig.max_attempts` times with a short randomised pause in between.

Business-rule failures come back as `SettlementResult` values, never as
exceptions. A request that times out against the store has an unknown
outcome; callers should re-read the item rather than repeat the call.
"""
import enum
from contextlib import contextmanager
from datetime import timedelta
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from . import crud
from .config import EngineConfig
from .models import (
    AVAILABLE, OPEN, LISTING, AUCTION, COUNTERED, ACCEPTED, REJECTED, EXPIRED, ACTIVE_OFFER_STATUSES,
)
from .utils import get_logger, retry, utcnow, as_utc

logger = get_logger(__name__)

CENTS = Decimal("0.01")


class SettlementError(str, enum.Enum):
    NOT_FOUND = "not_found"
    NOT_AVAILABLE = "not_available"
    SELF_PURCHASE_NOT_ALLOWED = "self_purchase_not_allowed"
    NO_BUY_NOW_PRICE = "no_buy_now_price"
    OUTBID = "outbid"
    CONFLICT = "conflict"
    STORE_UNAVAILABLE = "store_unavailable"
    FORBIDDEN = "forbidden"
    OFFERS_NOT_ACCEPTED = "offers_not_accepted"
    OFFER_TOO_LOW = "offer_too_low"
    DUPLICATE_OFFER = "duplicate_offer"
    NEGOTIATION_LIMIT = "negotiation_limit"


class SettlementResult(BaseModel):
    success: bool
    error: Optional[SettlementError] = None
    message: Optional[str] = None
    transaction_id: Optional[str] = None
    bid_id: Optional[str] = None
    offer_id: Optional[str] = None
    current_bid: Optional[Decimal] = None

    @classmethod
    def fail(cls, error, message, **extra):
        return cls(success=False, error=error, message=message, **extra)


class WriteConflict(Exception):
    """A conditional write matched no row."""


def to_money(amount) -> Decimal:
    return Decimal(str(amount)).quantize(CENTS)


def minimum_bid(auction) -> Decimal:
    """Lowest acceptable amount: the starting price when nobody has bid,
    otherwise anything strictly above the current bid."""
    if auction.current_bid is None:
        return to_money(auction.starting_price)
    return to_money(auction.current_bid) + CENTS


class SettlementEngine:

    def __init__(self, config: EngineConfig, clock=utcnow):
        self.config = config
        self.clock = clock

    # --- purchases --------------------------------------------------------

    def execute_buy_it_now(self, db: Session, auction_id: str, buyer_id: str) -> SettlementResult:
        return self.settle_purchase(db, AUCTION, auction_id, buyer_id)

    def purchase_fixed_price_listing(self, db: Session, listing_id: str, buyer_id: str) -> SettlementResult:
        return self.settle_purchase(db, LISTING, listing_id, buyer_id)

    def settle_purchase(self, db: Session, kind: str, item_id: str, buyer_id: str) -> SettlementResult:
        return self._run(
            db, self._settle_once, (kind, item_id, buyer_id),
            SettlementError.CONFLICT, "Item is being purchased by someone else, please try again",
        )

    def _settle_once(self, db, kind, item_id, buyer_id):
        now = self.clock()
        item = crud.get_item(db, kind, item_id)
        if item is None:
            return SettlementResult.fail(SettlementError.NOT_FOUND, f"{kind.capitalize()} not found")
        if not self._purchasable(kind, item, now):
            return SettlementResult.fail(SettlementError.NOT_AVAILABLE, f"{kind.capitalize()} is no longer available")
        if item.seller_id == buyer_id:
            return SettlementResult.fail(SettlementError.SELF_PURCHASE_NOT_ALLOWED, "You cannot buy your own item")
        if kind == AUCTION and item.buy_it_now_price is None:
            return SettlementResult.fail(SettlementError.NO_BUY_NOW_PRICE, "Buy It Now not available")

        price = item.price if kind == LISTING else item.buy_it_now_price
        seller_id = item.seller_id
        deadline = now + timedelta(hours=self.config.payment_window_hours)
        with atomic(db):
            if kind == LISTING:
                won = crud.mark_listing_sold(db, item_id, buyer_id, price, now, deadline)
            else:
                won = crud.mark_auction_sold(db, item_id, buyer_id, price, now, deadline)
            if not won:
                raise WriteConflict(f"{kind} {item_id} changed before the sale was written")
            txn = crud.add_transaction(db, kind, item_id, seller_id, buyer_id, price, now)
            if kind == LISTING:
                crud.reject_open_offers(db, item_id, now)
            crud.add_notification(db, seller_id, "auction_sold", item_id)
            crud.add_notification(db, buyer_id, "won", item_id)
            txn_id = txn.id
        logger.info("Sold %s %s to %s for %s (transaction %s)", kind, item_id, buyer_id, price, txn_id)
        return SettlementResult(success=True, transaction_id=txn_id)

    def _purchasable(self, kind, item, now):
        if kind == LISTING:
            return item.status == AVAILABLE
        return item.status == OPEN and as_utc(item.end_time) > now

    # --- bidding ----------------------------------------------------------

    def place_bid(self, db: Session, auction_id: str, bidder_id: str, amount) -> SettlementResult:
        return self._run(
            db, self._bid_once, (auction_id, bidder_id, to_money(amount)),
            SettlementError.OUTBID, "Another bid was accepted first, please try again",
        )

    def _bid_once(self, db, auction_id, bidder_id, amount):
        now = self.clock()
        auction = crud.get_auction(db, auction_id)
        if auction is None:
            return SettlementResult.fail(SettlementError.NOT_FOUND, "Auction not found")
        if auction.status != OPEN or as_utc(auction.end_time) <= now:
            return SettlementResult.fail(SettlementError.NOT_AVAILABLE, "Auction has ended")
        if auction.seller_id == bidder_id:
            return SettlementResult.fail(SettlementError.SELF_PURCHASE_NOT_ALLOWED, "You cannot bid on your own auction")
        floor = minimum_bid(auction)
        if amount < floor:
            return SettlementResult.fail(
                SettlementError.OUTBID, f"Minimum bid is ${floor:.2f}", current_bid=auction.current_bid,
            )

        seen = auction.bid_count
        previous = auction.high_bidder_id
        with atomic(db):
            if not crud.advance_highest_bid(db, auction_id, seen, bidder_id, amount, now):
                raise WriteConflict(f"auction {auction_id} received another bid")
            bid = crud.add_bid(db, auction_id, bidder_id, amount, now)
            if previous and previous != bidder_id:
                crud.add_notification(db, previous, "outbid", auction_id)
            bid_id = bid.id
        logger.info("Accepted bid %s on auction %s: %s by %s", bid_id, auction_id, amount, bidder_id)
        return SettlementResult(success=True, bid_id=bid_id, current_bid=amount, message="You are the high bidder!")

    # --- seller operations ------------------------------------------------

    def cancel_listing(self, db: Session, listing_id: str, seller_id: str) -> SettlementResult:
        return self._run(
            db, self._cancel_once, (LISTING, listing_id, seller_id),
            SettlementError.CONFLICT, "Listing changed while cancelling, please try again",
        )

    def cancel_auction(self, db: Session, auction_id: str, seller_id: str) -> SettlementResult:
        return self._run(
            db, self._cancel_once, (AUCTION, auction_id, seller_id),
            SettlementError.CONFLICT, "Auction changed while cancelling, please try again",
        )

    def _cancel_once(self, db, kind, item_id, seller_id):
        now = self.clock()
        item = crud.get_item(db, kind, item_id)
        if item is None:
            return SettlementResult.fail(SettlementError.NOT_FOUND, f"{kind.capitalize()} not found")
        if item.seller_id != seller_id:
            return SettlementResult.fail(SettlementError.FORBIDDEN, "Only the seller can cancel this item")
        if kind == LISTING and item.status != AVAILABLE:
            return SettlementResult.fail(SettlementError.NOT_AVAILABLE, "Listing can no longer be cancelled")
        if kind == AUCTION and (item.status != OPEN or item.bid_count > 0):
            return SettlementResult.fail(SettlementError.NOT_AVAILABLE, "Cannot cancel an auction that has bids or has ended")
        with atomic(db):
            if kind == LISTING:
                won = crud.cancel_listing_if_available(db, item_id, now)
                crud.reject_open_offers(db, item_id, now)
            else:
                won = crud.cancel_auction_if_unbid(db, item_id, now)
            if not won:
                raise WriteConflict(f"{kind} {item_id} changed before cancellation was written")
        logger.info("Cancelled %s %s", kind, item_id)
        return SettlementResult(success=True)

    # --- offers -----------------------------------------------------------
    #
    # An offer moves pending -> countered -> ... -> accepted / rejected /
    # expired / auto_rejected. Every move is a conditional write on the
    # offer's status and round number. Accepting one sells the listing through
    # the same conditional write as a fixed-price purchase, so an offer can
    # never complete a sale that a buyer or another offer already won.

    def create_offer(self, db: Session, listing_id: str, buyer_id: str, amount) -> SettlementResult:
        return self._run(
            db, self._offer_once, (listing_id, buyer_id, to_money(amount)),
            SettlementError.CONFLICT, "Listing changed while making the offer, please try again",
        )

    def _offer_once(self, db, listing_id, buyer_id, amount):
        now = self.clock()
        listing = crud.get_listing(db, listing_id)
        if listing is None:
            return SettlementResult.fail(SettlementError.NOT_FOUND, "Listing not found")
        if listing.status != AVAILABLE:
            return SettlementResult.fail(SettlementError.NOT_AVAILABLE, "Listing is no longer available")
        if listing.seller_id == buyer_id:
            return SettlementResult.fail(SettlementError.SELF_PURCHASE_NOT_ALLOWED,
                                         "You cannot make an offer on your own listing")
        if not listing.accepts_offers:
            return SettlementResult.fail(SettlementError.OFFERS_NOT_ACCEPTED, "This listing does not accept offers")
        # below the seller's floor: refused without bothering the seller
        if listing.min_offer_amount is not None and amount < listing.min_offer_amount:
            return SettlementResult.fail(SettlementError.OFFER_TOO_LOW, "Your offer is too low for this listing")
        if crud.find_active_offer(db, listing_id, buyer_id):
            return SettlementResult.fail(SettlementError.DUPLICATE_OFFER,
                                         "You already have an active offer on this listing")

        expires_at = now + timedelta(hours=self.config.offer_window_hours)
        with atomic(db):
            offer = crud.add_offer(db, listing_id, buyer_id, listing.seller_id, amount, now, expires_at)
            crud.add_notification(db, listing.seller_id, "offer_received", listing_id)
            offer_id = offer.id
        logger.info("Offer %s on listing %s: %s by %s", offer_id, listing_id, amount, buyer_id)
        return SettlementResult(success=True, offer_id=offer_id)

    def respond_to_offer(self, db: Session, offer_id: str, seller_id: str, action: str,
                         counter_amount=None) -> SettlementResult:
        """Seller accepts, rejects or counters an open offer."""
        counter = to_money(counter_amount) if counter_amount is not None else None
        return self._run(
            db, self._respond_once, (offer_id, seller_id, action, counter),
            SettlementError.CONFLICT, "Offer changed while responding, please try again",
        )

    def _respond_once(self, db, offer_id, seller_id, action, counter):
        now = self.clock()
        offer = crud.get_offer(db, offer_id)
        if offer is None or offer.seller_id != seller_id:
            return SettlementResult.fail(SettlementError.NOT_FOUND, "Offer not found")
        if offer.status not in ACTIVE_OFFER_STATUSES or as_utc(offer.expires_at) <= now:
            return SettlementResult.fail(SettlementError.NOT_AVAILABLE, "This offer can no longer be modified")
        if action == "accept":
            return self._accept_offer(db, offer, offer.amount, offer.buyer_id, "offer_accepted", now)
        if action == "reject":
            return self._decline_offer(db, offer, offer.buyer_id, "offer_rejected", now)
        if action != "counter" or counter is None:
            raise ValueError(f"unsupported offer response {action!r}")

        if offer.round_number >= self.config.max_offer_rounds:
            return SettlementResult.fail(
                SettlementError.NEGOTIATION_LIMIT,
                f"Maximum negotiation rounds reached ({self.config.max_offer_rounds})",
            )
        with atomic(db):
            if not crud.transition_offer(
                db, offer.id, offer.status, offer.round_number, now,
                status=COUNTERED, counter_amount=counter, round_number=offer.round_number + 1,
                expires_at=now + timedelta(hours=self.config.offer_window_hours), responded_at=now,
            ):
                raise WriteConflict(f"offer {offer.id} changed before the counter was written")
            crud.add_notification(db, offer.buyer_id, "offer_countered", offer.listing_id)
        logger.info("Countered offer %s at %s (round %d)", offer.id, counter, offer.round_number + 1)
        return SettlementResult(success=True, offer_id=offer.id)

    def respond_to_counter_offer(self, db: Session, offer_id: str, buyer_id: str, action: str) -> SettlementResult:
        """Buyer accepts or rejects the seller's counter-offer."""
        return self._run(
            db, self._counter_response_once, (offer_id, buyer_id, action),
            SettlementError.CONFLICT, "Offer changed while responding, please try again",
        )

    def _counter_response_once(self, db, offer_id, buyer_id, action):
        now = self.clock()
        offer = crud.get_offer(db, offer_id)
        if offer is None or offer.buyer_id != buyer_id:
            return SettlementResult.fail(SettlementError.NOT_FOUND, "Counter-offer not found")
        if offer.status != COUNTERED or as_utc(offer.expires_at) <= now:
            return SettlementResult.fail(SettlementError.NOT_AVAILABLE, "This counter-offer can no longer be answered")
        if action == "accept":
            return self._accept_offer(db, offer, offer.counter_amount, offer.seller_id, "counter_accepted", now)
        if action == "reject":
            return self._decline_offer(db, offer, offer.seller_id, "counter_rejected", now)
        raise ValueError(f"unsupported counter-offer response {action!r}")

    def _accept_offer(self, db, offer, price, notify_id, notification, now):
        listing = crud.get_listing(db, offer.listing_id)
        if listing is None or listing.status != AVAILABLE:
            return SettlementResult.fail(SettlementError.NOT_AVAILABLE, "Listing is no longer available")
        deadline = now + timedelta(hours=self.config.payment_window_hours)
        with atomic(db):
            if not crud.mark_listing_sold(db, listing.id, offer.buyer_id, price, now, deadline):
                raise WriteConflict(f"listing {listing.id} changed before the offer was accepted")
            if not crud.transition_offer(db, offer.id, offer.status, offer.round_number, now,
                                         status=ACCEPTED, amount=price, responded_at=now):
                raise WriteConflict(f"offer {offer.id} changed before it was accepted")
            txn = crud.add_transaction(db, LISTING, listing.id, offer.seller_id, offer.buyer_id, price, now)
            crud.reject_open_offers(db, listing.id, now, keep_offer_id=offer.id)
            crud.add_notification(db, notify_id, notification, listing.id)
            txn_id = txn.id
        logger.info("Sold listing %s to %s for %s via offer %s (transaction %s)",
                    listing.id, offer.buyer_id, price, offer.id, txn_id)
        return SettlementResult(success=True, offer_id=offer.id, transaction_id=txn_id)

    def _decline_offer(self, db, offer, notify_id, notification, now):
        with atomic(db):
            if not crud.transition_offer(db, offer.id, offer.status, offer.round_number, now,
                                         status=REJECTED, responded_at=now):
                raise WriteConflict(f"offer {offer.id} changed before it was rejected")
            crud.add_notification(db, notify_id, notification, offer.listing_id)
        return SettlementResult(success=True, offer_id=offer.id)

    # --- lifecycle --------------------------------------------------------

    def close_auction(self, db: Session, auction_id: str) -> SettlementResult:
        """Finish an auction whose end time has passed.

        Sold to the high bidder at the current bid, or ended unsold when nobody
        bid. Runs once: a lost race leaves the auction for the next sweep.
        """
        now = self.clock()
        auction = crud.get_auction(db, auction_id)
        if auction is None:
            return SettlementResult.fail(SettlementError.NOT_FOUND, "Auction not found")
        if auction.status != OPEN or as_utc(auction.end_time) > now:
            return SettlementResult.fail(SettlementError.NOT_AVAILABLE, "Auction is not awaiting close-out")
        try:
            with atomic(db):
                if auction.high_bidder_id is None:
                    if not crud.close_auction_unsold(db, auction_id, now):
                        raise WriteConflict(f"auction {auction_id} changed during close-out")
                    crud.add_notification(db, auction.seller_id, "ended", auction_id)
                    txn_id = None
                else:
                    deadline = now + timedelta(hours=self.config.payment_window_hours)
                    if not crud.mark_auction_sold(db, auction_id, auction.high_bidder_id, auction.current_bid,
                                                  now, deadline, expected_bid_count=auction.bid_count):
                        raise WriteConflict(f"auction {auction_id} changed during close-out")
                    txn = crud.add_transaction(db, AUCTION, auction_id, auction.seller_id,
                                               auction.high_bidder_id, auction.current_bid, now)
                    crud.add_notification(db, auction.high_bidder_id, "won", auction_id)
                    crud.add_notification(db, auction.seller_id, "auction_sold", auction_id)
                    txn_id = txn.id
                for watcher_id in crud.list_watcher_ids(db, auction_id):
                    if watcher_id not in (auction.seller_id, auction.high_bidder_id):
                        crud.add_notification(db, watcher_id, "watched_ended", auction_id)
        except WriteConflict as e:
            logger.warning("Skipping close-out: %s", e)
            return SettlementResult.fail(SettlementError.CONFLICT, str(e))
        return SettlementResult(success=True, transaction_id=txn_id)

    def expire_listing(self, db: Session, listing_id: str) -> SettlementResult:
        now = self.clock()
        listing = crud.get_listing(db, listing_id)
        if listing is None:
            return SettlementResult.fail(SettlementError.NOT_FOUND, "Listing not found")
        if listing.status != AVAILABLE or listing.expires_at is None or as_utc(listing.expires_at) >= now:
            return SettlementResult.fail(SettlementError.NOT_AVAILABLE, "Listing has not expired")
        try:
            with atomic(db):
                if not crud.cancel_listing_if_available(db, listing_id, now):
                    raise WriteConflict(f"listing {listing_id} changed during expiry")
                crud.reject_open_offers(db, listing_id, now)
                crud.add_notification(db, listing.seller_id, "listing_expired", listing_id)
        except WriteConflict as e:
            logger.warning("Skipping expiry: %s", e)
            return SettlementResult.fail(SettlementError.CONFLICT, str(e))
        return SettlementResult(success=True)

    def expire_offer(self, db: Session, offer_id: str) -> SettlementResult:
        now = self.clock()
        offer = crud.get_offer(db, offer_id)
        if offer is None:
            return SettlementResult.fail(SettlementError.NOT_FOUND, "Offer not found")
        if offer.status not in ACTIVE_OFFER_STATUSES or as_utc(offer.expires_at) >= now:
            return SettlementResult.fail(SettlementError.NOT_AVAILABLE, "Offer has not expired")
        try:
            with atomic(db):
                if not crud.transition_offer(db, offer.id, offer.status, offer.round_number, now, status=EXPIRED):
                    raise WriteConflict(f"offer {offer.id} changed during expiry")
                crud.add_notification(db, offer.buyer_id, "offer_expired", offer.listing_id)
        except WriteConflict as e:
            logger.warning("Skipping offer expiry: %s", e)
            return SettlementResult.fail(SettlementError.CONFLICT, str(e))
        return SettlementResult(success=True, offer_id=offer.id)

    # --- plumbing ---------------------------------------------------------

    def _run(self, db, attempt, args, exhausted, exhausted_message):
        retrying = retry(
            WriteConflict,
            tries=self.config.max_attempts,
            delay=self.config.backoff_seconds,
            logger=logger,
        )(attempt)
        try:
            return retrying(db, *args)
        except WriteConflict as e:
            logger.warning("Giving up after %d attempts: %s", self.config.max_attempts, e)
            return SettlementResult.fail(exhausted, exhausted_message)
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Store failure during %s%r", attempt.__name__, args)
            return SettlementResult.fail(SettlementError.STORE_UNAVAILABLE, "Store unavailable")


@contextmanager
def atomic(db):
    """Commit on clean exit, roll back otherwise.

    A unique-constraint violation on the ledger means a concurrent sale got
    there first, so it is reported as a WriteConflict.
    """
    try:
        yield db
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise WriteConflict(str(e.orig)) from e
    except BaseException:
        db.rollback()
        raise

# tests/test_services.py
from datetime import timedelta
from decimal import Decimal

from app import crud, models, services


def test_ended_auction_with_bids_is_sold_to_high_bidder(db, settlement, make_profile, make_auction, clock):
    seller = make_profile("seller")
    bidder = make_profile("bidder")
    auction_id = make_auction(seller, ends_in=timedelta(hours=1))
    assert settlement.place_bid(db, auction_id, bidder, 42).success
    clock.advance(hours=2)

    summary = services.process_ended_auctions(db, settlement)

    assert summary == {"processed": 1, "errors": []}
    auction = crud.get_auction(db, auction_id)
    assert auction.status == models.SOLD
    assert auction.winner_id == bidder
    assert auction.winning_bid == Decimal("42.00")
    assert auction.payment_status == "pending"
    txn = crud.get_transaction_for_item(db, models.AUCTION, auction_id)
    assert txn.buyer_id == bidder
    assert [n.type for n in crud.list_notifications(db, bidder)] == ["won"]


def test_ended_auction_without_bids_ends_unsold(db, settlement, make_profile, make_auction, clock):
    seller = make_profile("seller")
    auction_id = make_auction(seller, ends_in=timedelta(hours=1))
    clock.advance(hours=2)

    summary = services.process_ended_auctions(db, settlement)

    assert summary["processed"] == 1
    assert crud.get_auction(db, auction_id).status == models.ENDED_UNSOLD
    assert crud.get_transaction_for_item(db, models.AUCTION, auction_id) is None
    assert [n.type for n in crud.list_notifications(db, seller)] == ["ended"]


def test_running_auctions_are_left_alone(db, settlement, make_profile, make_auction):
    seller = make_profile("seller")
    auction_id = make_auction(seller)
    assert services.process_ended_auctions(db, settlement)["processed"] == 0
    assert crud.get_auction(db, auction_id).status == models.OPEN


def test_close_out_loses_race_to_late_write(db, settlement, make_profile, make_auction, clock, monkeypatch):
    seller = make_profile("seller")
    auction_id = make_auction(seller, ends_in=timedelta(hours=1))
    clock.advance(hours=2)
    monkeypatch.setattr(crud, "close_auction_unsold", lambda *args, **kwargs: False)

    summary = services.process_ended_auctions(db, settlement)

    assert summary == {"processed": 0, "errors": []}
    assert crud.get_auction(db, auction_id).status == models.OPEN


def test_expire_listings(db, settlement, make_profile, make_listing, clock):
    seller = make_profile("seller")
    soon = make_listing(seller, expires_in=timedelta(hours=3))
    later = make_listing(seller, expires_in=timedelta(days=10))

    first = services.expire_listings(db, settlement)
    assert first == {"expired": 0, "expiring": 1, "errors": []}
    # warning goes out once
    assert services.expire_listings(db, settlement)["expiring"] == 0

    clock.advance(hours=4)
    second = services.expire_listings(db, settlement)
    assert second["expired"] == 1
    assert crud.get_listing(db, soon).status == models.CANCELLED
    assert crud.get_listing(db, later).status == models.AVAILABLE
    types = sorted(n.type for n in crud.list_notifications(db, seller))
    assert types == ["listing_expired", "listing_expiring"]


def test_sold_listing_never_expires(db, settlement, make_profile, make_listing, clock):
    seller = make_profile("seller")
    buyer = make_profile("buyer")
    listing_id = make_listing(seller, expires_in=timedelta(hours=1))
    assert settlement.purchase_fixed_price_listing(db, listing_id, buyer).success
    clock.advance(hours=2)
    assert services.expire_listings(db, settlement)["expired"] == 0
    assert crud.get_listing(db, listing_id).status == models.SOLD


def test_run_lifecycle_jobs_summary(db, settlement):
    summary = services.run_lifecycle_jobs(db, settlement)
    assert summary == {
        "auctions": {"processed": 0, "errors": []},
        "listings": {"expired": 0, "expiring": 0, "errors": []},
        "offers": {"expired": 0, "errors": []},
    }


def test_expire_offers(db, settlement, make_profile, make_listing, clock):
    seller = make_profile("seller")
    buyer_a = make_profile("buyer-a")
    buyer_b = make_profile("buyer-b")
    listing_id = make_listing(seller, price=100, accepts_offers=True)
    pending = settlement.create_offer(db, listing_id, buyer_a, 70).offer_id
    countered = settlement.create_offer(db, listing_id, buyer_b, 75).offer_id
    clock.advance(hours=24)
    settlement.respond_to_offer(db, countered, seller, "counter", 90)

    clock.advance(hours=25)
    assert services.expire_offers(db, settlement) == {"expired": 1, "errors": []}
    assert crud.get_offer(db, pending).status == models.EXPIRED
    assert crud.get_offer(db, countered).status == models.COUNTERED

    clock.advance(hours=24)
    assert services.expire_offers(db, settlement) == {"expired": 1, "errors": []}
    assert crud.get_offer(db, countered).status == models.EXPIRED
    assert crud.get_listing(db, listing_id).status == models.AVAILABLE


def test_listing_expiry_closes_open_offers(db, settlement, make_profile, make_listing, clock):
    seller = make_profile("seller")
    buyer = make_profile("buyer")
    listing_id = make_listing(seller, accepts_offers=True, expires_in=timedelta(days=1))
    offer_id = settlement.create_offer(db, listing_id, buyer, 15).offer_id
    clock.advance(days=2)

    summary = services.run_lifecycle_jobs(db, settlement)

    assert summary["listings"]["expired"] == 1
    assert crud.get_offer(db, offer_id).status == models.AUTO_REJECTED
    assert summary["offers"]["expired"] == 0


def test_watchers_hear_about_close_out(db, settlement, make_profile, make_auction, clock):
    seller = make_profile("seller")
    bidder = make_profile("bidder")
    watcher = make_profile("watcher")
    auction_id = make_auction(seller, ends_in=timedelta(hours=1))
    for profile_id in (watcher, bidder, seller):
        crud.add_to_watchlist(db, profile_id, auction_id)
    assert settlement.place_bid(db, auction_id, bidder, 25).success
    clock.advance(hours=2)

    services.process_ended_auctions(db, settlement)

    watched = db.query(models.Notification).filter(models.Notification.type == "watched_ended").all()
    assert [n.profile_id for n in watched] == [watcher]


def test_seller_reputation():
    assert services.seller_reputation(0, 0) == (0, "neutral")
    assert services.seller_reputation(4, 1) == (80, "hero")
    assert services.seller_reputation(1, 1) == (50, "neutral")
    assert services.seller_reputation(1, 2) == (33, "villain")


def test_seller_profile(db, make_profile):
    seller = make_profile("seller", username="big_apple_comics")
    for i, kind in enumerate(["positive", "positive", "negative"]):
        crud.add_rating(db, seller, make_profile(f"buyer-{i}"), models.LISTING, f"L{i}", kind)

    profile = services.get_seller_profile(db, seller)

    assert profile["username"] == "big_apple_comics"
    assert (profile["positive_ratings"], profile["negative_ratings"], profile["total_ratings"]) == (2, 1, 3)
    assert profile["positive_percentage"] == 67
    assert profile["reputation"] == "neutral"
    assert services.get_seller_profile(db, "nope") is None

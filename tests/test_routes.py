# tests/test_routes.py
from datetime import timedelta

from app import crud, models
from app.config import settings
from app.main import app
from app.services import get_engine
from app.settlement import SettlementResult, SettlementError


def auth(external_id):
    return {settings.auth_header: external_id}


def signup(client, external_id, username=None):
    body = {"username": username} if username else None
    res = client.post("/api/profile", json=body, headers=auth(external_id))
    assert res.status_code == 200
    return res.json()["id"]


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_purchase_without_identity_touches_nothing(client, db_calls):
    res = client.post("/api/listings/L1/purchase")
    assert res.status_code == 401
    assert res.json() == {"error": "Unauthorized"}
    assert db_calls["count"] == 0


def test_buy_now_without_identity(client, db_calls):
    res = client.post("/api/auctions/A1/buy-now", headers={settings.auth_header: "   "})
    assert res.status_code == 401
    assert db_calls["count"] == 0


def test_missing_profile_is_404(client):
    res = client.post("/api/listings/L1/purchase", headers=auth("ghost"))
    assert res.status_code == 404
    assert res.json() == {"error": "Profile not found"}


def test_profile_is_created_once(client):
    first = signup(client, "clerk_1", username="spidey_fan")
    second = signup(client, "clerk_1")
    assert first == second
    res = client.get("/api/username/current", headers=auth("clerk_1"))
    assert res.json() == {"username": "spidey_fan", "displayPreference": "username_only"}


def test_username_taken(client):
    signup(client, "clerk_1", username="taken")
    res = client.post("/api/profile", json={"username": "taken"}, headers=auth("clerk_2"))
    assert res.status_code == 409


def test_listing_purchase_flow(client):
    signup(client, "seller")
    signup(client, "buyer-a")
    signup(client, "buyer-b")
    res = client.post("/api/listings", json={"title": "X-Men #1 CGC 4.0", "price": 20, "shippingCost": 5},
                      headers=auth("seller"))
    assert res.status_code == 201
    listing_id = res.json()["id"]
    assert res.json()["status"] == "available"

    bought = client.post(f"/api/listings/{listing_id}/purchase", headers=auth("buyer-a"))
    assert bought.status_code == 200
    assert bought.json()["success"] is True
    assert bought.json()["transactionId"]

    again = client.post(f"/api/listings/{listing_id}/purchase", headers=auth("buyer-b"))
    assert again.status_code == 400
    assert again.json()["error"] == "not_available"

    assert client.get(f"/api/listings/{listing_id}").json()["status"] == "sold"


def test_self_purchase_rejected(client):
    signup(client, "seller")
    listing_id = client.post("/api/listings", json={"title": "Hulk #181", "price": 500},
                             headers=auth("seller")).json()["id"]
    res = client.post(f"/api/listings/{listing_id}/purchase", headers=auth("seller"))
    assert res.status_code == 400
    assert res.json()["error"] == "self_purchase_not_allowed"


def test_auction_bidding_and_buy_now(client):
    signup(client, "seller")
    signup(client, "bidder")
    signup(client, "buyer")
    res = client.post(
        "/api/auctions",
        json={"title": "Fantastic Four #52", "startingPrice": 10, "buyItNowPrice": 100, "durationDays": 7},
        headers=auth("seller"),
    )
    assert res.status_code == 201
    auction_id = res.json()["id"]

    bid = client.post(f"/api/auctions/{auction_id}/bid", json={"amount": 50}, headers=auth("bidder"))
    assert bid.status_code == 200
    assert bid.json()["currentBid"] == 50

    low = client.post(f"/api/auctions/{auction_id}/bid", json={"amount": 40}, headers=auth("buyer"))
    assert low.status_code == 400
    assert low.json()["error"] == "outbid"

    history = client.get(f"/api/auctions/{auction_id}/bids").json()
    assert [b["amount"] for b in history] == [50]

    sold = client.post(f"/api/auctions/{auction_id}/buy-now", headers=auth("buyer"))
    assert sold.status_code == 200
    assert sold.json()["success"] is True
    auction = client.get(f"/api/auctions/{auction_id}").json()
    assert auction["status"] == "sold"
    assert auction["winningBid"] == 100


def test_auction_validation(client):
    signup(client, "seller")
    res = client.post(
        "/api/auctions",
        json={"title": "ASM #129", "startingPrice": 100, "buyItNowPrice": 50, "durationDays": 7},
        headers=auth("seller"),
    )
    assert res.status_code == 422
    res = client.post(
        "/api/auctions",
        json={"title": "ASM #129", "startingPrice": 100, "durationDays": 30},
        headers=auth("seller"),
    )
    assert res.status_code == 422


def test_list_active_auctions(client):
    signup(client, "seller")
    for title, price, bin_price in [("A", 10, None), ("B", 200, 400), ("C", 50, None)]:
        client.post("/api/auctions", json={"title": title, "startingPrice": price, "buyItNowPrice": bin_price,
                                           "durationDays": 3}, headers=auth("seller"))
    page = client.get("/api/auctions", params={"sortBy": "price_high"}).json()
    assert page["total"] == 3
    assert [a["title"] for a in page["auctions"]] == ["B", "C", "A"]
    only_bin = client.get("/api/auctions", params={"hasBuyItNow": "true"}).json()
    assert [a["title"] for a in only_bin["auctions"]] == ["B"]


def test_suspended_profile_cannot_buy(client, db, make_profile, make_auction):
    seller = make_profile("seller")
    make_profile("banned", suspended=True)
    auction_id = make_auction(seller, buy_it_now_price=100)
    res = client.post(f"/api/auctions/{auction_id}/buy-now", headers=auth("banned"))
    assert res.status_code == 403
    assert res.json()["error"] == "account_suspended"
    assert crud.get_auction(db, auction_id).status == models.OPEN


def test_store_unavailable_is_generic_500(client):
    signup(client, "buyer")

    class DownEngine:
        def execute_buy_it_now(self, db, auction_id, buyer_id):
            return SettlementResult.fail(SettlementError.STORE_UNAVAILABLE, "connection refused on 10.0.0.5")

    app.dependency_overrides[get_engine] = lambda: DownEngine()
    res = client.post("/api/auctions/A1/buy-now", headers=auth("buyer"))
    assert res.status_code == 500
    assert "10.0.0.5" not in res.text


def test_unexpected_error_is_500(client):
    signup(client, "buyer")

    class BrokenEngine:
        def purchase_fixed_price_listing(self, db, listing_id, buyer_id):
            raise RuntimeError("boom")

    app.dependency_overrides[get_engine] = lambda: BrokenEngine()
    res = client.post("/api/listings/L1/purchase", headers=auth("buyer"))
    assert res.status_code == 500
    assert res.json() == {"error": "Failed to complete purchase"}


def test_cancel_listing_route(client):
    signup(client, "seller")
    signup(client, "other")
    listing_id = client.post("/api/listings", json={"title": "Daredevil #1", "price": 300},
                             headers=auth("seller")).json()["id"]
    assert client.post(f"/api/listings/{listing_id}/cancel", headers=auth("other")).status_code == 403
    assert client.post(f"/api/listings/{listing_id}/cancel", headers=auth("seller")).status_code == 200
    assert client.get(f"/api/listings/{listing_id}").json()["status"] == "cancelled"


def test_unread_message_count(client):
    signup(client, "alice")
    bob = signup(client, "bob")
    assert client.get("/api/messages/unread-count", headers=auth("bob")).json() == {"count": 0}
    res = client.post("/api/messages", json={"recipientId": bob, "content": "Is the slab cracked?"},
                      headers=auth("alice"))
    assert res.status_code == 201
    assert client.get("/api/messages/unread-count", headers=auth("bob")).json() == {"count": 1}
    assert client.get("/api/messages/unread-count", headers=auth("alice")).json() == {"count": 0}


def test_unread_count_requires_identity(client):
    assert client.get("/api/messages/unread-count").status_code == 401
    assert client.get("/api/username/current").status_code == 401


def test_notifications(client, make_profile, make_listing):
    seller = make_profile("seller")
    signup(client, "buyer")
    listing_id = make_listing(seller)
    client.post(f"/api/listings/{listing_id}/purchase", headers=auth("buyer"))

    page = client.get("/api/notifications", headers=auth("buyer")).json()
    assert page["unreadCount"] == 1
    assert page["notifications"][0]["type"] == "won"
    client.post("/api/notifications/read", headers=auth("buyer"))
    assert client.get("/api/notifications", headers=auth("buyer")).json()["unreadCount"] == 0


def test_cron_fails_closed(client, monkeypatch):
    monkeypatch.setattr(settings, "cron_secret", None)
    assert client.post("/api/cron/process-auctions", headers={"Authorization": "Bearer "}).status_code == 401
    monkeypatch.setattr(settings, "cron_secret", "s3cret")
    assert client.post("/api/cron/process-auctions", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_cron_processes_ended_auctions(client, db, make_profile, make_auction, settlement, clock, monkeypatch):
    monkeypatch.setattr(settings, "cron_secret", "s3cret")
    seller = make_profile("seller")
    bidder = make_profile("bidder")
    auction_id = make_auction(seller, ends_in=timedelta(hours=1))
    assert settlement.place_bid(db, auction_id, bidder, 30).success
    clock.advance(hours=2)

    res = client.post("/api/cron/process-auctions", headers={"Authorization": "Bearer s3cret"})

    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    assert body["auctions"] == {"processed": 1, "errors": []}
    assert crud.get_auction(db, auction_id).status == models.SOLD


def test_bid_amount_must_be_finite_whole_cents(client, db, make_profile, make_auction):
    seller = make_profile("seller")
    signup(client, "bidder")
    auction_id = make_auction(seller)
    url = f"/api/auctions/{auction_id}/bid"
    raw = {**auth("bidder"), "Content-Type": "application/json"}

    assert client.post(url, json={"amount": 1e30}, headers=auth("bidder")).status_code == 422
    assert client.post(url, json={"amount": 10000000000}, headers=auth("bidder")).status_code == 422
    assert client.post(url, content='{"amount": Infinity}', headers=raw).status_code == 422
    assert client.post(url, content='{"amount": NaN}', headers=raw).status_code == 422
    assert client.post(url, json={"amount": 60.006}, headers=auth("bidder")).status_code == 422
    auction = crud.get_auction(db, auction_id)
    assert auction.bid_count == 0
    assert auction.current_bid is None

    ok = client.post(url, json={"amount": 60.01}, headers=auth("bidder"))
    assert ok.status_code == 200
    assert ok.json()["currentBid"] == 60.01


def test_listing_price_must_be_whole_cents_within_range(client):
    signup(client, "seller")
    for price in (1e12, 19.999):
        res = client.post("/api/listings", json={"title": "Hulk #1", "price": price}, headers=auth("seller"))
        assert res.status_code == 422
    res = client.post("/api/listings", json={"title": "Hulk #1", "price": 20, "minOfferAmount": 25},
                      headers=auth("seller"))
    assert res.status_code == 422


def test_concurrent_first_signup_returns_existing_profile(client, db, session_factory, monkeypatch):
    real_lookup = crud.get_profile_by_external_id
    calls = {"count": 0}
    winner = {}

    def lookup_then_lose_race(session, external_id):
        calls["count"] += 1
        if calls["count"] == 1:
            other = session_factory()
            profile = models.Profile(external_id=external_id)
            other.add(profile)
            other.commit()
            winner["id"] = profile.id
            other.close()
            return None
        return real_lookup(session, external_id)

    monkeypatch.setattr(crud, "get_profile_by_external_id", lookup_then_lose_race)
    res = client.post("/api/profile", headers=auth("clerk_1"))

    assert res.status_code == 200
    assert res.json()["id"] == winner["id"]
    assert db.query(models.Profile).filter(models.Profile.external_id == "clerk_1").count() == 1


def test_reading_conversation_clears_unread_count(client):
    alice = signup(client, "alice")
    bob = signup(client, "bob")
    for text in ("Is the slab cracked?", "Any pressing?"):
        res = client.post("/api/messages", json={"recipientId": bob, "content": text}, headers=auth("alice"))
        assert res.status_code == 201
    assert client.get("/api/messages/unread-count", headers=auth("bob")).json() == {"count": 2}

    inbox = client.get("/api/messages", headers=auth("bob")).json()
    assert len(inbox) == 1
    assert inbox[0]["otherParticipantId"] == alice
    assert inbox[0]["unreadCount"] == 2
    assert inbox[0]["lastMessage"]["content"] == "Any pressing?"
    conversation_id = inbox[0]["id"]

    # the sender opening the thread does not mark their own messages read
    client.get(f"/api/messages/{conversation_id}", headers=auth("alice"))
    assert client.get("/api/messages/unread-count", headers=auth("bob")).json() == {"count": 2}

    page = client.get(f"/api/messages/{conversation_id}", headers=auth("bob"))
    assert page.status_code == 200
    assert page.json()["otherParticipantId"] == alice
    assert [m["content"] for m in page.json()["messages"]] == ["Is the slab cracked?", "Any pressing?"]
    assert client.get("/api/messages/unread-count", headers=auth("bob")).json() == {"count": 0}
    assert client.get("/api/messages", headers=auth("bob")).json()[0]["unreadCount"] == 0


def test_conversation_access(client):
    signup(client, "alice")
    bob = signup(client, "bob")
    signup(client, "mallory")
    client.post("/api/messages", json={"recipientId": bob, "content": "Still for sale?"}, headers=auth("alice"))
    conversation_id = client.get("/api/messages", headers=auth("bob")).json()[0]["id"]

    res = client.get(f"/api/messages/{conversation_id}", headers=auth("mallory"))
    assert res.status_code == 403
    assert res.json() == {"error": "Access denied"}
    assert client.get("/api/messages/nope", headers=auth("bob")).status_code == 404
    assert client.get("/api/messages/unread-count", headers=auth("bob")).json() == {"count": 1}


def test_set_username(client):
    signup(client, "clerk_1")
    signup(client, "clerk_2", username="taken_name")

    res = client.post("/api/username", json={"username": "  Silver_Age ", "displayPreference": "both"},
                      headers=auth("clerk_1"))
    assert res.status_code == 200
    assert res.json() == {"username": "silver_age", "displayPreference": "both"}
    # keeping your own name is not a clash
    assert client.post("/api/username", json={"username": "silver_age"}, headers=auth("clerk_1")).status_code == 200

    assert client.post("/api/username", json={"username": "taken_name"}, headers=auth("clerk_1")).status_code == 409
    assert client.post("/api/username", json={"username": "no spaces"}, headers=auth("clerk_1")).status_code == 422

    check = client.get("/api/username", params={"username": "Taken_Name"}).json()
    assert check == {"available": False, "normalized": "taken_name", "error": None}
    assert client.get("/api/username", params={"username": "fresh_name"}).json()["available"] is True
    too_short = client.get("/api/username", params={"username": "ab"}).json()
    assert too_short["available"] is False
    assert too_short["error"]

    assert client.delete("/api/username", headers=auth("clerk_1")).json() == {"success": True}
    assert client.get("/api/username/current", headers=auth("clerk_1")).json() == {
        "username": None, "displayPreference": "username_only",
    }


def test_offer_negotiation_flow(client, db):
    signup(client, "seller")
    buyer = signup(client, "buyer")
    signup(client, "stranger")
    res = client.post(
        "/api/listings",
        json={"title": "Giant-Size X-Men #1", "price": 1000, "acceptsOffers": True, "minOfferAmount": 600},
        headers=auth("seller"),
    )
    assert res.status_code == 201
    listing_id = res.json()["id"]
    assert res.json()["acceptsOffers"] is True

    low = client.post(f"/api/listings/{listing_id}/offers", json={"amount": 500}, headers=auth("buyer"))
    assert low.status_code == 400
    assert low.json()["error"] == "offer_too_low"

    made = client.post(f"/api/listings/{listing_id}/offers", json={"amount": 800}, headers=auth("buyer"))
    assert made.status_code == 201
    offer = made.json()["offer"]
    assert offer["status"] == "pending"
    assert offer["buyerId"] == buyer

    assert client.get(f"/api/listings/{listing_id}/offers", headers=auth("stranger")).status_code == 403
    assert [o["id"] for o in client.get(f"/api/listings/{listing_id}/offers",
                                        headers=auth("seller")).json()] == [offer["id"]]
    assert client.patch(f"/api/offers/{offer['id']}", json={"action": "counter"},
                        headers=auth("seller")).status_code == 422

    countered = client.patch(f"/api/offers/{offer['id']}", json={"action": "counter", "counterAmount": 900},
                             headers=auth("seller"))
    assert countered.status_code == 200
    assert countered.json()["offer"]["status"] == "countered"
    assert countered.json()["offer"]["counterAmount"] == 900
    assert client.get("/api/offers", headers=auth("buyer")).json()[0]["roundNumber"] == 2

    accepted = client.post(f"/api/offers/{offer['id']}", json={"action": "accept"}, headers=auth("buyer"))
    assert accepted.status_code == 200
    assert accepted.json()["transactionId"]
    assert accepted.json()["offer"]["status"] == "accepted"

    listing = client.get(f"/api/listings/{listing_id}").json()
    assert listing["status"] == "sold"
    assert listing["buyerId"] == buyer
    assert listing["soldPrice"] == 900
    assert listing["price"] == 1000


def test_my_auctions_won_and_bids(client):
    signup(client, "seller")
    signup(client, "bidder")
    assert client.get("/api/auctions/mine").status_code == 401
    ids = []
    for title, bin_price in [("Tales of Suspense #39", None), ("Showcase #4", 500)]:
        res = client.post("/api/auctions", json={"title": title, "startingPrice": 10, "buyItNowPrice": bin_price,
                                                 "durationDays": 7}, headers=auth("seller"))
        ids.append(res.json()["id"])
    bidding_on, buying = ids
    client.post(f"/api/auctions/{bidding_on}/bid", json={"amount": 15}, headers=auth("bidder"))
    client.post(f"/api/auctions/{buying}/buy-now", headers=auth("bidder"))

    mine = client.get("/api/auctions/mine", headers=auth("seller")).json()
    assert {a["id"] for a in mine} == set(ids)
    sold = client.get("/api/auctions/mine", params={"status": "sold"}, headers=auth("seller")).json()
    assert [a["id"] for a in sold] == [buying]
    assert [a["id"] for a in client.get("/api/auctions/won", headers=auth("bidder")).json()] == [buying]
    bids = client.get("/api/bids/mine", headers=auth("bidder")).json()
    assert [(b["auctionId"], b["amount"]) for b in bids] == [(bidding_on, 15)]


def test_watchlist(client, make_profile, make_auction):
    seller = make_profile("seller")
    signup(client, "watcher")
    auction_id = make_auction(seller)

    for _ in range(2):
        res = client.post("/api/watchlist", json={"auctionId": auction_id}, headers=auth("watcher"))
        assert res.json() == {"success": True}
    items = client.get("/api/watchlist", headers=auth("watcher")).json()
    assert len(items) == 1
    assert items[0]["auction"]["title"] == "Fantastic Four #48 CGC 6.0"
    assert client.get(f"/api/watchlist/{auction_id}", headers=auth("watcher")).json() == {"watching": True}
    assert client.post("/api/watchlist", json={"auctionId": "nope"}, headers=auth("watcher")).status_code == 404

    client.delete(f"/api/watchlist/{auction_id}", headers=auth("watcher"))
    assert client.get(f"/api/watchlist/{auction_id}", headers=auth("watcher")).json() == {"watching": False}
    assert client.get("/api/watchlist", headers=auth("watcher")).json() == []


def test_seller_ratings(client, make_profile, make_listing):
    seller = make_profile("seller", username="big_apple_comics")
    signup(client, "buyer")
    signup(client, "stranger")
    listing_id = make_listing(seller)
    url = f"/api/sellers/{seller}/ratings"
    body = {"itemId": listing_id, "itemKind": "listing", "ratingType": "positive", "comment": "Fast shipping"}

    assert client.post(url, json=body, headers=auth("buyer")).status_code == 403
    client.post(f"/api/listings/{listing_id}/purchase", headers=auth("buyer"))
    assert client.post(url, json=body, headers=auth("stranger")).status_code == 403

    res = client.post(url, json=body, headers=auth("buyer"))
    assert res.status_code == 201
    assert res.json()["ratingType"] == "positive"
    assert client.post(url, json=body, headers=auth("buyer")).status_code == 409

    page = client.get(url).json()
    assert page["seller"]["username"] == "big_apple_comics"
    assert page["seller"]["totalRatings"] == 1
    assert page["seller"]["positivePercentage"] == 100
    assert page["seller"]["reputation"] == "hero"
    assert [r["comment"] for r in page["ratings"]] == ["Fast shipping"]
    assert client.get("/api/sellers/nope").status_code == 404

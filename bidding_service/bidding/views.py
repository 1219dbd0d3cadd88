import json
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from django.apps import apps
from django.http import HttpRequest, JsonResponse, StreamingHttpResponse
from django.utils import timezone
from django.utils.dateparse import parse_datetime
from django.views.decorators.csrf import csrf_exempt

from .conf import bidding_settings
from .models import MONEY, Auction, Bid
from .services.errors import (
    BiddingError,
    Busy,
    InvalidTransition,
    NotFound,
    PermissionDenied,
    StaleBid,
)

ERROR_STATUS = {
    NotFound: 404,
    PermissionDenied: 403,
    StaleBid: 409,
    InvalidTransition: 409,
    Busy: 503,
}


def _engine():
    return apps.get_app_config("bidding").engine


def _error_response(exc: BiddingError) -> JsonResponse:
    status = 400
    for error_type, code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            status = code
            break
    return JsonResponse(exc.as_dict(), status=status)


def _read_json(request: HttpRequest) -> Dict[str, Any]:
    payload = json.loads(request.body.decode("utf-8") or "{}")
    if not isinstance(payload, dict):
        raise ValueError("JSON body must be an object")
    return payload


MAX_AMOUNT = Decimal("10") ** (MONEY["max_digits"] - MONEY["decimal_places"])
CENT = Decimal("0.01")


def _money(value: Any) -> Decimal:
    """Parse an amount that fits the money columns, rounded to cents."""
    try:
        amount = Decimal(str(value))
        if not amount.is_finite() or abs(amount) >= MAX_AMOUNT:
            raise ValueError(f"Invalid amount: {value!r}")
        return amount.quantize(CENT)
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {value!r}")


def _optional_money(value: Any) -> Optional[Decimal]:
    return None if value is None else _money(value)


def _datetime(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    dt = parse_datetime(str(value))
    if dt is None:
        raise ValueError(f"Invalid datetime: {value!r}")
    # Treat naive datetimes as local time, like the HTML datetime-local input sends them.
    if timezone.is_naive(dt):
        dt = timezone.make_aware(dt, timezone.get_current_timezone())
    return dt


def _time_remaining_seconds(auction: Auction) -> int:
    """
    For UI clarity:
    - pending: seconds until start
    - active: seconds until end
    - completed / cancelled: 0
    """
    now = timezone.now()
    if auction.status == Auction.Status.PENDING:
        return max(0, int((auction.start_time - now).total_seconds()))
    if auction.status == Auction.Status.ACTIVE:
        return max(0, int((auction.end_time - now).total_seconds()))
    return 0


def _bid_json(bid: Bid) -> Dict[str, Any]:
    return {
        "id": bid.id,
        "bidder_id": bid.bidder_id,
        "amount": float(bid.amount),
        "is_auto_bid": bid.is_auto_bid,
        "timestamp": bid.created_at.isoformat(),
    }


def _auction_json(auction: Auction) -> Dict[str, Any]:
    return {
        "id": auction.id,
        "item_id": auction.item_id,
        "seller_id": auction.seller_id,
        "status": auction.status,
        "base_price": float(auction.base_price),
        "current_price": float(auction.current_price),
        "buy_now_price": float(auction.buy_now_price) if auction.buy_now_price is not None else None,
        "entry_fee": float(auction.entry_fee),
        "start_time": auction.start_time.isoformat(),
        "end_time": auction.end_time.isoformat(),
        "last_bid_time": auction.last_bid_time.isoformat() if auction.last_bid_time else None,
        "winner_id": auction.winner_id,
        "time_remaining_seconds": _time_remaining_seconds(auction),
    }


def _method_not_allowed(allowed: str) -> JsonResponse:
    return JsonResponse({"error": f"Use {allowed}"}, status=405)


# --- Auctions ---------------------------------------------------------------

@csrf_exempt
def api_auctions(request: HttpRequest):
    """
    GET  -> list auctions, optional ?status=active|pending|completed|cancelled
    POST -> create an auction from an approved item:
    {
      "item_id": 1,
      "seller_id": 2,
      "base_price": 10,
      "end_time": "2026-10-20T18:00:00",
      "entry_fee": 5,            (optional)
      "start_time": "...",       (optional, default now)
      "buy_now_price": 200       (optional)
    }
    """
    if request.method == "GET":
        qs = Auction.objects.all().order_by("-id")
        status_filter = request.GET.get("status")
        if status_filter:
            qs = qs.filter(status=status_filter)
        return JsonResponse({"auctions": [_auction_json(a) for a in qs]})

    if request.method != "POST":
        return _method_not_allowed("GET or POST")

    try:
        payload = _read_json(request)
        item_id = int(payload["item_id"])
        seller_id = int(payload["seller_id"])
        base_price = _money(payload["base_price"])
        end_time = _datetime(payload["end_time"])
        entry_fee = _money(payload.get("entry_fee", 0))
        start_time = _datetime(payload.get("start_time"))
        buy_now_price = _optional_money(payload.get("buy_now_price"))
    except KeyError as exc:
        return JsonResponse({"error": f"Missing required field: {exc.args[0]}"}, status=400)
    except (TypeError, ValueError):
        return JsonResponse({"error": "Invalid JSON body or field types"}, status=400)

    if end_time is None:
        return JsonResponse({"error": "Missing required field: end_time"}, status=400)

    try:
        auction = _engine().create_auction(
            item_id,
            seller_id,
            base_price,
            end_time,
            entry_fee=entry_fee,
            start_time=start_time,
            buy_now_price=buy_now_price,
        )
    except BiddingError as exc:
        return _error_response(exc)

    return JsonResponse({"auction": _auction_json(auction)}, status=201)


UPDATE_PARSERS = {
    "base_price": _money,
    "entry_fee": _money,
    "buy_now_price": _optional_money,
    "start_time": _datetime,
    "end_time": _datetime,
}


@csrf_exempt
def api_auction_state(request: HttpRequest, auction_id: int):
    """
    GET    -> auction state with participants and the last 10 bids
    PUT    -> {"actor_id": 2, "end_time": "..."}; a pending auction may also
              change base_price, entry_fee, buy_now_price and start_time
    DELETE -> {"actor_id": 2}; pending or cancelled auctions only
    """
    if request.method == "PUT":
        return _update_auction(request, auction_id)
    if request.method == "DELETE":
        return _delete_auction(request, auction_id)
    if request.method != "GET":
        return _method_not_allowed("GET, PUT or DELETE")

    try:
        auction = Auction.objects.get(id=auction_id)
    except Auction.DoesNotExist:
        return JsonResponse({"error": "not_found", "message": "Auction not found"}, status=404)

    bids = auction.bids.order_by("-id")[:10]
    return JsonResponse(
        {
            "auction": _auction_json(auction),
            "participant_ids": sorted(auction.participants.values_list("id", flat=True)),
            "recent_bids": [_bid_json(b) for b in bids],
        }
    )


def _update_auction(request: HttpRequest, auction_id: int) -> JsonResponse:
    try:
        payload = _read_json(request)
        actor_id = int(payload.pop("actor_id"))
        # Unknown fields go through untouched so the engine can name them.
        changes = {
            field: UPDATE_PARSERS[field](value) if field in UPDATE_PARSERS else value
            for field, value in payload.items()
        }
    except KeyError:
        return JsonResponse({"error": "Missing required field: actor_id"}, status=400)
    except (TypeError, ValueError):
        return JsonResponse({"error": "Invalid JSON body or field types"}, status=400)

    try:
        auction = _engine().update_auction(auction_id, actor_id, changes)
    except BiddingError as exc:
        return _error_response(exc)
    return JsonResponse({"auction": _auction_json(auction)})


def _delete_auction(request: HttpRequest, auction_id: int) -> JsonResponse:
    try:
        actor_id = int(_read_json(request)["actor_id"])
    except KeyError:
        return JsonResponse({"error": "Missing required field: actor_id"}, status=400)
    except (TypeError, ValueError):
        return JsonResponse({"error": "Invalid JSON body or actor_id"}, status=400)

    try:
        _engine().delete_auction(auction_id, actor_id)
    except BiddingError as exc:
        return _error_response(exc)
    return JsonResponse({"deleted": auction_id})


# --- Bids ---------------------------------------------------------------

@csrf_exempt
def api_auction_bids(request: HttpRequest, auction_id: int):
    """
    GET  -> the full bid log, in the order bids were accepted
    POST -> place a bid: {"bidder_id": 3, "amount": 25}
    """
    if request.method == "GET":
        if not Auction.objects.filter(id=auction_id).exists():
            return JsonResponse({"error": "not_found", "message": "Auction not found"}, status=404)
        bids = Bid.objects.filter(auction_id=auction_id).order_by("id")
        return JsonResponse({"auction_id": auction_id, "bids": [_bid_json(b) for b in bids]})

    if request.method != "POST":
        return _method_not_allowed("GET or POST")

    try:
        payload = _read_json(request)
        bidder_id = int(payload["bidder_id"])
        amount = _money(payload["amount"])
    except KeyError as exc:
        return JsonResponse({"error": f"Missing required field: {exc.args[0]}"}, status=400)
    except (TypeError, ValueError):
        return JsonResponse({"error": "Invalid types for bidder_id/amount"}, status=400)

    engine = _engine()
    try:
        bid = engine.place_bid(auction_id, bidder_id, amount)
        snapshot = engine.ledger.get_snapshot(auction_id)
    except BiddingError as exc:
        return _error_response(exc)

    return JsonResponse(
        {"status": "ACCEPTED", "bid": _bid_json(bid), "current_price": float(snapshot.current_price)},
        status=201,
    )


@csrf_exempt
def api_auto_bid(request: HttpRequest, auction_id: int):
    """POST {"bidder_id": 3, "max_amount": 80}"""
    if request.method != "POST":
        return _method_not_allowed("POST")

    try:
        payload = _read_json(request)
        bidder_id = int(payload["bidder_id"])
        max_amount = _money(payload["max_amount"])
    except KeyError as exc:
        return JsonResponse({"error": f"Missing required field: {exc.args[0]}"}, status=400)
    except (TypeError, ValueError):
        return JsonResponse({"error": "Invalid types for bidder_id/max_amount"}, status=400)

    engine = _engine()
    try:
        bid = engine.set_auto_bid(auction_id, bidder_id, max_amount)
        snapshot = engine.ledger.get_snapshot(auction_id)
    except BiddingError as exc:
        return _error_response(exc)

    return JsonResponse(
        {
            "status": "ACCEPTED",
            "bid": dict(_bid_json(bid), max_auto_bid=float(bid.max_auto_bid)),
            "current_price": float(snapshot.current_price),
        },
        status=201,
    )


# --- Participation and lifecycle ------------------------------------------

def _actor_action(request: HttpRequest, auction_id: int, field: str, action):
    if request.method != "POST":
        return _method_not_allowed("POST")
    try:
        actor_id = int(_read_json(request)[field])
    except KeyError:
        return JsonResponse({"error": f"Missing required field: {field}"}, status=400)
    except (TypeError, ValueError):
        return JsonResponse({"error": f"Invalid JSON body or {field}"}, status=400)

    try:
        result = action(auction_id, actor_id)
    except BiddingError as exc:
        return _error_response(exc)

    if result is None:
        result = Auction.objects.get(id=auction_id)
    return JsonResponse({"auction": _auction_json(result)})


@csrf_exempt
def api_join_auction(request: HttpRequest, auction_id: int):
    """POST {"user_id": 3}. Requires a paid entry fee."""
    return _actor_action(request, auction_id, "user_id", _engine().join_auction)


@csrf_exempt
def api_start_auction(request: HttpRequest, auction_id: int):
    """POST {"actor_id": 1}. Admin or owning seller."""
    return _actor_action(request, auction_id, "actor_id", _engine().start_auction)


@csrf_exempt
def api_end_auction(request: HttpRequest, auction_id: int):
    """POST {"actor_id": 1}. Admin or owning seller."""
    return _actor_action(request, auction_id, "actor_id", _engine().end_auction)


@csrf_exempt
def api_cancel_auction(request: HttpRequest, auction_id: int):
    """POST {"actor_id": 1}. Admin or owning seller."""
    return _actor_action(request, auction_id, "actor_id", _engine().cancel_auction)


@csrf_exempt
def api_end_expired(request: HttpRequest):
    """Runs one expiry sweep on demand (same code path as the scheduler)."""
    if request.method != "POST":
        return _method_not_allowed("POST")
    result = _engine().run_expiry_sweep()
    return JsonResponse(dict(result.as_dict(), message=f"Ended {result.ended_count} expired auctions"))


# --- Real-time events -------------------------------------------------------

def api_auction_events(request: HttpRequest, auction_id: int):
    """
    Server-Sent Events stream of one auction's new_bid / auction_end events.

    Delivery is best effort: a client that sees a gap in the event ids (or
    reconnects) should re-fetch /api/auctions/<id>/ for the full state.
    """
    if not Auction.objects.filter(id=auction_id).exists():
        return JsonResponse({"error": "not_found", "message": "Auction not found"}, status=404)

    subscription = _engine().fanout.subscribe(Auction.topic_for(auction_id))
    heartbeat = bidding_settings().heartbeat_interval

    def stream():
        try:
            yield ": connected\n\n"
            while True:
                event = subscription.get(timeout=heartbeat)
                if event is None:
                    if subscription.closed:
                        return
                    yield ": heartbeat\n\n"
                    continue
                yield f"id: {event.seq}\nevent: {event.type}\ndata: {json.dumps(event.payload)}\n\n"
        finally:
            subscription.close()

    response = StreamingHttpResponse(stream(), content_type="text/event-stream")
    response["Cache-Control"] = "no-cache"
    response["X-Accel-Buffering"] = "no"
    return response

from django.urls import path

from .views import (
    api_auctions,
    api_auction_state,
    api_auction_bids,
    api_auto_bid,
    api_join_auction,
    api_start_auction,
    api_end_auction,
    api_cancel_auction,
    api_end_expired,
    api_auction_events,
)

urlpatterns = [
    # Auctions
    path("api/auctions/", api_auctions, name="api_auctions"),
    path("api/auctions/end-expired/", api_end_expired, name="api_end_expired"),
    path("api/auctions/<int:auction_id>/", api_auction_state, name="api_auction_state"),

    # Bidding
    path("api/auctions/<int:auction_id>/bids/", api_auction_bids, name="api_auction_bids"),
    path("api/auctions/<int:auction_id>/autobid/", api_auto_bid, name="api_auto_bid"),
    path("api/auctions/<int:auction_id>/join/", api_join_auction, name="api_join_auction"),

    # Lifecycle
    path("api/auctions/<int:auction_id>/start/", api_start_auction, name="api_start_auction"),
    path("api/auctions/<int:auction_id>/end/", api_end_auction, name="api_end_auction"),
    path("api/auctions/<int:auction_id>/cancel/", api_cancel_auction, name="api_cancel_auction"),

    # Server-Sent Events
    path("api/auctions/<int:auction_id>/events/", api_auction_events, name="api_auction_events"),
]

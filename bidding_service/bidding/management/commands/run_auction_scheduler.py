import logging

from django.apps import apps
from django.core.management.base import BaseCommand

from bidding.conf import bidding_settings
from bidding.services.scheduler import AuctionScheduler

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Settles expired auctions and opens scheduled ones on a fixed interval."

    def add_arguments(self, parser):
        parser.add_argument("--once", action="store_true", help="Run a single sweep and exit.")
        parser.add_argument(
            "--interval",
            type=float,
            default=None,
            help="Seconds between sweeps (default: AUCTION_BIDDING['SWEEP_INTERVAL']).",
        )

    def handle(self, *args, **options):
        config = apps.get_app_config("bidding")
        interval = options["interval"] or bidding_settings().sweep_interval
        scheduler = AuctionScheduler(config.engine.sweeper, interval=interval)

        try:
            if options["once"]:
                result = scheduler.run_once()
                if result is not None:
                    self.stdout.write(
                        f"Ended {result.ended_count} expired auction(s), started {result.started_count}."
                    )
                return
            scheduler.run_forever()
        except KeyboardInterrupt:
            logger.info("Scheduler interrupted")
        finally:
            scheduler.stop()
            config.shutdown_engine()

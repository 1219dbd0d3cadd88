import atexit
import logging

from django.apps import AppConfig

logger = logging.getLogger(__name__)


class BiddingConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'bidding'

    engine = None

    def ready(self):
        # Import inside ready() to avoid touching models before the registry is populated
        from bidding.services.bidding import build_engine

        # One engine (and one event fanout) per process, closed when the
        # process exits. The scheduler command also closes it on its way out.
        self.engine = build_engine()
        atexit.register(self.shutdown_engine)
        logger.debug("Bidding engine initialised")

    def shutdown_engine(self):
        engine = self.engine
        if engine is not None and engine.fanout.running:
            engine.shutdown()

from datadog import initialize, statsd
from utils.logger import logger
import os

METRIC_NAMESPACE = "entity_resolution"


class DataDogService:
    """Reports resolution errors, counters and turn timings to DataDog through DogStatsD."""

    @staticmethod
    def init():
        """
        Point the statsd client at the DataDog agent.

        Raises:
            ValueError: If DATADOG_API_KEY is not set
        """
        api_key = os.getenv("DATADOG_API_KEY")
        if not api_key:
            logger.error("DATADOG_API_KEY not set in environment")
            raise ValueError("DATADOG_API_KEY is required for DataDog integration")

        initialize(
            api_key=api_key,
            app_key=os.getenv("DATADOG_APP_KEY", ""),
            statsd_host=os.getenv("DATADOG_HOST", "datadog-agent"),
            statsd_port=int(os.getenv("DATADOG_PORT", 8125)),
        )
        logger.info(f"DataDog metrics enabled under {METRIC_NAMESPACE}.*")

    @staticmethod
    def _tags(tags: dict = None) -> list:
        """DogStatsD "key:value" tags, always led by the environment."""
        merged = {"environment": os.getenv("ENVIRONMENT", "production")}
        merged.update({key: value for key, value in (tags or {}).items() if value is not None})
        return [f"{key}:{value}" for key, value in merged.items()]

    @staticmethod
    def capture_exception(e: Exception, tags: dict = None):
        """
        Count an exception under entity_resolution.errors, tagged with its type.

        Args:
            e (Exception): Exception to report
            tags (dict, optional): Extra tags such as model and field
        """
        error_tags = dict(tags or {}, error=type(e).__name__)
        statsd.increment(f"{METRIC_NAMESPACE}.errors", tags=DataDogService._tags(error_tags))
        logger.debug(f"Reported {type(e).__name__} to DataDog: {e}")

    @staticmethod
    def increment_metric(metric_name: str, tags: dict = None):
        statsd.increment(metric_name, tags=DataDogService._tags(tags))
        logger.debug(f"Incremented metric: {metric_name}")

    @staticmethod
    def timed(metric_name: str, tags: dict = None):
        """
        Time a block as a DogStatsD timing in milliseconds.

        Usage:
            with DataDogService.timed("entity_resolution.turn_duration"):
                ...
        """
        return statsd.timed(metric_name, tags=DataDogService._tags(tags), use_ms=True)

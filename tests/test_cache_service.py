import redis

from connector_hub.services.cache_service import CacheService, sync_log_channel


class FlakyRedis:
    """Stands in for a Redis client whose calls time out."""

    def __init__(self, error):
        self.error = error

    def publish(self, channel, message):
        raise self.error

    def ping(self):
        raise self.error


def service_with(error) -> CacheService:
    service = CacheService()
    service._client = FlakyRedis(error)
    return service


def test_publish_swallows_redis_timeouts():
    service = service_with(redis.TimeoutError("read timed out"))

    service.sync_event(7, "completed", records_processed=3)


def test_publish_swallows_other_redis_errors():
    service = service_with(redis.ResponseError("READONLY You can't write against a read only replica"))

    service.publish(sync_log_channel(7), "{}")


def test_health_check_reports_unreachable_on_timeout():
    assert service_with(redis.TimeoutError("read timed out")).health_check() is False


def test_health_check_reports_unreachable_on_connection_error():
    assert service_with(redis.ConnectionError("refused")).health_check() is False

from peer_tutoring.config import get_settings
from typing import Optional
import redis

class RedisClient:
    """
    Redis client wrapper for caching session payloads.

    Only used when USE_REDIS is enabled. Keys are namespaced per session
    so a mutation can drop exactly the entries it made stale.

    Attributes:
        redis_host (str): Redis server hostname/IP
        redis_port (int): Redis server port
        redis_password (str): Redis server password
        client (redis.StrictRedis): Redis client instance
    """

    def __init__(self):
        self.redis_host = get_settings().redis_host
        self.redis_port = get_settings().redis_port
        self.redis_password = get_settings().redis_password

        # decode_responses so cached JSON comes back as str
        self.client = redis.StrictRedis(
            host=self.redis_host,
            port=self.redis_port,
            password=self.redis_password,
            decode_responses=True
        )

    @staticmethod
    def session_key(session_id: str) -> str:
        return f"session_{session_id}"

    def set_cache(self, key: str, value: str, expiration: int):
        """
        Set a cached value with expiration time.

        Args:
            key (str): Cache key
            value (str): Value to cache
            expiration (int): Time in seconds until the cache expires
        """
        self.client.setex(key, expiration, value)

    def get_cache(self, key: str) -> Optional[str]:
        """
        Retrieve a cached value.

        Args:
            key (str): Cache key to retrieve

        Returns:
            str: The cached value if found, None otherwise
        """
        return self.client.get(key)

    def delete_cache(self, key: str):
        """
        Delete a cached value.

        Args:
            key (str): Cache key to delete
        """
        self.client.delete(key)

# Global Redis client instance
redis_client = RedisClient()

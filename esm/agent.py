"""
ESM Agent Module

Provides the default Agent run by the ESM entry point. The agent keeps a heartbeat
for its instance in Redis, competes for the leader lock, and while leader reaps
instances whose heartbeat is older than the node reconnect timeout.

The bootstrap only relies on the construct/run contract:
``Agent(config, logger)`` and ``agent.run(shutdown)``.
"""

import json
import os
import platform
import time
from datetime import UTC, datetime
from logging import Logger
from typing import Any

import redis
from redis.exceptions import LockError

from esm.config import EffectiveConfig, format_duration
from esm.errors import AgentConstructError, AgentRunError
from esm.logger import TRACE, ESMLogger
from esm.signals import ShutdownSignal


class Agent:
    """
    Redis-backed external service monitor agent.

    Encapsulates the Redis connection, the leader lock and the instance heartbeat
    registry for one ESM instance.
    """

    def __init__(self, config: EffectiveConfig, logger: Logger | None = None):
        """
        Initialize the agent and connect to Redis.

        Args:
            config: Effective configuration; owned by the agent from here on
            logger: Logger backed by the configured sink (defaults to esm.agent)

        Raises:
            AgentConstructError: If Redis connection fails after retries
        """
        self.config = config
        self.logger = logger or ESMLogger.get_logger("agent")
        self.instance_id = config.instance_id
        self._running = False
        self._is_leader = False

        # Initialize Redis connection with retry logic
        self.redis = self._connect_redis()

        lock_ttl = config.node_probe_interval.total_seconds() * 3
        self._leader_lock = self.redis.lock(
            self._key(config.leader_key), timeout=lock_ttl, blocking=False
        )

        self.logger.info(
            f"Agent '{self.instance_id}' initialized successfully "
            f"on {platform.node()} ({platform.system()})"
        )

    def _key(self, name: str) -> str:
        if self.config.datacenter:
            return f"{self.config.datacenter}/{name}"
        return name

    @property
    def instances_key(self) -> str:
        return self._key(f"{self.config.service}/instances")

    def _connect_redis(self) -> redis.Redis:
        """
        Connect to Redis with exponential backoff retry logic.

        Returns:
            Connected Redis client instance

        Raises:
            AgentConstructError: If connection fails after configured attempts
        """
        max_retries = int(os.getenv("AGENT_RETRY_MAX", 3))
        initial_delay = float(os.getenv("AGENT_RETRY_DELAY", 1))

        # Build exponential backoff list
        retry_delays = [initial_delay * (2**i) for i in range(max_retries)]

        redis_password = os.getenv("REDIS_PASSWORD", "").strip()
        host, port = self.config.redis_host, self.config.redis_port

        last_error: Exception | None = None
        for attempt in range(max_retries):
            try:
                redis_kwargs: dict[str, Any] = {
                    "host": host,
                    "port": port,
                    "db": self.config.redis_db,
                    "decode_responses": True,
                    "socket_connect_timeout": 5,
                    "socket_keepalive": True,
                }
                if redis_password:
                    redis_kwargs["password"] = redis_password

                client = redis.Redis(**redis_kwargs)
                # Test connection
                client.ping()
                self.logger.info(f"Connected to Redis at {host}:{port}")
                return client
            except (redis.ConnectionError, redis.TimeoutError) as e:
                last_error = e
                if attempt < max_retries - 1:
                    wait_time = retry_delays[attempt]
                    self.logger.warning(
                        f"Redis connection failed (attempt {attempt + 1}/{max_retries}). "
                        f"Retrying in {wait_time}s... Error: {e!s}"
                    )
                    time.sleep(wait_time)

        error_msg = (
            f"Failed to connect to Redis at {host}:{port} after {max_retries} attempts. "
            f"Last error: {last_error!s}"
        )
        self.logger.error(error_msg)
        raise AgentConstructError(error_msg) from last_error

    def run(self, shutdown: ShutdownSignal) -> None:
        """
        Main agent loop that runs until ``shutdown`` fires.

        Each probe interval refreshes the heartbeat, maintains leadership and, when
        leader, reaps stale instances. Redis errors inside a tick are logged and the
        tick is retried on the next interval.

        Args:
            shutdown: One-shot notification fired by the signal coordinator

        Raises:
            AgentRunError: If the instance cannot register itself at startup
        """
        interval = self.config.node_probe_interval.total_seconds()
        self._running = True
        self.logger.info(
            f"Starting agent loop for service '{self.config.service}' "
            f"(probe interval {format_duration(self.config.node_probe_interval)})"
        )

        try:
            try:
                self._heartbeat()
            except redis.RedisError as e:
                raise AgentRunError(
                    f"Failed to register instance '{self.instance_id}': {e!s}"
                ) from e
            self.logger.info(f"Registered instance '{self.instance_id}' in '{self.instances_key}'")

            while not shutdown.fired:
                try:
                    self._tick()
                except redis.RedisError as e:
                    self.logger.error(f"Error during agent tick: {e!s}")

                if shutdown.wait(interval):
                    break
        finally:
            self._running = False
            self.stop()

    def _tick(self) -> None:
        self._heartbeat()
        self._update_leadership()
        if self._is_leader:
            self._reap_stale_instances()

    def _heartbeat(self) -> None:
        payload = {
            "last_seen": datetime.now(UTC).isoformat(),
            "service": self.config.service,
            "datacenter": self.config.datacenter,
        }
        self.redis.hset(self.instances_key, self.instance_id, json.dumps(payload))
        self.logger.log(TRACE, f"Heartbeat sent for instance '{self.instance_id}'")

    def _update_leadership(self) -> None:
        """Extend the leader lock if held, otherwise try to take it without blocking."""
        if self._is_leader:
            try:
                self._leader_lock.reacquire()
                return
            except LockError as e:
                self._is_leader = False
                self.logger.warning(f"Lost leadership of '{self.config.leader_key}': {e!s}")

        if self._leader_lock.acquire(blocking=False, token=self.instance_id):
            self._is_leader = True
            self.logger.info(f"Acquired leadership of '{self.config.leader_key}'")

    def _reap_stale_instances(self) -> None:
        """
        Remove heartbeats of other instances not seen within the reconnect timeout.

        Entries that cannot be decoded are treated as stale.
        """
        cutoff = datetime.now(UTC) - self.config.node_reconnect_timeout

        for instance_id, raw in self.redis.hgetall(self.instances_key).items():
            if instance_id == self.instance_id:
                continue

            try:
                last_seen = datetime.fromisoformat(json.loads(raw)["last_seen"])
                if last_seen.tzinfo is None:
                    raise ValueError(f"timestamp '{last_seen.isoformat()}' has no UTC offset")
            except (ValueError, KeyError, TypeError) as e:
                self.logger.warning(f"Malformed heartbeat for instance '{instance_id}': {e!s}")
                last_seen = None

            if last_seen is None or last_seen < cutoff:
                self.redis.hdel(self.instances_key, instance_id)
                self.logger.info(
                    f"Reaped instance '{instance_id}' "
                    f"(not seen for more than {format_duration(self.config.node_reconnect_timeout)})"
                )

    def stop(self) -> None:
        """
        Release leadership, deregister this instance and close the Redis connection.

        Errors are logged; stopping never raises.
        """
        self.logger.info("Stopping agent")

        if self._is_leader:
            try:
                self._leader_lock.release()
                self.logger.info(f"Released leadership of '{self.config.leader_key}'")
            except redis.RedisError as e:
                self.logger.error(f"Error releasing leadership: {e!s}")
            self._is_leader = False

        try:
            self.redis.hdel(self.instances_key, self.instance_id)
            self.logger.debug(f"Deregistered instance '{self.instance_id}'")
        except redis.RedisError as e:
            self.logger.error(f"Error deregistering instance: {e!s}")

        try:
            self.redis.close()
            self.logger.debug("Closed Redis connection")
        except redis.RedisError as e:
            self.logger.error(f"Error closing Redis connection: {e!s}")

        self.logger.info("Agent stopped successfully")

    @property
    def is_leader(self) -> bool:
        """
        Check if this instance currently holds the leader lock.

        Returns:
            True if leader, False otherwise
        """
        return self._is_leader

    @property
    def is_running(self) -> bool:
        return self._running

from __future__ import annotations

import logging
import threading
from typing import Any

import redis

from .config import Config, resolve_queue_strategy
from .db import get_db_url
from .utils import log_event


class NotificationChannel:
    """Wake-up signal between the enqueuer and workers.

    Delivered ids are hints only: the job row is the source of truth and
    workers re-read it before doing anything.
    """

    strategy = "base"

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger("contentgen.channels")

    def publish(self, job_id: str) -> bool:
        try:
            self._publish(job_id)
        except Exception as exc:  # noqa: BLE001
            log_event(
                self.logger,
                logging.WARNING,
                "channel_publish_failed",
                strategy=self.strategy,
                job_id=job_id,
                error=str(exc),
            )
            return False
        log_event(self.logger, logging.DEBUG, "channel_published", strategy=self.strategy, job_id=job_id)
        return True

    def _publish(self, job_id: str) -> None:
        raise NotImplementedError

    def listen(self, timeout_seconds: float) -> list[str]:
        raise NotImplementedError

    def ack(self, job_id: str) -> None:
        return None

    def close(self) -> None:
        return None


class PollChannel(NotificationChannel):
    """No wake signal; workers find jobs through the periodic sweep."""

    strategy = "poll"

    def __init__(self, logger: logging.Logger | None = None) -> None:
        super().__init__(logger)
        self._closed = threading.Event()

    def _publish(self, job_id: str) -> None:
        return None

    def listen(self, timeout_seconds: float) -> list[str]:
        self._closed.wait(timeout_seconds)
        return []

    def close(self) -> None:
        self._closed.set()


class PostgresNotifyChannel(NotificationChannel):
    """LISTEN/NOTIFY on a dedicated autocommit connection.

    Notifications sent while no listener is connected are lost; the sweep
    covers that gap.
    """

    strategy = "postgres"

    def __init__(self, db_url: str, channel_name: str = "jobs", logger: logging.Logger | None = None) -> None:
        super().__init__(logger)
        self.db_url = db_url
        self.channel_name = channel_name
        self._publish_conn: Any = None
        self._listen_conn: Any = None
        self._lock = threading.Lock()

    def _connect(self) -> Any:
        import psycopg

        return psycopg.connect(self.db_url, autocommit=True)

    def _publish(self, job_id: str) -> None:
        with self._lock:
            if self._publish_conn is None or self._publish_conn.closed:
                self._publish_conn = self._connect()
            try:
                self._publish_conn.execute(
                    "SELECT pg_notify(%s, %s)", (self.channel_name, job_id)
                )
            except Exception:
                self._publish_conn.close()
                self._publish_conn = None
                raise

    def _ensure_listening(self) -> Any:
        if self._listen_conn is not None and not self._listen_conn.closed:
            return self._listen_conn
        from psycopg import sql

        conn = self._connect()
        conn.execute(sql.SQL("LISTEN {}").format(sql.Identifier(self.channel_name)))
        self._listen_conn = conn
        log_event(self.logger, logging.INFO, "channel_listening", strategy=self.strategy, channel=self.channel_name)
        return conn

    def listen(self, timeout_seconds: float) -> list[str]:
        conn = self._ensure_listening()
        try:
            return [
                notify.payload
                for notify in conn.notifies(timeout=timeout_seconds, stop_after=1)
                if notify.payload
            ]
        except Exception:
            conn.close()
            self._listen_conn = None
            raise

    def close(self) -> None:
        for conn in (self._publish_conn, self._listen_conn):
            if conn is not None and not conn.closed:
                conn.close()
        self._publish_conn = None
        self._listen_conn = None


class RedisQueueChannel(NotificationChannel):
    """Reliable list queue.

    ``publish`` LPUSHes onto ``key``; ``listen`` atomically moves ids onto
    ``key:processing`` and ``ack`` removes them. Ids left in the processing
    list by a worker that died are pushed back when a listener starts.
    """

    strategy = "redis"

    def __init__(
        self,
        client: Any,
        key: str = "contentgen:jobs",
        logger: logging.Logger | None = None,
        max_batch: int = 10,
    ) -> None:
        super().__init__(logger)
        self.client = client
        self.key = key
        self.processing_key = f"{key}:processing"
        self.max_batch = max_batch
        self._recovered = False

    @classmethod
    def from_url(cls, url: str, key: str = "contentgen:jobs", logger: logging.Logger | None = None) -> "RedisQueueChannel":
        client = redis.Redis.from_url(url, decode_responses=True, socket_connect_timeout=5)
        return cls(client, key=key, logger=logger)

    def _publish(self, job_id: str) -> None:
        self.client.lpush(self.key, job_id)

    def requeue_unacked(self) -> int:
        moved = 0
        while self.client.lmove(self.processing_key, self.key, "LEFT", "RIGHT") is not None:
            moved += 1
        if moved:
            log_event(self.logger, logging.INFO, "channel_requeued", strategy=self.strategy, count=moved)
        return moved

    def listen(self, timeout_seconds: float) -> list[str]:
        if not self._recovered:
            self.requeue_unacked()
            self._recovered = True
        first = self.client.blmove(self.key, self.processing_key, timeout_seconds, "RIGHT", "LEFT")
        if first is None:
            return []
        ids = [first]
        while len(ids) < self.max_batch:
            nxt = self.client.lmove(self.key, self.processing_key, "RIGHT", "LEFT")
            if nxt is None:
                break
            ids.append(nxt)
        return ids

    def ack(self, job_id: str) -> None:
        try:
            self.client.lrem(self.processing_key, 1, job_id)
        except redis.RedisError as exc:
            log_event(
                self.logger,
                logging.WARNING,
                "channel_ack_failed",
                strategy=self.strategy,
                job_id=job_id,
                error=str(exc),
            )

    def close(self) -> None:
        close = getattr(self.client, "close", None)
        if close is not None:
            close()


def build_channel(
    config: Config,
    logger: logging.Logger | None = None,
    db_url: str | None = None,
) -> NotificationChannel:
    db_url = db_url if db_url is not None else get_db_url()
    strategy = resolve_queue_strategy(config, db_url)
    if strategy == "postgres":
        return PostgresNotifyChannel(str(db_url), config.queue.channel_name, logger=logger)
    if strategy == "redis":
        return RedisQueueChannel.from_url(config.queue.redis_url, key=config.queue.redis_key, logger=logger)
    return PollChannel(logger=logger)

"""Timeout-bounded Redis protocol client used for node administration."""
from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import redis
from redis.backoff import NoBackoff
from redis.retry import Retry

T = TypeVar("T")

_AUTH_FAILURE_MARKERS = ("noauth", "invalid password", "wrongpass", "authentication")


class RedisCommandError(RuntimeError):
    """Raised when a protocol command fails, times out, or cannot connect."""


ClientFactory = Callable[..., "redis.Redis"]


@dataclass(slots=True)
class RedisAdmin:
    """Issue administrative commands to node-local Redis instances.

    Every call opens a short-lived connection whose connect and read timeouts
    are both ``timeout`` seconds, and closes it afterwards.
    """

    config_command: str
    shutdown_command: str
    save_command: str
    timeout: float = 2.0
    host: str = "127.0.0.1"
    client_factory: ClientFactory = redis.Redis

    def client(self, port: int, password: str | None) -> redis.Redis:
        """Return a client bound to *port* authenticating with *password*."""
        return self.client_factory(
            host=self.host,
            port=port,
            password=password or None,
            socket_timeout=self.timeout,
            socket_connect_timeout=self.timeout,
            retry=Retry(NoBackoff(), 0),
            decode_responses=True,
        )

    # Commands --------------------------------------------------------
    def echo(self, port: int, password: str | None, message: str = "") -> str:
        """Round-trip *message* through ECHO."""
        return str(self._run(port, password, lambda conn: conn.echo(message)))

    def check_password(self, port: int, password: str | None) -> bool:
        """Return ``True`` when *password* authenticates against the instance."""
        try:
            self._run(port, password, lambda conn: conn.ping(), translate=False)
        except redis.AuthenticationError:
            return False
        except redis.ResponseError as exc:
            if _is_auth_failure(exc):
                return False
            raise RedisCommandError(f"PING on port {port} failed: {exc}") from exc
        except (redis.RedisError, OSError) as exc:
            raise RedisCommandError(f"PING on port {port} failed: {exc}") from exc
        return True

    def set_config(self, port: int, password: str | None, key: str, value: str) -> None:
        """Run the renamed ``CONFIG SET key value``."""
        self._run(
            port,
            password,
            lambda conn: conn.execute_command(self.config_command, "SET", key, value),
        )

    def save(self, port: int, password: str | None) -> None:
        """Run the renamed blocking ``SAVE`` and wait for it to finish."""
        self._run(port, password, lambda conn: conn.execute_command(self.save_command))

    def shutdown(self, port: int, password: str | None) -> None:
        """Run the renamed ``SHUTDOWN``; a dropped connection means success."""
        try:
            self._run(
                port,
                password,
                lambda conn: conn.execute_command(self.shutdown_command),
                translate=False,
            )
        except redis.AuthenticationError as exc:
            raise RedisCommandError(f"Shutdown of port {port} rejected: {exc}") from exc
        except redis.ConnectionError:
            return
        except (redis.RedisError, OSError) as exc:
            raise RedisCommandError(f"Shutdown of port {port} failed: {exc}") from exc

    def flushall(self, port: int, password: str | None) -> None:
        """Drop every key held by the instance."""
        self._run(port, password, lambda conn: conn.flushall())

    def info(self, port: int, password: str | None) -> dict[str, Any]:
        """Return the parsed ``INFO`` mapping."""
        return dict(self._run(port, password, lambda conn: conn.info()))

    # ------------------------------------------------------------------
    def _run(
        self,
        port: int,
        password: str | None,
        action: Callable[[redis.Redis], T],
        *,
        translate: bool = True,
    ) -> T:
        conn = self.client(port, password)
        try:
            return action(conn)
        except (redis.RedisError, OSError) as exc:
            if not translate:
                raise
            raise RedisCommandError(f"Redis command on port {port} failed: {exc}") from exc
        finally:
            try:
                conn.close()
            except (redis.RedisError, OSError):
                pass


def _is_auth_failure(exc: Exception) -> bool:
    text = str(exc).lower()
    return any(marker in text for marker in _AUTH_FAILURE_MARKERS)


__all__ = ["RedisAdmin", "RedisCommandError"]

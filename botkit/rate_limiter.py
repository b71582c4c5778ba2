"""
Rate Limiter Module

Per-user sliding-window request limits and daily token quotas.

Design Rationale:
- Expected denials are values (Allowed / Denied), not exceptions; enforce()
  is there for callers that prefer raising
- Request timestamps live in the state repository under
  rate_limit:{user_id}:{action}, so limits survive restarts and are shared
  by every worker using the same backend
- Check-then-record is one StateRepository.update(), a versioned
  compare-and-set, so two requests can never both take the last slot even
  when they run in different processes
- Token usage is counted in day buckets token_usage:{user_id}:{YYYY-MM-DD}

Usage:
    limiter = RateLimiter(state)
    decision = limiter.check_rate_limit("user:17", "chat_message")
    if not decision.allowed:
        return decision.to_response()
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Tuple, Union

from config.settings import get_settings, RateLimitConfig
from botkit.exceptions import RateLimitExceeded
from botkit.state import StateRepository

# Configure logging
logger = logging.getLogger(__name__)

TOKEN_QUOTA_ACTION = "token_usage"


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


@dataclass
class Allowed:
    """The request may proceed."""
    remaining: int
    limit: int

    allowed = True


@dataclass
class Denied:
    """
    The request is over quota.

    Attributes:
        retry_after: Seconds until a slot frees up (always > 0)
        reset_time: ISO-8601 UTC time of that moment
        reason: rate_limit or token_limit
        limit: The limit that was hit
    """
    retry_after: float
    reset_time: str
    reason: str = "rate_limit"
    limit: int = 0

    allowed = False

    def to_response(self) -> Dict[str, Any]:
        """External rate-limit contract."""
        return self.to_exception().to_dict()

    def to_exception(self) -> RateLimitExceeded:
        return RateLimitExceeded(self.retry_after, self.reset_time, self.reason)


Decision = Union[Allowed, Denied]


class RateLimiter:
    """
    Sliding-window limiter backed by a StateRepository.

    Example:
        limiter = RateLimiter(state, config=RateLimitConfig(max_requests_per_day=60))
        limiter.set_user_limit("user:9", "chat_message", max_requests=500)
        limiter.record_token_usage("user:9", 1200)
        limiter.check_token_quota("user:9")
    """

    def __init__(
        self,
        state: StateRepository,
        config: Optional[RateLimitConfig] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Initialize the limiter.

        Args:
            state: State repository holding windows, overrides and counters
            config: Optional RateLimitConfig instance
            clock: Time source (default: the repository clock, else time.time)
        """
        self.state = state
        self.config = config or get_settings().rate_limit
        self._clock = clock or getattr(state, "now", time.time)

        logger.info(
            f"RateLimiter initialized: {self.config.max_requests_per_day} requests / "
            f"{self.config.window_seconds}s, {self.config.token_limit_per_day} tokens/day"
        )

    def now(self) -> float:
        return self._clock()

    @staticmethod
    def _window_key(user_id: str, action: str) -> str:
        return f"rate_limit:{user_id}:{action}"

    @staticmethod
    def _override_key(user_id: str, action: str) -> str:
        return f"rate_limit_override:{user_id}:{action}"

    def _token_key(self, user_id: str) -> str:
        day = datetime.fromtimestamp(self.now(), tz=timezone.utc).strftime("%Y-%m-%d")
        return f"token_usage:{user_id}:{day}"

    def _seconds_until_midnight(self) -> float:
        now = datetime.fromtimestamp(self.now(), tz=timezone.utc)
        midnight = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
        return max((midnight - now).total_seconds(), 1.0)

    def get_quota(self, user_id: str, action: str) -> Tuple[int, int]:
        """Return (window_seconds, max_requests), honouring per-user overrides."""
        override = self.state.get(self._override_key(user_id, action))
        if override:
            default_window, default_max = self.config.quota_for(action)
            return (
                int(override.get("window", default_window)),
                int(override.get("max_requests", default_max)),
            )
        return self.config.quota_for(action)

    def set_user_limit(
        self,
        user_id: str,
        action: str,
        max_requests: int,
        window: Optional[int] = None,
    ) -> None:
        """Override the default quota of one user for one action."""
        override = {"max_requests": int(max_requests)}
        if window is not None:
            override["window"] = int(window)
        self.state.set(self._override_key(user_id, action), override)
        logger.info(f"Rate limit override for {user_id}/{action}: {override}")

    def clear_user_limit(self, user_id: str, action: str) -> None:
        self.state.delete(self._override_key(user_id, action))

    def _live_timestamps(self, key: str, window: int, now: float):
        timestamps = self.state.get(key) or []
        # Entries exactly one window old have already expired
        return [t for t in timestamps if t > now - window]

    def check_rate_limit(self, user_id: str, action: str = "chat_message") -> Decision:
        """
        Check and, when allowed, record a request.

        Args:
            user_id: Stable user identity (user id or hashed guest IP)
            action: Action name with its own quota

        Returns:
            Allowed(remaining, limit) or Denied(retry_after, reset_time, ...)
        """
        key = self._window_key(user_id, action)
        window, max_requests = self.get_quota(user_id, action)

        def admit(stored):
            now = self.now()
            # Entries exactly one window old have already expired
            timestamps = [t for t in (stored or []) if t > now - window]

            if len(timestamps) >= max_requests:
                oldest = min(timestamps) if timestamps else now
                retry_after = oldest + window - now
                if retry_after <= 0:
                    retry_after = float(window)
                return None, Denied(
                    retry_after=retry_after,
                    reset_time=_iso(now + retry_after),
                    reason="rate_limit",
                    limit=max_requests,
                )

            timestamps.append(now)
            return timestamps, Allowed(remaining=max_requests - len(timestamps), limit=max_requests)

        decision = self.state.update(key, admit, ttl=window)
        if not decision.allowed:
            logger.warning(f"Rate limit hit for {user_id}/{action}: limit {max_requests}")
        return decision

    def token_limit(self, user_id: str) -> int:
        override = self.state.get(self._override_key(user_id, TOKEN_QUOTA_ACTION))
        if override:
            return int(override["max_requests"])
        return self.config.token_limit_per_day

    def get_token_usage(self, user_id: str) -> int:
        return int(self.state.get(self._token_key(user_id)) or 0)

    def record_token_usage(self, user_id: str, tokens: int) -> int:
        """Add tokens to today's bucket and return the new total."""
        if tokens <= 0:
            return self.get_token_usage(user_id)
        total = self.state.increment(self._token_key(user_id), int(tokens), ttl=2 * 86400)
        logger.debug(f"Token usage for {user_id}: {total}")
        return int(total)

    def check_token_quota(self, user_id: str) -> Decision:
        """Deny once today's token usage reaches the daily cap."""
        limit = self.token_limit(user_id)
        used = self.get_token_usage(user_id)
        if used >= limit:
            retry_after = self._seconds_until_midnight()
            logger.warning(f"Token quota exhausted for {user_id}: {used}/{limit}")
            return Denied(
                retry_after=retry_after,
                reset_time=_iso(self.now() + retry_after),
                reason="token_limit",
                limit=limit,
            )
        return Allowed(remaining=limit - used, limit=limit)

    def enforce(self, user_id: str, action: str = "chat_message") -> Allowed:
        """
        Exception flavour of check_rate_limit.

        Raises:
            RateLimitExceeded: The request is denied
        """
        decision = self.check_rate_limit(user_id, action)
        if not decision.allowed:
            raise decision.to_exception()
        return decision

    def get_remaining_limits(self, user_id: str, action: str = "chat_message") -> Dict[str, Any]:
        """Current quota usage without recording a request."""
        key = self._window_key(user_id, action)
        window, max_requests = self.get_quota(user_id, action)
        now = self.now()
        timestamps = self._live_timestamps(key, window, now)

        token_limit = self.token_limit(user_id)
        tokens_used = self.get_token_usage(user_id)

        return {
            "requests": {
                "limit": max_requests,
                "used": len(timestamps),
                "remaining": max(0, max_requests - len(timestamps)),
                "window_seconds": window,
                "reset_time": _iso(min(timestamps) + window) if timestamps else None,
            },
            "tokens": {
                "limit": token_limit,
                "used": tokens_used,
                "remaining": max(0, token_limit - tokens_used),
                "reset_time": _iso(now + self._seconds_until_midnight()),
            },
        }

    def reset(self, user_id: str, action: Optional[str] = None) -> int:
        """Forget recorded requests for one action, or for every action."""
        if action is not None:
            return int(self.state.delete(self._window_key(user_id, action)))
        return self.state.delete_prefix(f"rate_limit:{user_id}:")

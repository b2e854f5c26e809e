from __future__ import annotations
import asyncio
import random
from dataclasses import dataclass
from typing import Any, Dict, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout

from lockwatch.detection.errors import AdviceServiceError, UpstreamRateLimited
from lockwatch.detection.models import DetectionResult, LedgerSnapshot
from lockwatch.utils import metrics
from lockwatch.utils.logger import setup_logger

logger = setup_logger(__name__)

DEFAULT_RETRY_AFTER = 30.0
CONTEXTS = ("deadlock", "users", "general")


@dataclass(frozen=True)
class AdviceSummary:
    """The only board state the advice service ever sees."""
    current_users: int
    max_users: int
    current_resources: int
    max_resources: int
    has_deadlock: bool

    def to_params(self) -> Dict[str, Any]:
        return {
            "currentUsers": self.current_users,
            "maxUsers": self.max_users,
            "currentResources": self.current_resources,
            "maxResources": self.max_resources,
            "hasDeadlock": self.has_deadlock,
        }


def summarize(snapshot: LedgerSnapshot, result: Optional[DetectionResult],
              max_users: int, max_resources: int) -> AdviceSummary:
    users = {lk.user_id for lk in snapshot.active_locks()}
    if snapshot.resources is not None:
        n_res = len(snapshot.resources)
    else:
        n_res = len({lk.resource_id for lk in snapshot.locks})
    return AdviceSummary(
        current_users=len(users),
        max_users=max_users,
        current_resources=n_res,
        max_resources=max_resources,
        has_deadlock=bool(result and result.has_deadlock),
    )


def build_prompt(summary: AdviceSummary, context: str = "deadlock") -> str:
    s = summary
    if context == "deadlock":
        lines = [
            "I'm managing a collaborative project board with resource locking. Currently:",
            f"- {s.current_users} users are active (max: {s.max_users})",
            f"- {s.current_resources} components exist (max: {s.max_resources})",
        ]
        if s.has_deadlock:
            lines.append("- A deadlock has been detected!")
        lines += [
            "",
            "Please provide:",
            "1. Best practices to avoid deadlocks in collaborative systems",
            "2. Specific strategies for resolving the current situation",
            "3. How to optimize resource allocation",
            "4. Prevention tips for the future",
            "",
            "Keep it concise and actionable.",
        ]
    elif context == "users":
        lines = [
            "I need to scale my collaborative project board. Currently:",
            f"- {s.current_users} users are active (max: {s.max_users})",
            f"- {s.current_resources} components are in use (max: {s.max_resources})",
            "",
            "Please provide:",
            "1. How to safely increase the maximum number of users",
            "2. Best practices for managing concurrent users",
            "3. Resource planning considerations when scaling",
            "4. Performance optimization tips",
            "",
            "Keep it practical and specific.",
        ]
    elif context == "general":
        lines = [
            "I'm managing a collaborative project board with:",
            f"- {s.current_users}/{s.max_users} users active",
            f"- {s.current_resources}/{s.max_resources} components created",
            "",
            "Please provide general advice on:",
            "1. Optimizing board configuration",
            "2. Best practices for collaboration",
            "3. Resource management tips",
            "4. Scaling considerations",
        ]
    else:
        raise ValueError(f"unknown advice context: {context!r}")
    return "\n".join(lines)


def _retry_after(headers, default: float) -> float:
    raw = headers.get("Retry-After") if headers is not None else None
    try:
        return max(float(raw), 0.0) if raw is not None else default
    except ValueError:
        return default


class AdviceClient:
    """
    HTTP JSON client for the external advice service.
    POST {"message": prompt} -> {"reply": "..."}; 429 means rate limited.
    429 is retried at most `retries` times with exponential backoff + jitter,
    then surfaced as UpstreamRateLimited. Nothing else is retried.
    """
    def __init__(
        self,
        url: str,
        session: Optional[ClientSession] = None,
        timeout: float = 20.0,
        retries: int = 2,
        backoff: float = 0.5,
        jitter: float = 0.3,
    ):
        self.url = url
        self._own_session = session is None
        self._session = session
        self._timeout = ClientTimeout(total=timeout)
        self._retries = max(0, retries)
        self._backoff = backoff
        self._jitter = jitter

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    async def close(self):
        if self._own_session and self._session is not None:
            await self._session.close()

    def _get_session(self) -> ClientSession:
        if self._session is None:
            self._session = ClientSession()
        return self._session

    async def suggest(self, summary: AdviceSummary, context: str = "deadlock") -> str:
        if not self.enabled:
            raise AdviceServiceError("advice service not configured", status=503)
        prompt = build_prompt(summary, context)
        payload = {"message": prompt, "context": context, "summary": summary.to_params()}
        session = self._get_session()

        retry_after = DEFAULT_RETRY_AFTER
        user_message = ""
        for attempt in range(self._retries + 1):
            try:
                async with session.post(self.url, json=payload, timeout=self._timeout) as resp:
                    if resp.status == 429:
                        retry_after = _retry_after(resp.headers, DEFAULT_RETRY_AFTER)
                        try:
                            body = await resp.json(content_type=None)
                        except ValueError:
                            body = {}
                        if isinstance(body, dict):
                            user_message = body.get("userMessage") or body.get("error") or user_message
                        logger.warning("advice rate limited (attempt %d/%d)", attempt + 1, self._retries + 1)
                    elif resp.status >= 400:
                        text = await resp.text()
                        raise AdviceServiceError(
                            f"advice service error {resp.status}: {text[:200]}",
                            status=resp.status,
                            transient=resp.status >= 500,
                        )
                    else:
                        data = await resp.json(content_type=None)
                        if not isinstance(data, dict):
                            raise AdviceServiceError("advice service returned non-object JSON", status=resp.status)
                        if data.get("error"):
                            raise AdviceServiceError(str(data.get("userMessage") or data["error"]),
                                                     status=resp.status)
                        return data.get("reply") or "Sorry, I could not generate a response."
            except (ClientError, asyncio.TimeoutError) as e:
                raise AdviceServiceError(f"advice service unreachable: {e!r}", transient=True) from e
            except ValueError as e:
                raise AdviceServiceError(f"advice service returned invalid JSON: {e}") from e

            if attempt < self._retries:
                delay = self._backoff * (2 ** attempt) + random.uniform(0, self._jitter)
                await asyncio.sleep(delay)

        metrics.advice_rate_limited.inc()
        raise UpstreamRateLimited(retry_after, user_message)

"""
Mio Backend — Push notification dispatcher

Delivers notifications through the Expo push API.  Delivery is split into
three steps so that each can be reasoned about and tested on its own:

  send()              POST messages, return one ticket per token;
                      429, 5xx and transport errors are retried
  classify()          pure: tickets -> DeliveryReport
  invalidate_tokens() clear push tokens Expo reported as unregistered

``notify_match`` strings the three together for a single recipient and never
raises; push delivery is best-effort and must not fail the caller.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Sequence

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from app.config import get_settings
from app.schemas.match import MatchLevel
from app.store import USERS, DocumentStore, Filter

logger = structlog.get_logger("mio.notification_service")

_EXPO_TOKEN_RE = re.compile(r"^(ExponentPushToken|ExpoPushToken)\[[^\]]+\]$")

DEVICE_NOT_REGISTERED = "DeviceNotRegistered"


def is_expo_push_token(token: Any) -> bool:
    return isinstance(token, str) and bool(_EXPO_TOKEN_RE.match(token))


def _is_retryable_push_error(exc: BaseException) -> bool:
    """Rate limits, server errors and transport failures are retried."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code == 429 or exc.response.status_code >= 500
    return isinstance(exc, httpx.TransportError)


@dataclass
class PushTicket:
    token: str
    status: str  # ok | error
    ticket_id: str | None = None
    error: str | None = None
    message: str | None = None


@dataclass
class DeliveryReport:
    delivered: list[str] = field(default_factory=list)
    failed: dict[str, str | None] = field(default_factory=dict)
    invalid_tokens: list[str] = field(default_factory=list)


def classify(tickets: Sequence[PushTicket]) -> DeliveryReport:
    report = DeliveryReport()
    for ticket in tickets:
        if ticket.status == "ok":
            report.delivered.append(ticket.token)
            continue
        report.failed[ticket.token] = ticket.error
        if ticket.error == DEVICE_NOT_REGISTERED and ticket.token not in report.invalid_tokens:
            report.invalid_tokens.append(ticket.token)
    return report


def match_message(matched_name: str, level: MatchLevel) -> tuple[str, str]:
    if level == "superMatch":
        return "New Super Match! 🌟", f"You matched with {matched_name}! You have a lot in common!"
    return "New Match! 🎉", f"You matched with {matched_name}!"


class NotificationService:
    """Expo push client plus the token bookkeeping around it.

    An ``httpx.AsyncClient`` may be injected; otherwise one is opened per
    ``send`` call.
    """

    def __init__(
        self,
        store: DocumentStore,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        settings = get_settings()
        self.store = store
        self.client = client
        self.push_url = settings.EXPO_PUSH_URL
        self.access_token = settings.EXPO_ACCESS_TOKEN
        self.chunk_size = settings.EXPO_CHUNK_SIZE
        self.timeout = settings.PUSH_TIMEOUT_SECONDS
        self.max_attempts = settings.PUSH_MAX_ATTEMPTS
        self.retry_base = settings.PUSH_RETRY_BASE_SECONDS

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    async def _post_chunk(
        self, client: httpx.AsyncClient, messages: list[dict[str, Any]]
    ) -> list[PushTicket]:
        tokens = [m["to"] for m in messages]
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception(_is_retryable_push_error),
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=self.retry_base, min=0, max=30),
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.info(
                            "push_chunk_retry",
                            attempt_number=attempt.retry_state.attempt_number,
                            tokens=len(tokens),
                        )
                    response = await client.post(
                        self.push_url, json=messages, headers=self._headers()
                    )
                    response.raise_for_status()
            data = response.json().get("data", [])
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("push_chunk_failed", tokens=len(tokens), error=str(exc))
            return [PushTicket(token=t, status="error", message=str(exc)) for t in tokens]

        tickets: list[PushTicket] = []
        for i, token in enumerate(tokens):
            raw = data[i] if i < len(data) else {}
            details = raw.get("details") or {}
            tickets.append(
                PushTicket(
                    token=token,
                    status=raw.get("status", "error"),
                    ticket_id=raw.get("id"),
                    error=details.get("error"),
                    message=raw.get("message"),
                )
            )
        return tickets

    async def send(
        self,
        tokens: Sequence[str],
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
    ) -> list[PushTicket]:
        valid = [t for t in dict.fromkeys(tokens) if is_expo_push_token(t)]
        if not valid:
            logger.info("push_no_valid_tokens", requested=len(tokens))
            return []

        messages = [
            {"to": t, "sound": "default", "title": title, "body": body, "data": data or {}}
            for t in valid
        ]
        chunks = [
            messages[i:i + self.chunk_size]
            for i in range(0, len(messages), self.chunk_size)
        ]

        tickets: list[PushTicket] = []
        if self.client is not None:
            for chunk in chunks:
                tickets.extend(await self._post_chunk(self.client, chunk))
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                for chunk in chunks:
                    tickets.extend(await self._post_chunk(client, chunk))

        logger.info(
            "push_sent",
            tokens=len(valid),
            ok=sum(1 for t in tickets if t.status == "ok"),
        )
        return tickets

    async def invalidate_tokens(self, tokens: Sequence[str]) -> int:
        """Clear ``push_token`` on every user holding one of ``tokens``."""
        cleared = 0
        for token in tokens:
            owners = await self.store.query(USERS, [Filter("push_token", "==", token)])
            for owner in owners:
                await self.store.update(USERS, owner.id, {"push_token": None})
                cleared += 1
                logger.info("push_token_invalidated", user_id=owner.id)
        return cleared

    async def notify_match(
        self,
        recipient_id: str,
        matched_user_id: str,
        matched_name: str,
        level: MatchLevel,
    ) -> DeliveryReport | None:
        log = logger.bind(recipient=recipient_id, matched_user=matched_user_id, level=level)
        try:
            snapshot = await self.store.get(USERS, recipient_id)
            if snapshot is None:
                log.warning("push_recipient_missing")
                return None
            token = snapshot.get("push_token")
            if not token:
                log.info("push_recipient_no_token")
                return None
            if snapshot.get("notification_settings.match_notifications") is False:
                log.info("push_recipient_opted_out")
                return None

            title, body = match_message(matched_name, level)
            tickets = await self.send(
                [token],
                title,
                body,
                {"type": "match", "match_id": matched_user_id, "match_level": level},
            )
            report = classify(tickets)
            if report.invalid_tokens:
                await self.invalidate_tokens(report.invalid_tokens)
            log.info(
                "match_notification_sent",
                delivered=len(report.delivered),
                failed=len(report.failed),
            )
            return report
        except Exception as exc:
            log.error("match_notification_failed", error=str(exc))
            return None

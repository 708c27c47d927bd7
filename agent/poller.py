"""
Client-side change-feed poller.

The server's realtime-check endpoint returns every card touched in a short
trailing window on each call and keeps no per-client state, so every poller
decides for itself which entries are actionable:

    apply  iff  timestamp >= session start
                and (card never applied here, or timestamp > last applied timestamp)

A change is recorded as applied only after the update callback returns.
"""
import os
import json
import time
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Set

import requests

logger = logging.getLogger(__name__)

CARDS_API_URL = os.getenv("CARDS_API_URL", "http://localhost:8000")
TENANT_ID = os.getenv("TENANT_ID", "")
API_TOKEN = os.getenv("API_TOKEN", "")
DELIVERY_DATE = os.getenv("DELIVERY_DATE", "")

POLL_INTERVAL_SEC = float(os.getenv("POLL_INTERVAL_SEC", "1.5"))
STALE_AFTER = timedelta(minutes=30)
HEALTH_WARN_AFTER = timedelta(seconds=30)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """ISO 8601 -> aware UTC datetime, or None when it cannot be read."""
    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value or "").strip()
        if not s:
            return None
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class PollerSession:
    """One client's bookkeeping: session start, known cards, last applied timestamp per card."""

    def __init__(self, clock: Callable[[], datetime] = _utcnow, stale_after: timedelta = STALE_AFTER):
        self.clock = clock
        self.stale_after = stale_after
        self.session_start: Optional[datetime] = None
        self.last_processed: Dict[str, str] = {}
        self.known_card_ids: Set[str] = set()

    def activate(self) -> int:
        """Fix the session start and forget entries older than the staleness threshold.

        Returns the number of forgotten cards.
        """
        now = self.clock()
        cutoff = now - self.stale_after
        stale = []
        for card_id, ts in self.last_processed.items():
            parsed = parse_timestamp(ts)
            if parsed is not None and parsed < cutoff:
                stale.append(card_id)
        for card_id in stale:
            del self.last_processed[card_id]
            self.known_card_ids.discard(card_id)
        self.session_start = now
        return len(stale)

    def is_known(self, card_id: str) -> bool:
        return card_id in self.known_card_ids

    def should_apply(self, card_id: str, timestamp: Any) -> bool:
        if self.session_start is None:
            raise RuntimeError("session not activated")
        changed = parse_timestamp(timestamp)
        if changed is None:
            # Unreadable timestamps fail open, once per distinct raw value
            return self.last_processed.get(card_id) != str(timestamp)
        if changed < self.session_start:
            return False
        if not self.is_known(card_id):
            return True
        last = parse_timestamp(self.last_processed.get(card_id))
        return last is None or changed > last

    def record(self, card_id: str, timestamp: Any) -> None:
        self.last_processed[card_id] = timestamp if isinstance(timestamp, str) else str(timestamp)
        self.known_card_ids.add(card_id)


@dataclass
class CardChange:
    card_id: str
    timestamp: str
    is_new: bool
    status: Optional[str] = None
    assigned_to: Optional[str] = None
    assigned_by: Optional[str] = None
    notes: Optional[str] = None
    sort_order: Optional[int] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def type(self) -> str:
        return "card_created" if self.is_new else "card_updated"

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], *, is_new: bool) -> "CardChange":
        return cls(
            card_id=payload["cardId"],
            timestamp=payload.get("updatedAt"),
            is_new=is_new,
            status=payload.get("status"),
            assigned_to=payload.get("assignedTo"),
            assigned_by=payload.get("assignedBy"),
            notes=payload.get("notes"),
            sort_order=payload.get("sortOrder"),
            payload=dict(payload),
        )


def _change_sort_key(change: Dict[str, Any]):
    parsed = parse_timestamp(change.get("updatedAt"))
    return (0, parsed.timestamp()) if parsed else (1, 0.0)


class ChangeFeedPoller:
    """Polls one tenant's realtime-check endpoint on a fixed interval.

    Failed polls are counted and retried on the next tick; they never clear
    session state and never back off.
    """

    def __init__(
        self,
        base_url: str,
        tenant_id: str,
        token: str,
        on_update: Callable[[CardChange], Any],
        *,
        session: Optional[PollerSession] = None,
        interval: float = POLL_INTERVAL_SEC,
        delivery_date: Optional[str] = None,
        http: Any = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Any] = time.sleep,
        timeout: float = 10,
    ):
        self.base_url = base_url.rstrip("/")
        self.tenant_id = tenant_id
        self.token = token
        self.on_update = on_update
        self.clock = clock
        self.session = session or PollerSession(clock=clock)
        self.interval = interval
        self.delivery_date = delivery_date or None
        self.http = http or requests.Session()
        self.sleep = sleep
        self.timeout = timeout

        self.active = False
        self.consecutive_failures = 0
        self.activated_at: Optional[datetime] = None
        self.last_success_at: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.applied_count = 0
        self.callback_failures = 0

    @property
    def url(self) -> str:
        return f"{self.base_url}/api/tenants/{self.tenant_id}/card-states/realtime-check"

    def _log(self, event: str, **fields) -> None:
        logger.info(json.dumps({"component": "card_poller", "tenant_id": self.tenant_id, "event": event, **fields}, default=str))

    def activate(self) -> None:
        pruned = self.session.activate()
        self.active = True
        self.activated_at = self.clock()
        self._log("activated", session_start=self.session.session_start, pruned=pruned)

    def stop(self) -> None:
        self.active = False

    def _record_failure(self, reason: str) -> None:
        self.consecutive_failures += 1
        self.last_error = reason
        logger.warning("Poll failed (%d in a row): %s", self.consecutive_failures, reason)

    def poll_once(self) -> int:
        """One tick: fetch the window and apply actionable changes. Returns how many were applied."""
        if not self.active:
            return 0
        params = {"deliveryDate": self.delivery_date} if self.delivery_date else None
        headers = {"Authorization": f"Bearer {self.token}"}
        try:
            r = self.http.get(self.url, params=params, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            self._record_failure(f"network error: {e}")
            return 0
        if not self.active:
            # Stopped while the request was in flight
            return 0
        if not r.ok:
            if r.status_code in (401, 403):
                self._record_failure(f"auth rejected ({r.status_code}); token may be expired")
            else:
                self._record_failure(f"HTTP {r.status_code}: {r.text[:200]}")
            return 0
        try:
            data = r.json() or {}
        except ValueError:
            self._record_failure("response was not JSON")
            return 0

        self.consecutive_failures = 0
        self.last_error = None
        self.last_success_at = self.clock()

        applied = 0
        for raw in sorted(data.get("changes") or [], key=_change_sort_key):
            card_id = raw.get("cardId")
            ts = raw.get("updatedAt")
            if not card_id or not self.session.should_apply(card_id, ts):
                continue
            change = CardChange.from_payload(raw, is_new=not self.session.is_known(card_id))
            try:
                self.on_update(change)
            except Exception:
                # Left unrecorded so the next poll offers it again
                self.callback_failures += 1
                logger.exception("Update callback failed for card %s", card_id)
                continue
            self.session.record(card_id, ts)
            applied += 1
        if applied:
            self.applied_count += applied
            self._log("applied", count=applied, total=self.applied_count)
        return applied

    def health(self) -> Dict[str, Any]:
        quiet = self._quiet_for()
        since = quiet.total_seconds() if quiet is not None else None
        return {
            "active": self.active,
            "consecutive_failures": self.consecutive_failures,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "seconds_since_success": since,
            "last_error": self.last_error,
            "applied": self.applied_count,
            "callback_failures": self.callback_failures,
            "known_cards": len(self.session.known_card_ids),
        }

    def _quiet_for(self) -> Optional[timedelta]:
        """Time since the last successful poll, or since activation when none has succeeded."""
        reference = self.last_success_at or self.activated_at
        if reference is None:
            return None
        return self.clock() - reference

    def _check_health(self) -> None:
        quiet = self._quiet_for()
        if quiet is not None and quiet > HEALTH_WARN_AFTER:
            logger.warning("No successful poll in %ds", int(quiet.total_seconds()))

    def run(self, max_ticks: Optional[int] = None) -> None:
        if not self.active:
            self.activate()
        ticks = 0
        while self.active:
            self.poll_once()
            self._check_health()
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                break
            self.sleep(self.interval)


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    if not TENANT_ID or not API_TOKEN:
        raise SystemExit("TENANT_ID and API_TOKEN must be set")

    def show(change: CardChange):
        logger.info("%s %s status=%s assigned_to=%s sort=%s", change.type, change.card_id, change.status, change.assigned_to, change.sort_order)

    poller = ChangeFeedPoller(
        CARDS_API_URL,
        TENANT_ID,
        API_TOKEN,
        show,
        delivery_date=DELIVERY_DATE or None,
    )
    logger.info("Card poller started.")
    try:
        poller.run()
    except KeyboardInterrupt:
        poller.stop()


if __name__ == "__main__":
    main()

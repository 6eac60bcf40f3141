"""Automation dispatch.

``AutomationEngine.dispatch`` takes one event, finds the automations it
triggers, checks their conditions, runs their actions and follows any
card moves as ``card_enters_stage`` cascades (breadth first, bounded by
``cascade_limit``). Dispatches for the same card are serialised.
"""

import asyncio
import logging
import sqlite3
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable

import httpx
from pydantic import ValidationError

from db.client import get_connection
from engine.actions import ExecutionContext, execute_actions
from engine.conditions import build_field_lookup, evaluate_conditions
from engine.errors import (
    CardNotFound,
    CascadeLimitExceeded,
    DispatchError,
    InvalidEvent,
    PipeNotFound,
)
from engine.models import Automation, DispatchEvent, EventContext
from engine.transports import (
    EmailTransport,
    EventNotifier,
    SmsTransport,
    TwilioSmsTransport,
    WebhookEmailTransport,
)
from engine.triggers import match_automations
from flowlane import board

logger = logging.getLogger(__name__)

DEFAULT_CASCADE_LIMIT = 10


class CardLocks:
    """One asyncio.Lock per card, kept only while someone holds or awaits it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, card_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(card_id)
        if lock is None:
            lock = self._locks[card_id] = asyncio.Lock()
        self._users[card_id] = self._users.get(card_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[card_id] -= 1
            if not self._users[card_id]:
                del self._users[card_id]
                del self._locks[card_id]

    def __len__(self) -> int:
        return len(self._locks)


@dataclass
class DispatchReport:
    success: bool = True
    automations_found: int = 0
    automations_matched: int = 0
    automations_executed: list[str] = field(default_factory=list)
    automations_skipped: list[str] = field(default_factory=list)
    automations_failed: list[dict[str, str]] = field(default_factory=list)
    cascaded: list[dict[str, Any]] = field(default_factory=list)
    details: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None
    error_code: str | None = None

    def fail(self, error: DispatchError) -> "DispatchReport":
        self.success = False
        self.error = str(error)
        self.error_code = error.code
        return self

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if self.error is None:
            data.pop("error")
            data.pop("error_code")
        return data


class AutomationEngine:
    def __init__(
        self,
        db_path: str,
        config: dict[str, Any] | None = None,
        email_transport: EmailTransport | None = None,
        sms_transport: SmsTransport | None = None,
        notifier: EventNotifier | None = None,
        locks: CardLocks | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        config = config or {}
        self.db_path = db_path
        self.base_url = config.get("base_url") or "http://localhost:3000"
        self.cascade_limit = config.get("cascade_limit", DEFAULT_CASCADE_LIMIT)
        self.default_from_email = config.get("default_from_email") or "system"
        self.default_from_name = config.get("default_from_name")
        self.sms_from_number = config.get("twilio_phone_number")
        self.email_transport = email_transport
        self.sms_transport = sms_transport
        self.notifier = notifier
        self.locks = locks or CardLocks()
        self.clock = clock or datetime.now
        self._background: set[asyncio.Task[Any]] = set()

    @classmethod
    def from_config(
        cls,
        config: dict[str, Any],
        client: httpx.AsyncClient | None = None,
        locks: CardLocks | None = None,
    ) -> "AutomationEngine":
        """Build an engine with webhook/Twilio transports from config values."""
        timeout = config.get("transport_timeout", 5.0)
        return cls(
            config["db_path"],
            config=config,
            email_transport=WebhookEmailTransport(
                config.get("email_webhook_url"), timeout=timeout, client=client
            ),
            sms_transport=TwilioSmsTransport(
                config.get("twilio_account_sid"),
                config.get("twilio_auth_token"),
                config.get("twilio_phone_number"),
                timeout=timeout,
                client=client,
            ),
            notifier=EventNotifier(
                config.get("events_webhook_url"), timeout=timeout, client=client
            ),
            locks=locks,
        )

    async def dispatch(self, event: DispatchEvent | dict[str, Any]) -> DispatchReport:
        """Run every automation triggered by ``event``, including cascades.

        Structural failures (bad event, missing pipe or card) come back as
        a report with ``success=False``; nothing is raised.
        """
        report = DispatchReport()
        try:
            event = self._validate_event(event)
        except InvalidEvent as e:
            logger.warning("Rejected dispatch event: %s", e)
            return report.fail(e)

        async with self.locks.hold(event.card_id):
            conn = get_connection(self.db_path)
            try:
                await self._run(conn, event, report)
            except DispatchError as e:
                logger.warning("Dispatch for card %s aborted: %s", event.card_id, e)
                report.fail(e)
            finally:
                conn.close()

        if report.success and report.automations_executed and self.notifier:
            self._notify(event, report)

        logger.info(
            "Dispatched %s for card %s: %d matched, %d executed, %d failed, %d cascaded",
            event.trigger_type,
            event.card_id,
            report.automations_matched,
            len(report.automations_executed),
            len(report.automations_failed),
            len(report.cascaded),
        )
        return report

    async def wait_for_notifications(self) -> None:
        """Wait for outstanding event-webhook notifications to finish."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    def _validate_event(self, event: DispatchEvent | dict[str, Any]) -> DispatchEvent:
        if isinstance(event, DispatchEvent):
            return event
        try:
            return DispatchEvent.model_validate(event)
        except ValidationError as e:
            missing = ", ".join(
                ".".join(str(p) for p in err["loc"]) for err in e.errors()
            )
            raise InvalidEvent(f"Invalid event: {missing}") from e

    async def _run(
        self, conn: sqlite3.Connection, event: DispatchEvent, report: DispatchReport
    ) -> None:
        card = board.get_card(conn, event.card_id)
        if "error" in card:
            raise CardNotFound(f"Card not found: {event.card_id}")
        pipe = conn.execute("SELECT id FROM pipes WHERE id = ?", (event.pipe_id,)).fetchone()
        if pipe is None:
            raise PipeNotFound(f"Pipe not found: {event.pipe_id}")
        if card["pipe_id"] != event.pipe_id:
            raise InvalidEvent(
                f"Card '{event.card_id}' does not belong to pipe '{event.pipe_id}'"
            )

        # Each queued hop carries the sequence number of the move that caused
        # it; only the most recent move's hop may run.
        queue: deque[tuple[DispatchEvent, int, int]] = deque([(event, 0, 0)])
        last_move = 0
        while queue:
            hop, depth, move_seq = queue.popleft()
            if depth > 0 and not self._admit_hop(
                conn, hop, depth, move_seq == last_move, report
            ):
                continue

            for stage_id in await self._run_hop(conn, hop, report):
                last_move += 1
                queue.append(
                    (
                        DispatchEvent(
                            trigger_type="card_enters_stage",
                            card_id=hop.card_id,
                            pipe_id=hop.pipe_id,
                            context=EventContext(stage_id=stage_id),
                        ),
                        depth + 1,
                        last_move,
                    )
                )

    def _admit_hop(
        self,
        conn: sqlite3.Connection,
        hop: DispatchEvent,
        depth: int,
        latest_move: bool,
        report: DispatchReport,
    ) -> bool:
        """Decide whether a cascaded hop runs, recording the outcome.

        A hop is superseded when a later move has happened since it was
        queued, even if that move brought the card back to the same stage.
        """
        entry: dict[str, Any] = {"stage_id": hop.context.stage_id, "depth": depth}

        if depth > self.cascade_limit:
            error = CascadeLimitExceeded(
                f"Cascade limit of {self.cascade_limit} reached at stage {hop.context.stage_id}"
            )
            logger.warning("Card %s: %s", hop.card_id, error)
            report.cascaded.append({**entry, "status": "limit_exceeded", "error": str(error)})
            return False

        current = board.get_card(conn, hop.card_id)
        if (
            not latest_move
            or "error" in current
            or current["stage_id"] != hop.context.stage_id
        ):
            report.cascaded.append({**entry, "status": "superseded"})
            return False

        report.cascaded.append({**entry, "status": "dispatched"})
        return True

    def _load_automations(
        self, conn: sqlite3.Connection, hop: DispatchEvent, report: DispatchReport
    ) -> list[Automation]:
        """Validate the pipe's stored automations, counting every row as found.

        An invalid row is reported as failed when it would otherwise have been
        a candidate for this event (enabled, same trigger type).
        """
        rows = board.list_automations(conn, hop.pipe_id)
        report.automations_found += len(rows)
        automations = []
        for row in rows:
            try:
                automations.append(Automation.model_validate(row))
            except ValidationError as e:
                if row["enabled"] and row["trigger_type"] == hop.trigger_type:
                    logger.error("Stored automation %s is invalid: %s", row["id"], e)
                    report.automations_failed.append(
                        {"name": row["name"], "error": f"Invalid automation: {e.error_count()} error(s)"}
                    )
        return automations

    def _execution_context(self, conn: sqlite3.Connection, hop: DispatchEvent) -> ExecutionContext:
        return ExecutionContext(
            conn=conn,
            base_url=self.base_url,
            default_from_email=self.default_from_email,
            default_from_name=self.default_from_name,
            sms_from_number=self.sms_from_number,
            email_transport=self.email_transport,
            sms_transport=self.sms_transport,
            event=hop,
            clock=self.clock,
        )

    async def _run_hop(
        self, conn: sqlite3.Connection, hop: DispatchEvent, report: DispatchReport
    ) -> list[str]:
        """Match, evaluate and execute for one event. Returns stages moved into."""
        pipe = conn.execute("SELECT id FROM pipes WHERE id = ?", (hop.pipe_id,)).fetchone()
        if pipe is None:
            raise PipeNotFound(f"Pipe not found: {hop.pipe_id}")

        automations = self._load_automations(conn, hop, report)

        card = board.get_card(conn, hop.card_id)
        if "error" in card:
            raise CardNotFound(f"Card not found: {hop.card_id}")
        matched = match_automations(
            hop, automations, build_field_lookup(card["fields"], card["form_submissions"])
        )
        report.automations_matched += len(matched)

        moves: list[str] = []
        for automation in matched:
            card = board.get_card(conn, hop.card_id)
            if "error" in card:
                raise CardNotFound(f"Card not found: {hop.card_id}")
            lookup = build_field_lookup(card["fields"], card["form_submissions"])

            if not evaluate_conditions(automation.conditions, lookup):
                report.automations_skipped.append(automation.name)
                report.details.append(
                    {"automation": automation.name, "status": "skipped", "conditions_met": False}
                )
                board.record_automation_log(
                    conn, automation.id, hop.card_id, "skipped", hop.trigger_type, False, []
                )
                continue

            results = await execute_actions(
                automation, hop.card_id, self._execution_context(conn, hop)
            )
            action_dicts = [r.to_dict() for r in results]
            error_message = "; ".join(r.error or "" for r in results if not r.ok) or None

            if error_message:
                report.automations_failed.append(
                    {"name": automation.name, "error": error_message}
                )
                status = "error"
            else:
                report.automations_executed.append(automation.name)
                status = "success"

            report.details.append(
                {
                    "automation": automation.name,
                    "status": status,
                    "conditions_met": True,
                    "actions": action_dicts,
                }
            )
            board.record_automation_log(
                conn,
                automation.id,
                hop.card_id,
                status,
                hop.trigger_type,
                True,
                action_dicts,
                error_message,
            )
            moves.extend(r.cascade_stage_id for r in results if r.cascade_stage_id)

        return moves

    def _notify(self, event: DispatchEvent, report: DispatchReport) -> None:
        if self.notifier is None:
            return
        task = asyncio.create_task(
            self.notifier.notify(
                "automations_executed",
                {
                    "card_id": event.card_id,
                    "pipe_id": event.pipe_id,
                    "trigger_type": event.trigger_type,
                    "automations_executed": list(report.automations_executed),
                },
            )
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

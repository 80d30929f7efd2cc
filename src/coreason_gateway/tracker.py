# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_gateway

import csv
import io
import json
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from coreason_gateway.config import BudgetConfig
from coreason_gateway.errors import BudgetExceededError
from coreason_gateway.events import EventEmitter, EventType
from coreason_gateway.ledger import COLUMNS, UsageLedger
from coreason_gateway.models import (
    BudgetScope,
    BudgetStatus,
    ModelDefinition,
    TokenUsage,
    UsageOutcome,
    UsageRecord,
)
from coreason_gateway.utils.logger import logger

SECONDS_PER_DAY = 86_400

PendingEvents = List[Tuple[EventType, Dict[str, Any]]]


def day_key(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d")


def month_key(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m")


@dataclass
class _Budget:
    scope: BudgetScope
    limit: Optional[float]
    period: str
    identifier: Optional[str] = None
    consumed: float = 0.0
    reserved: float = 0.0
    alerted: bool = False
    exceeded: bool = False

    def rollover(self, period: str) -> None:
        self.period = period
        self.consumed = 0.0
        self.reserved = 0.0
        self.alerted = False
        self.exceeded = False


@dataclass(frozen=True)
class Reservation:
    """An in-flight cost estimate held against every applicable budget."""

    request_id: str
    user_id: Optional[str]
    amount: float
    periods: Dict[BudgetScope, str] = field(default_factory=dict)


class TokenTracker:
    """
    Usage ledger and spend enforcement.

    Admission is reserve-then-settle: `reserve` holds the estimated cost against the
    daily, monthly and per-user budgets (rejecting if any would overflow), and
    `settle` swaps that hold for the actual cost and appends the UsageRecord.
    Counter updates and the limit check happen in one critical section.
    """

    def __init__(
        self,
        config: BudgetConfig,
        events: Optional[EventEmitter] = None,
        ledger: Optional[UsageLedger] = None,
    ) -> None:
        self.config = config
        self._events = events
        self.ledger = ledger if ledger is not None else UsageLedger(config.ledger_path)
        self._lock = threading.Lock()

        now = time.time()
        self._daily = _Budget(BudgetScope.DAILY, config.daily_limit, day_key(now))
        self._monthly = _Budget(BudgetScope.MONTHLY, config.monthly_limit, month_key(now))
        self._users: Dict[str, _Budget] = {}
        self._restore(now)

    def _restore(self, now: float) -> None:
        """Rebuilds current-period counters from the ledger."""
        restored = 0
        for record in self.ledger.records():
            if record.cost <= 0:
                continue
            if day_key(record.timestamp) == self._daily.period:
                self._daily.consumed += record.cost
            if month_key(record.timestamp) == self._monthly.period:
                self._monthly.consumed += record.cost
                if record.user_id:
                    self._user_budget(record.user_id, now).consumed += record.cost
            restored += 1

        for budget in self._budgets():
            if budget.limit is not None:
                budget.alerted = budget.consumed >= budget.limit * self.config.alert_threshold
                budget.exceeded = budget.consumed >= budget.limit
        if restored:
            logger.info(
                f"Restored budget counters from ledger: daily=${self._daily.consumed:.4f}, "
                f"monthly=${self._monthly.consumed:.4f}"
            )

    @staticmethod
    def calculate_cost(model: ModelDefinition, usage: TokenUsage) -> float:
        return model.cost_for(usage)

    def reserve(
        self,
        request_id: str,
        estimate: float,
        user_id: Optional[str] = None,
        provider: str = "",
        model: str = "",
    ) -> Reservation:
        """
        Holds `estimate` against every applicable budget.

        Raises:
            BudgetExceededError: If consumed + reserved + estimate exceeds a hard limit.
                A `rejected` UsageRecord with zero cost is appended first.
        """
        pending: PendingEvents = []
        error: Optional[BudgetExceededError] = None
        rejected: Optional[UsageRecord] = None
        with self._lock:
            now = time.time()
            self._roll(now)
            budgets = self._applicable(user_id, now)

            for budget in budgets:
                if budget.limit is not None and budget.consumed + budget.reserved + estimate > budget.limit:
                    error = BudgetExceededError(
                        f"{budget.scope.value.capitalize()} budget exceeded"
                        f"{f' for user {budget.identifier}' if budget.identifier else ''}: "
                        f"${budget.consumed:.4f} used + ${budget.reserved:.4f} reserved + "
                        f"${estimate:.4f} estimated > ${budget.limit:.4f}",
                        scope=budget.scope,
                        limit=budget.limit,
                        consumed=budget.consumed,
                        estimate=estimate,
                        identifier=budget.identifier,
                    )
                    pending.append((EventType.BUDGET_EXCEEDED, self._alert_payload(budget, rejected=True)))
                    break

            if error is None:
                for budget in budgets:
                    budget.reserved += estimate
                reservation = Reservation(
                    request_id=request_id,
                    user_id=user_id,
                    amount=estimate,
                    periods={b.scope: b.period for b in budgets},
                )
            else:
                rejected = UsageRecord(
                    provider=provider,
                    model=model,
                    user_id=user_id,
                    cost=0.0,
                    success=False,
                    outcome=UsageOutcome.REJECTED,
                    request_id=request_id,
                    timestamp=now,
                )

        if rejected is not None:
            self.ledger.append(rejected)
        self._publish(pending)
        if error is not None:
            logger.warning(str(error))
            raise error
        logger.debug(f"Reserved ${estimate:.6f} for request {request_id}")
        return reservation

    def settle(self, reservation: Reservation, record: UsageRecord) -> UsageRecord:
        """
        Releases the reservation, adds the actual cost and appends the record.
        Used for successful and failed dispatches alike (failures carry zero cost).
        """
        pending: PendingEvents = []
        with self._lock:
            now = time.time()
            self._roll(now)
            self._release(reservation, now)
            self._consume(record, now, pending)
        self.ledger.append(record)

        self._publish(pending)
        logger.debug(
            f"Recorded usage for {record.provider}/{record.model}: {record.total_tokens} tokens, "
            f"${record.cost:.6f} ({record.outcome.value})"
        )
        return record

    def cancel(self, reservation: Reservation, provider: str = "", model: str = "") -> UsageRecord:
        """Releases the reservation without consuming anything and logs a `cancelled` record."""
        record = UsageRecord(
            provider=provider,
            model=model,
            user_id=reservation.user_id,
            cost=0.0,
            success=False,
            outcome=UsageOutcome.CANCELLED,
            request_id=reservation.request_id,
        )
        with self._lock:
            self._release(reservation, time.time())
        self.ledger.append(record)
        logger.info(f"Request {reservation.request_id} cancelled; reservation of ${reservation.amount:.6f} released")
        return record

    def record(self, record: UsageRecord) -> UsageRecord:
        """Appends a record that had no reservation (cache hits), consuming its cost."""
        pending: PendingEvents = []
        with self._lock:
            now = time.time()
            self._roll(now)
            self._consume(record, now, pending)
        self.ledger.append(record)
        self._publish(pending)
        return record

    def get_budget_status(self) -> Dict[str, Any]:
        with self._lock:
            self._roll(time.time())
            return {
                "daily": self._status(self._daily),
                "monthly": self._status(self._monthly),
                "per_user": {user_id: self._status(b) for user_id, b in self._users.items()},
            }

    def get_usage_stats(self, start: Optional[float] = None, end: Optional[float] = None) -> Dict[str, Any]:
        """
        Aggregates the ledger over [start, end] by provider, model, user and UTC day.
        """
        records = self.ledger.records(start, end)
        return {
            "total": _aggregate(records),
            "by_provider": _group(records, lambda r: r.provider),
            "by_model": _group(records, lambda r: f"{r.provider}:{r.model}"),
            "by_user": _group([r for r in records if r.user_id], lambda r: r.user_id or ""),
            "by_day": _group(records, lambda r: day_key(r.timestamp)),
            "by_outcome": _group(records, lambda r: r.outcome.value),
            "period": {"start": start, "end": end},
        }

    def get_provider_comparison(self, start: Optional[float] = None, end: Optional[float] = None) -> Dict[str, Any]:
        stats = self.get_usage_stats(start, end)
        providers = [
            {
                "name": name,
                **data,
                "average_cost_per_request": data["cost"] / data["requests"] if data["requests"] else 0.0,
                "average_tokens_per_request": data["tokens"] / data["requests"] if data["requests"] else 0.0,
            }
            for name, data in stats["by_provider"].items()
        ]
        providers.sort(key=lambda p: p["cost"], reverse=True)
        return {
            "providers": providers,
            "total_cost": stats["total"]["cost"],
            "total_tokens": stats["total"]["tokens"],
            "total_requests": stats["total"]["requests"],
        }

    def export(self, start: Optional[float] = None, end: Optional[float] = None, fmt: str = "json") -> str:
        """
        Exports usage as JSON (aggregated stats) or CSV (one row per record).

        Raises:
            ValueError: If the format is not 'json' or 'csv'.
        """
        if fmt == "json":
            return json.dumps(self.get_usage_stats(start, end), indent=2)
        if fmt == "csv":
            buffer = io.StringIO()
            writer = csv.writer(buffer)
            writer.writerow(COLUMNS)
            for record in self.ledger.records(start, end):
                row = record.model_dump(mode="json")
                writer.writerow([row[c] for c in COLUMNS])
            return buffer.getvalue()
        raise ValueError(f"Unsupported export format: {fmt}")

    def cleanup_old_data(self) -> int:
        cutoff = time.time() - self.config.retention_days * SECONDS_PER_DAY
        purged = self.ledger.purge_before(cutoff)
        logger.info(f"Purged {purged} usage records older than {self.config.retention_days} days")
        return purged

    def reset_daily(self) -> None:
        with self._lock:
            self._daily.rollover(day_key(time.time()))
        logger.info("Daily budget reset")

    def reset_monthly(self) -> None:
        with self._lock:
            period = month_key(time.time())
            self._monthly.rollover(period)
            for budget in self._users.values():
                budget.rollover(period)
        logger.info("Monthly budget reset")

    def close(self) -> None:
        self.ledger.close()

    def _budgets(self) -> List[_Budget]:
        return [self._daily, self._monthly, *self._users.values()]

    def _user_budget(self, user_id: str, now: float) -> _Budget:
        budget = self._users.get(user_id)
        if budget is None:
            budget = _Budget(BudgetScope.USER, self.config.limit_for_user(user_id), month_key(now), identifier=user_id)
            self._users[user_id] = budget
        return budget

    def _applicable(self, user_id: Optional[str], now: float) -> List[_Budget]:
        budgets = [self._daily, self._monthly]
        if user_id:
            budgets.append(self._user_budget(user_id, now))
        return budgets

    def _roll(self, now: float) -> None:
        # Caller holds the lock.
        today = day_key(now)
        if self._daily.period != today:
            logger.info(f"Daily budget period rolled over to {today}")
            self._daily.rollover(today)
        month = month_key(now)
        if self._monthly.period != month:
            logger.info(f"Monthly budget period rolled over to {month}")
            self._monthly.rollover(month)
        for budget in self._users.values():
            if budget.period != month:
                budget.rollover(month)

    def _release(self, reservation: Reservation, now: float) -> None:
        # A reservation from an earlier period was wiped by the rollover.
        for budget in self._applicable(reservation.user_id, now):
            if reservation.periods.get(budget.scope) == budget.period:
                budget.reserved = max(budget.reserved - reservation.amount, 0.0)

    def _consume(self, record: UsageRecord, now: float, pending: PendingEvents) -> None:
        if record.cost <= 0:
            return
        for budget in self._applicable(record.user_id, now):
            budget.consumed += record.cost
            if budget.limit is None:
                continue
            if not budget.alerted and budget.consumed >= budget.limit * self.config.alert_threshold:
                budget.alerted = True
                pending.append((EventType.BUDGET_WARNING, self._alert_payload(budget)))
                logger.warning(
                    f"{budget.scope.value.capitalize()} budget at {budget.consumed / budget.limit:.0%} "
                    f"(${budget.consumed:.4f} of ${budget.limit:.4f})"
                )
            if not budget.exceeded and budget.consumed >= budget.limit:
                budget.exceeded = True
                pending.append((EventType.BUDGET_EXCEEDED, self._alert_payload(budget)))
                logger.error(f"{budget.scope.value.capitalize()} budget exceeded: ${budget.consumed:.4f}")

    def _status(self, budget: _Budget) -> BudgetStatus:
        return BudgetStatus(
            scope=budget.scope,
            identifier=budget.identifier,
            period=budget.period,
            limit=budget.limit,
            consumed=budget.consumed,
            reserved=budget.reserved,
            alert_threshold=self.config.alert_threshold,
            exceeded=budget.exceeded,
        )

    @staticmethod
    def _alert_payload(budget: _Budget, rejected: bool = False) -> Dict[str, Any]:
        return {
            "scope": budget.scope.value,
            "user_id": budget.identifier,
            "period": budget.period,
            "limit": budget.limit,
            "consumed": budget.consumed,
            "reserved": budget.reserved,
            "rejected": rejected,
        }

    def _publish(self, pending: PendingEvents) -> None:
        if self._events is None:
            return
        for event_type, payload in pending:
            self._events.emit(event_type, **payload)


def _aggregate(records: List[UsageRecord]) -> Dict[str, Any]:
    return {
        "tokens": sum(r.total_tokens for r in records),
        "cost": sum(r.cost for r in records),
        "requests": len(records),
    }


def _group(records: List[UsageRecord], key: Any) -> Dict[str, Dict[str, Any]]:
    groups: Dict[str, List[UsageRecord]] = {}
    for record in records:
        groups.setdefault(key(record), []).append(record)
    return {name: _aggregate(items) for name, items in groups.items()}

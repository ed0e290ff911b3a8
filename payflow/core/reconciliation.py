"""
Reconciliation engine for matching externally reported transactions.

Uploaded records are matched against the same user's payments:
- A record matches iff amount and external id are both exactly equal
- When several payments qualify, the newest wins and the rest go to
  manual review
- Payments are never mutated
"""
import time
import uuid
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payflow.core.audit import AuditSink
from payflow.core.exceptions import NotFoundError, ValidationError
from payflow.database.models import Payment, ReconciliationRecord, utcnow
from payflow.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

MatchKey = Tuple[int, str]


@dataclass
class ReconciliationSummary:
    """Result of one matching run for a scope."""

    total: int = 0
    matched: int = 0
    unmatched: int = 0
    match_rate: float = 0.0
    manual_review: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def match_rate(matched: int, total: int) -> float:
    """Percentage of matched records, one decimal place."""
    if total == 0:
        return 0.0
    return round(matched / total * 100, 1)


def build_payment_index(payments: Iterable[Payment]) -> Dict[MatchKey, List[Payment]]:
    """
    Index payments by ``(amount_minor_units, external_payment_id)``.

    Each bucket is ordered newest first.
    """
    index: Dict[MatchKey, List[Payment]] = defaultdict(list)
    for payment in payments:
        if payment.external_payment_id is None:
            continue
        index[(payment.amount_minor_units, payment.external_payment_id)].append(payment)
    for bucket in index.values():
        bucket.sort(key=lambda p: p.created_at, reverse=True)
    return index


def _parse_amount(value: Any, position: int) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"Record {position}: amount must be an integer in minor units")
    return value


def _parse_date(value: Any, position: int) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError as e:
            raise ValidationError(f"Record {position}: invalid transaction_date {value!r}") from e
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class ReconciliationEngine:
    """
    Matches uploaded reconciliation records to payments, per user scope.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        audit_sink: Optional[AuditSink] = None,
    ):
        self.session_factory = session_factory
        self.audit_sink = audit_sink
        logger.info("reconciliation_engine_initialized")

    async def import_records(
        self,
        user_scope: str,
        records: Iterable[Mapping[str, Any]],
        file_name: str,
    ) -> int:
        """
        Store a parsed upload as unmatched records.

        The whole batch is rejected if any record is invalid.

        Args:
            user_scope: Owner of the upload
            records: Parsed rows (external_transaction_id, amount, currency, transaction_date)
            file_name: Source file name

        Returns:
            int: Number of records stored

        Raises:
            ValidationError: If any record is malformed
        """
        if not user_scope:
            raise ValidationError("A user scope is required")

        rows = []
        for position, record in enumerate(records, start=1):
            currency = str(record.get("currency") or "USD").upper()
            if len(currency) != 3:
                raise ValidationError(f"Record {position}: invalid currency {currency!r}")
            external_id = record.get("external_transaction_id")
            rows.append(
                ReconciliationRecord(
                    file_name=file_name,
                    uploaded_by=user_scope,
                    external_transaction_id=str(external_id) if external_id is not None else None,
                    amount_minor_units=_parse_amount(record.get("amount"), position),
                    currency=currency,
                    transaction_date=_parse_date(record.get("transaction_date"), position),
                    status="unmatched",
                )
            )

        async with self.session_factory() as db:
            db.add_all(rows)
            await db.commit()

        logger.info(
            "reconciliation_records_imported",
            user_scope=user_scope,
            file_name=file_name,
            count=len(rows),
        )
        return len(rows)

    async def match(self, user_scope: str) -> ReconciliationSummary:
        """
        Match every unmatched record in ``user_scope``.

        Returns:
            ReconciliationSummary: Counts, match rate and manual review items
        """
        start_time = time.time()
        summary = ReconciliationSummary()

        async with self.session_factory() as db:
            records = (
                await db.execute(
                    select(ReconciliationRecord)
                    .where(
                        ReconciliationRecord.uploaded_by == user_scope,
                        ReconciliationRecord.status == "unmatched",
                    )
                    .order_by(ReconciliationRecord.created_at)
                )
            ).scalars().all()

            payments = (
                await db.execute(select(Payment).where(Payment.user_id == user_scope))
            ).scalars().all()
            index = build_payment_index(payments)

            summary.total = len(records)
            for record in records:
                if record.amount_minor_units is None or record.external_transaction_id is None:
                    summary.unmatched += 1
                    continue

                candidates = index.get((record.amount_minor_units, record.external_transaction_id))
                if not candidates:
                    summary.unmatched += 1
                    continue

                chosen = candidates[0]
                result = await db.execute(
                    update(ReconciliationRecord)
                    .where(
                        ReconciliationRecord.id == record.id,
                        ReconciliationRecord.status == "unmatched",
                    )
                    .values(status="matched", matched_payment_id=chosen.id)
                )
                if result.rowcount != 1:
                    # Matched or disputed by a concurrent run
                    summary.unmatched += 1
                    continue

                summary.matched += 1
                if len(candidates) > 1:
                    summary.manual_review.append(
                        {
                            "record_id": str(record.id),
                            "external_transaction_id": record.external_transaction_id,
                            "matched_payment_id": str(chosen.id),
                            "other_payment_ids": [str(p.id) for p in candidates[1:]],
                        }
                    )

            await db.commit()

        summary.match_rate = match_rate(summary.matched, summary.total)
        duration = time.time() - start_time
        metrics.set_reconciliation_metrics(summary.matched, summary.unmatched, duration)
        logger.info(
            "reconciliation_completed",
            user_scope=user_scope,
            total=summary.total,
            matched=summary.matched,
            unmatched=summary.unmatched,
            match_rate=summary.match_rate,
            manual_review=len(summary.manual_review),
            duration_seconds=duration,
        )

        if summary.manual_review:
            logger.warning(
                "reconciliation_manual_review_required",
                user_scope=user_scope,
                count=len(summary.manual_review),
            )
            if self.audit_sink is not None:
                for item in summary.manual_review:
                    await self.audit_sink.record(
                        "reconciliation.manual_review",
                        "reconciliation_record",
                        item["record_id"],
                        user_id=user_scope,
                        new_values=item,
                    )

        return summary

    async def match_all(self) -> Dict[str, ReconciliationSummary]:
        """
        Run ``match`` for every scope that has unmatched records.

        A failure in one scope is logged and does not stop the others.
        """
        async with self.session_factory() as db:
            scopes = (
                await db.execute(
                    select(ReconciliationRecord.uploaded_by)
                    .where(ReconciliationRecord.status == "unmatched")
                    .distinct()
                )
            ).scalars().all()

        results: Dict[str, ReconciliationSummary] = {}
        for scope in scopes:
            try:
                results[scope] = await self.match(scope)
            except Exception as e:
                logger.error("reconciliation_scope_failed", user_scope=scope, error=str(e))
        return results

    async def mark_disputed(self, record_id: str, user_scope: str) -> Dict[str, Any]:
        """
        Flag a record as disputed after manual review.

        Raises:
            NotFoundError: Unknown record or outside the caller's scope
        """
        try:
            parsed_id = uuid.UUID(str(record_id))
        except ValueError:
            raise NotFoundError(f"Reconciliation record {record_id} not found")

        async with self.session_factory() as db:
            record = (
                await db.execute(
                    select(ReconciliationRecord)
                    .where(
                        ReconciliationRecord.id == parsed_id,
                        ReconciliationRecord.uploaded_by == user_scope,
                    )
                    .with_for_update()
                )
            ).scalar_one_or_none()
            if record is None:
                raise NotFoundError(f"Reconciliation record {record_id} not found")

            old_status = record.status
            record.status = "disputed"
            await db.commit()

        logger.info("reconciliation_record_disputed", record_id=str(parsed_id), old_status=old_status)
        if self.audit_sink is not None:
            await self.audit_sink.record(
                "reconciliation.disputed",
                "reconciliation_record",
                str(parsed_id),
                user_id=user_scope,
                old_values={"status": old_status},
                new_values={"status": "disputed", "disputed_at": utcnow().isoformat()},
            )
        return {"id": str(parsed_id), "status": "disputed"}

    async def summarize(self, user_scope: str) -> Dict[str, Any]:
        """Record counts by status for a scope."""
        async with self.session_factory() as db:
            rows = (
                await db.execute(
                    select(ReconciliationRecord.status, func.count(ReconciliationRecord.id))
                    .where(ReconciliationRecord.uploaded_by == user_scope)
                    .group_by(ReconciliationRecord.status)
                )
            ).all()

        counts = {"unmatched": 0, "matched": 0, "disputed": 0}
        for status, count in rows:
            counts[status] = count
        total = sum(counts.values())
        return {
            "total": total,
            **counts,
            "match_rate": match_rate(counts["matched"], total),
        }

"""
Reconciliation reporting and settlement alerts.

Three alert kinds:
- immediate verification failure (one per unverified transfer)
- per-cycle discrepancy batch (skipped when there is nothing to report)
- periodic summary (always sent)

Alerting and alert-record persistence never raise into the settlement flow.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, List, Optional

from .alerts import AlertKind, AlertSeverity
from .interfaces import AlertSink, SettlementStore
from .models import (
    Discrepancy,
    MatchState,
    ReconciliationReport,
    SettlementResult,
    TransferKind,
)

logger = logging.getLogger(__name__)


def _discrepancy_for(result: SettlementResult) -> Discrepancy:
    details = result.verification_details
    return Discrepancy(
        transaction_hash=result.transaction_hash or "unknown",
        chain_key=result.chain_key,
        kind=result.kind,
        issue=result.verification_error or "Verification pending",
        details={
            "asset": result.asset,
            "token_id": result.token_id,
            "amount": str(result.settlement_amount),
            "state": details.state.value if details else None,
            "error_code": details.error_code if details else None,
        },
    )


class ReconciliationReporter:
    """Builds reconciliation reports and raises settlement alerts."""

    def __init__(self, alerts: AlertSink, persistence: SettlementStore):
        self._alerts = alerts
        self._persistence = persistence

    def build_report(
        self,
        results: Iterable[SettlementResult],
        date: Optional[str] = None,
    ) -> ReconciliationReport:
        """Tally submitted transfers by kind. Results that never got a reference are not counted."""
        report = ReconciliationReport()
        if date:
            report.date = date

        for result in results:
            if not result.success or not result.transaction_hash:
                continue

            verified = result.verified is True
            if result.kind == TransferKind.DEPOSIT:
                report.total_deposits += 1
                if verified:
                    report.verified_deposits += 1
                else:
                    report.failed_deposits += 1
            else:
                report.total_withdrawals += 1
                if verified:
                    report.verified_withdrawals += 1
                else:
                    report.failed_withdrawals += 1

            if not verified:
                report.discrepancies.append(_discrepancy_for(result))

        return report

    async def _emit(self, message: str, severity: AlertSeverity, kind: AlertKind, data: dict) -> None:
        try:
            await self._alerts.emit(message, severity.value, kind=kind, data=data)
        except Exception:
            logger.exception(f"Failed to send {kind.value} alert")

    async def _record(self, discrepancy: Discrepancy) -> None:
        try:
            await self._persistence.append_alert_record(discrepancy)
            logger.debug(f"Alert logged for {discrepancy.transaction_hash}")
        except Exception:
            logger.exception(f"Failed to log alert for {discrepancy.transaction_hash}")

    async def alert_verification_failure(self, result: SettlementResult) -> None:
        """Raised as soon as one transfer fails to verify. Timeouts are warnings, everything else critical."""
        state = result.verification_details.state if result.verification_details else None
        timed_out = state == MatchState.TIMED_OUT
        severity = AlertSeverity.WARNING if timed_out else AlertSeverity.CRITICAL
        headline = "TIMEOUT" if timed_out else "FAILED"
        timestamp = result.verification_timestamp.isoformat() if result.verification_timestamp else "n/a"

        message = (
            f"Settlement {result.kind.value} verification {headline}\n"
            f"Chain: {result.chain_key}\n"
            f"Transaction: {result.transaction_hash}\n"
            f"Amount: {result.settlement_amount} {result.asset}\n"
            f"Error: {result.verification_error}\n"
            f"Timestamp: {timestamp}"
        )
        if timed_out:
            logger.warning(message)
        else:
            logger.error(message)

        await self._emit(
            message,
            severity,
            AlertKind.VERIFICATION_FAILURE,
            {
                "asset": result.asset,
                "chain_key": result.chain_key,
                "transaction_hash": result.transaction_hash,
                "amount": str(result.settlement_amount),
                "state": state.value if state else None,
            },
        )
        await self._record(_discrepancy_for(result))

    async def alert_discrepancies(self, discrepancies: List[Discrepancy]) -> None:
        if not discrepancies:
            return

        lines = [f"Reconciliation found {len(discrepancies)} discrepancy(ies)"]
        for d in discrepancies:
            lines.append(f"- {d.kind.value.upper()}: {d.transaction_hash} on {d.chain_key}")
            lines.append(f"  Issue: {d.issue}")
        message = "\n".join(lines)
        logger.warning(message)

        await self._emit(
            message,
            AlertSeverity.WARNING,
            AlertKind.DISCREPANCIES,
            {"count": len(discrepancies), "discrepancies": [d.to_dict() for d in discrepancies]},
        )

    async def send_summary(self, report: ReconciliationReport) -> None:
        message = (
            f"Settlement Reconciliation Report - {report.date}\n"
            f"Deposits: {report.verified_deposits}/{report.total_deposits} verified "
            f"({report.deposit_rate:.1f}%)\n"
            f"Withdrawals: {report.verified_withdrawals}/{report.total_withdrawals} verified "
            f"({report.withdrawal_rate:.1f}%)"
        )
        logger.info(message)
        await self._emit(
            message,
            AlertSeverity.INFO,
            AlertKind.RECONCILIATION_SUMMARY,
            {
                "deposit_rate": report.deposit_rate,
                "withdrawal_rate": report.withdrawal_rate,
                "report": report.to_dict(),
            },
        )

    async def process_report(self, report: ReconciliationReport) -> None:
        await self.alert_discrepancies(report.discrepancies)
        await self.send_summary(report)

    async def report_cycle(
        self,
        results: Iterable[SettlementResult],
        at: Optional[datetime] = None,
    ) -> ReconciliationReport:
        """Build and publish the report for one settlement cycle."""
        report = self.build_report(results, date=at.date().isoformat() if at else None)
        await self.process_report(report)
        return report

"""
Result aggregation for a distribution cycle.
"""

from typing import Iterable

import structlog

from revenue_distributor.core.config import Settings, SolanaConfig
from .types import BatchOutcome, DistributionReport, FailedBatch


logger = structlog.get_logger(__name__)


def aggregate(outcomes: Iterable[BatchOutcome], total_lamports: int = 0) -> DistributionReport:
    """Partition settled batch outcomes into signatures and failures, in batch order."""
    report = DistributionReport(total_lamports=total_lamports)
    for outcome in sorted(outcomes, key=lambda o: o.batch_index):
        report.batch_count += 1
        if outcome.is_committed:
            report.successful.append(outcome.signature)
        else:
            report.failed.append(FailedBatch(
                outcome.batch_index,
                outcome.reason or "Unknown error",
                outcome.recipients
            ))
    return report


def log_report(report: DistributionReport, config: Settings) -> None:
    """Emit one line per transaction so operators can reconcile by hand."""
    log = logger.bind(service="distribution_report")
    log.info(
        "Distribution completed",
        total_lamports=report.total_lamports,
        successful=len(report.successful),
        failed=len(report.failed),
        success_rate=f"{report.success_rate * 100:.1f}%"
    )
    for number, signature in enumerate(report.successful, start=1):
        log.info(
            "Successful transaction",
            transaction=number,
            signature=signature,
            url=SolanaConfig.explorer_tx_url(signature, config)
        )
    for failure in report.failed:
        log.error(
            "Failed transaction",
            batch=failure.batch_index + 1,
            reason=failure.reason,
            recipients=list(failure.recipients)
        )

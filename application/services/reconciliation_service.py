"""
Reconciliation pass.

Re-derives the denormalised snapshot fields from their sources, expires
payments stuck in created/pending, and re-applies success side effects that
never landed. Every record is handled on its own: one failure is logged and
skipped, it never aborts the pass. Running it twice in a row is harmless.
"""
from __future__ import annotations

from typing import Callable, Optional

from application.dtos.billing import ReconciliationReport
from application.ports.directory import StudentDirectory
from application.services.settlement_service import SettlementService
from core.logging_config import get_logger
from domain.billing.entity import Payment
from domain.billing.money import join_subjects
from domain.common.unit_of_work import AbstractUnitOfWork


logger = get_logger(__name__)

UNKNOWN_BRANCH = "Unknown"


class ReconciliationService:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        directory: StudentDirectory,
        settlement: SettlementService,
        *,
        batch_size: int = 200,
    ) -> None:
        self._uow_factory = uow_factory
        self._directory = directory
        self._settlement = settlement
        self._batch_size = batch_size

    async def run_reconciliation(self) -> ReconciliationReport:
        report = ReconciliationReport()
        logger.info("reconciliation_started", batch_size=self._batch_size)
        await self._repair_request_snapshots(report)
        await self._repair_payment_snapshots(report)
        report.expired = await self._settlement.expire_stale_payments(limit=self._batch_size)
        report.orphans_repaired = await self._settlement.repair_unsettled_success(limit=self._batch_size)
        logger.info("reconciliation_finished", **report.model_dump())
        return report

    async def _repair_request_snapshots(self, report: ReconciliationReport) -> None:
        async with self._uow_factory(readonly=True) as uow:
            requests = await uow.payment_request_repository.list_missing_snapshot(self._batch_size)
        for req in requests:
            try:
                info = await self._directory.get_class(req.class_id)
                if info is None:
                    logger.info("reconciliation_request_class_missing", request_id=req.id, class_id=req.class_id)
                    continue
                class_name = req.class_name or info.name
                class_subject = req.class_subject or info.subject
                if (class_name, class_subject) == (req.class_name, req.class_subject):
                    continue
                async with self._uow_factory() as uow:
                    await uow.payment_request_repository.update_snapshot(
                        req.id, class_name=class_name, class_subject=class_subject
                    )
                report.requests_repaired += 1
            except Exception as exc:
                logger.warning("reconciliation_request_failed", request_id=req.id, error=str(exc), exc_info=True)

    async def _repair_payment_snapshots(self, report: ReconciliationReport) -> None:
        async with self._uow_factory(readonly=True) as uow:
            payments = await uow.payment_repository.list_missing_snapshot(self._batch_size)
        report.scanned = len(payments)
        for payment in payments:
            try:
                branch_name = payment.branch_name or await self._resolve_branch_name(payment)
                subject_name = payment.subject_name or await self._resolve_subject_name(payment)
                if (branch_name, subject_name) == (payment.branch_name, payment.subject_name):
                    logger.info("reconciliation_record_unresolved", payment_id=payment.id)
                    report.skipped += 1
                    continue
                async with self._uow_factory() as uow:
                    await uow.payment_repository.update_snapshot(
                        payment.id, branch_name=branch_name, subject_name=subject_name
                    )
                report.repaired += 1
                logger.info(
                    "reconciliation_record_repaired",
                    payment_id=payment.id,
                    branch_name=branch_name,
                    subject_name=subject_name,
                )
            except Exception as exc:
                report.skipped += 1
                logger.warning("reconciliation_record_failed", payment_id=payment.id, error=str(exc), exc_info=True)

    async def _resolve_branch_name(self, payment: Payment) -> str:
        student = await self._directory.get_student(payment.student_id)
        if student is None or not student.branch_id:
            return UNKNOWN_BRANCH
        branch = await self._directory.get_branch(student.branch_id)
        return branch.name if branch is not None and branch.name else UNKNOWN_BRANCH

    async def _resolve_subject_name(self, payment: Payment) -> Optional[str]:
        """Request snapshots first; the live class only fills gaps."""
        async with self._uow_factory(readonly=True) as uow:
            requests = await uow.payment_request_repository.get_many(payment.request_ids)
        subjects: list[Optional[str]] = []
        for req in requests:
            if req.class_subject:
                subjects.append(req.class_subject)
                continue
            info = await self._directory.get_class(req.class_id)
            subjects.append(info.subject if info is not None else None)
        return join_subjects(subjects) or None

"""
sourcing/reports.py

Smart Finder report pipeline.

Flow:
    1. Validate the form
    2. Spend REPORT_COST credits and insert a `generating` report in the
       same transaction
    3. Generate on a worker thread (own session), bounded by with_timeout
    4. Move the report to `completed` or `failed` with a conditional
       UPDATE ... WHERE status = 'generating', so it is written once

A failed report can be retried for free; the retry goes back to step 3.

Usage:
    from sourcing.reports import get_pipeline

    report = get_pipeline().submit(user.id, title, category, form_data)

Version History:
    2026-01-12: Initial implementation
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional, Tuple

from sqlalchemy import update

from billing.config import REPORT_COST, REPORT_DESCRIPTION
from billing.db import get_db, db_session, utcnow
from billing.ledger import ensure_profile, spend, log_spend
from config import REPORT_TIMEOUT_SECONDS, REPORT_WORKERS
from errors import NotFound, ValidationError, InvalidTransition
from retry import with_timeout
from sourcing.generator import ReportGenerator
from sourcing.models import Report, ReportStatus


REQUIRED_FORM_FIELDS = ('productName',)
MAX_TITLE_LENGTH = 300


def validate_report_input(data: dict) -> Tuple[str, str, dict]:
    """
    Check a report submission.

    Returns:
        (title, category, form_data)
    """
    title = data.get('title')
    category = data.get('category')
    form_data = data.get('formData')

    if not isinstance(title, str) or not title.strip():
        raise ValidationError('title is required')
    if len(title) > MAX_TITLE_LENGTH:
        raise ValidationError('title is too long')
    if not isinstance(category, str) or not category.strip():
        raise ValidationError('category is required')
    if not isinstance(form_data, dict):
        raise ValidationError('formData must be an object')

    for field in REQUIRED_FORM_FIELDS:
        if not str(form_data.get(field) or '').strip():
            raise ValidationError(f'formData.{field} is required')

    return title.strip(), category.strip(), form_data


class ReportPipeline:
    """
    Args:
        generator: callable(form_data) -> report dict
        executor: where generation runs; None runs it inline (tests)
        timeout: seconds before a generation attempt is abandoned
    """

    def __init__(
        self,
        generator: Optional[Callable[[dict], dict]] = None,
        executor: Optional[ThreadPoolExecutor] = None,
        timeout: float = REPORT_TIMEOUT_SECONDS,
    ):
        self.generator = generator or ReportGenerator()
        self.executor = executor
        self.timeout = timeout

    # =========================================================================
    # SUBMISSION
    # =========================================================================

    def submit(self, user_id: int, title: str, category: str, form_data: dict) -> Report:
        """
        Charge for and start a report.

        Raises:
            InsufficientCredits: balance below REPORT_COST (no report created)
        """
        db = get_db()

        ensure_profile(user_id)
        charge = spend(user_id, REPORT_COST, REPORT_DESCRIPTION, commit=False)

        report = Report(
            user_id=user_id,
            title=title,
            category=category,
            form_data=form_data,
            status=ReportStatus.GENERATING,
        )
        db.add(report)
        db.commit()
        log_spend(charge)

        print(f"[Reports] Report {report.id} submitted by user {user_id}")

        self._schedule(report.id)
        db.refresh(report)
        return report

    def retry(self, user_id: int, report_id: int) -> Report:
        """Re-run a failed report. No credit is charged."""
        db = get_db()

        report = self.get_report(user_id, report_id)
        if report.status != ReportStatus.FAILED:
            raise InvalidTransition('Only failed reports can be retried')

        result = db.execute(
            update(Report)
            .where(Report.id == report_id, Report.status == ReportStatus.FAILED)
            .values(status=ReportStatus.GENERATING, error_message=None, report_data=None)
            .execution_options(synchronize_session='fetch')
        )
        db.commit()

        if result.rowcount != 1:
            raise InvalidTransition('Only failed reports can be retried')

        print(f"[Reports] Report {report_id} retried by user {user_id}")

        self._schedule(report_id)
        db.refresh(report)
        return report

    def _schedule(self, report_id: int):
        if self.executor is None:
            self.run(report_id)
        else:
            self.executor.submit(self.run, report_id)

    # =========================================================================
    # GENERATION (worker side)
    # =========================================================================

    def run(self, report_id: int) -> Optional[str]:
        """
        Generate one report and record the outcome.

        Runs off the request thread, so failures are recorded on the row,
        not raised.

        Returns:
            The final status, or None if the report was no longer generating
        """
        with db_session() as db:
            report = db.get(Report, report_id)
            if report is None or report.status != ReportStatus.GENERATING:
                return None
            form_data = dict(report.form_data or {})

        try:
            report_data = with_timeout(
                lambda: self.generator(form_data),
                self.timeout,
                label=f'Report {report_id} generation',
            )
        except Exception as e:
            print(f"[Reports] Report {report_id} failed: {e}")
            return self._finish(report_id, ReportStatus.FAILED, error_message=str(e)[:500] or type(e).__name__)

        return self._finish(report_id, ReportStatus.COMPLETED, report_data=report_data)

    def _finish(self, report_id: int, status: str, report_data=None, error_message=None) -> Optional[str]:
        values = {'status': status, 'completed_at': utcnow()}
        if status == ReportStatus.COMPLETED:
            values['report_data'] = report_data
        else:
            values['error_message'] = error_message

        with db_session() as db:
            result = db.execute(
                update(Report)
                .where(Report.id == report_id, Report.status == ReportStatus.GENERATING)
                .values(**values)
                .execution_options(synchronize_session=False)
            )

        if result.rowcount != 1:
            print(f"[Reports] Report {report_id} changed during generation; result dropped")
            return None

        print(f"[Reports] Report {report_id} {status}")
        return status

    # =========================================================================
    # QUERIES
    # =========================================================================

    def list_reports(self, user_id: int) -> list:
        return get_db().query(Report).filter(
            Report.user_id == user_id
        ).order_by(Report.created_at.desc(), Report.id.desc()).all()

    def get_report(self, user_id: int, report_id: int) -> Report:
        """Owner-only lookup; other users' reports look missing."""
        report = get_db().get(Report, report_id)
        if report is None or report.user_id != user_id:
            raise NotFound('Report not found')
        return report

    def delete_report(self, user_id: int, report_id: int):
        db = get_db()
        report = self.get_report(user_id, report_id)
        db.delete(report)
        db.commit()
        print(f"[Reports] Report {report_id} deleted by user {user_id}")


_pipeline: Optional[ReportPipeline] = None


def get_pipeline() -> ReportPipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = ReportPipeline(executor=ThreadPoolExecutor(max_workers=REPORT_WORKERS))
    return _pipeline


def set_pipeline(pipeline: Optional[ReportPipeline]):
    """Install a pipeline (tests use an inline one with a fake generator)."""
    global _pipeline
    _pipeline = pipeline

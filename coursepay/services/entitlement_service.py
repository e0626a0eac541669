"""
Entitlement granting: course/lesson unlock and teacher payout bookkeeping
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional, Protocol, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from coursepay.errors import GrantPending
from coursepay.models import CourseAccess, EntitlementGrant, PaymentIntent, PayoutStatus, TeacherPayout
from coursepay.services.ledger_service import ReconciliationLedger

logger = logging.getLogger(__name__)


class AccessControl(Protocol):
    """Domain access store. unlock must be safe to repeat for the same reference."""

    def unlock(
        self,
        *,
        reference: str,
        student_id: str,
        course_id: str,
        lesson_id: Optional[str] = None,
    ) -> None:
        ...


class DatabaseAccessControl:
    """Stores unlocked courses in the course_access table, one row per reference"""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def unlock(
        self,
        *,
        reference: str,
        student_id: str,
        course_id: str,
        lesson_id: Optional[str] = None,
    ) -> None:
        with self._session_factory() as db:
            db.add(
                CourseAccess(
                    reference=reference,
                    student_id=student_id,
                    course_id=course_id,
                    lesson_id=lesson_id,
                    unlocked_at=datetime.utcnow(),
                )
            )
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.info("Access for %s already unlocked", reference)

    def has_access(self, *, student_id: str, course_id: str, lesson_id: Optional[str] = None) -> bool:
        with self._session_factory() as db:
            query = db.query(CourseAccess).filter(
                CourseAccess.student_id == student_id,
                CourseAccess.course_id == course_id,
            )
            if lesson_id is not None:
                # A whole-course unlock covers every lesson.
                query = query.filter(
                    (CourseAccess.lesson_id == lesson_id) | (CourseAccess.lesson_id.is_(None))
                )
            return db.query(query.exists()).scalar()


def split_payout(amount_minor_units: int, teacher_share_percent: int = 70) -> Tuple[int, int]:
    """Split a confirmed amount into (teacher, platform) shares in minor units"""
    teacher_share = amount_minor_units * teacher_share_percent // 100
    return teacher_share, amount_minor_units - teacher_share


def _lookup(metadata: Dict[str, Any], camel: str, snake: str) -> Optional[str]:
    value = metadata.get(camel)
    if value is None:
        value = metadata.get(snake)
    if value is None or value == "":
        return None
    return str(value)


class EntitlementGrantor:
    def __init__(
        self,
        session_factory: sessionmaker,
        ledger: ReconciliationLedger,
        access_control: AccessControl,
        *,
        teacher_share_percent: int = 70,
    ):
        self._session_factory = session_factory
        self._ledger = ledger
        self._access_control = access_control
        self._teacher_share_percent = teacher_share_percent

    def get_grant(self, reference: str) -> Optional[EntitlementGrant]:
        with self._session_factory() as db:
            return db.query(EntitlementGrant).filter(EntitlementGrant.reference == reference).first()

    def get_payout(self, reference: str) -> Optional[TeacherPayout]:
        with self._session_factory() as db:
            return db.query(TeacherPayout).filter(TeacherPayout.reference == reference).first()

    def grant(self, intent: PaymentIntent) -> EntitlementGrant:
        """
        Apply the entitlement for a confirmed intent.

        Only call after the ledger reported a first confirmation or a won
        retry claim. Repeating the call for the same reference returns the
        stored grant. On failure the ledger's grant marker is set to failed
        and GrantPending is raised.
        """
        reference = intent.reference
        try:
            existing = self.get_grant(reference)
        except SQLAlchemyError as exc:
            logger.exception("Looking up the grant for %s failed", reference)
            return self._fail(reference, f"grant lookup failed: {exc}")
        if existing is not None:
            self._ledger.mark_granted(reference)
            return existing

        metadata = intent.payment_metadata
        student_id = _lookup(metadata, "studentId", "student_id")
        course_id = _lookup(metadata, "courseId", "course_id")
        lesson_id = _lookup(metadata, "lessonId", "lesson_id")
        teacher_id = _lookup(metadata, "teacherId", "teacher_id")

        if student_id is None or course_id is None:
            return self._fail(reference, "metadata is missing studentId or courseId")

        try:
            self._access_control.unlock(
                reference=reference,
                student_id=student_id,
                course_id=course_id,
                lesson_id=lesson_id,
            )
        except Exception as exc:
            logger.exception("Unlocking %s for student %s failed", course_id, student_id)
            return self._fail(reference, f"access control failed: {exc}")

        teacher_payout = None
        grant = EntitlementGrant(
            reference=reference,
            student_id=student_id,
            course_id=course_id,
            lesson_id=lesson_id,
            amount_minor_units=intent.amount_minor_units,
            teacher_id=teacher_id,
            granted_at=datetime.utcnow(),
        )
        if teacher_id is not None:
            teacher_payout, platform_share = split_payout(intent.amount_minor_units, self._teacher_share_percent)
            grant.teacher_payout_minor_units = teacher_payout

        with self._session_factory() as db:
            db.add(grant)
            if teacher_id is not None:
                db.add(
                    TeacherPayout(
                        reference=reference,
                        teacher_id=teacher_id,
                        amount_minor_units=teacher_payout,
                        platform_share_minor_units=platform_share,
                        status=PayoutStatus.OWED,
                        created_at=grant.granted_at,
                    )
                )
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                grant = db.query(EntitlementGrant).filter(EntitlementGrant.reference == reference).one()
                logger.info("Grant for %s was already written", reference)
            except SQLAlchemyError as exc:
                # Access may already be unlocked; unlock is repeatable.
                db.rollback()
                logger.exception("Writing the grant for %s failed", reference)
                return self._fail(reference, f"grant write failed: {exc}")

        self._ledger.mark_granted(reference)
        logger.info(
            "Granted course %s (lesson %s) to student %s for %s; teacher payout %s",
            course_id,
            lesson_id,
            student_id,
            reference,
            teacher_payout,
        )
        return grant

    def settle_payout(
        self,
        reference: str,
        *,
        transfer_code: Optional[str] = None,
        amount_minor_units: Optional[int] = None,
    ) -> bool:
        """
        Mark the owed payout for a payment reference as settled by a Paystack
        transfer. Payout transfers are sent with the payment reference as
        their transfer reference. A transfer for a different amount does not
        settle the payout.
        """
        conditions = [TeacherPayout.reference == reference, TeacherPayout.status == PayoutStatus.OWED]
        if amount_minor_units is not None:
            conditions.append(TeacherPayout.amount_minor_units == amount_minor_units)
        with self._session_factory() as db:
            result = db.execute(
                update(TeacherPayout)
                .where(*conditions)
                .values(status=PayoutStatus.SETTLED, transfer_code=transfer_code, settled_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            db.commit()
        settled = result.rowcount == 1
        if settled:
            logger.info("Teacher payout for %s settled by transfer %s", reference, transfer_code)
        else:
            logger.warning("Transfer %s for %s matched no owed payout", transfer_code, reference)
        return settled

    def _fail(self, reference: str, reason: str):
        self._ledger.mark_grant_failed(reference, reason)
        logger.error("Entitlement for confirmed payment %s is pending: %s", reference, reason)
        raise GrantPending(reference, reason)

"""Bulk student registration: make sure every uploaded student has an account and profile."""

import asyncio
from typing import Iterable, Optional

from src.config import config
from src.credentials import derive_default_password, derive_email
from src.errors import (
    AccountExistsError,
    InvalidCredentialsError,
    PolicyDeniedError,
    RateLimitedError,
    RegistrationHaltedError,
)
from src.logger import app_logger as logger, audit_logger
from src.models import (
    Profile,
    RecordOutcome,
    ReconciliationOutcome,
    ReconciliationReport,
    Role,
    StudentRecord,
)
from src.services.identity_client import DUPLICATE_MARKERS, POLICY_MARKERS, RATE_MARKERS
from src.session_guard import SessionIntegrityGuard
from src.telemetry import telemetry
from src.utils import process_batch, retry_with_backoff

ACCOUNT_WITHOUT_PROFILE = "account exists without profile"
PROFILE_RESTORED = "profile restored for existing account"


def classify_failure(error: BaseException) -> ReconciliationOutcome:
    """Outcome for a failure that did not arrive as a typed auth error."""
    if isinstance(error, AccountExistsError):
        return ReconciliationOutcome.ALREADY_EXISTS
    if isinstance(error, RateLimitedError):
        return ReconciliationOutcome.RATE_LIMITED
    if isinstance(error, PolicyDeniedError):
        return ReconciliationOutcome.POLICY_DENIED

    message = str(error).lower()
    if any(marker in message for marker in DUPLICATE_MARKERS) or "unique constraint" in message:
        return ReconciliationOutcome.ALREADY_EXISTS
    if any(marker in message for marker in RATE_MARKERS):
        return ReconciliationOutcome.RATE_LIMITED
    if any(marker in message for marker in POLICY_MARKERS):
        return ReconciliationOutcome.POLICY_DENIED
    return ReconciliationOutcome.ERROR


class StudentReconciliationEngine:
    """Registers students one at a time, re-reading live state for every record."""

    def __init__(
        self,
        database,
        gateway,
        email_domain: str = "student.pnl.ac.id",
        mode: str = "self_service",
        delay_ms: float = 500,
        pause_every: int = 5,
        pause_ms: float = 2000,
        retry_rate_limited: bool = False,
        retry_attempts: int = 2,
        retry_base_delay_ms: float = 1000,
    ):
        self.db = database
        self.gateway = gateway
        self.email_domain = email_domain
        self.mode = mode
        self.delay_ms = delay_ms
        self.pause_every = pause_every
        self.pause_ms = pause_ms
        self.retry_rate_limited = retry_rate_limited
        self.retry_attempts = retry_attempts
        self.retry_base_delay_ms = retry_base_delay_ms

    @classmethod
    def from_config(cls, database, gateway, cfg=config, **overrides) -> "StudentReconciliationEngine":
        settings = dict(
            email_domain=cfg.student_email_domain,
            mode=cfg.registration_mode,
            delay_ms=cfg.registration_delay_ms,
            pause_every=cfg.registration_pause_every,
            pause_ms=cfg.registration_pause_ms,
        )
        settings.update(overrides)
        return cls(database, gateway, **settings)

    def build_profile(self, record: StudentRecord, account_id: str, email: str) -> Profile:
        profile = Profile(
            account_id=account_id,
            email=email,
            id_number=record.id_number.strip(),
            display_name=record.display_name.strip(),
            role=Role.STUDENT.value,
            level_user=0,
            track_level=record.track_level or None,
            section=record.section or None,
        )
        if self.mode == "bulk_profile":
            profile.guardian_name = record.guardian_name or None
            profile.guardian_contact = record.guardian_contact or None
            profile.advisor_name = record.advisor_name or None
            profile.advisor_contact = record.advisor_contact or None
        return profile

    def _register(self, record: StudentRecord) -> RecordOutcome:
        id_number = (record.id_number or "").strip()
        if not id_number or not (record.display_name or "").strip():
            return RecordOutcome(record, ReconciliationOutcome.ERROR, detail="missing ID number or name")

        existing = self.db.get_profile_by_id_number(id_number)
        if existing is not None:
            return RecordOutcome(
                record,
                ReconciliationOutcome.ALREADY_EXISTS,
                account_id=existing.account_id,
                email=existing.email,
            )

        email = derive_email(record.display_name, id_number, self.email_domain)
        password = derive_default_password(id_number)
        try:
            account_id = self.gateway.create_account_privileged(email, password)
        except AccountExistsError:
            account_id = self._resolve_existing_account(email, password)
            if account_id is None:
                return RecordOutcome(
                    record, ReconciliationOutcome.ALREADY_EXISTS, email=email, detail=ACCOUNT_WITHOUT_PROFILE
                )
            self.db.create_profile(self.build_profile(record, account_id, email))
            logger.info(f"Restored missing profile for {id_number}")
            return RecordOutcome(
                record, ReconciliationOutcome.ALREADY_EXISTS,
                account_id=account_id, email=email, detail=PROFILE_RESTORED,
            )

        self.db.create_profile(self.build_profile(record, account_id, email))
        return RecordOutcome(record, ReconciliationOutcome.CREATED, account_id=account_id, email=email)

    def _resolve_existing_account(self, email: str, password: str) -> Optional[str]:
        """Account id of an auth account that has no profile yet.

        Uses the admin listing when the service-role key is present, then a
        sign-in with the default password. The sign-in replaces the ambient
        session; the guard checkpoint after the record puts it back.
        """
        if self.gateway.supports_privileged_creation:
            account_id = self.gateway.find_account_id(email)
            if account_id:
                return account_id
        try:
            return self.gateway.sign_in(email, password).account_id
        except InvalidCredentialsError:
            return None

    async def reconcile_one(self, record: StudentRecord, guard: SessionIntegrityGuard) -> RecordOutcome:
        """Register a single record; never raises for per-record failures."""
        try:
            result = await asyncio.to_thread(self._register, record)
        except Exception as exc:
            outcome = classify_failure(exc)
            logger.warning(f"Registration of {record.id_number} failed ({outcome.value}): {exc}")
            result = RecordOutcome(record, outcome, detail=str(exc))
        finally:
            guard.checkpoint()

        audit_logger.log_account_provisioning(result.record.id_number, result.outcome.value, result.detail)
        telemetry.record_reconciliation(result.outcome.value, self.mode)
        return result

    async def reconcile(
        self,
        records: Iterable[StudentRecord],
        guard: SessionIntegrityGuard
    ) -> ReconciliationReport:
        """Register records strictly in order, pacing calls to the auth backend.

        A policy rejection means the admin session itself is not allowed to
        create accounts, so the run stops there and RegistrationHaltedError
        carries the partial report.
        """
        records = list(records)
        report = ReconciliationReport()

        async def handle(record: StudentRecord, index: int) -> RecordOutcome:
            result = await self.reconcile_one(record, guard)
            report.add(result)
            if result.outcome is ReconciliationOutcome.POLICY_DENIED:
                report.halted = True
                raise RegistrationHaltedError(report, PolicyDeniedError(result.detail or "policy denied"))
            return result

        with telemetry.span("student_registration", records=len(records), mode=self.mode):
            await process_batch(
                records,
                handle,
                batch_size=1,
                delay_between_batches_ms=self.delay_ms,
                pause_every=self.pause_every,
                pause_ms=self.pause_ms,
                stop_on=(RegistrationHaltedError,),
            )

            if self.retry_rate_limited:
                await self._retry_rate_limited(report, guard)

        logger.info(f"Student registration finished: {report.counts()}")
        return report

    async def _retry_rate_limited(self, report: ReconciliationReport, guard: SessionIntegrityGuard) -> None:
        for index, item in enumerate(list(report.outcomes)):
            if item.outcome is not ReconciliationOutcome.RATE_LIMITED:
                continue

            async def attempt(record: StudentRecord = item.record) -> RecordOutcome:
                result = await self.reconcile_one(record, guard)
                if result.outcome is ReconciliationOutcome.RATE_LIMITED:
                    raise RateLimitedError(result.detail or "rate limited")
                return result

            try:
                result = await retry_with_backoff(
                    attempt,
                    max_retries=self.retry_attempts,
                    base_delay_ms=self.retry_base_delay_ms,
                )
            except RateLimitedError:
                logger.info(f"Record {item.record.id_number} still rate limited after retries")
                continue

            report.outcomes[index] = result
            if result.outcome is ReconciliationOutcome.POLICY_DENIED:
                report.halted = True
                raise RegistrationHaltedError(report, PolicyDeniedError(result.detail or "policy denied"))


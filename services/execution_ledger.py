"""
Idempotency ledger for automation actions.

Every side effect the engine performs is preceded by a *claim*: an INSERT of a
row whose natural key is unique at the storage layer. Only the worker whose
insert commits gets to act; every other worker sees an IntegrityError and
drops the candidate. Rows are never deleted, and the only status moves are

    CLAIMED -> SUCCEEDED
    CLAIMED -> FAILED -> (reclaim) CLAIMED ...
    CLAIMED -> DEAD            (permanent failure or retry ceiling)
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Any
from sqlalchemy.exc import IntegrityError
from extensions import db
from models.execution import AutomationExecution, LedgerStatus
from models.drip_campaign import DripCampaignSubscription, DripEmailDelivery
from services.errors import InvalidTransition
from services.retry_policy import RetryPolicy
import logging

logger = logging.getLogger("ledger")


@dataclass
class ClaimResult:
    granted: bool
    record: Optional[Any] = None

    @classmethod
    def already_claimed(cls):
        return cls(granted=False)


class Outcome:
    SUCCEEDED = 'SUCCEEDED'
    FAILED = 'FAILED'
    PERMANENT_FAILURE = 'PERMANENT_FAILURE'


class ExecutionLedger:

    def __init__(self, clock, retry_policy=None):
        self.clock = clock
        self.retry_policy = retry_policy or RetryPolicy.from_config()

    # ---------------- CLAIM ----------------
    def claim_execution(self, candidate):
        now = self.clock.now()
        record = AutomationExecution(
            natural_key=candidate.natural_key,
            tenant_id=candidate.tenant_id,
            project_id=candidate.project_id,
            automation_id=candidate.automation_id,
            automation_kind=candidate.kind,
            channel=candidate.channel,
            step_id=candidate.step_id,
            trigger_type=candidate.trigger_type,
            anchor_date=candidate.anchor_date,
            days_offset=candidate.days_offset,
            questionnaire_template_id=candidate.questionnaire_template_id,
            desired_at=candidate.desired_at,
            status=LedgerStatus.CLAIMED,
            attempts=1,
            failures=0,
            claimed_at=now,
            created_at=now,
        )
        return self._insert(record, candidate.natural_key)

    def claim_delivery(self, subscription_id, email):
        """
        Claim one drip email for a subscription.

        The subscription is re-read first: if it has moved past this email, or
        is no longer live, the claim is treated as already taken so sends stay
        in sequence order.
        """
        subscription = db.session.get(DripCampaignSubscription, subscription_id, populate_existing=True)
        if subscription is None or not subscription.is_live:
            return ClaimResult.already_claimed()
        if subscription.next_email_index != email.sequence_index:
            logger.debug(f"Stale claim for subscription {subscription_id} index {email.sequence_index}")
            return ClaimResult.already_claimed()

        now = self.clock.now()
        record = DripEmailDelivery(
            subscription_id=subscription.id,
            email_id=email.id,
            project_id=subscription.project_id,
            sequence_index=email.sequence_index,
            status=LedgerStatus.CLAIMED,
            attempts=1,
            failures=0,
            claimed_at=now,
            created_at=now,
        )
        return self._insert(record, f"drip:{subscription.id}:{email.id}")

    def _insert(self, record, key):
        try:
            db.session.add(record)
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            logger.debug(f"Already claimed: {key}")
            return ClaimResult.already_claimed()
        logger.info(f"[OK] Claimed {key} (record {record.id})")
        return ClaimResult(granted=True, record=record)

    def reclaim(self, record):
        """Atomically take a FAILED record back to CLAIMED for another attempt."""
        model = type(record)
        now = self.clock.now()
        updated = (
            model.query
            .filter(model.id == record.id, model.status == LedgerStatus.FAILED)
            .update({
                model.status: LedgerStatus.CLAIMED,
                model.attempts: model.attempts + 1,
                model.claimed_at: now,
                model.next_attempt_at: None,
            }, synchronize_session=False)
        )
        db.session.commit()
        if updated != 1:
            return ClaimResult.already_claimed()
        db.session.refresh(record)
        return ClaimResult(granted=True, record=record)

    # ---------------- RESOLVE ----------------
    def resolve(self, record, outcome, provider_id=None, error=None, commit=True):
        """
        Record the result of an attempt on a CLAIMED record.

        With ``commit=False`` the caller owns the transaction, so a stage move
        and its resolve land in the same commit.
        """
        if record.status != LedgerStatus.CLAIMED:
            raise InvalidTransition(f"Cannot resolve {type(record).__name__} {record.id} from {record.status}")

        now = self.clock.now()
        record.resolved_at = now
        if outcome == Outcome.SUCCEEDED:
            record.status = LedgerStatus.SUCCEEDED
            record.provider_id = provider_id
            record.last_error = None
            record.next_attempt_at = None
        elif outcome == Outcome.PERMANENT_FAILURE:
            record.failures += 1
            record.status = LedgerStatus.DEAD
            record.last_error = error
            record.next_attempt_at = None
            logger.error(f"[FAIL] {type(record).__name__} {record.id} is DEAD (permanent): {error}")
        elif outcome == Outcome.FAILED:
            record.failures += 1
            record.last_error = error
            if self.retry_policy.exhausted(record.failures):
                record.status = LedgerStatus.DEAD
                record.next_attempt_at = None
                logger.error(f"[FAIL] {type(record).__name__} {record.id} is DEAD after {record.failures} failures: {error}")
            else:
                record.status = LedgerStatus.FAILED
                record.next_attempt_at = self.retry_policy.next_attempt_at(record.failures, now)
                logger.warning(f"[WARN] {type(record).__name__} {record.id} failed "
                               f"({record.failures}/{self.retry_policy.max_attempts}), retry at {record.next_attempt_at}: {error}")
        else:
            raise ValueError(f"Unknown outcome: {outcome}")

        if commit:
            db.session.commit()
        return record

    # ---------------- MAINTENANCE ----------------
    def due_retries(self, model, limit=100):
        now = self.clock.now()
        return (
            model.query
            .filter(model.status == LedgerStatus.FAILED, model.next_attempt_at <= now)
            .order_by(model.next_attempt_at.asc())
            .limit(limit)
            .all()
        )

    def sweep_stale_claims(self, grace=None):
        """
        Turn CLAIMED rows older than ``grace`` into retryable failures.

        A crash between claim and send leaves a CLAIMED row whose side effect
        may never have happened; it is retried rather than assumed sent.
        """
        if grace is None:
            grace = timedelta(minutes=30)
        now = self.clock.now()
        cutoff = now - grace
        swept = 0
        for model in (AutomationExecution, DripEmailDelivery):
            for record_id, failures, claimed_at in self._stale_claims(model, cutoff):
                failures += 1
                values = {
                    model.failures: failures,
                    model.last_error: "Claim expired before resolution",
                    model.resolved_at: now,
                }
                if self.retry_policy.exhausted(failures):
                    values.update({model.status: LedgerStatus.DEAD, model.next_attempt_at: None})
                else:
                    values.update({
                        model.status: LedgerStatus.FAILED,
                        model.next_attempt_at: self.retry_policy.next_attempt_at(failures, now),
                    })
                # Only rows still held by the same stale claim; a concurrent resolve wins
                swept += (
                    model.query
                    .filter(
                        model.id == record_id,
                        model.status == LedgerStatus.CLAIMED,
                        model.claimed_at == claimed_at,
                    )
                    .update(values, synchronize_session=False)
                )
        db.session.commit()
        if swept:
            logger.warning(f"[WARN] Swept {swept} stale claims older than {grace}")
        return swept

    def _stale_claims(self, model, cutoff):
        return (
            db.session.query(model.id, model.failures, model.claimed_at)
            .filter(model.status == LedgerStatus.CLAIMED, model.claimed_at < cutoff)
            .all()
        )

    def postpone(self, record, until):
        """Move a FAILED record's next attempt to ``until``; False if it is no longer FAILED."""
        model = type(record)
        updated = (
            model.query
            .filter(model.id == record.id, model.status == LedgerStatus.FAILED)
            .update({model.next_attempt_at: until}, synchronize_session=False)
        )
        db.session.commit()
        if updated == 1:
            logger.info(f"[OK] {model.__name__} {record.id} retry deferred to {until}")
        return updated == 1

    def requeue_dead(self, record):
        if record.status != LedgerStatus.DEAD:
            raise InvalidTransition(f"Only DEAD records can be requeued (record {record.id} is {record.status})")
        record.status = LedgerStatus.FAILED
        record.failures = 0
        record.next_attempt_at = self.clock.now()
        db.session.commit()
        return record

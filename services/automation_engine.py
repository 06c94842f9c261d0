from datetime import timedelta
from flask import current_app
from extensions import db
from models.automation import AutomationKind
from models.drip_campaign import DripEmailDelivery
from models.execution import AutomationExecution, LedgerStatus
from models.project import Project
from models.tenant import Tenant
from services.clock import Clock
from services.dispatcher import Dispatcher
from services.drip_service import CampaignProgressor
from services.execution_ledger import ExecutionLedger, Outcome
from services.quiet_hours import shift_out_of_quiet_hours
from services.retry_policy import RetryPolicy
from services.rule_store import RuleStore
from services.trigger_evaluator import (
    TriggerEvaluator,
    StageEntered,
    BusinessEventFired,
    ClockTick,
    EnrollmentCandidate,
)
import logging

logger = logging.getLogger("automation")


def engine_for_request():
    """Engine used by HTTP handlers. An app may register its own factory under ``automation_engine``."""
    factory = current_app.extensions.get('automation_engine')
    return factory() if factory else AutomationEngine()


class TickStats(dict):
    def bump(self, key, n=1):
        self[key] = self.get(key, 0) + n


class AutomationEngine:
    """
    Entry points for scheduler ticks and inbound lifecycle events.

    Holds no state between calls beyond its collaborators, so any number of
    worker processes can run it against the same database.
    """

    def __init__(self, clock=None, transports=None, retry_policy=None):
        self.clock = clock or Clock()
        self.retry_policy = retry_policy or RetryPolicy.from_config()
        self.ledger = ExecutionLedger(self.clock, self.retry_policy)
        self.progressor = CampaignProgressor(self.clock)
        self.dispatcher = Dispatcher(self.ledger, self.progressor, self.clock, transports=transports)

    # ===============================
    # MAIN ENTRY POINT
    # ===============================
    def run_tick(self):
        now = self.clock.now()
        window = timedelta(minutes=current_app.config.get('AUTOMATION_TICK_WINDOW_MINUTES', 5))
        tick = ClockTick(at=now, window_start=now - window)
        stats = TickStats()

        for tenant in Tenant.query.order_by(Tenant.id.asc()).all():
            try:
                self._run_tenant_tick(tenant, tick, stats)
            except Exception:
                db.session.rollback()
                stats.bump('errors')
                logger.exception(f"[FAIL] Automation tick failed for tenant {tenant.id}")

        logger.info(f"Automation tick at {now} finished: {dict(stats)}")
        return stats

    def _run_tenant_tick(self, tenant, tick, stats):
        store = RuleStore(tenant)
        evaluator = TriggerEvaluator(store)
        projects = store.active_projects()

        # Stage-entry rules are re-evaluated every tick so delayed steps fire when due
        for project in projects:
            if project.stage_id and project.stage_entered_at:
                self._handle(StageEntered(project, project.stage_id, project.stage_entered_at), store, stats)

        for candidate in self._isolated(evaluator.on_clock_tick, tick, projects, stats=stats, default=[]):
            self._process_candidate(candidate, store, stats)

        for event in self._isolated(evaluator.event_date_reached, tick, projects, stats=stats, default=[]):
            self._handle(event, store, stats)

        for subscription in self._isolated(self.progressor.due_subscriptions, tenant.id, stats=stats, default=[]):
            self._process_subscription(subscription, stats)

    @staticmethod
    def _isolated(func, *args, stats, default):
        """Run one pass of a tick; a failure is logged and the remaining passes still run."""
        try:
            return func(*args)
        except Exception:
            db.session.rollback()
            stats.bump('errors')
            logger.exception(f"[FAIL] Tick pass {func.__name__} failed")
            return default

    # ===============================
    # INBOUND EVENTS
    # ===============================
    def handle_stage_entered(self, project):
        store = RuleStore(db.session.get(Tenant, project.tenant_id))
        stats = TickStats()
        self._handle(StageEntered(project, project.stage_id, project.stage_entered_at or self.clock.now()), store, stats)
        return stats

    def handle_business_event(self, project, trigger_type, payload=None):
        store = RuleStore(db.session.get(Tenant, project.tenant_id))
        stats = TickStats()
        self._handle(BusinessEventFired(project, trigger_type, at=self.clock.now(), payload=payload or {}), store, stats)
        return stats

    def _handle(self, event, store, stats):
        evaluator = TriggerEvaluator(store)
        try:
            candidates = evaluator.evaluate(event)
        except Exception:
            db.session.rollback()
            stats.bump('errors')
            logger.exception(f"[FAIL] Could not evaluate {type(event).__name__} for project {event.project.id}")
            return

        for candidate in candidates:
            if isinstance(candidate, EnrollmentCandidate):
                self._process_enrollment(candidate, stats)
            else:
                self._process_candidate(candidate, store, stats)

    # ===============================
    # CANDIDATES
    # ===============================
    def _process_candidate(self, candidate, store, stats):
        try:
            desired = candidate.desired_at
            if candidate.kind == AutomationKind.COMMUNICATION:
                desired = shift_out_of_quiet_hours(desired, candidate.quiet_hours_start,
                                                   candidate.quiet_hours_end, store.timezone)
            if desired > self.clock.now():
                stats.bump('not_due')
                return

            claim = self.ledger.claim_execution(candidate)
            if not claim.granted:
                stats.bump('already_claimed')
                return
            stats.bump('claimed')

            record = self.dispatcher.dispatch_execution(
                claim.record,
                target_stage_id=candidate.target_stage_id,
                template_id=candidate.template_id,
            )
            stats.bump(record.status.lower())

            if candidate.is_stage_change and record.status == LedgerStatus.SUCCEEDED:
                project = db.session.get(Project, candidate.project_id)
                self._handle(StageEntered(project, project.stage_id, project.stage_entered_at), store, stats)
        except Exception:
            db.session.rollback()
            stats.bump('errors')
            logger.exception(f"[FAIL] Candidate {candidate.natural_key} failed")

    def _process_enrollment(self, enrollment, stats):
        try:
            subscription = self.progressor.enroll(enrollment)
            if subscription is None:
                stats.bump('already_enrolled')
                return
            stats.bump('enrolled')
            if subscription.next_email_at <= self.clock.now():
                self._process_subscription(subscription, stats)
        except Exception:
            db.session.rollback()
            stats.bump('errors')
            logger.exception(f"[FAIL] Enrollment of project {enrollment.project.id} in campaign {enrollment.campaign.id} failed")

    def _process_subscription(self, subscription, stats):
        try:
            delivery_candidate = self.progressor.next_step(subscription)
            if delivery_candidate is None:
                return
            claim = self.ledger.claim_delivery(delivery_candidate.subscription_id, delivery_candidate.email)
            if not claim.granted:
                stats.bump('already_claimed')
                return
            stats.bump('claimed')
            delivery = self.dispatcher.dispatch_delivery(claim.record)
            stats.bump(delivery.status.lower())
        except Exception:
            db.session.rollback()
            stats.bump('errors')
            logger.exception(f"[FAIL] Drip processing failed for subscription {subscription.id}")

    # ===============================
    # RETRIES & MAINTENANCE
    # ===============================
    def retry_failed(self):
        stats = TickStats()
        for model in (AutomationExecution, DripEmailDelivery):
            for record in self.ledger.due_retries(model):
                try:
                    if model is AutomationExecution and self._defer_for_quiet_hours(record):
                        stats.bump('deferred')
                        continue
                    claim = self.ledger.reclaim(record)
                    if not claim.granted:
                        stats.bump('already_claimed')
                        continue
                    stats.bump('retried')
                    if model is AutomationExecution:
                        record = self.dispatcher.dispatch_execution(claim.record)
                    else:
                        record = self._retry_delivery(claim.record)
                    stats.bump(record.status.lower())
                except Exception:
                    db.session.rollback()
                    stats.bump('errors')
                    logger.exception(f"[FAIL] Retry of {model.__name__} {record.id} failed")
        if stats:
            logger.info(f"Retry pass finished: {dict(stats)}")
        return stats

    def _defer_for_quiet_hours(self, record):
        """Push a due retry of a stepped message out of its step's quiet window."""
        step = record.step
        if step is None or step.quiet_hours_start is None or step.quiet_hours_end is None:
            return False
        tenant = db.session.get(Tenant, record.tenant_id)
        now = self.clock.now()
        allowed = shift_out_of_quiet_hours(now, step.quiet_hours_start, step.quiet_hours_end, RuleStore(tenant).timezone)
        if allowed <= now:
            return False
        return self.ledger.postpone(record, allowed)

    def _retry_delivery(self, delivery):
        if not delivery.subscription.is_live:
            return self.ledger.resolve(delivery, Outcome.PERMANENT_FAILURE, error="Subscription no longer active")
        return self.dispatcher.dispatch_delivery(delivery)

    def sweep_stale_claims(self):
        grace = timedelta(minutes=current_app.config.get('AUTOMATION_CLAIM_GRACE_MINUTES', 15))
        return self.ledger.sweep_stale_claims(grace)

"""
Turns lifecycle events into candidate actions.

The evaluator is pure with respect to the ledger: it reads rules and projects
and returns hints. Producing the same candidate twice is harmless because
only a successful claim commits to acting on it.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional, Any
from models.automation import AutomationKind, BusinessTrigger, Channel, InvalidAutomationConfig
from services.clock import local_date, local_wall_time
import logging

logger = logging.getLogger("automation")


# ===============================
# EVENTS
# ===============================
@dataclass
class StageEntered:
    project: Any
    stage_id: int
    at: datetime


@dataclass
class BusinessEventFired:
    project: Any
    trigger_type: str
    at: datetime
    payload: dict = field(default_factory=dict)


@dataclass
class ClockTick:
    at: datetime
    window_start: datetime


# ===============================
# CANDIDATES
# ===============================
def communication_key(project_id, step_id):
    return f"communication:{project_id}:{step_id}"


def stage_change_key(project_id, automation_id, trigger_type, anchor_date=None):
    key = f"stage_change:{project_id}:{automation_id}:{trigger_type}"
    return f"{key}:{anchor_date.isoformat()}" if anchor_date else key


def questionnaire_key(project_id, questionnaire_template_id):
    return f"questionnaire:{project_id}:{questionnaire_template_id}"


def countdown_key(project_id, automation_id, anchor_date, days_offset):
    return f"countdown:{project_id}:{automation_id}:{anchor_date.isoformat()}:{days_offset}"


@dataclass
class Candidate:
    kind: str
    natural_key: str
    tenant_id: int
    project_id: int
    automation_id: int
    channel: str
    desired_at: datetime
    step_id: Optional[int] = None
    trigger_type: Optional[str] = None
    anchor_date: Optional[date] = None
    days_offset: Optional[int] = None
    template_id: Optional[int] = None
    target_stage_id: Optional[int] = None
    quiet_hours_start: Optional[int] = None
    quiet_hours_end: Optional[int] = None
    questionnaire_template_id: Optional[int] = None

    @property
    def is_stage_change(self):
        return self.kind == AutomationKind.STAGE_CHANGE


@dataclass
class EnrollmentCandidate:
    campaign: Any
    project: Any
    at: datetime


# ===============================
# EVALUATOR
# ===============================
def has_consent(project, channel):
    client = project.client
    if channel == Channel.EMAIL:
        return bool(project.email_opt_in and client and client.email)
    if channel == Channel.SMS:
        return bool(project.sms_opt_in and client and client.phone)
    return True


class TriggerEvaluator:

    def __init__(self, rule_store):
        self.rules = rule_store

    def evaluate(self, event, projects=None):
        if isinstance(event, StageEntered):
            return self.on_stage_entered(event)
        if isinstance(event, BusinessEventFired):
            return self.on_business_event(event)
        if isinstance(event, ClockTick):
            return self.on_clock_tick(event, projects if projects is not None else self.rules.active_projects())
        raise TypeError(f"Unknown lifecycle event: {event!r}")

    # ---------- COMMUNICATION + NURTURE ----------
    def on_stage_entered(self, event):
        project = event.project
        candidates = []

        for rule in self.rules.communication_rules(event.stage_id, project.project_type):
            if rule.effective_from and rule.effective_from > event.at:
                continue
            try:
                config = rule.config
            except InvalidAutomationConfig as e:
                logger.warning(f"[WARN] Skipping automation {rule.id}: {e}")
                continue
            if config.requires_anchor_date is not None and config.requires_anchor_date != (project.event_date is not None):
                continue

            if config.questionnaire_template_id:
                candidates.append(Candidate(
                    kind=AutomationKind.COMMUNICATION,
                    natural_key=questionnaire_key(project.id, config.questionnaire_template_id),
                    tenant_id=project.tenant_id,
                    project_id=project.id,
                    automation_id=rule.id,
                    channel=Channel.SYSTEM,
                    desired_at=event.at,
                    questionnaire_template_id=config.questionnaire_template_id,
                ))

            if not has_consent(project, rule.channel):
                continue

            for step in self.rules.enabled_steps(rule):
                candidates.append(Candidate(
                    kind=AutomationKind.COMMUNICATION,
                    natural_key=communication_key(project.id, step.id),
                    tenant_id=project.tenant_id,
                    project_id=project.id,
                    automation_id=rule.id,
                    channel=rule.channel,
                    desired_at=event.at + timedelta(minutes=step.delay_minutes or 0),
                    step_id=step.id,
                    template_id=step.template_id,
                    quiet_hours_start=step.quiet_hours_start,
                    quiet_hours_end=step.quiet_hours_end,
                ))

        candidates.extend(self._enrollments(event))
        return candidates

    def _enrollments(self, event):
        project = event.project
        nurture = self.rules.nurture_rule(project.project_type)
        if nurture is None or (nurture.effective_from and nurture.effective_from > event.at):
            return []
        if not has_consent(project, Channel.EMAIL):
            return []

        enrollments = []
        for campaign in self.rules.enrollable_campaigns(event.stage_id, project.project_type):
            if self.rules.has_subscription_in_lineage(project.id, campaign):
                continue
            enrollments.append(EnrollmentCandidate(campaign=campaign, project=project, at=event.at))
        return enrollments

    # ---------- STAGE_CHANGE ----------
    def on_business_event(self, event):
        project = event.project
        candidates = []
        for rule, binding in self.rules.stage_change_bindings(event.trigger_type, project.project_type):
            if rule.effective_from and rule.effective_from > event.at:
                continue
            if not binding.matches(event.payload, project):
                continue
            try:
                config = rule.config
            except InvalidAutomationConfig as e:
                logger.warning(f"[WARN] Skipping automation {rule.id}: {e}")
                continue

            # Date-derived events fire once per anchor date, so a moved event date fires again
            anchor = None
            if event.trigger_type == BusinessTrigger.EVENT_DATE_REACHED and project.event_date:
                anchor = local_date(project.event_date, self.rules.timezone)

            candidates.append(Candidate(
                kind=AutomationKind.STAGE_CHANGE,
                natural_key=stage_change_key(project.id, rule.id, event.trigger_type, anchor),
                tenant_id=project.tenant_id,
                project_id=project.id,
                automation_id=rule.id,
                channel=Channel.SYSTEM,
                desired_at=event.at,
                trigger_type=event.trigger_type,
                anchor_date=anchor,
                target_stage_id=config.target_stage_id,
            ))
        return candidates

    # ---------- COUNTDOWN ----------
    def on_clock_tick(self, event, projects):
        tz = self.rules.timezone
        rules = self.rules.countdown_rules()
        candidates = []

        for project in projects:
            if not project.event_date:
                continue
            anchor = local_date(project.event_date, tz)

            for rule in rules:
                if rule.project_type != project.project_type:
                    continue
                try:
                    candidate = self._countdown_candidate(event, project, rule, anchor, tz)
                except InvalidAutomationConfig as e:
                    logger.warning(f"[WARN] Skipping automation {rule.id}: {e}")
                    continue
                except Exception:
                    logger.exception(f"[FAIL] Countdown automation {rule.id} failed for project {project.id}")
                    continue
                if candidate is not None:
                    candidates.append(candidate)
        return candidates

    def _countdown_candidate(self, event, project, rule, anchor, tz):
        config = rule.config
        if config.stage_condition_id and project.stage_id != config.stage_condition_id:
            return None

        fire_day = anchor + timedelta(days=config.signed_offset)
        fire_at = local_wall_time(fire_day, config.trigger_hour, config.trigger_minute, tz)
        if not (event.window_start < fire_at <= event.at):
            return None
        if rule.effective_from and rule.effective_from > fire_at:
            return None
        if not has_consent(project, rule.channel):
            return None

        return Candidate(
            kind=AutomationKind.COUNTDOWN,
            natural_key=countdown_key(project.id, rule.id, anchor, config.days_offset),
            tenant_id=project.tenant_id,
            project_id=project.id,
            automation_id=rule.id,
            channel=rule.channel,
            desired_at=fire_at,
            anchor_date=anchor,
            days_offset=config.days_offset,
            template_id=config.template_id,
        )

    def event_date_reached(self, tick, projects):
        """Business events derived from the clock rather than fired by a collaborator."""
        return [
            BusinessEventFired(project=p, trigger_type=BusinessTrigger.EVENT_DATE_REACHED, at=tick.at)
            for p in projects
            if p.event_date and p.event_date <= tick.at
        ]

from datetime import datetime, timedelta

import pytest

from models import DripCampaignHistory, DripCampaignSubscription, DripEmailDelivery
from models.automation import AutomationKind
from models.drip_campaign import CampaignStatus, SubscriptionStatus
from models.execution import LedgerStatus
from services.errors import InvalidTransition
from services.trigger_evaluator import TriggerEvaluator

WEEK = timedelta(days=7)


@pytest.fixture()
def inquiry(make, tenant):
    stage = make.stage(tenant, "Inquiry")
    make.automation(tenant, AutomationKind.NURTURE)
    return stage


@pytest.fixture()
def enroll(make, tenant, inquiry, engine):
    def _enroll(first_name="Ana", **kwargs):
        kwargs.setdefault("event_date", datetime(2026, 6, 14, 16, 0))
        project = make.project(tenant, first_name=first_name, **kwargs)
        make.enter_stage(project, inquiry)
        engine.handle_stage_entered(project)
        return project
    return _enroll


def _subscription(project):
    return DripCampaignSubscription.query.filter_by(project_id=project.id).one()


def test_weekly_cadence_until_sequence_exhausted(make, tenant, inquiry, enroll, engine, clock, email_transport):
    make.campaign(tenant, inquiry, [f"Tip #{i}" for i in range(5)])
    project = enroll()
    assert email_transport.subjects == ["Tip #0"]

    for _ in range(4):
        clock.advance(WEEK)
        engine.run_tick()
        engine.run_tick()

    assert email_transport.subjects == [f"Tip #{i}" for i in range(5)]
    subscription = _subscription(project)
    assert subscription.next_email_index == 5
    assert subscription.status == SubscriptionStatus.ACTIVE

    clock.advance(WEEK)
    engine.run_tick()

    assert subscription.status == SubscriptionStatus.COMPLETED
    assert subscription.completion_reason == "SEQUENCE_EXHAUSTED"
    assert len(email_transport.sent) == 5
    assert DripEmailDelivery.query.filter_by(status=LedgerStatus.SUCCEEDED).count() == 5


def test_send_times_follow_cadence_not_tick_time(make, tenant, inquiry, enroll, engine, clock):
    make.campaign(tenant, inquiry, ["One", "Two", "Three"], cadence_value=3, cadence_unit="DAYS")
    project = enroll()
    start = clock.now()

    # tick late
    clock.advance(timedelta(days=4))
    engine.run_tick()

    assert _subscription(project).next_email_at == start + timedelta(days=6)


def test_initial_delay(make, tenant, inquiry, enroll, engine, clock, email_transport):
    make.campaign(tenant, inquiry, ["Hello"], initial_delay_minutes=30)
    enroll()
    assert email_transport.sent == []

    clock.advance(timedelta(minutes=30))
    engine.run_tick()
    assert email_transport.subjects == ["Hello"]


def test_unapproved_email_holds_the_sequence(make, tenant, inquiry, enroll, engine, clock, email_transport):
    campaign = make.campaign(tenant, inquiry, ["First"])
    pending = engine.progressor.add_email(campaign, "Second", "<p>Second</p>")
    enroll()

    clock.advance(WEEK)
    engine.run_tick()
    assert email_transport.subjects == ["First"]

    engine.progressor.approve_email(pending)
    engine.run_tick()
    assert email_transport.subjects == ["First", "Second"]


def test_enrollment_needs_nurture_rule_and_email_consent(make, tenant, engine, email_transport):
    stage = make.stage(tenant, "Inquiry")
    make.campaign(tenant, stage, ["Tip"])
    project = make.project(tenant, stage=stage)

    engine.handle_stage_entered(project)
    assert DripCampaignSubscription.query.count() == 0

    make.automation(tenant, AutomationKind.NURTURE)
    no_consent = make.project(tenant, stage=stage, first_name="Bea", email_opt_in=False)
    engine.handle_stage_entered(no_consent)
    assert DripCampaignSubscription.query.count() == 0

    engine.handle_stage_entered(project)
    assert DripCampaignSubscription.query.count() == 1
    assert email_transport.subjects == ["Tip"]


def test_draft_campaign_does_not_enroll(make, tenant, inquiry, enroll):
    make.campaign(tenant, inquiry, ["Tip"], activate=False)
    enroll()
    assert DripCampaignSubscription.query.count() == 0


def test_unsubscribe_halts_progression(make, tenant, inquiry, enroll, engine, clock, email_transport):
    make.campaign(tenant, inquiry, ["One", "Two", "Three"])
    project = enroll()
    subscription = _subscription(project)

    engine.progressor.unsubscribe(subscription, reason="CLIENT_REQUEST")
    for _ in range(3):
        clock.advance(WEEK)
        engine.run_tick()

    # re-entering the stage does not re-enroll
    make.enter_stage(project, inquiry)
    engine.handle_stage_entered(project)

    assert email_transport.subjects == ["One"]
    assert subscription.status == SubscriptionStatus.UNSUBSCRIBED
    assert DripCampaignSubscription.query.count() == 1


def test_permanent_failure_unsubscribes(make, tenant, inquiry, enroll, engine, clock, email_transport):
    make.campaign(tenant, inquiry, ["One", "Two"])
    email_transport.fail_next("550 mailbox unavailable", permanent=True)
    project = enroll()

    subscription = _subscription(project)
    delivery = DripEmailDelivery.query.one()
    assert delivery.status == LedgerStatus.DEAD
    assert subscription.status == SubscriptionStatus.UNSUBSCRIBED
    assert subscription.completion_reason == "PERMANENT_DELIVERY_FAILURE"

    clock.advance(WEEK)
    engine.run_tick()
    engine.retry_failed()
    assert email_transport.sent == []


def test_transient_failure_retries_without_skipping(make, tenant, inquiry, enroll, engine, clock, email_transport):
    make.campaign(tenant, inquiry, ["One", "Two"])
    email_transport.fail_next("connection reset")
    start = clock.now()
    project = enroll()

    subscription = _subscription(project)
    assert subscription.next_email_index == 0
    assert DripEmailDelivery.query.one().status == LedgerStatus.FAILED

    # the tick must not claim a second delivery for the same email
    engine.run_tick()
    assert DripEmailDelivery.query.count() == 1

    clock.advance(timedelta(seconds=61))
    engine.retry_failed()

    assert email_transport.subjects == ["One"]
    assert subscription.next_email_index == 1
    assert subscription.next_email_at == start + WEEK


def test_retry_ceiling_gives_up_and_moves_on(make, tenant, inquiry, enroll, engine, clock, email_transport):
    make.campaign(tenant, inquiry, ["One", "Two"])
    email_transport.fail_next("connection reset", times=3)
    project = enroll()

    clock.advance(timedelta(minutes=2))
    engine.retry_failed()
    clock.advance(timedelta(minutes=3))
    engine.retry_failed()

    delivery = DripEmailDelivery.query.one()
    assert delivery.status == LedgerStatus.DEAD
    assert delivery.attempts == 3
    assert _subscription(project).next_email_index == 1

    clock.advance(WEEK)
    engine.run_tick()
    assert email_transport.subjects == ["Two"]


def test_pause_and_resume(make, tenant, inquiry, enroll, engine, clock, email_transport):
    campaign = make.campaign(tenant, inquiry, ["One", "Two"])
    enroll()

    engine.progressor.pause_campaign(campaign)
    clock.advance(WEEK)
    engine.run_tick()
    assert email_transport.subjects == ["One"]

    engine.progressor.activate_campaign(campaign)
    engine.run_tick()
    assert email_transport.subjects == ["One", "Two"]


def test_event_date_passing_completes_subscription(make, tenant, inquiry, enroll, engine, clock, email_transport):
    make.campaign(tenant, inquiry, ["One", "Two"])
    project = enroll(event_date=clock.now() + timedelta(days=3))

    clock.advance(WEEK)
    engine.run_tick()

    subscription = _subscription(project)
    assert subscription.status == SubscriptionStatus.COMPLETED
    assert subscription.completion_reason == "EVENT_DATE_PASSED"
    assert email_transport.subjects == ["One"]


def test_max_duration_completes_subscription(make, tenant, inquiry, enroll, engine, clock):
    make.campaign(tenant, inquiry, ["One", "Two"], cadence_value=5, max_duration_months=1)
    project = enroll()

    clock.advance(timedelta(weeks=5))
    engine.run_tick()

    assert _subscription(project).completion_reason == "MAX_DURATION"


# ===============================
# VERSIONING
# ===============================
def test_subscribers_stay_on_the_version_they_joined(make, tenant, inquiry, enroll, engine, clock, email_transport):
    v1 = make.campaign(tenant, inquiry, ["V1 #0", "V1 #1", "V1 #2"])
    first = enroll("Ana")

    v2 = engine.progressor.publish_new_version(
        v1, actor="owner@lumen.test", reason="Refresh copy",
        email_changes={1: {"subject": "V2 #1"}},
    )
    edited = v2.email_at(1)
    assert edited.approval_status == "PENDING"
    assert edited.original_subject == "V1 #1"
    engine.progressor.approve_email(edited)

    second = enroll("Bea", email="bea@example.com")

    clock.advance(WEEK)
    engine.run_tick()

    by_recipient = {m.to: m.subject for m in email_transport.sent[-2:]}
    assert by_recipient == {"ana@example.com": "V1 #1", "bea@example.com": "V2 #1"}
    assert _subscription(first).campaign_id == v1.id
    assert _subscription(second).campaign_id == v2.id
    assert v1.is_current_version is False
    assert v2.is_current_version is True
    assert v2.parent_version_id == v1.id
    assert v2.lineage_id == v1.id
    assert v2.version == 2

    # the first project is not enrolled again in the new version
    make.enter_stage(first, inquiry)
    engine.handle_stage_entered(first)
    assert DripCampaignSubscription.query.filter_by(project_id=first.id).count() == 1

    history = DripCampaignHistory.query.filter_by(lineage_id=v1.id, action="NEW_VERSION").one()
    assert history.actor == "owner@lumen.test"
    assert history.reason == "Refresh copy"


def test_only_current_version_can_be_republished(make, tenant, inquiry, engine):
    v1 = make.campaign(tenant, inquiry, ["One"])
    engine.progressor.publish_new_version(v1, email_changes={0: {"subject": "Uno"}})

    with pytest.raises(InvalidTransition):
        engine.progressor.publish_new_version(v1, email_changes={0: {"subject": "Eins"}})


def test_emails_cannot_be_appended_once_subscribed(make, tenant, inquiry, enroll, engine):
    campaign = make.campaign(tenant, inquiry, ["One"])
    enroll()

    with pytest.raises(InvalidTransition):
        engine.progressor.add_email(campaign, "Two", "<p>Two</p>")


def test_campaign_status_transitions(make, tenant, inquiry, engine):
    campaign = make.campaign(tenant, inquiry, ["One"], activate=False)
    assert campaign.status == CampaignStatus.DRAFT

    with pytest.raises(InvalidTransition):
        engine.progressor.activate_campaign(campaign)

    engine.progressor.approve_campaign(campaign)
    engine.progressor.activate_campaign(campaign)
    assert campaign.status == CampaignStatus.ACTIVE

    with pytest.raises(InvalidTransition):
        engine.progressor.approve_campaign(campaign)


def test_pausing_current_version_holds_older_version_subscribers(make, tenant, inquiry, enroll, engine, clock,
                                                                 email_transport):
    v1 = make.campaign(tenant, inquiry, ["A", "B", "C"])
    enroll()
    v2 = engine.progressor.publish_new_version(v1, actor="owner@lumen.test")

    engine.progressor.pause_campaign(v2)
    clock.advance(WEEK)
    engine.run_tick()
    assert email_transport.subjects == ["A"]

    engine.progressor.activate_campaign(v2)
    engine.run_tick()
    assert email_transport.subjects == ["A", "B"]


def test_only_current_version_can_be_paused(make, tenant, inquiry, engine):
    v1 = make.campaign(tenant, inquiry, ["A"])
    engine.progressor.publish_new_version(v1)

    with pytest.raises(InvalidTransition):
        engine.progressor.pause_campaign(v1)


def test_failing_countdown_pass_does_not_hold_drip_sends(make, tenant, inquiry, enroll, engine, clock,
                                                         email_transport, monkeypatch):
    make.campaign(tenant, inquiry, ["A", "B"])
    enroll()

    def on_clock_tick(self, event, projects):
        raise RuntimeError("countdown evaluation broke")

    monkeypatch.setattr(TriggerEvaluator, "on_clock_tick", on_clock_tick)
    clock.advance(WEEK)
    stats = engine.run_tick()

    assert email_transport.subjects == ["A", "B"]
    assert stats["errors"] == 1

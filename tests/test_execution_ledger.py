import threading
from datetime import timedelta

import pytest

from app import create_app
from config import TestingConfig
from extensions import db
from models import AutomationExecution, Project
from models.automation import AutomationKind
from models.execution import LedgerStatus
from services.automation_engine import AutomationEngine
from services.errors import InvalidTransition
from services.execution_ledger import ExecutionLedger, Outcome
from services.retry_policy import RetryPolicy
from services.trigger_evaluator import Candidate, communication_key

from conftest import Factory, FakeTransport


def _candidate(project, rule):
    step = rule.steps[0]
    return Candidate(
        kind=AutomationKind.COMMUNICATION,
        natural_key=communication_key(project.id, step.id),
        tenant_id=project.tenant_id,
        project_id=project.id,
        automation_id=rule.id,
        channel=rule.channel,
        desired_at=project.stage_entered_at,
        step_id=step.id,
        template_id=step.template_id,
    )


@pytest.fixture()
def setup(make, tenant):
    stage = make.stage(tenant, "Inquiry")
    template = make.template(tenant)
    rule = make.automation(tenant, AutomationKind.COMMUNICATION, stage=stage,
                           steps=[{"delay_minutes": 0, "template_id": template.id}])
    project = make.project(tenant, stage=stage)
    return project, rule


@pytest.fixture()
def ledger(app, clock):
    return ExecutionLedger(clock, RetryPolicy(max_attempts=3, base_seconds=60))


def test_second_claim_for_same_key_is_refused(ledger, setup):
    project, rule = setup

    first = ledger.claim_execution(_candidate(project, rule))
    second = ledger.claim_execution(_candidate(project, rule))

    assert first.granted
    assert first.record.status == LedgerStatus.CLAIMED
    assert not second.granted
    assert AutomationExecution.query.count() == 1


def test_failures_retry_until_ceiling_then_dead(ledger, setup, clock):
    project, rule = setup
    record = ledger.claim_execution(_candidate(project, rule)).record

    ledger.resolve(record, Outcome.FAILED, error="smtp timeout")
    assert record.status == LedgerStatus.FAILED
    assert record.failures == 1
    assert record.next_attempt_at == clock.now() + timedelta(seconds=60)

    # not due yet
    assert ledger.due_retries(AutomationExecution) == []

    clock.advance(timedelta(seconds=61))
    assert ledger.due_retries(AutomationExecution) == [record]
    assert ledger.reclaim(record).granted
    assert record.attempts == 2
    ledger.resolve(record, Outcome.FAILED, error="smtp timeout")
    assert record.next_attempt_at == clock.now() + timedelta(seconds=120)

    clock.advance(timedelta(seconds=121))
    assert ledger.reclaim(record).granted
    ledger.resolve(record, Outcome.FAILED, error="smtp timeout")

    assert record.status == LedgerStatus.DEAD
    assert record.failures == 3
    assert record.attempts == 3
    assert record.next_attempt_at is None
    assert not ledger.reclaim(record).granted


def test_permanent_failure_is_dead_immediately(ledger, setup):
    project, rule = setup
    record = ledger.claim_execution(_candidate(project, rule)).record

    ledger.resolve(record, Outcome.PERMANENT_FAILURE, error="mailbox does not exist")

    assert record.status == LedgerStatus.DEAD
    assert record.last_error == "mailbox does not exist"


def test_resolve_requires_claimed_record(ledger, setup):
    project, rule = setup
    record = ledger.claim_execution(_candidate(project, rule)).record
    ledger.resolve(record, Outcome.SUCCEEDED, provider_id="msg-1")

    with pytest.raises(InvalidTransition):
        ledger.resolve(record, Outcome.FAILED, error="late failure")
    assert record.status == LedgerStatus.SUCCEEDED
    assert record.provider_id == "msg-1"


def test_reclaim_only_moves_failed_records(ledger, setup):
    project, rule = setup
    record = ledger.claim_execution(_candidate(project, rule)).record

    assert not ledger.reclaim(record).granted
    assert record.attempts == 1


def test_stale_claims_become_retryable(ledger, setup, clock):
    project, rule = setup
    record = ledger.claim_execution(_candidate(project, rule)).record

    clock.advance(timedelta(minutes=10))
    assert ledger.sweep_stale_claims(timedelta(minutes=15)) == 0

    clock.advance(timedelta(minutes=10))
    assert ledger.sweep_stale_claims(timedelta(minutes=15)) == 1
    db.session.refresh(record)
    assert record.status == LedgerStatus.FAILED
    assert record.last_error == "Claim expired before resolution"


def test_requeue_dead_record(ledger, setup, clock):
    project, rule = setup
    record = ledger.claim_execution(_candidate(project, rule)).record
    ledger.resolve(record, Outcome.PERMANENT_FAILURE, error="bad template")

    ledger.requeue_dead(record)

    assert record.status == LedgerStatus.FAILED
    assert record.failures == 0
    assert record.next_attempt_at == clock.now()
    with pytest.raises(InvalidTransition):
        ledger.requeue_dead(record)


def test_concurrent_workers_send_exactly_once(tmp_path, clock):
    class FileDatabaseConfig(TestingConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'ledger.db'}"
        SQLALCHEMY_ENGINE_OPTIONS = {"connect_args": {"timeout": 30}}

    file_app = create_app(FileDatabaseConfig)
    transport = FakeTransport()

    with file_app.app_context():
        make = Factory(clock)
        tenant = make.tenant()
        stage = make.stage(tenant, "Inquiry")
        template = make.template(tenant)
        make.automation(tenant, AutomationKind.COMMUNICATION, stage=stage,
                        steps=[{"delay_minutes": 0, "template_id": template.id}])
        project_id = make.project(tenant, stage=stage).id

    workers = 8
    barrier = threading.Barrier(workers)
    errors = []

    def worker():
        try:
            with file_app.app_context():
                engine = AutomationEngine(clock=clock, transports={"EMAIL": transport})
                project = db.session.get(Project, project_id)
                barrier.wait(timeout=10)
                engine.handle_stage_entered(project)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(transport.sent) == 1
    with file_app.app_context():
        records = AutomationExecution.query.all()
        assert len(records) == 1
        assert records[0].status == LedgerStatus.SUCCEEDED
        db.session.remove()
        db.engine.dispose()


def test_sweep_does_not_overwrite_a_concurrent_success(ledger, setup, clock, monkeypatch):
    project, rule = setup
    record = ledger.claim_execution(_candidate(project, rule)).record
    clock.advance(timedelta(minutes=20))

    select_stale = ledger._stale_claims

    def resolved_by_another_worker(model, cutoff):
        rows = select_stale(model, cutoff)
        if model is AutomationExecution:
            model.query.filter(model.id == record.id).update(
                {model.status: LedgerStatus.SUCCEEDED}, synchronize_session=False)
            db.session.commit()
        return rows

    monkeypatch.setattr(ledger, "_stale_claims", resolved_by_another_worker)

    assert ledger.sweep_stale_claims(timedelta(minutes=15)) == 0
    db.session.refresh(record)
    assert record.status == LedgerStatus.SUCCEEDED
    assert record.next_attempt_at is None


def test_sweep_counts_toward_the_retry_ceiling(ledger, setup, clock):
    project, rule = setup
    record = ledger.claim_execution(_candidate(project, rule)).record
    record.failures = 2
    db.session.commit()

    clock.advance(timedelta(minutes=20))
    assert ledger.sweep_stale_claims(timedelta(minutes=15)) == 1

    db.session.refresh(record)
    assert record.status == LedgerStatus.DEAD
    assert record.failures == 3


def test_postpone_only_moves_failed_records(ledger, setup, clock):
    project, rule = setup
    record = ledger.claim_execution(_candidate(project, rule)).record
    later = clock.now() + timedelta(hours=8)

    assert not ledger.postpone(record, later)

    ledger.resolve(record, Outcome.FAILED, error="smtp timeout")
    assert ledger.postpone(record, later)
    db.session.refresh(record)
    assert record.next_attempt_at == later

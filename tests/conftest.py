import os
import sys
from datetime import datetime, timedelta
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT_DIR))

os.environ.setdefault("SCHEDULER_ENABLED", "false")

import pytest
from flask_jwt_extended import create_access_token

from app import create_app
from config import TestingConfig
from extensions import db
from models import (
    Automation,
    AutomationStep,
    AutomationBusinessTrigger,
    Client,
    Project,
    QuestionnaireTemplate,
    Stage,
    Template,
    Tenant,
)
from services.automation_engine import AutomationEngine
from services.clock import FixedClock
from services.drip_service import CampaignProgressor
from services.retry_policy import RetryPolicy
from services.transport import SendResult

T0 = datetime(2025, 6, 1, 12, 0)


class FakeTransport:
    """Records every attempt; scripted results are returned first, then success."""

    def __init__(self):
        self.attempts = []
        self.sent = []
        self.scripted = []

    def fail_next(self, reason="provider unavailable", permanent=False, times=1):
        for _ in range(times):
            self.scripted.append(SendResult.failure(reason, permanent=permanent))

    def send(self, message):
        self.attempts.append(message)
        if self.scripted:
            return self.scripted.pop(0)
        self.sent.append(message)
        return SendResult.ok(f"fake-{len(self.attempts)}")

    @property
    def subjects(self):
        return [m.subject for m in self.sent]


class Factory:
    def __init__(self, clock):
        self.clock = clock

    def _save(self, obj):
        db.session.add(obj)
        db.session.commit()
        return obj

    def tenant(self, business_name="Lumen Studio", timezone="America/New_York"):
        return self._save(Tenant(business_name=business_name, timezone=timezone))

    def stage(self, tenant, name, order_index=0):
        return self._save(Stage(tenant_id=tenant.id, name=name, order_index=order_index))

    def project(self, tenant, stage=None, event_date=None, email="ana@example.com", phone="(555) 555-0100",
                first_name="Ana", **kwargs):
        client = Client(tenant_id=tenant.id, first_name=first_name, last_name="Lima", email=email, phone=phone)
        project = Project(
            tenant_id=tenant.id,
            client=client,
            title=f"{first_name}'s wedding",
            stage_id=stage.id if stage else None,
            stage_entered_at=self.clock.now() if stage else None,
            event_date=event_date,
            **kwargs,
        )
        return self._save(project)

    def template(self, tenant, channel="EMAIL", subject="Hello {{firstName}}",
                 html_body="<p>Hi {{firstName}}</p>", text_body="Hi {{firstName}} from {{businessName}}"):
        return self._save(Template(tenant_id=tenant.id, name=f"{channel} template", channel=channel,
                                   subject=subject, html_body=html_body, text_body=text_body))

    def questionnaire_template(self, tenant, name="Wedding day questionnaire"):
        return self._save(QuestionnaireTemplate(tenant_id=tenant.id, name=name))

    def automation(self, tenant, kind, config=None, channel="EMAIL", stage=None, steps=(), triggers=(),
                   effective_from=None, project_type="WEDDING"):
        rule = Automation(
            tenant_id=tenant.id,
            name=f"{kind.lower()} rule",
            kind=kind,
            channel=channel,
            stage_id=stage.id if stage else None,
            project_type=project_type,
            effective_from=effective_from or self.clock.now() - timedelta(days=1),
        )
        rule.config = config or {}
        for idx, step in enumerate(steps):
            rule.steps.append(AutomationStep(step_index=idx, **step))
        for binding in triggers:
            rule.business_triggers.append(AutomationBusinessTrigger(**binding))
        return self._save(rule)

    def campaign(self, tenant, stage, subjects, activate=True, approved=True, **kwargs):
        progressor = CampaignProgressor(self.clock)
        campaign = progressor.create_campaign(
            tenant_id=tenant.id,
            name="Wedding nurture",
            target_stage_id=stage.id,
            emails=[
                {
                    "subject": subject,
                    "html_body": f"<p>{subject}</p>",
                    "approval_status": "APPROVED" if approved else "PENDING",
                }
                for subject in subjects
            ],
            **kwargs,
        )
        if activate:
            progressor.approve_campaign(campaign)
            progressor.activate_campaign(campaign)
        return campaign

    def enter_stage(self, project, stage):
        project.stage_id = stage.id
        project.stage_entered_at = self.clock.now()
        db.session.commit()
        return project


@pytest.fixture()
def clock():
    return FixedClock(T0)


@pytest.fixture()
def email_transport():
    return FakeTransport()


@pytest.fixture()
def sms_transport():
    return FakeTransport()


@pytest.fixture()
def transports(email_transport, sms_transport):
    return {"EMAIL": email_transport, "SMS": sms_transport}


@pytest.fixture()
def app(clock, transports):
    app = create_app(TestingConfig)
    app.extensions['automation_engine'] = lambda: AutomationEngine(
        clock=clock, transports=transports, retry_policy=RetryPolicy(max_attempts=3)
    )
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def engine(app, clock, transports):
    return AutomationEngine(clock=clock, transports=transports, retry_policy=RetryPolicy(max_attempts=3))


@pytest.fixture()
def make(app, clock):
    return Factory(clock)


@pytest.fixture()
def tenant(make):
    return make.tenant()


@pytest.fixture()
def auth_headers(tenant):
    token = create_access_token(identity="owner@lumen.test", additional_claims={"tenant_id": tenant.id})
    return {"Authorization": f"Bearer {token}"}

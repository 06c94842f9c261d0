from extensions import db
from datetime import datetime

class LedgerStatus:
    CLAIMED = 'CLAIMED'
    SUCCEEDED = 'SUCCEEDED'
    FAILED = 'FAILED'
    DEAD = 'DEAD'


class LedgerRecordMixin:
    """Status and retry bookkeeping shared by execution and delivery records."""

    status = db.Column(db.String(20), default=LedgerStatus.CLAIMED, nullable=False, index=True)
    attempts = db.Column(db.Integer, default=1, nullable=False)
    failures = db.Column(db.Integer, default=0, nullable=False)
    next_attempt_at = db.Column(db.DateTime, nullable=True)
    last_error = db.Column(db.Text)
    provider_id = db.Column(db.String(255))
    claimed_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    resolved_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def ledger_dict(self):
        return {
            "id": self.id,
            "status": self.status,
            "attempts": self.attempts,
            "failures": self.failures,
            "next_attempt_at": self.next_attempt_at.isoformat() if self.next_attempt_at else None,
            "last_error": self.last_error,
            "provider_id": self.provider_id,
            "claimed_at": self.claimed_at.isoformat() if self.claimed_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }


class AutomationExecution(LedgerRecordMixin, db.Model):
    """Idempotency witness for COMMUNICATION, STAGE_CHANGE and COUNTDOWN actions."""
    __tablename__ = 'automation_executions'

    id = db.Column(db.Integer, primary_key=True)
    natural_key = db.Column(db.String(255), unique=True, nullable=False)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False, index=True)
    project_id = db.Column(db.Integer, db.ForeignKey('projects.id'), nullable=False, index=True)
    automation_id = db.Column(db.Integer, db.ForeignKey('automations.id'), nullable=False)
    automation_kind = db.Column(db.String(20), nullable=False)
    channel = db.Column(db.String(10), nullable=False)
    step_id = db.Column(db.Integer, db.ForeignKey('automation_steps.id'), nullable=True)
    trigger_type = db.Column(db.String(40))
    anchor_date = db.Column(db.Date)
    days_offset = db.Column(db.Integer)
    questionnaire_template_id = db.Column(db.Integer, db.ForeignKey('questionnaire_templates.id'), nullable=True)
    desired_at = db.Column(db.DateTime)

    project = db.relationship('Project')
    automation = db.relationship('Automation')
    step = db.relationship('AutomationStep')

    def to_dict(self):
        data = self.ledger_dict()
        data.update({
            "natural_key": self.natural_key,
            "project_id": self.project_id,
            "automation_id": self.automation_id,
            "automation_kind": self.automation_kind,
            "channel": self.channel,
            "step_id": self.step_id,
            "trigger_type": self.trigger_type,
            "anchor_date": self.anchor_date.isoformat() if self.anchor_date else None,
            "days_offset": self.days_offset,
            "questionnaire_template_id": self.questionnaire_template_id,
        })
        return data


class MessageLog(db.Model):
    __tablename__ = 'message_logs'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, nullable=False)
    project_id = db.Column(db.Integer, nullable=True)
    channel = db.Column(db.String(10), nullable=False)
    recipient = db.Column(db.String(150))
    status = db.Column(db.String(20), nullable=False)  # sent / failed
    provider_id = db.Column(db.String(255))
    error_message = db.Column(db.Text)
    execution_id = db.Column(db.Integer, db.ForeignKey('automation_executions.id'), nullable=True)
    delivery_id = db.Column(db.Integer, db.ForeignKey('drip_email_deliveries.id'), nullable=True)
    sent_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "channel": self.channel,
            "recipient": self.recipient,
            "status": self.status,
            "provider_id": self.provider_id,
            "error_message": self.error_message,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
        }

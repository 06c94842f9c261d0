from extensions import db
from datetime import datetime, timedelta
from models.execution import LedgerRecordMixin
import json

class CampaignStatus:
    DRAFT = 'DRAFT'
    APPROVED = 'APPROVED'
    ACTIVE = 'ACTIVE'
    PAUSED = 'PAUSED'

    ENROLLABLE = (APPROVED, ACTIVE)


class ApprovalStatus:
    PENDING = 'PENDING'
    APPROVED = 'APPROVED'
    REJECTED = 'REJECTED'


class SubscriptionStatus:
    ACTIVE = 'ACTIVE'
    COMPLETED = 'COMPLETED'
    UNSUBSCRIBED = 'UNSUBSCRIBED'


class DripCampaign(db.Model):
    __tablename__ = 'drip_campaigns'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    project_type = db.Column(db.String(50), nullable=False, default='WEDDING')
    target_stage_id = db.Column(db.Integer, db.ForeignKey('stages.id'), nullable=False)
    status = db.Column(db.String(20), default=CampaignStatus.DRAFT, nullable=False)  # DRAFT / APPROVED / ACTIVE / PAUSED
    enabled = db.Column(db.Boolean, default=True, nullable=False)
    cadence_value = db.Column(db.Integer, default=1, nullable=False)
    cadence_unit = db.Column(db.String(10), default='WEEKS', nullable=False)  # DAYS / WEEKS
    max_duration_months = db.Column(db.Integer, default=12, nullable=False)
    initial_delay_minutes = db.Column(db.Integer, default=0, nullable=False)

    version = db.Column(db.Integer, default=1, nullable=False)
    parent_version_id = db.Column(db.Integer, db.ForeignKey('drip_campaigns.id'), nullable=True)
    lineage_id = db.Column(db.Integer, nullable=True, index=True)  # id of version 1
    is_current_version = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    emails = db.relationship('DripCampaignEmail', backref='campaign', lazy=True, cascade="all, delete-orphan",
                             order_by="DripCampaignEmail.sequence_index")
    subscriptions = db.relationship('DripCampaignSubscription', backref='campaign', lazy=True)
    parent_version = db.relationship('DripCampaign', remote_side=[id])

    @property
    def cadence(self):
        days = self.cadence_value * 7 if self.cadence_unit == 'WEEKS' else self.cadence_value
        return timedelta(days=days)

    @property
    def max_duration(self):
        # Months are approximated as 30 days
        return timedelta(days=30 * self.max_duration_months)

    def email_at(self, sequence_index):
        for email in self.emails:
            if email.sequence_index == sequence_index:
                return email
        return None

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "project_type": self.project_type,
            "target_stage_id": self.target_stage_id,
            "status": self.status,
            "enabled": self.enabled,
            "cadence_value": self.cadence_value,
            "cadence_unit": self.cadence_unit,
            "max_duration_months": self.max_duration_months,
            "version": self.version,
            "parent_version_id": self.parent_version_id,
            "is_current_version": self.is_current_version,
            "emails": [e.to_dict() for e in self.emails],
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class DripCampaignEmail(db.Model):
    __tablename__ = 'drip_campaign_emails'
    __table_args__ = (
        db.UniqueConstraint('campaign_id', 'sequence_index', name='uq_campaign_email_sequence'),
    )

    id = db.Column(db.Integer, primary_key=True)
    campaign_id = db.Column(db.Integer, db.ForeignKey('drip_campaigns.id'), nullable=False)
    sequence_index = db.Column(db.Integer, nullable=False)
    subject = db.Column(db.String(255), nullable=False)
    html_body = db.Column(db.Text, nullable=False)
    text_body = db.Column(db.Text)
    approval_status = db.Column(db.String(20), default=ApprovalStatus.PENDING, nullable=False)
    approved_at = db.Column(db.DateTime)

    original_subject = db.Column(db.String(255))
    original_html_body = db.Column(db.Text)
    edited_by = db.Column(db.String(120))
    edited_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    @property
    def is_approved(self):
        return self.approval_status == ApprovalStatus.APPROVED

    def to_dict(self):
        return {
            "id": self.id,
            "sequence_index": self.sequence_index,
            "subject": self.subject,
            "approval_status": self.approval_status,
            "edited_by": self.edited_by,
            "edited_at": self.edited_at.isoformat() if self.edited_at else None,
        }


class DripCampaignHistory(db.Model):
    """Append-only audit trail of campaign edits."""
    __tablename__ = 'drip_campaign_history'

    id = db.Column(db.Integer, primary_key=True)
    campaign_id = db.Column(db.Integer, db.ForeignKey('drip_campaigns.id'), nullable=False)
    lineage_id = db.Column(db.Integer, index=True)
    action = db.Column(db.String(50), nullable=False)  # NEW_VERSION / APPROVED / ACTIVATED / PAUSED / EMAIL_APPROVED
    actor = db.Column(db.String(120))
    reason = db.Column(db.Text)
    details_json = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "campaign_id": self.campaign_id,
            "action": self.action,
            "actor": self.actor,
            "reason": self.reason,
            "details": json.loads(self.details_json) if self.details_json else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class DripCampaignSubscription(db.Model):
    __tablename__ = 'drip_campaign_subscriptions'
    __table_args__ = (
        db.UniqueConstraint('project_id', 'campaign_id', name='uq_subscription_project_campaign'),
    )

    id = db.Column(db.Integer, primary_key=True)
    campaign_id = db.Column(db.Integer, db.ForeignKey('drip_campaigns.id'), nullable=False)
    project_id = db.Column(db.Integer, db.ForeignKey('projects.id'), nullable=False)
    client_id = db.Column(db.Integer, db.ForeignKey('clients.id'), nullable=False)
    next_email_index = db.Column(db.Integer, default=0, nullable=False)
    next_email_at = db.Column(db.DateTime, nullable=False)
    status = db.Column(db.String(20), default=SubscriptionStatus.ACTIVE, nullable=False)  # ACTIVE / COMPLETED / UNSUBSCRIBED
    completion_reason = db.Column(db.String(50))
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    unsubscribed_at = db.Column(db.DateTime)

    project = db.relationship('Project', backref='drip_subscriptions')
    client = db.relationship('Client')

    @property
    def is_live(self):
        return self.status == SubscriptionStatus.ACTIVE and self.unsubscribed_at is None and self.completed_at is None

    def to_dict(self):
        return {
            "id": self.id,
            "campaign_id": self.campaign_id,
            "project_id": self.project_id,
            "next_email_index": self.next_email_index,
            "next_email_at": self.next_email_at.isoformat() if self.next_email_at else None,
            "status": self.status,
            "completion_reason": self.completion_reason,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "unsubscribed_at": self.unsubscribed_at.isoformat() if self.unsubscribed_at else None,
        }


class DripEmailDelivery(LedgerRecordMixin, db.Model):
    """Idempotency witness for one (subscription, email) send."""
    __tablename__ = 'drip_email_deliveries'
    __table_args__ = (
        db.UniqueConstraint('subscription_id', 'email_id', name='uq_delivery_subscription_email'),
    )

    id = db.Column(db.Integer, primary_key=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey('drip_campaign_subscriptions.id'), nullable=False)
    email_id = db.Column(db.Integer, db.ForeignKey('drip_campaign_emails.id'), nullable=False)
    project_id = db.Column(db.Integer, db.ForeignKey('projects.id'), nullable=False)
    sequence_index = db.Column(db.Integer, nullable=False)

    subscription = db.relationship('DripCampaignSubscription', backref='deliveries')
    email = db.relationship('DripCampaignEmail')

    def to_dict(self):
        data = self.ledger_dict()
        data.update({
            "subscription_id": self.subscription_id,
            "email_id": self.email_id,
            "sequence_index": self.sequence_index,
        })
        return data

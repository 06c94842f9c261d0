from extensions import db
from datetime import datetime

class ProjectStatus:
    ACTIVE = 'ACTIVE'
    COMPLETED = 'COMPLETED'
    ARCHIVED = 'ARCHIVED'


class Client(db.Model):
    __tablename__ = 'clients'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False, default='')
    email = db.Column(db.String(120))
    phone = db.Column(db.String(30))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}".strip()


class Project(db.Model):
    """The subject record automations act on."""
    __tablename__ = 'projects'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False, index=True)
    client_id = db.Column(db.Integer, db.ForeignKey('clients.id'), nullable=False)
    title = db.Column(db.String(150))
    project_type = db.Column(db.String(50), nullable=False, default='WEDDING')
    project_subtype = db.Column(db.String(50))
    stage_id = db.Column(db.Integer, db.ForeignKey('stages.id'), nullable=True, index=True)
    stage_entered_at = db.Column(db.DateTime)
    event_date = db.Column(db.DateTime)  # anchor date for countdowns / nurture cut-off
    status = db.Column(db.String(20), default=ProjectStatus.ACTIVE, nullable=False)  # ACTIVE / COMPLETED / ARCHIVED
    email_opt_in = db.Column(db.Boolean, default=True)
    sms_opt_in = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    client = db.relationship('Client', backref='projects')
    tenant = db.relationship('Tenant')
    stage = db.relationship('Stage')

    @property
    def is_active(self):
        return self.status == ProjectStatus.ACTIVE

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "project_type": self.project_type,
            "stage_id": self.stage_id,
            "stage_entered_at": self.stage_entered_at.isoformat() if self.stage_entered_at else None,
            "event_date": self.event_date.isoformat() if self.event_date else None,
            "status": self.status,
        }


class ProjectActivity(db.Model):
    __tablename__ = 'project_activity_log'

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey('projects.id'), nullable=False, index=True)
    activity_type = db.Column(db.String(50), nullable=False)  # STAGE_CHANGE
    description = db.Column(db.Text)
    execution_id = db.Column(db.Integer, db.ForeignKey('automation_executions.id'), nullable=True)
    from_stage_id = db.Column(db.Integer)
    to_stage_id = db.Column(db.Integer)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

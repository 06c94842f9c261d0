from extensions import db
from datetime import datetime


class QuestionnaireTemplate(db.Model):
    __tablename__ = 'questionnaire_templates'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False, index=True)
    name = db.Column(db.String(150), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class ProjectQuestionnaire(db.Model):
    __tablename__ = 'project_questionnaires'
    __table_args__ = (
        db.UniqueConstraint('project_id', 'template_id', name='uq_project_questionnaire_template'),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey('projects.id'), nullable=False, index=True)
    template_id = db.Column(db.Integer, db.ForeignKey('questionnaire_templates.id'), nullable=False)
    status = db.Column(db.String(20), default='PENDING', nullable=False)  # PENDING / SUBMITTED
    execution_id = db.Column(db.Integer, db.ForeignKey('automation_executions.id'), nullable=True)
    assigned_at = db.Column(db.DateTime, default=datetime.utcnow)

    template = db.relationship('QuestionnaireTemplate')

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "template_id": self.template_id,
            "template_name": self.template.name if self.template else None,
            "status": self.status,
            "assigned_at": self.assigned_at.isoformat() if self.assigned_at else None,
        }

from extensions import db
from datetime import datetime

class Tenant(db.Model):
    __tablename__ = 'tenants'

    id = db.Column(db.Integer, primary_key=True)
    business_name = db.Column(db.String(150), nullable=False)
    email_from_name = db.Column(db.String(150))
    email_from_addr = db.Column(db.String(150))
    timezone = db.Column(db.String(64), nullable=False, default='America/New_York')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    stages = db.relationship('Stage', backref='tenant', lazy=True, order_by='Stage.order_index')


class Stage(db.Model):
    __tablename__ = 'stages'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False)
    name = db.Column(db.String(100), nullable=False)
    order_index = db.Column(db.Integer, default=0, nullable=False)
    is_default = db.Column(db.Boolean, default=False)

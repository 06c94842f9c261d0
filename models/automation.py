from extensions import db
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
import json

class AutomationKind:
    COMMUNICATION = 'COMMUNICATION'
    STAGE_CHANGE = 'STAGE_CHANGE'
    COUNTDOWN = 'COUNTDOWN'
    NURTURE = 'NURTURE'

    ALL = (COMMUNICATION, STAGE_CHANGE, COUNTDOWN, NURTURE)


class Channel:
    EMAIL = 'EMAIL'
    SMS = 'SMS'
    SYSTEM = 'SYSTEM'


class BusinessTrigger:
    DEPOSIT_PAID = 'DEPOSIT_PAID'
    FULL_PAYMENT_MADE = 'FULL_PAYMENT_MADE'
    PROJECT_BOOKED = 'PROJECT_BOOKED'
    CONTRACT_SIGNED = 'CONTRACT_SIGNED'
    ESTIMATE_ACCEPTED = 'ESTIMATE_ACCEPTED'
    EVENT_DATE_REACHED = 'EVENT_DATE_REACHED'
    PROJECT_DELIVERED = 'PROJECT_DELIVERED'
    CLIENT_ONBOARDED = 'CLIENT_ONBOARDED'
    APPOINTMENT_BOOKED = 'APPOINTMENT_BOOKED'

    ALL = (
        DEPOSIT_PAID, FULL_PAYMENT_MADE, PROJECT_BOOKED, CONTRACT_SIGNED,
        ESTIMATE_ACCEPTED, EVENT_DATE_REACHED, PROJECT_DELIVERED,
        CLIENT_ONBOARDED, APPOINTMENT_BOOKED,
    )


# --- Kind-specific payloads (stored in Automation.config_json) ---

@dataclass(frozen=True)
class CommunicationConfig:
    requires_anchor_date: Optional[bool] = None
    questionnaire_template_id: Optional[int] = None


@dataclass(frozen=True)
class StageChangeConfig:
    target_stage_id: int


@dataclass(frozen=True)
class CountdownConfig:
    days_offset: int
    template_id: int
    timing: str = 'BEFORE'  # BEFORE / AFTER
    trigger_hour: int = 9
    trigger_minute: int = 0
    stage_condition_id: Optional[int] = None

    @property
    def signed_offset(self):
        return -self.days_offset if self.timing == 'BEFORE' else self.days_offset


@dataclass(frozen=True)
class NurtureConfig:
    pass


_CONFIG_TYPES = {
    AutomationKind.COMMUNICATION: CommunicationConfig,
    AutomationKind.STAGE_CHANGE: StageChangeConfig,
    AutomationKind.COUNTDOWN: CountdownConfig,
    AutomationKind.NURTURE: NurtureConfig,
}


class InvalidAutomationConfig(ValueError):
    pass


# Field name -> (expected type, may be None)
_FIELD_TYPES = {
    'requires_anchor_date': (bool, True),
    'questionnaire_template_id': (int, True),
    'target_stage_id': (int, False),
    'days_offset': (int, False),
    'template_id': (int, False),
    'timing': (str, False),
    'trigger_hour': (int, False),
    'trigger_minute': (int, False),
    'stage_condition_id': (int, True),
}


def _check_types(kind, config):
    for name in config.__dataclass_fields__:
        expected, nullable = _FIELD_TYPES[name]
        value = getattr(config, name)
        if value is None and nullable:
            continue
        # bool is an int subclass; reject it for int fields
        if not isinstance(value, expected) or (expected is int and isinstance(value, bool)):
            raise InvalidAutomationConfig(f"Invalid {kind} config: {name} must be {expected.__name__}, got {value!r}")


def build_config(kind, raw):
    """Validate a raw dict into the payload type for ``kind``."""
    config_type = _CONFIG_TYPES.get(kind)
    if config_type is None:
        raise InvalidAutomationConfig(f"Unknown automation kind: {kind}")
    if raw is not None and not isinstance(raw, dict):
        raise InvalidAutomationConfig(f"Invalid {kind} config: expected an object")
    try:
        config = config_type(**(raw or {}))
    except TypeError as e:
        raise InvalidAutomationConfig(f"Invalid {kind} config: {e}") from e
    _check_types(kind, config)

    if isinstance(config, CountdownConfig):
        if config.days_offset < 0:
            raise InvalidAutomationConfig("days_offset must be a non-negative integer")
        if config.timing not in ('BEFORE', 'AFTER'):
            raise InvalidAutomationConfig("timing must be BEFORE or AFTER")
        if not (0 <= config.trigger_hour <= 23 and 0 <= config.trigger_minute <= 59):
            raise InvalidAutomationConfig("trigger time out of range")
    return config


class Template(db.Model):
    __tablename__ = 'templates'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False)
    name = db.Column(db.String(150), nullable=False)
    channel = db.Column(db.String(10), nullable=False)  # EMAIL / SMS
    subject = db.Column(db.String(255))
    html_body = db.Column(db.Text)
    text_body = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class Automation(db.Model):
    __tablename__ = 'automations'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False, index=True)
    name = db.Column(db.String(150), nullable=False)
    kind = db.Column(db.String(20), nullable=False)  # COMMUNICATION / STAGE_CHANGE / COUNTDOWN / NURTURE
    channel = db.Column(db.String(10), nullable=False, default=Channel.EMAIL)
    stage_id = db.Column(db.Integer, db.ForeignKey('stages.id'), nullable=True)
    project_type = db.Column(db.String(50), nullable=False, default='WEDDING')
    enabled = db.Column(db.Boolean, default=True, nullable=False)
    effective_from = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    config_json = db.Column(db.Text)  # Stored as JSON string
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    steps = db.relationship('AutomationStep', backref='automation', cascade="all, delete-orphan",
                            order_by='AutomationStep.step_index')
    business_triggers = db.relationship('AutomationBusinessTrigger', backref='automation',
                                        cascade="all, delete-orphan")

    @property
    def config(self):
        try:
            raw = json.loads(self.config_json) if self.config_json else {}
        except ValueError as e:
            raise InvalidAutomationConfig(f"Stored config for automation {self.id} is not valid JSON") from e
        return build_config(self.kind, raw)

    @config.setter
    def config(self, raw):
        build_config(self.kind, raw)
        self.config_json = json.dumps(raw or {})

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "kind": self.kind,
            "channel": self.channel,
            "stage_id": self.stage_id,
            "project_type": self.project_type,
            "enabled": self.enabled,
            "effective_from": self.effective_from.isoformat() if self.effective_from else None,
            "config": json.loads(self.config_json) if self.config_json else {},
            "steps": [s.to_dict() for s in self.steps],
            "business_triggers": [b.to_dict() for b in self.business_triggers],
        }


class AutomationStep(db.Model):
    __tablename__ = 'automation_steps'

    id = db.Column(db.Integer, primary_key=True)
    automation_id = db.Column(db.Integer, db.ForeignKey('automations.id'), nullable=False)
    step_index = db.Column(db.Integer, nullable=False)
    delay_minutes = db.Column(db.Integer, nullable=False, default=0)
    template_id = db.Column(db.Integer, db.ForeignKey('templates.id'))
    enabled = db.Column(db.Boolean, default=True)
    quiet_hours_start = db.Column(db.Integer)
    quiet_hours_end = db.Column(db.Integer)

    template = db.relationship('Template')

    def to_dict(self):
        return {
            "id": self.id,
            "step_index": self.step_index,
            "delay_minutes": self.delay_minutes,
            "template_id": self.template_id,
            "enabled": self.enabled,
            "quiet_hours_start": self.quiet_hours_start,
            "quiet_hours_end": self.quiet_hours_end,
        }


class AutomationBusinessTrigger(db.Model):
    __tablename__ = 'automation_business_triggers'
    __table_args__ = (
        db.UniqueConstraint('automation_id', 'trigger_type', name='uq_automation_trigger_type'),
    )

    id = db.Column(db.Integer, primary_key=True)
    automation_id = db.Column(db.Integer, db.ForeignKey('automations.id'), nullable=False)
    trigger_type = db.Column(db.String(40), nullable=False)
    min_amount_cents = db.Column(db.Integer)
    project_subtype = db.Column(db.String(50))

    def matches(self, payload, project):
        if self.min_amount_cents is not None:
            amount = (payload or {}).get('amount_cents')
            if amount is None or int(amount) < self.min_amount_cents:
                return False
        if self.project_subtype:
            subtype = (payload or {}).get('subtype') or project.project_subtype
            if subtype != self.project_subtype:
                return False
        return True

    def to_dict(self):
        return {
            "trigger_type": self.trigger_type,
            "min_amount_cents": self.min_amount_cents,
            "project_subtype": self.project_subtype,
        }

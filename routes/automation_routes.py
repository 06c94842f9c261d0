from flask import Blueprint, request, jsonify
from extensions import db
from models.automation import (
    Automation,
    AutomationStep,
    AutomationBusinessTrigger,
    AutomationKind,
    BusinessTrigger,
    Channel,
    InvalidAutomationConfig,
)
from models.execution import AutomationExecution
from models.questionnaire import QuestionnaireTemplate
from models.tenant import Stage
from routes.auth import tenant_required
from services.automation_engine import engine_for_request
from services.errors import InvalidTransition
from datetime import datetime

automation_bp = Blueprint('automation', __name__)

# --- Health Check ---
@automation_bp.route("/api/automation/health", methods=["GET"])
def automation_health():
    return jsonify({"status": "automation module working"})


def _parse_datetime(value):
    if not value:
        return None
    return datetime.fromisoformat(value.replace('Z', '+00:00')).replace(tzinfo=None)


# --- Automation Rules CRUD ---
@automation_bp.route('/api/automations', methods=['GET'])
@tenant_required
def list_automations(current_tenant):
    query = Automation.query.filter_by(tenant_id=current_tenant.id)
    if request.args.get('kind'):
        query = query.filter_by(kind=request.args['kind'])
    rules = query.order_by(Automation.id.asc()).all()
    return jsonify([r.to_dict() for r in rules])


@automation_bp.route('/api/automations', methods=['POST'])
@tenant_required
def create_automation(current_tenant):
    data = request.get_json() or {}

    if not all(k in data for k in ('name', 'kind')):
        return jsonify({'message': 'Missing required fields: name, kind'}), 400
    if data['kind'] not in AutomationKind.ALL:
        return jsonify({'message': f"Unknown kind: {data['kind']}"}), 400

    stage_id = data.get('stage_id')
    if stage_id is not None and not Stage.query.filter_by(id=stage_id, tenant_id=current_tenant.id).first():
        return jsonify({'message': 'Stage not found'}), 400

    try:
        effective_from = _parse_datetime(data.get('effective_from')) or engine_for_request().clock.now()
    except ValueError:
        return jsonify({'message': 'Invalid effective_from. Use ISO 8601'}), 400

    rule = Automation(
        tenant_id=current_tenant.id,
        name=data['name'],
        kind=data['kind'],
        channel=data.get('channel', Channel.SYSTEM if data['kind'] == AutomationKind.STAGE_CHANGE else Channel.EMAIL),
        stage_id=stage_id,
        project_type=data.get('project_type', 'WEDDING'),
        enabled=data.get('enabled', True),
        effective_from=effective_from,
    )
    try:
        rule.config = data.get('config') or {}
    except InvalidAutomationConfig as e:
        return jsonify({'message': str(e)}), 400

    questionnaire_id = getattr(rule.config, 'questionnaire_template_id', None)
    if questionnaire_id is not None and not QuestionnaireTemplate.query.filter_by(
            id=questionnaire_id, tenant_id=current_tenant.id).first():
        return jsonify({'message': 'Questionnaire template not found'}), 400

    for idx, step in enumerate(data.get('steps', [])):
        rule.steps.append(AutomationStep(
            step_index=step.get('step_index', idx),
            delay_minutes=step.get('delay_minutes', 0),
            template_id=step.get('template_id'),
            enabled=step.get('enabled', True),
            quiet_hours_start=step.get('quiet_hours_start'),
            quiet_hours_end=step.get('quiet_hours_end'),
        ))

    for binding in data.get('business_triggers', []):
        if binding.get('trigger_type') not in BusinessTrigger.ALL:
            return jsonify({'message': f"Unknown trigger_type: {binding.get('trigger_type')}"}), 400
        rule.business_triggers.append(AutomationBusinessTrigger(
            trigger_type=binding['trigger_type'],
            min_amount_cents=binding.get('min_amount_cents'),
            project_subtype=binding.get('project_subtype'),
        ))

    db.session.add(rule)
    db.session.commit()
    return jsonify({'message': 'Automation created', 'automation': rule.to_dict()}), 201


@automation_bp.route('/api/automations/<int:automation_id>/toggle', methods=['PUT'])
@tenant_required
def toggle_automation(current_tenant, automation_id):
    rule = Automation.query.filter_by(id=automation_id, tenant_id=current_tenant.id).first_or_404()
    data = request.get_json(silent=True) or {}
    rule.enabled = bool(data['enabled']) if 'enabled' in data else not rule.enabled
    db.session.commit()
    return jsonify({'message': 'Automation updated', 'enabled': rule.enabled})


# --- Execution Ledger ---
@automation_bp.route('/api/automations/executions', methods=['GET'])
@tenant_required
def list_executions(current_tenant):
    query = AutomationExecution.query.filter_by(tenant_id=current_tenant.id)
    if request.args.get('status'):
        query = query.filter_by(status=request.args['status'].upper())
    if request.args.get('project_id'):
        query = query.filter_by(project_id=request.args.get('project_id', type=int))
    records = query.order_by(AutomationExecution.created_at.desc()).limit(200).all()
    return jsonify([r.to_dict() for r in records])


@automation_bp.route('/api/automations/executions/<int:execution_id>/requeue', methods=['POST'])
@tenant_required
def requeue_execution(current_tenant, execution_id):
    record = AutomationExecution.query.filter_by(id=execution_id, tenant_id=current_tenant.id).first_or_404()
    engine = engine_for_request()
    try:
        engine.ledger.requeue_dead(record)
    except InvalidTransition as e:
        return jsonify({'message': str(e)}), 409
    return jsonify({'message': 'Execution requeued', 'execution': record.to_dict()})

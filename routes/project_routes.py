from flask import Blueprint, request, jsonify
from extensions import db
from models.automation import BusinessTrigger
from models.project import Project, ProjectActivity
from models.tenant import Stage
from routes.auth import tenant_required
from services.automation_engine import engine_for_request
import logging

logger = logging.getLogger("automation")

project_bp = Blueprint('projects', __name__)


@project_bp.route('/api/projects/<int:project_id>', methods=['GET'])
@tenant_required
def get_project(current_tenant, project_id):
    project = Project.query.filter_by(id=project_id, tenant_id=current_tenant.id).first_or_404()
    return jsonify(project.to_dict())


@project_bp.route('/api/projects/<int:project_id>/stage', methods=['POST'])
@tenant_required
def move_project_stage(current_tenant, project_id):
    project = Project.query.filter_by(id=project_id, tenant_id=current_tenant.id).first_or_404()
    data = request.get_json() or {}

    stage = Stage.query.filter_by(id=data.get('stage_id'), tenant_id=current_tenant.id).first()
    if not stage:
        return jsonify({'message': 'Stage not found'}), 400

    engine = engine_for_request()
    from_stage = project.stage_id
    project.stage_id = stage.id
    project.stage_entered_at = engine.clock.now()
    db.session.add(ProjectActivity(
        project_id=project.id,
        activity_type='STAGE_CHANGE',
        description=f"Moved to {stage.name}",
        from_stage_id=from_stage,
        to_stage_id=stage.id,
        created_at=project.stage_entered_at,
    ))
    db.session.commit()
    logger.info(f"[OK] Project {project.id} moved to stage {stage.id}")

    stats = engine.handle_stage_entered(project)
    return jsonify({'message': 'Stage updated', 'project': project.to_dict(), 'automation': dict(stats)})


@project_bp.route('/api/projects/<int:project_id>/events', methods=['POST'])
@tenant_required
def fire_business_event(current_tenant, project_id):
    project = Project.query.filter_by(id=project_id, tenant_id=current_tenant.id).first_or_404()
    data = request.get_json() or {}

    trigger_type = data.get('trigger_type')
    if trigger_type not in BusinessTrigger.ALL:
        return jsonify({'message': f"Unknown trigger_type: {trigger_type}"}), 400

    engine = engine_for_request()
    stats = engine.handle_business_event(project, trigger_type, data.get('payload') or {})
    db.session.refresh(project)
    return jsonify({'message': 'Event processed', 'project': project.to_dict(), 'automation': dict(stats)})

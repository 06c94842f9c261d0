from flask import Blueprint, request, jsonify
from models.drip_campaign import (
    DripCampaign,
    DripCampaignEmail,
    DripCampaignHistory,
    DripCampaignSubscription,
    DripEmailDelivery,
)
from models.tenant import Stage
from routes.auth import tenant_required, current_actor
from services.automation_engine import engine_for_request
from services.errors import InvalidTransition

drip_bp = Blueprint('drip_campaigns', __name__, url_prefix="/api/drip-campaigns")


def _campaign_or_404(tenant, campaign_id):
    return DripCampaign.query.filter_by(id=campaign_id, tenant_id=tenant.id).first_or_404()


def _email_or_404(tenant, email_id):
    return (
        DripCampaignEmail.query
        .join(DripCampaign, DripCampaignEmail.campaign_id == DripCampaign.id)
        .filter(DripCampaignEmail.id == email_id, DripCampaign.tenant_id == tenant.id)
        .first_or_404()
    )


# 1. Campaigns
@drip_bp.route('', methods=['POST'])
@tenant_required
def create_drip_campaign(current_tenant):
    data = request.get_json() or {}
    if not data.get('name') or not data.get('target_stage_id'):
        return jsonify({"error": "Missing required fields: name, target_stage_id"}), 400
    if not Stage.query.filter_by(id=data['target_stage_id'], tenant_id=current_tenant.id).first():
        return jsonify({"error": "Stage not found"}), 400
    if data.get('cadence_unit', 'WEEKS') not in ('DAYS', 'WEEKS'):
        return jsonify({"error": "cadence_unit must be DAYS or WEEKS"}), 400

    emails = data.get('emails', [])
    if any(not e.get('subject') or not e.get('html_body') for e in emails):
        return jsonify({"error": "Every email needs subject and html_body"}), 400

    progressor = engine_for_request().progressor
    campaign = progressor.create_campaign(
        tenant_id=current_tenant.id,
        name=data['name'],
        target_stage_id=data['target_stage_id'],
        project_type=data.get('project_type', 'WEDDING'),
        cadence_value=data.get('cadence_value', 1),
        cadence_unit=data.get('cadence_unit', 'WEEKS'),
        max_duration_months=data.get('max_duration_months', 12),
        initial_delay_minutes=data.get('initial_delay_minutes', 0),
        emails=[{k: e.get(k) for k in ('subject', 'html_body', 'text_body')} for e in emails],
        actor=current_actor(),
    )
    return jsonify({"message": "Drip campaign created", "campaign": campaign.to_dict()}), 201


@drip_bp.route('', methods=['GET'])
@tenant_required
def get_drip_campaigns(current_tenant):
    query = DripCampaign.query.filter_by(tenant_id=current_tenant.id)
    if request.args.get('all_versions', '').lower() not in ('1', 'true'):
        query = query.filter_by(is_current_version=True)
    campaigns = query.order_by(DripCampaign.created_at.desc()).all()
    return jsonify([c.to_dict() for c in campaigns])


@drip_bp.route('/<int:campaign_id>/history', methods=['GET'])
@tenant_required
def get_drip_campaign_history(current_tenant, campaign_id):
    campaign = _campaign_or_404(current_tenant, campaign_id)
    entries = (
        DripCampaignHistory.query
        .filter_by(lineage_id=campaign.lineage_id or campaign.id)
        .order_by(DripCampaignHistory.id.asc())
        .all()
    )
    return jsonify([h.to_dict() for h in entries])


# 2. Emails
@drip_bp.route('/<int:campaign_id>/emails', methods=['POST'])
@tenant_required
def add_drip_email(current_tenant, campaign_id):
    campaign = _campaign_or_404(current_tenant, campaign_id)
    data = request.get_json() or {}
    if not data.get('subject') or not data.get('html_body'):
        return jsonify({"error": "Missing required fields: subject, html_body"}), 400

    progressor = engine_for_request().progressor
    try:
        email = progressor.add_email(campaign, data['subject'], data['html_body'], data.get('text_body'))
    except InvalidTransition as e:
        return jsonify({"error": str(e)}), 409
    return jsonify({"message": "Email added", "email": email.to_dict()}), 201


@drip_bp.route('/emails/<int:email_id>/approve', methods=['POST'])
@tenant_required
def approve_drip_email(current_tenant, email_id):
    email = _email_or_404(current_tenant, email_id)
    engine_for_request().progressor.approve_email(email, actor=current_actor())
    return jsonify({"message": "Email approved", "email": email.to_dict()})


@drip_bp.route('/emails/<int:email_id>', methods=['PUT'])
@tenant_required
def edit_drip_email(current_tenant, email_id):
    """Edits never touch the running version; they publish a new one."""
    email = _email_or_404(current_tenant, email_id)
    data = request.get_json() or {}
    change = {k: data[k] for k in ('subject', 'html_body', 'text_body') if k in data}
    if not change:
        return jsonify({"error": "Nothing to change"}), 400

    progressor = engine_for_request().progressor
    try:
        new_version = progressor.publish_new_version(
            email.campaign,
            actor=current_actor(),
            reason=data.get('reason'),
            email_changes={email.sequence_index: change},
        )
    except InvalidTransition as e:
        return jsonify({"error": str(e)}), 409
    return jsonify({"message": "New campaign version published", "campaign": new_version.to_dict()})


# 3. Lifecycle
def _transition(current_tenant, campaign_id, action):
    campaign = _campaign_or_404(current_tenant, campaign_id)
    progressor = engine_for_request().progressor
    try:
        getattr(progressor, f"{action}_campaign")(campaign, actor=current_actor())
    except InvalidTransition as e:
        return jsonify({"error": str(e)}), 409
    return jsonify({"message": f"Campaign {campaign.status.lower()}", "campaign": campaign.to_dict()})


@drip_bp.route('/<int:campaign_id>/approve', methods=['POST'])
@tenant_required
def approve_drip_campaign(current_tenant, campaign_id):
    return _transition(current_tenant, campaign_id, 'approve')


@drip_bp.route('/<int:campaign_id>/activate', methods=['POST'])
@tenant_required
def activate_drip_campaign(current_tenant, campaign_id):
    return _transition(current_tenant, campaign_id, 'activate')


@drip_bp.route('/<int:campaign_id>/pause', methods=['POST'])
@tenant_required
def pause_drip_campaign(current_tenant, campaign_id):
    return _transition(current_tenant, campaign_id, 'pause')


# 4. Subscriptions & deliveries
@drip_bp.route('/<int:campaign_id>/deliveries', methods=['GET'])
@tenant_required
def get_drip_deliveries(current_tenant, campaign_id):
    campaign = _campaign_or_404(current_tenant, campaign_id)
    deliveries = (
        DripEmailDelivery.query
        .join(DripCampaignSubscription, DripEmailDelivery.subscription_id == DripCampaignSubscription.id)
        .filter(DripCampaignSubscription.campaign_id == campaign.id)
        .order_by(DripEmailDelivery.created_at.asc())
        .all()
    )
    return jsonify([d.to_dict() for d in deliveries])


@drip_bp.route('/subscriptions/<int:subscription_id>/unsubscribe', methods=['POST'])
@tenant_required
def unsubscribe(current_tenant, subscription_id):
    subscription = (
        DripCampaignSubscription.query
        .join(DripCampaign, DripCampaignSubscription.campaign_id == DripCampaign.id)
        .filter(DripCampaignSubscription.id == subscription_id, DripCampaign.tenant_id == current_tenant.id)
        .first_or_404()
    )
    data = request.get_json(silent=True) or {}
    engine_for_request().progressor.unsubscribe(subscription, reason=data.get('reason', 'CLIENT_REQUEST'))
    return jsonify({"message": "Unsubscribed", "subscription": subscription.to_dict()})

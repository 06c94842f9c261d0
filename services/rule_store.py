from sqlalchemy import or_
from models.automation import Automation, AutomationKind, AutomationStep, AutomationBusinessTrigger, Template
from models.drip_campaign import DripCampaign, DripCampaignSubscription, CampaignStatus
from models.project import Project, ProjectStatus
from models.questionnaire import QuestionnaireTemplate
from models.tenant import Tenant


class RuleStore:
    """Read-only view over one tenant's automation definitions."""

    def __init__(self, tenant):
        self.tenant = tenant
        self._rules = None

    @classmethod
    def for_tenant_id(cls, tenant_id):
        return cls(Tenant.query.get(tenant_id))

    @property
    def timezone(self):
        return self.tenant.timezone if self.tenant else 'UTC'

    def _enabled_rules(self):
        if self._rules is None:
            self._rules = (
                Automation.query
                .filter_by(tenant_id=self.tenant.id, enabled=True)
                .order_by(Automation.id.asc())
                .all()
            )
        return self._rules

    def rules_of_kind(self, kind, project_type=None):
        return [
            r for r in self._enabled_rules()
            if r.kind == kind and (project_type is None or r.project_type == project_type)
        ]

    def communication_rules(self, stage_id, project_type):
        return [r for r in self.rules_of_kind(AutomationKind.COMMUNICATION, project_type) if r.stage_id == stage_id]

    def enabled_steps(self, automation):
        return (
            AutomationStep.query
            .filter_by(automation_id=automation.id, enabled=True)
            .order_by(AutomationStep.step_index.asc())
            .all()
        )

    def stage_change_bindings(self, trigger_type, project_type):
        rules = {r.id: r for r in self.rules_of_kind(AutomationKind.STAGE_CHANGE, project_type)}
        if not rules:
            return []
        bindings = AutomationBusinessTrigger.query.filter(
            AutomationBusinessTrigger.trigger_type == trigger_type,
            AutomationBusinessTrigger.automation_id.in_(list(rules)),
        ).all()
        return [(rules[b.automation_id], b) for b in bindings]

    def countdown_rules(self):
        return self.rules_of_kind(AutomationKind.COUNTDOWN)

    def nurture_rule(self, project_type):
        rules = self.rules_of_kind(AutomationKind.NURTURE, project_type)
        return rules[0] if rules else None

    def template(self, template_id):
        if template_id is None:
            return None
        return Template.query.filter_by(id=template_id, tenant_id=self.tenant.id).first()

    def questionnaire_template(self, template_id):
        if template_id is None:
            return None
        return QuestionnaireTemplate.query.filter_by(id=template_id, tenant_id=self.tenant.id).first()

    def enrollable_campaigns(self, stage_id, project_type):
        return (
            DripCampaign.query
            .filter(
                DripCampaign.tenant_id == self.tenant.id,
                DripCampaign.target_stage_id == stage_id,
                DripCampaign.project_type == project_type,
                DripCampaign.is_current_version.is_(True),
                DripCampaign.enabled.is_(True),
                DripCampaign.status.in_(CampaignStatus.ENROLLABLE),
            )
            .all()
        )

    def has_subscription_in_lineage(self, project_id, campaign):
        # Any version of the campaign counts, so an unsubscribe survives republishing
        lineage = campaign.lineage_id or campaign.id
        return (
            DripCampaignSubscription.query
            .join(DripCampaign, DripCampaignSubscription.campaign_id == DripCampaign.id)
            .filter(
                DripCampaignSubscription.project_id == project_id,
                or_(DripCampaign.lineage_id == lineage, DripCampaign.id == lineage),
            )
            .first()
            is not None
        )

    def active_projects(self):
        return Project.query.filter_by(tenant_id=self.tenant.id, status=ProjectStatus.ACTIVE).all()

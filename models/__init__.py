from .tenant import Tenant, Stage
from .project import Client, Project, ProjectActivity, ProjectStatus
from .automation import Automation, AutomationStep, AutomationBusinessTrigger, Template
from .execution import AutomationExecution, MessageLog, LedgerStatus
from .questionnaire import QuestionnaireTemplate, ProjectQuestionnaire
from .drip_campaign import (
    DripCampaign,
    DripCampaignEmail,
    DripCampaignHistory,
    DripCampaignSubscription,
    DripEmailDelivery,
)

# Ensure all models are imported here so SQLAlchemy knows about them

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from flask import current_app
from extensions import db
from models.automation import AutomationKind, Channel
from models.execution import MessageLog, LedgerStatus
from models.project import Project, ProjectActivity
from models.questionnaire import ProjectQuestionnaire
from models.tenant import Tenant
from services.errors import PermanentTransportError
from services.execution_ledger import Outcome
from services.rule_store import RuleStore
from services.template_renderer import build_variables, render_template
from services.transport import OutboundMessage, SendResult, default_transports
import logging

logger = logging.getLogger("dispatcher")

_send_pool = ThreadPoolExecutor(max_workers=8, thread_name_prefix="transport")


class Dispatcher:
    """Turns a granted claim into its side effect and resolves the ledger row."""

    def __init__(self, ledger, progressor, clock, transports=None, timeout=None, pool=None):
        self.ledger = ledger
        self.progressor = progressor
        self.clock = clock
        self.transports = transports or default_transports()
        self.timeout = timeout if timeout is not None else current_app.config.get('TRANSPORT_TIMEOUT_SECONDS', 20)
        self.pool = pool or _send_pool

    # ===============================
    # TRANSPORT
    # ===============================
    def _send(self, message):
        transport = self.transports.get(message.channel)
        if transport is None:
            return SendResult.failure(f"No transport for channel {message.channel}", permanent=True)
        if not message.to:
            return SendResult.failure(f"No {message.channel} recipient", permanent=True)

        app = current_app._get_current_object()

        def _call():
            with app.app_context():
                return transport.send(message)

        future = self.pool.submit(_call)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout:
            if future.cancel():
                # Still queued: cancelled before it ran
                return SendResult.failure(f"Transport busy, send not started within {self.timeout}s")
            logger.warning(f"[WARN] {message.channel} send to {message.to} still running after {self.timeout}s")
            return SendResult.failure(f"Transport timed out after {self.timeout}s")
        except PermanentTransportError as e:
            return SendResult.failure(str(e), permanent=True)
        except Exception as e:
            logger.exception(f"[FAIL] Transport raised for {message.channel} to {message.to}")
            return SendResult.failure(f"Transport error: {e}")

    def _build_message(self, channel, project, tenant, subject, html_body, text_body):
        client = project.client
        variables = build_variables(project, tenant)
        from_name = (tenant.email_from_name or tenant.business_name) if tenant else None
        if channel == Channel.SMS:
            return OutboundMessage(channel=channel, to=client.phone, body=render_template(text_body, variables))
        return OutboundMessage(
            channel=channel,
            to=client.email,
            subject=render_template(subject, variables),
            html=render_template(html_body, variables) or None,
            body=render_template(text_body, variables),
            from_name=from_name,
            reply_to=(tenant.email_from_addr if tenant else None) or current_app.config.get('MAIL_REPLY_TO'),
        )

    def _log_message(self, message, result, project, execution_id=None, delivery_id=None):
        db.session.add(MessageLog(
            tenant_id=project.tenant_id,
            project_id=project.id,
            channel=message.channel,
            recipient=message.to,
            status='sent' if result.success else 'failed',
            provider_id=result.provider_id,
            error_message=result.reason,
            execution_id=execution_id,
            delivery_id=delivery_id,
            sent_at=self.clock.now() if result.success else None,
        ))

    @staticmethod
    def _outcome(result):
        if result.success:
            return Outcome.SUCCEEDED
        return Outcome.PERMANENT_FAILURE if result.permanent else Outcome.FAILED

    # ===============================
    # EXECUTIONS (communication / countdown / stage change)
    # ===============================
    def dispatch_execution(self, record, target_stage_id=None, template_id=None):
        if record.status != LedgerStatus.CLAIMED:
            logger.warning(f"[WARN] Execution {record.id} is {record.status}, not dispatching")
            return record

        project = db.session.get(Project, record.project_id)
        if record.automation_kind == AutomationKind.STAGE_CHANGE:
            return self._apply_stage_change(record, project, target_stage_id)
        if record.questionnaire_template_id:
            return self._assign_questionnaire(record, project)

        tenant = db.session.get(Tenant, record.tenant_id)
        if template_id is None:
            template_id = record.step.template_id if record.step else self._countdown_template_id(record)
        template = RuleStore(tenant).template(template_id)
        if template is None:
            return self.ledger.resolve(record, Outcome.PERMANENT_FAILURE, error=f"Template {template_id} not found")
        if template.channel != record.channel:
            return self.ledger.resolve(record, Outcome.PERMANENT_FAILURE,
                                       error=f"Template channel {template.channel} does not match {record.channel}")

        message = self._build_message(record.channel, project, tenant, template.subject,
                                      template.html_body, template.text_body)
        logger.info(f"Sending {record.channel} for execution {record.id} to {message.to}")
        result = self._send(message)

        self._log_message(message, result, project, execution_id=record.id)
        self.ledger.resolve(record, self._outcome(result), provider_id=result.provider_id, error=result.reason)
        if result.success:
            logger.info(f"[OK] Execution {record.id} sent ({result.provider_id})")
        return record

    def _assign_questionnaire(self, record, project):
        tenant = db.session.get(Tenant, record.tenant_id)
        template_id = record.questionnaire_template_id
        if RuleStore(tenant).questionnaire_template(template_id) is None:
            return self.ledger.resolve(record, Outcome.PERMANENT_FAILURE,
                                       error=f"Questionnaire template {template_id} not found")

        existing = ProjectQuestionnaire.query.filter_by(project_id=project.id, template_id=template_id).first()
        if existing is not None:
            logger.info(f"Questionnaire {template_id} already assigned to project {project.id}")
            return self.ledger.resolve(record, Outcome.SUCCEEDED)

        try:
            db.session.add(ProjectQuestionnaire(
                project_id=project.id,
                template_id=template_id,
                status='PENDING',
                execution_id=record.id,
                assigned_at=self.clock.now(),
            ))
            self.ledger.resolve(record, Outcome.SUCCEEDED, commit=False)
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            logger.exception(f"[FAIL] Questionnaire assignment for project {project.id} failed")
            self.ledger.resolve(record, Outcome.FAILED, error=str(e))
            return record

        logger.info(f"[OK] Assigned questionnaire {template_id} to project {project.id}")
        return record

    @staticmethod
    def _countdown_template_id(record):
        automation = record.automation
        return automation.config.template_id if automation else None

    def _apply_stage_change(self, record, project, target_stage_id):
        if target_stage_id is None:
            target_stage_id = record.automation.config.target_stage_id
        from_stage = project.stage_id
        try:
            project.stage_id = target_stage_id
            project.stage_entered_at = self.clock.now()
            db.session.add(ProjectActivity(
                project_id=project.id,
                activity_type='STAGE_CHANGE',
                description=f"Moved by automation {record.automation_id} on {record.trigger_type}",
                execution_id=record.id,
                from_stage_id=from_stage,
                to_stage_id=target_stage_id,
                created_at=self.clock.now(),
            ))
            self.ledger.resolve(record, Outcome.SUCCEEDED, commit=False)
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            logger.exception(f"[FAIL] Stage change for project {project.id} failed")
            self.ledger.resolve(record, Outcome.FAILED, error=str(e))
            return record

        logger.info(f"[OK] Moved project {project.id} from stage {from_stage} to {target_stage_id}")
        return record

    # ===============================
    # DRIP DELIVERIES
    # ===============================
    def dispatch_delivery(self, delivery):
        if delivery.status != LedgerStatus.CLAIMED:
            logger.warning(f"[WARN] Delivery {delivery.id} is {delivery.status}, not dispatching")
            return delivery

        subscription = delivery.subscription
        project = subscription.project
        tenant = db.session.get(Tenant, project.tenant_id)
        email = delivery.email

        message = self._build_message(Channel.EMAIL, project, tenant, email.subject, email.html_body, email.text_body)
        logger.info(f"Sending drip email {email.sequence_index} for subscription {subscription.id} to {message.to}")
        result = self._send(message)

        self._log_message(message, result, project, delivery_id=delivery.id)
        self.ledger.resolve(delivery, self._outcome(result), provider_id=result.provider_id, error=result.reason)

        if result.permanent:
            self.progressor.unsubscribe(subscription, reason='PERMANENT_DELIVERY_FAILURE')
        elif delivery.status in (LedgerStatus.SUCCEEDED, LedgerStatus.DEAD):
            self.progressor.advance(delivery)
        return delivery

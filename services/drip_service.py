from dataclasses import dataclass
from typing import Any
from sqlalchemy.exc import IntegrityError
from sqlalchemy import and_
from sqlalchemy.orm import aliased
from extensions import db
from models.drip_campaign import (
    DripCampaign,
    DripCampaignEmail,
    DripCampaignHistory,
    DripCampaignSubscription,
    ApprovalStatus,
    CampaignStatus,
    SubscriptionStatus,
)
from models.execution import LedgerStatus
from services.errors import InvalidTransition
from datetime import timedelta
import json
import logging

logger = logging.getLogger("drip")


@dataclass
class DeliveryCandidate:
    subscription_id: int
    email: Any
    project_id: int


class CompletionReason:
    SEQUENCE_EXHAUSTED = 'SEQUENCE_EXHAUSTED'
    EVENT_DATE_PASSED = 'EVENT_DATE_PASSED'
    MAX_DURATION = 'MAX_DURATION'
    PROJECT_ENDED = 'PROJECT_ENDED'


class CampaignProgressor:

    def __init__(self, clock):
        self.clock = clock

    # ===============================
    # AUTHORING
    # ===============================
    def create_campaign(self, tenant_id, name, target_stage_id, project_type='WEDDING', cadence_value=1,
                        cadence_unit='WEEKS', max_duration_months=12, initial_delay_minutes=0, emails=None, actor=None):
        campaign = DripCampaign(
            tenant_id=tenant_id,
            name=name,
            target_stage_id=target_stage_id,
            project_type=project_type,
            cadence_value=cadence_value,
            cadence_unit=cadence_unit,
            max_duration_months=max_duration_months,
            initial_delay_minutes=initial_delay_minutes,
            status=CampaignStatus.DRAFT,
            version=1,
            is_current_version=True,
            created_at=self.clock.now(),
        )
        db.session.add(campaign)
        db.session.flush()
        campaign.lineage_id = campaign.id

        for idx, email in enumerate(emails or []):
            db.session.add(DripCampaignEmail(
                campaign_id=campaign.id,
                sequence_index=idx,
                subject=email['subject'],
                html_body=email['html_body'],
                text_body=email.get('text_body'),
                approval_status=email.get('approval_status', ApprovalStatus.PENDING),
            ))
        self._history(campaign, 'CREATED', actor)
        db.session.commit()
        return campaign

    def add_email(self, campaign, subject, html_body, text_body=None):
        if campaign.subscriptions:
            raise InvalidTransition("Campaign has subscribers; publish a new version instead")
        last = (
            DripCampaignEmail.query
            .filter_by(campaign_id=campaign.id)
            .order_by(DripCampaignEmail.sequence_index.desc())
            .first()
        )
        email = DripCampaignEmail(
            campaign_id=campaign.id,
            sequence_index=(last.sequence_index + 1) if last else 0,
            subject=subject,
            html_body=html_body,
            text_body=text_body,
        )
        db.session.add(email)
        db.session.commit()
        return email

    def approve_email(self, email, actor=None):
        email.approval_status = ApprovalStatus.APPROVED
        email.approved_at = self.clock.now()
        self._history(email.campaign, 'EMAIL_APPROVED', actor, details={"email_id": email.id})
        db.session.commit()
        return email

    def reject_email(self, email, actor=None, reason=None):
        email.approval_status = ApprovalStatus.REJECTED
        self._history(email.campaign, 'EMAIL_REJECTED', actor, reason, details={"email_id": email.id})
        db.session.commit()
        return email

    def approve_campaign(self, campaign, actor=None):
        if campaign.status != CampaignStatus.DRAFT:
            raise InvalidTransition(f"Cannot approve a campaign in status {campaign.status}")
        return self._set_status(campaign, CampaignStatus.APPROVED, actor)

    def activate_campaign(self, campaign, actor=None):
        self._require_current(campaign)
        if campaign.status not in (CampaignStatus.APPROVED, CampaignStatus.PAUSED):
            raise InvalidTransition(f"Cannot activate a campaign in status {campaign.status}")
        return self._set_status(campaign, CampaignStatus.ACTIVE, actor)

    def pause_campaign(self, campaign, actor=None):
        # Only unclaimed sends are affected; in-flight deliveries run to resolution
        self._require_current(campaign)
        return self._set_status(campaign, CampaignStatus.PAUSED, actor)

    @staticmethod
    def _require_current(campaign):
        if not campaign.is_current_version:
            raise InvalidTransition(f"Campaign {campaign.id} is not the current version")

    def _set_status(self, campaign, status, actor):
        campaign.status = status
        self._history(campaign, status, actor)
        db.session.commit()
        logger.info(f"[OK] Campaign {campaign.id} v{campaign.version} -> {status}")
        return campaign

    def publish_new_version(self, campaign, actor=None, reason=None, email_changes=None, new_emails=None):
        """
        Copy ``campaign`` into a new current version with the given edits.

        ``email_changes`` maps sequence_index -> {subject, html_body, text_body}.
        Edited emails keep their original text for provenance and return to
        PENDING approval. Existing subscriptions stay on the old row.
        """
        if not campaign.is_current_version:
            raise InvalidTransition(f"Campaign {campaign.id} is not the current version")
        email_changes = email_changes or {}
        now = self.clock.now()

        new_version = DripCampaign(
            tenant_id=campaign.tenant_id,
            name=campaign.name,
            project_type=campaign.project_type,
            target_stage_id=campaign.target_stage_id,
            status=campaign.status,
            enabled=campaign.enabled,
            cadence_value=campaign.cadence_value,
            cadence_unit=campaign.cadence_unit,
            max_duration_months=campaign.max_duration_months,
            initial_delay_minutes=campaign.initial_delay_minutes,
            version=campaign.version + 1,
            parent_version_id=campaign.id,
            lineage_id=campaign.lineage_id or campaign.id,
            is_current_version=True,
            created_at=now,
        )
        campaign.is_current_version = False
        db.session.add(new_version)
        db.session.flush()

        changed = []
        for email in campaign.emails:
            change = email_changes.get(email.sequence_index)
            copy = DripCampaignEmail(
                campaign_id=new_version.id,
                sequence_index=email.sequence_index,
                subject=email.subject,
                html_body=email.html_body,
                text_body=email.text_body,
                approval_status=email.approval_status,
                approved_at=email.approved_at,
                original_subject=email.original_subject,
                original_html_body=email.original_html_body,
                edited_by=email.edited_by,
                edited_at=email.edited_at,
            )
            if change:
                copy.original_subject = email.original_subject or email.subject
                copy.original_html_body = email.original_html_body or email.html_body
                copy.subject = change.get('subject', email.subject)
                copy.html_body = change.get('html_body', email.html_body)
                copy.text_body = change.get('text_body', email.text_body)
                copy.approval_status = ApprovalStatus.PENDING
                copy.approved_at = None
                copy.edited_by = actor
                copy.edited_at = now
                changed.append(email.sequence_index)
            db.session.add(copy)

        next_index = len(campaign.emails)
        for email in new_emails or []:
            db.session.add(DripCampaignEmail(
                campaign_id=new_version.id,
                sequence_index=next_index,
                subject=email['subject'],
                html_body=email['html_body'],
                text_body=email.get('text_body'),
            ))
            next_index += 1

        self._history(new_version, 'NEW_VERSION', actor, reason, details={
            "parent_version_id": campaign.id,
            "version": new_version.version,
            "edited_sequence_indexes": changed,
            "added_emails": len(new_emails or []),
        })
        db.session.commit()
        logger.info(f"[OK] Published campaign {new_version.lineage_id} v{new_version.version} (from {campaign.id})")
        return new_version

    def _history(self, campaign, action, actor=None, reason=None, details=None):
        db.session.add(DripCampaignHistory(
            campaign_id=campaign.id,
            lineage_id=campaign.lineage_id or campaign.id,
            action=action,
            actor=actor,
            reason=reason,
            details_json=json.dumps(details) if details else None,
            created_at=self.clock.now(),
        ))

    # ===============================
    # ENROLLMENT
    # ===============================
    def enroll(self, enrollment):
        campaign, project = enrollment.campaign, enrollment.project
        now = self.clock.now()
        subscription = DripCampaignSubscription(
            campaign_id=campaign.id,
            project_id=project.id,
            client_id=project.client_id,
            started_at=now,
            next_email_index=0,
            next_email_at=now + timedelta(minutes=campaign.initial_delay_minutes or 0),
            status=SubscriptionStatus.ACTIVE,
        )
        try:
            db.session.add(subscription)
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            logger.debug(f"Project {project.id} already subscribed to campaign {campaign.id}")
            return None
        logger.info(f"[OK] Subscribed project {project.id} to campaign {campaign.name} v{campaign.version}")
        return subscription

    def unsubscribe(self, subscription, reason=None):
        if subscription.unsubscribed_at is not None:
            return subscription
        now = self.clock.now()
        subscription.unsubscribed_at = now
        subscription.status = SubscriptionStatus.UNSUBSCRIBED
        subscription.completion_reason = reason
        db.session.commit()
        logger.info(f"[OK] Subscription {subscription.id} unsubscribed ({reason or 'requested'})")
        return subscription

    # ===============================
    # TICK PROCESSING
    # ===============================
    def due_subscriptions(self, tenant_id=None):
        """
        Live subscriptions whose next email is due.

        Pause state and the enabled flag are read from the current version of
        the campaign lineage, so they also hold subscribers pinned to older
        versions.
        """
        now = self.clock.now()
        current = aliased(DripCampaign)
        query = (
            DripCampaignSubscription.query
            .join(DripCampaign, DripCampaignSubscription.campaign_id == DripCampaign.id)
            .join(current, and_(
                current.lineage_id == DripCampaign.lineage_id,
                current.is_current_version.is_(True),
            ))
            .filter(
                current.enabled.is_(True),
                current.status != CampaignStatus.PAUSED,
                DripCampaignSubscription.status == SubscriptionStatus.ACTIVE,
                DripCampaignSubscription.unsubscribed_at.is_(None),
                DripCampaignSubscription.completed_at.is_(None),
                DripCampaignSubscription.next_email_at <= now,
            )
        )
        if tenant_id is not None:
            query = query.filter(DripCampaign.tenant_id == tenant_id)
        return query.order_by(DripCampaignSubscription.next_email_at.asc()).all()

    def next_step(self, subscription):
        """
        Decide what a due subscription needs: completion, a hold, or a send.

        Returns a DeliveryCandidate when the next email should be claimed.
        """
        now = self.clock.now()
        campaign = subscription.campaign
        project = subscription.project

        reason = None
        if not project.is_active:
            reason = CompletionReason.PROJECT_ENDED
        elif project.event_date and project.event_date <= now:
            reason = CompletionReason.EVENT_DATE_PASSED
        elif now - subscription.started_at > campaign.max_duration:
            reason = CompletionReason.MAX_DURATION

        email = campaign.email_at(subscription.next_email_index)
        if reason is None and email is None:
            reason = CompletionReason.SEQUENCE_EXHAUSTED

        if reason is not None:
            self._complete(subscription, reason)
            return None

        if not email.is_approved:
            logger.debug(f"Holding subscription {subscription.id}: email {email.sequence_index} is {email.approval_status}")
            return None

        return DeliveryCandidate(subscription_id=subscription.id, email=email, project_id=project.id)

    def _complete(self, subscription, reason):
        subscription.completed_at = self.clock.now()
        subscription.status = SubscriptionStatus.COMPLETED
        subscription.completion_reason = reason
        db.session.commit()
        logger.info(f"[OK] Subscription {subscription.id} completed ({reason})")

    def advance(self, delivery):
        """
        Move the subscription past a delivered (or given-up) email.

        The update only applies while the subscription still points at the
        delivered index, so a duplicate call cannot skip an email.
        """
        if delivery.status not in (LedgerStatus.SUCCEEDED, LedgerStatus.DEAD):
            return False

        subscription = db.session.get(DripCampaignSubscription, delivery.subscription_id, populate_existing=True)
        if subscription is None or subscription.next_email_index != delivery.sequence_index:
            return False

        next_at = subscription.next_email_at + subscription.campaign.cadence
        updated = (
            DripCampaignSubscription.query
            .filter(
                DripCampaignSubscription.id == subscription.id,
                DripCampaignSubscription.next_email_index == delivery.sequence_index,
            )
            .update({
                DripCampaignSubscription.next_email_index: delivery.sequence_index + 1,
                DripCampaignSubscription.next_email_at: next_at,
            }, synchronize_session=False)
        )
        db.session.commit()
        if updated:
            db.session.refresh(subscription)
            logger.info(f"[OK] Subscription {subscription.id} advanced to email {subscription.next_email_index}, next at {next_at}")
        return bool(updated)

"""
Lead lifecycle - first-response SLA, interaction tracking, temperature and
conversion into a client with its first project.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import and_, or_

from subsidy_crm.exceptions import ValidationError
from subsidy_crm.models.client import Client
from subsidy_crm.models.lead import (
    Lead, LeadNote, LeadCall, LeadStatus, LeadSource, LeadTemperature, RequirementType, RESPONSE_STATUSES,
)
from subsidy_crm.utils.helpers import append_timeline, append_history
from subsidy_crm.utils.validators import parse_enum, require_text

logger = logging.getLogger(__name__)

HOT_MAX_DAYS = 2
WARM_MAX_DAYS = 4

LEAD_FIELDS = (
    "company_name", "contact_person", "mobile_number", "email", "city", "state",
    "industry_type", "assigned_to_id", "next_follow_up_at",
)


def lead_temperature(last_interaction_at: Optional[datetime], now: Optional[datetime] = None) -> LeadTemperature:
    """HOT within 2 whole days of the last interaction, WARM within 4, else COLD"""
    if not last_interaction_at:
        return LeadTemperature.COLD
    now = now or datetime.utcnow()
    elapsed_days = (now - last_interaction_at) // timedelta(days=1)
    if elapsed_days <= HOT_MAX_DAYS:
        return LeadTemperature.HOT
    if elapsed_days <= WARM_MAX_DAYS:
        return LeadTemperature.WARM
    return LeadTemperature.COLD


def temperature_filter(bucket: Optional[str], now: Optional[datetime] = None):
    """
    SQL condition for a listing bucket. HOT/WARM/COLD use the same whole-day
    boundaries as lead_temperature() and exclude converted leads; CONVERTED
    lists converted leads only.
    """
    bucket = (bucket or "").strip().upper()
    if not bucket:
        return None
    if bucket == "CONVERTED":
        return and_(Lead.is_converted.is_(True), Lead.status == LeadStatus.CONVERTED)

    now = now or datetime.utcnow()
    hot_floor = now - timedelta(days=HOT_MAX_DAYS + 1)
    warm_floor = now - timedelta(days=WARM_MAX_DAYS + 1)
    not_converted = Lead.is_converted.is_not(True)

    if bucket == LeadTemperature.HOT.value:
        return and_(not_converted, Lead.last_interaction_at > hot_floor)
    if bucket == LeadTemperature.WARM.value:
        return and_(not_converted, Lead.last_interaction_at <= hot_floor, Lead.last_interaction_at > warm_floor)
    if bucket == LeadTemperature.COLD.value:
        return and_(not_converted, or_(Lead.last_interaction_at.is_(None), Lead.last_interaction_at <= warm_floor))
    raise ValidationError("Invalid lead bucket")


def capture_first_response(lead: Lead, actor_id: Optional[int], now: datetime) -> bool:
    """Stamp the first response once the lead reaches a responded status; never overwritten"""
    if lead.first_response_at is not None or lead.status not in RESPONSE_STATUSES:
        return False
    base = lead.enquiry_received_at or lead.created_at or now
    lead.first_response_at = now
    lead.first_response_minutes = max(0, round((now - base).total_seconds() / 60))
    append_timeline(
        lead, "FIRST_RESPONSE_CAPTURED",
        f"First response captured in {lead.first_response_minutes} minutes",
        actor_id, now,
    )
    return True


def _touch_interaction(lead: Lead, now: datetime) -> None:
    lead.last_interaction_at = now
    lead.update_count = (lead.update_count or 0) + 1


def build_lead(lead_code: str, data: Dict[str, Any], actor_id: int, now: Optional[datetime] = None,
               source: Optional[LeadSource] = None, created_message: str = "Lead created") -> Lead:
    now = now or datetime.utcnow()
    company_name = (data.get("company_name") or "").strip()
    contact_person = (data.get("contact_person") or "").strip()
    mobile_number = (data.get("mobile_number") or "").strip()
    if not company_name or not contact_person or not mobile_number:
        raise ValidationError("Company name, contact person and mobile number are required")

    requirement = data.get("requirement_type")
    lead = Lead(
        lead_code=lead_code,
        company_name=company_name,
        contact_person=contact_person,
        mobile_number=mobile_number,
        email=(data.get("email") or "").strip().lower() or None,
        city=data.get("city"),
        state=data.get("state"),
        industry_type=data.get("industry_type"),
        requirement_type=parse_enum(RequirementType, requirement, "Invalid requirement type")
        if requirement else RequirementType.SUBSIDY,
        source=source or (parse_enum(LeadSource, data["source"], "Invalid lead source")
                          if data.get("source") else LeadSource.MANUAL),
        status=LeadStatus.NEW,
        assigned_to_id=data.get("assigned_to_id"),
        created_by_id=actor_id,
        next_follow_up_at=data.get("next_follow_up_at"),
        enquiry_received_at=now,
        last_interaction_at=now,
        last_status_changed_at=now,
        update_count=0,
        notes_count=0,
        calls_count=0,
        total_call_duration_minutes=0,
        is_converted=False,
        status_history=[],
        timeline=[],
        notes=[],
        calls=[],
    )
    append_history(lead, "status_history", None, LeadStatus.NEW, actor_id, now)
    append_timeline(lead, "LEAD_CREATED", created_message, actor_id, now)
    return lead


def update_lead(lead: Lead, actor_id: int, changes: Dict[str, Any], now: Optional[datetime] = None) -> Lead:
    """Field edits; a status change is recorded and may capture the first response"""
    now = now or datetime.utcnow()

    new_status = None
    if changes.get("status") is not None:
        new_status = parse_enum(LeadStatus, changes["status"], "Invalid lead status")
    new_source = None
    if changes.get("source") is not None:
        new_source = parse_enum(LeadSource, changes["source"], "Invalid lead source")
    new_requirement = None
    if changes.get("requirement_type") is not None:
        new_requirement = parse_enum(RequirementType, changes["requirement_type"], "Invalid requirement type")
    for field in ("company_name", "contact_person", "mobile_number"):
        if field in changes:
            require_text(changes[field], "Company name, contact person and mobile number are required")

    for field in LEAD_FIELDS:
        if field in changes:
            setattr(lead, field, changes[field])
    if new_source is not None:
        lead.source = new_source
    if new_requirement is not None:
        lead.requirement_type = new_requirement

    previous = LeadStatus(lead.status)
    _touch_interaction(lead, now)
    if new_status is not None and new_status != previous:
        lead.status = new_status
        lead.last_status_changed_at = now
        append_history(lead, "status_history", previous, new_status, actor_id, now)

    capture_first_response(lead, actor_id, now)
    append_timeline(lead, "LEAD_UPDATED", "Lead details updated", actor_id, now)
    return lead


def add_note(lead: Lead, actor_id: int, note: str, now: Optional[datetime] = None) -> LeadNote:
    now = now or datetime.utcnow()
    note = require_text(note, "Note is required")

    entry = LeadNote(note=note, created_by_id=actor_id, created_at=now)
    lead.notes.append(entry)
    _touch_interaction(lead, now)
    lead.notes_count = (lead.notes_count or 0) + 1
    append_timeline(lead, "NOTE_ADDED", f"Note added: {note}", actor_id, now)
    return entry


def add_call(lead: Lead, actor_id: int, call_at: Optional[datetime], duration_minutes, summary: str,
             now: Optional[datetime] = None) -> LeadCall:
    now = now or datetime.utcnow()
    if call_at is None or duration_minutes is None or not (summary or "").strip():
        raise ValidationError("call_at, duration_minutes and summary are required")
    duration = int(duration_minutes)
    if duration < 0:
        raise ValidationError("Call duration cannot be negative")

    call = LeadCall(
        call_at=call_at,
        duration_minutes=duration,
        summary=summary.strip(),
        created_by_id=actor_id,
        created_at=now,
    )
    lead.calls.append(call)
    _touch_interaction(lead, now)
    lead.calls_count = (lead.calls_count or 0) + 1
    lead.total_call_duration_minutes = (lead.total_call_duration_minutes or 0) + duration
    capture_first_response(lead, actor_id, now)
    append_timeline(
        lead, "CALL_LOGGED", f"Call logged ({duration} min)", actor_id, now,
        meta={"call_at": call_at, "duration_minutes": duration},
    )
    return call


def build_client_from_lead(lead: Lead, client_code: str, actor_id: int, now: Optional[datetime] = None) -> Client:
    now = now or datetime.utcnow()
    client = Client(
        client_code=client_code,
        company_name=lead.company_name,
        contact_person=lead.contact_person,
        mobile_number=lead.mobile_number,
        email=lead.email,
        assigned_consultant_id=lead.assigned_to_id,
        source_lead_id=lead.id,
        created_by_id=actor_id,
        timeline=[],
    )
    append_timeline(client, "CLIENT_CREATED_FROM_LEAD", f"Created from lead {lead.lead_code}", actor_id, now)
    return client


def mark_converted(lead: Lead, client: Client, actor_id: int, now: Optional[datetime] = None) -> Lead:
    now = now or datetime.utcnow()
    previous = LeadStatus(lead.status)
    lead.is_converted = True
    lead.converted_at = now
    lead.converted_client_id = client.id
    lead.status = LeadStatus.CONVERTED
    lead.last_status_changed_at = now
    _touch_interaction(lead, now)
    append_history(lead, "status_history", previous, LeadStatus.CONVERTED, actor_id, now)
    capture_first_response(lead, actor_id, now)
    append_timeline(lead, "LEAD_CONVERTED", f"Lead converted to client {client.client_code}", actor_id, now)
    logger.info(f"Lead {lead.lead_code} converted to {client.client_code}")
    return lead


def attach_website_message(lead: Lead, actor_id: int, message: Optional[str], now: Optional[datetime] = None) -> Optional[LeadNote]:
    """The contact form's free-text message becomes the lead's first note"""
    message = (message or "").strip()
    if not message:
        return None
    entry = LeadNote(note=f"Website message: {message}", created_by_id=actor_id, created_at=now or datetime.utcnow())
    lead.notes.append(entry)
    lead.notes_count = (lead.notes_count or 0) + 1
    return entry

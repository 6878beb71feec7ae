"""
sourcing/sourcing_requests.py

Premium sourcing requests.

A buyer pays SOURCING_REQUEST_COST credits to open a ticket; admins move it
through pending -> in_progress -> completed (or cancelled from either open
state), attaching notes and the supplier list they found.

Version History:
    2026-01-12: Initial implementation
"""

from typing import Optional

from audit_log import audit, AuditEvent
from billing.config import SOURCING_REQUEST_COST, SOURCING_REQUEST_DESCRIPTION
from billing.db import get_db
from billing.ledger import ensure_profile, spend, log_spend
from errors import NotFound, ValidationError, InvalidTransition
from sourcing.models import SourcingRequest, RequestStatus


MAX_TITLE_LENGTH = 300
MAX_DESCRIPTION_LENGTH = 10000


def validate_request_input(data: dict):
    title = data.get('title')
    description = data.get('description')

    if not isinstance(title, str) or not title.strip():
        raise ValidationError('title is required')
    if len(title) > MAX_TITLE_LENGTH:
        raise ValidationError('title is too long')
    if not isinstance(description, str) or not description.strip():
        raise ValidationError('description is required')
    if len(description) > MAX_DESCRIPTION_LENGTH:
        raise ValidationError('description is too long')

    return title.strip(), description.strip()


def create_request(user_id: int, title: str, description: str) -> SourcingRequest:
    """
    Spend the request fee and open the ticket in one transaction.

    Raises:
        InsufficientCredits: nothing is created
    """
    db = get_db()

    ensure_profile(user_id)
    charge = spend(user_id, SOURCING_REQUEST_COST, SOURCING_REQUEST_DESCRIPTION, commit=False)

    sourcing_request = SourcingRequest(
        user_id=user_id,
        title=title,
        description=description,
        status=RequestStatus.PENDING,
    )
    db.add(sourcing_request)
    db.commit()
    log_spend(charge)

    print(f"[SourcingRequests] Request {sourcing_request.id} opened by user {user_id}")
    return sourcing_request


def list_for_user(user_id: int) -> list:
    return get_db().query(SourcingRequest).filter(
        SourcingRequest.user_id == user_id
    ).order_by(SourcingRequest.created_at.desc(), SourcingRequest.id.desc()).all()


def list_all(status: Optional[str] = None) -> list:
    query = get_db().query(SourcingRequest)
    if status:
        if status not in RequestStatus.ALL:
            raise ValidationError(f'Unknown status: {status}')
        query = query.filter(SourcingRequest.status == status)
    return query.order_by(SourcingRequest.created_at.desc(), SourcingRequest.id.desc()).all()


def admin_update(request_id: int, data: dict, admin_id: int) -> SourcingRequest:
    """
    Apply an admin change.

    Request fields (all optional):
        status: next lifecycle state
        adminNotes: free text
        supplierList: list of supplier objects

    Raises:
        NotFound, ValidationError, InvalidTransition (409)
    """
    db = get_db()

    sourcing_request = db.get(SourcingRequest, request_id)
    if sourcing_request is None:
        raise NotFound('Sourcing request not found')

    from_status = sourcing_request.status
    to_status = data.get('status', from_status)

    # Everything is checked before the row is touched
    if to_status != from_status:
        if to_status not in RequestStatus.ALL:
            raise ValidationError(f'Unknown status: {to_status}')
        if to_status not in RequestStatus.TRANSITIONS[from_status]:
            raise InvalidTransition(f'Cannot move request from {from_status} to {to_status}')

    notes = data.get('adminNotes')
    if notes is not None and not isinstance(notes, str):
        raise ValidationError('adminNotes must be a string')

    suppliers = data.get('supplierList')
    if suppliers is not None and not isinstance(suppliers, list):
        raise ValidationError('supplierList must be a list')

    sourcing_request.status = to_status
    if 'adminNotes' in data:
        sourcing_request.admin_notes = notes
    if 'supplierList' in data:
        sourcing_request.supplier_list = suppliers

    db.commit()

    audit.log_request_event(
        AuditEvent.ADMIN_REQUEST_UPDATED,
        user_id=sourcing_request.user_id,
        details={
            'admin_id': admin_id,
            'from_status': from_status,
            'to_status': sourcing_request.status,
        },
    )

    return sourcing_request

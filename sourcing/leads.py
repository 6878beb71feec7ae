"""
sourcing/leads.py

Buyer inquiries addressed to a listed supplier. Anyone may submit one;
only admins read them.
"""

from typing import Optional

from billing.auth import validate_email
from billing.db import get_db
from errors import ValidationError
from sourcing.models import Lead


MAX_MESSAGE_LENGTH = 5000


def create_lead(data: dict, user_id: Optional[int] = None) -> Lead:
    supplier_id = data.get('supplierId')
    buyer_name = data.get('buyerName')
    buyer_email = (data.get('buyerEmail') or '').strip().lower()
    buyer_company = data.get('buyerCompany')
    message = data.get('message')

    if supplier_id is None or not str(supplier_id).strip():
        raise ValidationError('supplierId is required')
    if not isinstance(buyer_name, str) or not buyer_name.strip():
        raise ValidationError('buyerName is required')

    valid, error = validate_email(buyer_email)
    if not valid:
        raise ValidationError(error)

    if buyer_company is not None and not isinstance(buyer_company, str):
        raise ValidationError('buyerCompany must be a string')
    if not isinstance(message, str) or not message.strip():
        raise ValidationError('message is required')
    if len(message) > MAX_MESSAGE_LENGTH:
        raise ValidationError('message is too long')

    db = get_db()
    lead = Lead(
        supplier_id=str(supplier_id).strip()[:100],
        buyer_name=buyer_name.strip(),
        buyer_email=buyer_email,
        buyer_company=buyer_company.strip() if buyer_company else None,
        message=message.strip(),
        user_id=user_id,
    )
    db.add(lead)
    db.commit()

    print(f"[Leads] Lead {lead.id} for supplier {lead.supplier_id}")
    return lead


def list_leads(supplier_id: Optional[str] = None) -> list:
    query = get_db().query(Lead)
    if supplier_id:
        query = query.filter(Lead.supplier_id == supplier_id)
    return query.order_by(Lead.created_at.desc(), Lead.id.desc()).all()

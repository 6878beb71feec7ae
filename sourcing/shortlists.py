"""
sourcing/shortlists.py

Admin-curated supplier shortlists.

Premium lists are readable by Pro users only: the catalog listing shows
them to everyone with the supplier entries withheld (`locked: true`), the
detail endpoint refuses them outright.

Version History:
    2026-01-12: Initial implementation
"""

from typing import Optional

from billing.db import get_db
from billing.ledger import get_profile
from errors import NotFound, Forbidden, ValidationError
from sourcing.models import SupplierShortlist


MAX_SUPPLIERS = 500


def _can_see_premium(user_id: Optional[int]) -> bool:
    if user_id is None:
        return False
    profile = get_profile(user_id)
    return profile is not None and (profile.is_pro or profile.is_admin)


def list_shortlists(user_id: Optional[int] = None, category: Optional[str] = None) -> list:
    """
    Catalog view.

    Args:
        user_id: Viewer, or None when anonymous
        category: Optional exact-match filter
    """
    query = get_db().query(SupplierShortlist)
    if category:
        query = query.filter(SupplierShortlist.category == category)

    premium_ok = _can_see_premium(user_id)

    return [
        shortlist.to_dict(include_suppliers=premium_ok or not shortlist.is_premium)
        for shortlist in query.order_by(SupplierShortlist.created_at.desc(), SupplierShortlist.id.desc())
    ]


def get_shortlist(user_id: int, shortlist_id: int) -> dict:
    shortlist = get_db().get(SupplierShortlist, shortlist_id)
    if shortlist is None:
        raise NotFound('Shortlist not found')

    if shortlist.is_premium and not _can_see_premium(user_id):
        raise Forbidden('Pro plan required for premium shortlists', code='PRO_REQUIRED')

    return shortlist.to_dict()


def _validated_fields(data: dict, partial: bool) -> dict:
    fields = {}

    for key in ('title', 'category'):
        if key in data or not partial:
            value = data.get(key)
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f'{key} is required')
            fields[key] = value.strip()

    if 'isPremium' in data:
        if not isinstance(data['isPremium'], bool):
            raise ValidationError('isPremium must be a boolean')
        fields['is_premium'] = data['isPremium']

    if 'suppliers' in data or not partial:
        suppliers = data.get('suppliers', [])
        if not isinstance(suppliers, list) or not all(isinstance(s, dict) for s in suppliers):
            raise ValidationError('suppliers must be a list of objects')
        if len(suppliers) > MAX_SUPPLIERS:
            raise ValidationError(f'At most {MAX_SUPPLIERS} suppliers per shortlist')
        fields['suppliers'] = suppliers

    return fields


def create_shortlist(data: dict) -> SupplierShortlist:
    db = get_db()
    shortlist = SupplierShortlist(**_validated_fields(data, partial=False))
    db.add(shortlist)
    db.commit()
    print(f"[Shortlists] Created shortlist {shortlist.id} ({shortlist.category})")
    return shortlist


def update_shortlist(shortlist_id: int, data: dict) -> SupplierShortlist:
    db = get_db()
    shortlist = db.get(SupplierShortlist, shortlist_id)
    if shortlist is None:
        raise NotFound('Shortlist not found')

    for attr, value in _validated_fields(data, partial=True).items():
        setattr(shortlist, attr, value)
    db.commit()
    return shortlist


def delete_shortlist(shortlist_id: int):
    db = get_db()
    shortlist = db.get(SupplierShortlist, shortlist_id)
    if shortlist is None:
        raise NotFound('Shortlist not found')
    db.delete(shortlist)
    db.commit()
    print(f"[Shortlists] Deleted shortlist {shortlist_id}")

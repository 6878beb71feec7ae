"""
sourcing/models.py

SQLAlchemy models for reports, shortlists, sourcing requests and leads.

Tables:
    - reports: Smart Finder reports (form in, generated JSON out)
    - supplier_shortlists: Admin-curated supplier lists, premium-gated
    - sourcing_requests: Premium sourcing tickets worked by admins
    - leads: Buyer inquiries addressed to a listed supplier

Version History:
    2026-01-12: Initial implementation
"""

from sqlalchemy import Column, String, Integer, Boolean, DateTime, Text, ForeignKey, Index

from billing.db import utcnow
from billing.models import Base, JSONType


def _iso(value):
    return value.isoformat() if value else None


# =============================================================================
# REPORTS
# =============================================================================

class ReportStatus:
    COMPLETED = 'completed'
    GENERATING = 'generating'
    FAILED = 'failed'

    ALL = (COMPLETED, GENERATING, FAILED)


class Report(Base):
    """
    A Smart Finder report.

    Created as `generating` when the credit is spent; the generator moves it
    to `completed` (with report_data) or `failed` exactly once per attempt.
    """
    __tablename__ = 'reports'

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)

    title = Column(Text, nullable=False)
    category = Column(Text, nullable=False)
    status = Column(String(20), default=ReportStatus.COMPLETED, nullable=False)

    form_data = Column(JSONType, nullable=False)
    report_data = Column(JSONType)
    error_message = Column(Text)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    completed_at = Column(DateTime)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'userId': self.user_id,
            'title': self.title,
            'category': self.category,
            'status': self.status,
            'formData': self.form_data,
            'reportData': self.report_data,
            'errorMessage': self.error_message,
            'createdAt': _iso(self.created_at),
            'completedAt': _iso(self.completed_at),
        }

    def __repr__(self):
        return f'<Report {self.id} user={self.user_id} {self.status}>'


# =============================================================================
# SHORTLISTS
# =============================================================================

class SupplierShortlist(Base):
    """Admin-curated supplier list. Premium lists are for Pro users."""
    __tablename__ = 'supplier_shortlists'

    id = Column(Integer, primary_key=True)
    title = Column(Text, nullable=False)
    category = Column(Text, nullable=False, index=True)
    is_premium = Column(Boolean, default=True, nullable=False)
    suppliers = Column(JSONType, nullable=False, default=list)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def to_dict(self, include_suppliers: bool = True) -> dict:
        suppliers = self.suppliers or []
        return {
            'id': self.id,
            'title': self.title,
            'category': self.category,
            'isPremium': bool(self.is_premium),
            'supplierCount': len(suppliers),
            'suppliers': suppliers if include_suppliers else None,
            'locked': not include_suppliers,
            'createdAt': _iso(self.created_at),
            'updatedAt': _iso(self.updated_at),
        }

    def __repr__(self):
        return f'<SupplierShortlist {self.id} {self.title!r}>'


# =============================================================================
# SOURCING REQUESTS
# =============================================================================

class RequestStatus:
    PENDING = 'pending'
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'

    ALL = (PENDING, IN_PROGRESS, COMPLETED, CANCELLED)

    # Allowed moves; completed and cancelled are terminal
    TRANSITIONS = {
        PENDING: (IN_PROGRESS, CANCELLED),
        IN_PROGRESS: (COMPLETED, CANCELLED),
        COMPLETED: (),
        CANCELLED: (),
    }


class SourcingRequest(Base):
    """Premium sourcing ticket. Only admins change it after creation."""
    __tablename__ = 'sourcing_requests'

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)

    title = Column(Text, nullable=False)
    description = Column(Text, nullable=False)
    status = Column(String(20), default=RequestStatus.PENDING, nullable=False)
    admin_notes = Column(Text)
    supplier_list = Column(JSONType)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'userId': self.user_id,
            'title': self.title,
            'description': self.description,
            'status': self.status,
            'adminNotes': self.admin_notes,
            'supplierList': self.supplier_list,
            'createdAt': _iso(self.created_at),
            'updatedAt': _iso(self.updated_at),
        }

    def __repr__(self):
        return f'<SourcingRequest {self.id} {self.status}>'


Index('idx_sourcing_requests_status_created', SourcingRequest.status, SourcingRequest.created_at)


# =============================================================================
# LEADS
# =============================================================================

class Lead(Base):
    """Buyer inquiry sent to a supplier listing. Anonymous submissions allowed."""
    __tablename__ = 'leads'

    id = Column(Integer, primary_key=True)
    supplier_id = Column(String(100), nullable=False, index=True)

    buyer_name = Column(Text, nullable=False)
    buyer_email = Column(String(500), nullable=False)
    buyer_company = Column(Text)
    message = Column(Text, nullable=False)

    user_id = Column(Integer, ForeignKey('users.id', ondelete='SET NULL'))
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'supplierId': self.supplier_id,
            'buyerName': self.buyer_name,
            'buyerEmail': self.buyer_email,
            'buyerCompany': self.buyer_company,
            'message': self.message,
            'userId': self.user_id,
            'createdAt': _iso(self.created_at),
        }

    def __repr__(self):
        return f'<Lead {self.id} supplier={self.supplier_id}>'

"""
Quotation Service - custom-quote negotiation for large or bespoke plans.

A customer submits a QuotationRequest; an admin assigns it, contacts the
customer and issues (or revises) a Quotation; the customer accepts or
rejects it. Every transition appends one entry to an append-only activity
log.
"""
import logging
import uuid
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import pandas as pd

from ..engine.models import BILLING_PERIODS, MONTHLY
from .catalog_store import CatalogStore
from .errors import InvalidTransitionError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


PENDING = "pending"
QUOTED = "quoted"
ACCEPTED = "accepted"
REJECTED = "rejected"
CANCELLED = "cancelled"
STATUSES = (PENDING, QUOTED, ACCEPTED, REJECTED, CANCELLED)

ADMIN = "admin"
CUSTOMER = "customer"

# action -> statuses it may start from
ALLOWED_FROM = {
    'assign': (PENDING,),
    'mark_contacted': (PENDING,),
    'create_quote': (PENDING, QUOTED),
    'accept': (QUOTED,),
    'reject': (QUOTED,),
    'cancel': (PENDING, QUOTED),
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class QuotationRequest:
    """A customer's request for custom pricing."""
    id: str
    organization_id: str
    requested_inspections: int
    currency: str
    preferred_billing_period: str = MONTHLY
    status: str = PENDING
    customer_notes: Optional[str] = None
    assigned_admin_id: Optional[str] = None
    viewed_by_customer_at: Optional[datetime] = None  # first customer view of the current quote
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


@dataclass
class Quotation:
    """The admin's offer for a request. At most one per request; revisions update it."""
    id: str
    quotation_request_id: str
    quoted_price: int  # minor units
    quoted_inspections: int
    billing_period: str
    currency: str
    admin_notes: Optional[str] = None  # internal only
    customer_notes: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class ActivityLogEntry:
    id: str
    quotation_request_id: str
    action: str
    performed_by: str
    performed_by_type: str
    details: dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=_now)


@dataclass
class QuoteInput:
    """What an admin supplies when issuing a quote."""
    quoted_price: int
    quoted_inspections: int
    billing_period: str = MONTHLY
    currency: Optional[str] = None  # defaults to the request's currency
    admin_notes: Optional[str] = None
    customer_notes: Optional[str] = None


class QuotationStore:
    """In-memory quotation tables plus the activity log."""

    def __init__(self):
        self.requests: dict[str, QuotationRequest] = {}
        self.quotations: dict[str, Quotation] = {}  # keyed by request id
        self._activity: list[ActivityLogEntry] = []

    def list_requests(self, status: Optional[str] = None) -> list[QuotationRequest]:
        rows = [r for r in self.requests.values() if status is None or r.status == status]
        return sorted(rows, key=lambda r: r.created_at, reverse=True)

    def append_activity(self, entry: ActivityLogEntry) -> ActivityLogEntry:
        self._activity.append(entry)
        return entry

    def activity_for(self, request_id: str) -> list[ActivityLogEntry]:
        return [e for e in self._activity if e.quotation_request_id == request_id]

    def currency_references(self, code: str) -> dict[str, int]:
        """Requests and quotations priced in the currency, by table."""
        return {
            'quotation_requests': sum(1 for r in self.requests.values() if r.currency == code),
            'quotations': sum(1 for q in self.quotations.values() if q.currency == code),
        }


class QuotationService:
    """Drives quotation requests through their lifecycle."""

    def __init__(self, catalog: CatalogStore, store: Optional[QuotationStore] = None):
        self.catalog = catalog
        self.store = store or QuotationStore()

    def _get(self, request_id: str) -> QuotationRequest:
        request = self.store.requests.get(request_id)
        if request is None:
            raise NotFoundError("QuotationRequest", request_id)
        return request

    def _check_transition(self, request: QuotationRequest, action: str):
        if request.status not in ALLOWED_FROM[action]:
            logger.warning("Refused %s on quotation request %s (status %s)", action, request.id, request.status)
            raise InvalidTransitionError(action.replace('_', ' '), request.status)

    def _log(self, request_id: str, action: str, performed_by: str, performed_by_type: str,
             **details) -> ActivityLogEntry:
        entry = ActivityLogEntry(
            id=str(uuid.uuid4()),
            quotation_request_id=request_id,
            action=action,
            performed_by=performed_by,
            performed_by_type=performed_by_type,
            details=details,
        )
        return self.store.append_activity(entry)

    def _check_currency(self, errors: list[str], name: str, code: Any):
        """Quotations may only be priced in an existing, active catalog currency."""
        if not isinstance(code, str) or not code.strip():
            errors.append(f"'{name}' is required")
            return
        currency = self.catalog.get('currencies', code.strip().upper())
        if currency is None:
            errors.append(f"Currency '{code.strip().upper()}' does not exist")
        elif not currency.is_active:
            errors.append(f"Currency '{currency.code}' is not active")

    def _save(self, request: QuotationRequest, **changes) -> QuotationRequest:
        updated = replace(request, updated_at=_now(), **changes)
        self.store.requests[request.id] = updated
        return updated

    # ------------------------------------------------------------------
    # Customer actions
    # ------------------------------------------------------------------

    def submit_request(self, organization_id: str, requested_inspections: int, currency: str,
                       preferred_billing_period: str = MONTHLY, customer_notes: Optional[str] = None,
                       submitted_by: Optional[str] = None) -> QuotationRequest:
        errors = []
        if not organization_id:
            errors.append("'organization_id' is required")
        if not isinstance(requested_inspections, int) or isinstance(requested_inspections, bool) \
                or requested_inspections <= 0:
            errors.append("'requested_inspections' must be a positive integer")
        self._check_currency(errors, 'currency', currency)
        if preferred_billing_period not in BILLING_PERIODS:
            errors.append(f"'preferred_billing_period' must be one of {', '.join(BILLING_PERIODS)}")
        if errors:
            raise ValidationError(errors)

        request = QuotationRequest(
            id=str(uuid.uuid4()),
            organization_id=organization_id,
            requested_inspections=requested_inspections,
            currency=currency.strip().upper(),
            preferred_billing_period=preferred_billing_period,
            customer_notes=customer_notes,
        )
        self.store.requests[request.id] = request
        self._log(request.id, 'requested', submitted_by or organization_id, CUSTOMER,
                  requested_inspections=requested_inspections, currency=request.currency)
        logger.info("Quotation request %s submitted for %s (%d inspections)",
                    request.id, organization_id, requested_inspections)
        return request

    def accept(self, request_id: str, customer_id: str) -> QuotationRequest:
        request = self._get(request_id)
        self._check_transition(request, 'accept')
        updated = self._save(request, status=ACCEPTED)
        self._log(request_id, 'accepted', customer_id, CUSTOMER)
        logger.info("Quotation request %s accepted", request_id)
        return updated

    def reject(self, request_id: str, customer_id: str, reason: Optional[str] = None) -> QuotationRequest:
        request = self._get(request_id)
        self._check_transition(request, 'reject')
        updated = self._save(request, status=REJECTED)
        self._log(request_id, 'rejected', customer_id, CUSTOMER, reason=reason)
        logger.info("Quotation request %s rejected", request_id)
        return updated

    def cancel(self, request_id: str, actor_id: str, actor_type: str = CUSTOMER) -> QuotationRequest:
        if actor_type not in (ADMIN, CUSTOMER):
            raise ValidationError([f"'actor_type' must be '{ADMIN}' or '{CUSTOMER}'"])
        request = self._get(request_id)
        self._check_transition(request, 'cancel')
        updated = self._save(request, status=CANCELLED)
        self._log(request_id, 'cancelled', actor_id, actor_type)
        logger.info("Quotation request %s cancelled by %s", request_id, actor_type)
        return updated

    # ------------------------------------------------------------------
    # Admin actions
    # ------------------------------------------------------------------

    def assign(self, request_id: str, admin_id: str) -> QuotationRequest:
        request = self._get(request_id)
        self._check_transition(request, 'assign')
        updated = self._save(request, assigned_admin_id=admin_id)
        self._log(request_id, 'assigned', admin_id, ADMIN, assigned_admin_id=admin_id)
        logger.info("Quotation request %s assigned to %s", request_id, admin_id)
        return updated

    def mark_contacted(self, request_id: str, admin_id: str) -> QuotationRequest:
        request = self._get(request_id)
        self._check_transition(request, 'mark_contacted')
        updated = self._save(request)
        self._log(request_id, 'contacted', admin_id, ADMIN)
        return updated

    def create_quote(self, request_id: str, admin_id: str, quote: QuoteInput) -> Quotation:
        """Issue a quote, or revise the existing one while still quoted."""
        request = self._get(request_id)
        self._check_transition(request, 'create_quote')

        errors = []
        if not isinstance(quote.quoted_price, int) or isinstance(quote.quoted_price, bool) or quote.quoted_price < 0:
            errors.append("'quoted_price' must be a non-negative integer amount in minor units")
        if not isinstance(quote.quoted_inspections, int) or isinstance(quote.quoted_inspections, bool) \
                or quote.quoted_inspections <= 0:
            errors.append("'quoted_inspections' must be a positive integer")
        if quote.billing_period not in BILLING_PERIODS:
            errors.append(f"'billing_period' must be one of {', '.join(BILLING_PERIODS)}")
        if quote.currency is not None:
            self._check_currency(errors, 'currency', quote.currency)
        if errors:
            raise ValidationError(errors)

        currency = (quote.currency or request.currency).strip().upper()
        existing = self.store.quotations.get(request_id)
        if existing is None:
            quotation = Quotation(
                id=str(uuid.uuid4()),
                quotation_request_id=request_id,
                quoted_price=quote.quoted_price,
                quoted_inspections=quote.quoted_inspections,
                billing_period=quote.billing_period,
                currency=currency,
                admin_notes=quote.admin_notes,
                customer_notes=quote.customer_notes,
                created_by=admin_id,
            )
            action = 'quote_created'
        else:
            quotation = replace(
                existing,
                quoted_price=quote.quoted_price,
                quoted_inspections=quote.quoted_inspections,
                billing_period=quote.billing_period,
                currency=currency,
                admin_notes=quote.admin_notes,
                customer_notes=quote.customer_notes,
                updated_at=_now(),
            )
            action = 'quote_updated'

        self.store.quotations[request_id] = quotation
        self._save(request, status=QUOTED, viewed_by_customer_at=None)
        self._log(request_id, action, admin_id, ADMIN,
                  quoted_price=quotation.quoted_price,
                  quoted_inspections=quotation.quoted_inspections,
                  billing_period=quotation.billing_period)
        logger.info("%s for request %s: %d %s", action, request_id, quotation.quoted_price, currency)
        return quotation

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_requests(self, status: Optional[str] = None) -> list[QuotationRequest]:
        if status is not None and status not in STATUSES:
            raise ValidationError([f"Unknown status '{status}'"])
        return self.store.list_requests(status)

    def get_details(self, request_id: str) -> dict[str, Any]:
        """Request, its quotation (if any) and its activity log, for admins."""
        request = self._get(request_id)
        return {
            'request': request,
            'quotation': self.store.quotations.get(request_id),
            'activity': self.store.activity_for(request_id),
        }

    def customer_view(self, request_id: str, mark_viewed: bool = False) -> dict[str, Any]:
        """
        What the customer may see. Internal admin notes are never included.

        With mark_viewed, the first look at an issued quote stamps
        viewed_by_customer_at. Later views keep the first timestamp.
        """
        request = self._get(request_id)
        if mark_viewed and request.id in self.store.quotations and request.viewed_by_customer_at is None:
            request = replace(request, viewed_by_customer_at=_now())
            self.store.requests[request.id] = request
            logger.info("Quotation request %s: quote viewed by customer", request_id)
        view = {
            'id': request.id,
            'status': request.status,
            'requested_inspections': request.requested_inspections,
            'currency': request.currency,
            'preferred_billing_period': request.preferred_billing_period,
            'customer_notes': request.customer_notes,
            'created_at': request.created_at,
            'viewed_by_customer_at': request.viewed_by_customer_at,
            'quotation': None,
        }
        quotation = self.store.quotations.get(request_id)
        if quotation is not None:
            view['quotation'] = {
                'quoted_price': quotation.quoted_price,
                'quoted_inspections': quotation.quoted_inspections,
                'billing_period': quotation.billing_period,
                'currency': quotation.currency,
                'customer_notes': quotation.customer_notes,
                'updated_at': quotation.updated_at,
            }
        return view

    def stats(self) -> dict[str, int]:
        counts = {status: 0 for status in STATUSES}
        for request in self.store.requests.values():
            counts[request.status] += 1
        counts['total'] = len(self.store.requests)
        return counts

    def export_csv(self, path: Optional[Path] = None) -> str:
        """One row per request joined with its current quotation. Writes to path when given."""
        rows = []
        for request in self.store.list_requests():
            row = {f"request_{k}": v for k, v in asdict(request).items()}
            quotation = self.store.quotations.get(request.id)
            if quotation is not None:
                row.update({f"quote_{k}": v for k, v in asdict(quotation).items()
                            if k != 'quotation_request_id'})
            rows.append(row)

        columns = [f"request_{f.name}" for f in fields(QuotationRequest)] + [
            f"quote_{f.name}" for f in fields(Quotation) if f.name != 'quotation_request_id'
        ]
        df = pd.DataFrame(rows, columns=columns)
        csv_text = df.to_csv(index=False)
        if path is not None:
            Path(path).write_text(csv_text)
            logger.info("Exported %d quotation requests to %s", len(rows), path)
        return csv_text

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from ticket_store import Row, StoreError, TicketStore

logger = logging.getLogger(__name__)

TICKETS_TABLE = "tickets"
DEFAULT_TITLE = "Insurance Complaint"
PRIORITIES = ("low", "medium", "high", "urgent")
DEFAULT_LIMIT = 10
MAX_LIMIT = 50

# Lookups by reference try these columns in order.
REFERENCE_COLUMNS = ("ticket_number", "ticket_id", "reference")

FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "id": ("id",),
    "reference": ("ticket_number", "ticket_id", "reference", "identifier", "id"),
    "title": ("title", "subject"),
    "description": ("description",),
    "category": ("category",),
    "status": ("status",),
    "priority": ("priority",),
    "customerName": ("customer_name",),
    "customerEmail": ("customer_email", "email"),
    "policyNumber": ("policy_number",),
    "createdAt": ("created_at",),
    "updatedAt": ("updated_at",),
}
SUMMARY_FIELDS = ("id", "reference", "status", "priority", "createdAt")
LOOKUP_FILTERS = ("reference", "ticketId", "email", "policyNumber")

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class ValidationError(ValueError):
    """Client input that cannot be accepted as-is."""


class NotFoundError(LookupError):
    """A well-formed lookup matched no tickets."""


def normalize_text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_RE.match(email or ""))


def parse_limit(raw: Any, default: int = DEFAULT_LIMIT) -> int:
    """Clamp a user supplied limit to ``[1, MAX_LIMIT]``; junk gives the default."""
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    return max(1, min(MAX_LIMIT, value))


def first_present(row: Mapping[str, Any], aliases: tuple[str, ...]) -> Any:
    for name in aliases:
        value = row.get(name)
        if value is not None:
            return value
    return None


def ticket_summary(row: Mapping[str, Any]) -> dict[str, Any]:
    return {field: first_present(row, FIELD_ALIASES[field]) for field in SUMMARY_FIELDS}


def normalize_ticket(row: Mapping[str, Any]) -> dict[str, Any]:
    return {field: first_present(row, aliases) for field, aliases in FIELD_ALIASES.items()}


@dataclass
class TicketDraft:
    description: str
    title: str = DEFAULT_TITLE
    category: Optional[str] = None
    priority: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    policy_number: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "TicketDraft":
        if not isinstance(payload, Mapping):
            raise ValidationError("Invalid request payload.")

        description = normalize_text(payload.get("description"))
        if not description:
            raise ValidationError("Description is required.")

        customer_email = normalize_text(payload.get("customerEmail")) or None
        if customer_email and not is_valid_email(customer_email):
            raise ValidationError("Customer email is invalid.")

        raw_priority = payload.get("priority")
        priority = raw_priority.strip() if isinstance(raw_priority, str) else raw_priority
        if priority in ("", None):
            priority = None
        elif priority not in PRIORITIES:
            raise ValidationError("Priority must be low, medium, high, or urgent.")

        return cls(
            description=description,
            title=normalize_text(payload.get("title")) or DEFAULT_TITLE,
            category=normalize_text(payload.get("category")) or None,
            priority=priority,
            customer_name=normalize_text(payload.get("customerName")) or None,
            customer_email=customer_email,
            policy_number=normalize_text(payload.get("policyNumber")) or None,
        )

    def insert_variants(self) -> list[Row]:
        """Row shapes to try, most specific first, with blank values dropped."""
        variants = [
            {
                "title": self.title,
                "description": self.description,
                "category": self.category,
                "priority": self.priority,
                "customer_name": self.customer_name,
                "customer_email": self.customer_email,
                "policy_number": self.policy_number,
            },
            {"title": self.title, "description": self.description},
            {"subject": self.title, "description": self.description},
        ]
        return [
            {key: value for key, value in variant.items() if value is not None and value != ""}
            for variant in variants
        ]


def insert_ticket(store: TicketStore, draft: TicketDraft, strict: bool = False) -> Row:
    variants = draft.insert_variants()
    if strict:
        variants = variants[:1]

    last_error: Optional[StoreError] = None
    for index, variant in enumerate(variants):
        try:
            row = store.insert(TICKETS_TABLE, variant)
        except StoreError as exc:
            last_error = exc
            logger.warning(
                "Ticket insert variant %d/%d (%s) rejected: %s",
                index + 1,
                len(variants),
                ", ".join(sorted(variant)),
                exc,
            )
            continue
        if index:
            logger.warning("Ticket stored with fallback variant %d; check the tickets schema", index + 1)
        return row

    raise StoreError(str(last_error) if last_error else "Unable to create ticket.")


def create_ticket(store: TicketStore, payload: Any, strict: bool = False) -> dict[str, Any]:
    draft = TicketDraft.from_payload(payload)
    row = insert_ticket(store, draft, strict=strict)
    summary = ticket_summary(row)
    logger.info("Created ticket %s", summary["reference"])
    return summary


@dataclass
class TicketQuery:
    reference: Optional[str] = None
    ticket_id: Optional[str] = None
    email: Optional[str] = None
    policy_number: Optional[str] = None
    limit: int = DEFAULT_LIMIT

    @classmethod
    def from_args(cls, args: Mapping[str, Any]) -> "TicketQuery":
        query = cls(
            reference=normalize_text(args.get("reference")) or None,
            ticket_id=normalize_text(args.get("ticketId")) or None,
            email=normalize_text(args.get("email")) or None,
            policy_number=normalize_text(args.get("policyNumber")) or None,
            limit=parse_limit(args.get("limit")),
        )
        if not (query.reference or query.ticket_id or query.email or query.policy_number):
            raise ValidationError(
                "Provide at least one filter: reference, ticketId, email, or policyNumber."
            )
        if query.email and not is_valid_email(query.email):
            raise ValidationError("Email is invalid.")
        return query

    def base_filters(self) -> dict[str, str]:
        filters = {}
        if self.ticket_id:
            filters["id"] = self.ticket_id
        if self.email:
            filters["customer_email"] = self.email
        if self.policy_number:
            filters["policy_number"] = self.policy_number
        return filters


def _run_lookup(store: TicketStore, query: TicketQuery, filters: dict[str, str]) -> list[Row]:
    return store.select(
        TICKETS_TABLE,
        filters,
        order_by="created_at",
        descending=True,
        limit=query.limit,
    )


def find_tickets(store: TicketStore, query: TicketQuery) -> list[dict[str, Any]]:
    filters = query.base_filters()

    if not query.reference:
        rows = _run_lookup(store, query, filters)
    else:
        rows = []
        last_error: Optional[StoreError] = None
        any_succeeded = False
        for column in REFERENCE_COLUMNS:
            try:
                rows = _run_lookup(store, query, {**filters, column: query.reference})
            except StoreError as exc:
                logger.debug("Reference lookup on %s failed: %s", column, exc)
                last_error = exc
                continue
            any_succeeded = True
            if rows:
                break
        if not any_succeeded and last_error is not None:
            raise last_error

    if not rows:
        raise NotFoundError("No tickets found.")
    return [normalize_ticket(row) for row in rows]


def lookup_tickets(store: TicketStore, args: Mapping[str, Any]) -> list[dict[str, Any]]:
    return find_tickets(store, TicketQuery.from_args(args))

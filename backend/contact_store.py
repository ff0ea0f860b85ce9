"""
Contact Store.
All reads and writes of contact records go through ContactStore.
Every operation is keyed by the natural key (external_id, customer_id);
customer_id is taken from the key, never from a payload.

Write semantics:
    replace=True  → provider data is the source of truth: name, times, uri and
                    fields are all overwritten by the patch.
    replace=False → partial patch: known top-level keys present in the patch are
                    set, patch["fields"] keys are merged by dotted path.
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from errors import ValidationError
from models import Contact

logger = logging.getLogger(__name__)

# Rows per list page (the UI loads more with the returned cursor)
DEFAULT_PAGE_SIZE = 100

# fields.* entries matched by free-text search, besides id and name
SEARCHABLE_FIELDS = ("industry", "domain", "email")

# Provider keys stored as typed columns. Other top-level keys are dropped.
_COLUMN_FOR_KEY = {
    "name": "name",
    "createdTime": "created_time",
    "updatedTime": "updated_time",
    "uri": "uri",
}


# ============ Helpers ============

def _as_text(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _as_name(value: Any) -> str:
    return "" if value is None else str(value)


def set_dotted(target: dict, path: str, value: Any) -> None:
    """Set target[a][b][c] = value for path 'a.b.c', creating nested dicts as needed."""
    parts = path.split(".")
    node = target
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = value


def merge_fields(existing: Optional[dict], patch: Optional[dict]) -> dict:
    """Return a copy of existing with every patch key applied by dotted path."""
    merged = copy.deepcopy(existing or {})
    for key, value in (patch or {}).items():
        set_dotted(merged, key, value)
    return merged


def comparable_view(doc: dict, external_id: Any, customer_id: Any) -> dict:
    """
    Project a stored record or an incoming payload onto the keys used for change detection.

    Storage id, revision, audit timestamps and updatedTime are left out; the
    natural key comes from the arguments, normalized to strings.
    """
    return {
        "id": str(external_id),
        "customerId": str(customer_id),
        "name": _as_name(doc.get("name")),
        "createdTime": _as_text(doc.get("createdTime")),
        "uri": _as_text(doc.get("uri")),
        "fields": dict(doc.get("fields") or {}),
    }


def parse_offset_cursor(raw: Optional[str]) -> int:
    """Decode a list cursor (a decimal row offset). Absent means the first page."""
    if raw is None or raw == "":
        return 0
    try:
        offset = int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid cursor: {raw!r}")
    if offset < 0:
        raise ValidationError(f"Invalid cursor: {raw!r}")
    return offset


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _natural_key(external_id: Any, customer_id: Any) -> tuple[str, str]:
    if external_id is None or str(external_id) == "":
        raise ValidationError("externalId is required")
    if customer_id is None or str(customer_id) == "":
        raise ValidationError("customerId is required")
    return str(external_id), str(customer_id)


def _apply_patch(contact: Contact, patch: dict, replace: bool) -> None:
    fields = patch.get("fields")
    if fields is not None and not isinstance(fields, dict):
        raise ValidationError("fields must be an object")

    if replace:
        contact.name = _as_name(patch.get("name"))
        contact.created_time = _as_text(patch.get("createdTime"))
        contact.updated_time = _as_text(patch.get("updatedTime"))
        contact.uri = _as_text(patch.get("uri"))
        contact.fields = dict(fields or {})
        return

    for key, column in _COLUMN_FOR_KEY.items():
        if key not in patch:
            continue
        if key == "name":
            if patch[key] is not None:
                contact.name = _as_name(patch[key])
        else:
            setattr(contact, column, _as_text(patch[key]))
    if fields:
        # New dict object so the JSON column is flagged dirty
        contact.fields = merge_fields(contact.fields, fields)


@dataclass
class ContactPage:
    """One page of list results. cursor is the offset of the next page, if any."""
    records: list[dict] = field(default_factory=list)
    cursor: Optional[int] = None

    def to_response(self) -> dict:
        response = {"records": self.records}
        if self.cursor is not None:
            response["cursor"] = str(self.cursor)
        return response


# ============ Store ============

class ContactStore:
    """Contact persistence over one shared Database handle."""

    def __init__(self, database):
        self.database = database

    async def find_one(self, external_id: Any, customer_id: Any) -> Optional[dict]:
        external_id, customer_id = _natural_key(external_id, customer_id)
        async with self.database.session() as session:
            contact = await self._get(session, external_id, customer_id)
            return contact.to_dict() if contact else None

    async def upsert(self, external_id: Any, customer_id: Any, patch: dict, replace: bool = True) -> dict:
        """Insert or update the record at the natural key and return it."""
        external_id, customer_id = _natural_key(external_id, customer_id)
        async with self.database.session() as session:
            try:
                contact = await self._upsert_in_session(session, external_id, customer_id, patch, replace)
                await session.commit()
            except IntegrityError:
                # Lost an insert race on the unique key; the row exists now
                await session.rollback()
                logger.info(
                    f"Concurrent insert for contact {external_id} (customer={customer_id}), retrying as update"
                )
                contact = await self._upsert_in_session(session, external_id, customer_id, patch, replace)
                await session.commit()
            return contact.to_dict()

    async def update(self, external_id: Any, customer_id: Any, patch: dict) -> Optional[dict]:
        """
        Merge a partial patch into an existing record. Returns None if there is
        no record at the natural key; never inserts.
        """
        external_id, customer_id = _natural_key(external_id, customer_id)
        async with self.database.session() as session:
            contact = await self._get(session, external_id, customer_id, for_update=True)
            if contact is None:
                return None
            _apply_patch(contact, patch or {}, replace=False)
            contact.revision = (contact.revision or 0) + 1
            try:
                await session.commit()
            except StaleDataError:
                # Deleted between the read and the write
                await session.rollback()
                logger.info(f"Contact {external_id} (customer={customer_id}) deleted during update")
                return None
            return contact.to_dict()

    async def upsert_many(self, customer_id: Any, records: list[dict], replace: bool = True) -> int:
        """
        Upsert one page of provider records as a single unit of work.

        Each record is keyed by (record["id"], customer_id). Records without an
        id are skipped. Returns the number of records written.
        """
        if customer_id is None or str(customer_id) == "":
            raise ValidationError("customerId is required")
        customer_id = str(customer_id)

        written = 0
        async with self.database.session() as session:
            for record in records:
                external_id = record.get("id")
                if external_id is None or str(external_id) == "":
                    logger.warning(f"Skipping record without id (customer={customer_id})")
                    continue
                await self._upsert_in_session(session, str(external_id), customer_id, record, replace)
                written += 1
            await session.commit()
        return written

    async def delete_one(self, external_id: Any, customer_id: Any) -> Optional[dict]:
        """Delete the record at the natural key. Returns it, or None if there was none."""
        external_id, customer_id = _natural_key(external_id, customer_id)
        async with self.database.session() as session:
            contact = await self._get(session, external_id, customer_id)
            if contact is None:
                return None
            deleted = contact.to_dict()
            await session.delete(contact)
            await session.commit()
            return deleted

    async def list(
        self,
        customer_id: str,
        search: Optional[str] = None,
        cursor: Optional[int] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> ContactPage:
        if not customer_id:
            raise ValidationError("customerId is required")
        offset = cursor or 0

        query = select(Contact).where(Contact.customer_id == str(customer_id))
        if search:
            pattern = f"%{_escape_like(search)}%"
            conditions = [
                Contact.external_id.ilike(pattern, escape="\\"),
                Contact.name.ilike(pattern, escape="\\"),
            ]
            conditions += [
                Contact.fields[key].as_string().ilike(pattern, escape="\\")
                for key in SEARCHABLE_FIELDS
            ]
            query = query.where(or_(*conditions))

        # Probe one extra row to learn whether another page exists
        query = query.order_by(Contact.id).offset(offset).limit(page_size + 1)

        async with self.database.session() as session:
            result = await session.execute(query)
            rows = result.scalars().all()

        has_more = len(rows) > page_size
        return ContactPage(
            records=[contact.to_dict() for contact in rows[:page_size]],
            cursor=offset + page_size if has_more else None,
        )

    async def _get(
        self, session, external_id: str, customer_id: str, for_update: bool = False
    ) -> Optional[Contact]:
        query = select(Contact).where(
            Contact.external_id == external_id,
            Contact.customer_id == customer_id,
        )
        if for_update:
            query = query.with_for_update()
        result = await session.execute(query)
        return result.scalar_one_or_none()

    async def _upsert_in_session(
        self, session, external_id: str, customer_id: str, patch: Optional[dict], replace: bool
    ) -> Contact:
        patch = patch or {}
        contact = await self._get(session, external_id, customer_id)
        if contact is None:
            contact = Contact(external_id=external_id, customer_id=customer_id, name="", fields={}, revision=0)
            session.add(contact)
        _apply_patch(contact, patch, replace)
        contact.revision = (contact.revision or 0) + 1
        # Flush so later lookups in the same session (duplicate ids in a page) see this row
        await session.flush()
        return contact

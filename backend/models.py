"""SQLAlchemy Models for the contact store"""
from datetime import datetime, timezone
from sqlalchemy import Column, String, Integer, DateTime, JSON, Index, UniqueConstraint
from database import Base


def utc_now():
    return datetime.now(timezone.utc)


# Contacts table: one flat collection, natural key (external_id, customer_id)
class Contact(Base):
    __tablename__ = 'contacts'

    # Storage id: assigned on insert, stable for the record's lifetime, gives insertion order
    id = Column(Integer, primary_key=True, autoincrement=True)
    external_id = Column(String(255), nullable=False)
    customer_id = Column(String(255), nullable=False, index=True)
    name = Column(String(500), nullable=False, default='')
    created_time = Column(String(64))
    updated_time = Column(String(64))
    uri = Column(String(2000))
    fields = Column(JSON, nullable=False, default=dict)
    revision = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint('external_id', 'customer_id', name='uq_contacts_external_customer'),
        Index('ix_contacts_customer_name', 'customer_id', 'name'),
    )

    def to_dict(self) -> dict:
        """Wire shape of a contact: the provider's own keys plus storage metadata."""
        return {
            "id": self.external_id,
            "customerId": self.customer_id,
            "name": self.name,
            "createdTime": self.created_time,
            "updatedTime": self.updated_time,
            "uri": self.uri,
            "fields": dict(self.fields or {}),
            "storageId": str(self.id) if self.id is not None else None,
            "revision": self.revision,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }

"""GocardlessConnection model - one authorized requisition and its lifetime."""

from sqlalchemy import JSON, Column, DateTime, Integer, String

from database import Base
from models.utils import generate_uuid, utcnow


class GocardlessConnection(Base):
    """A registered bank connection.

    Created once per successful authorization, keyed by the GoCardless
    requisition id. ``expires_at`` drives the expiration monitor; the
    linked account ids tie the connection back to local accounts.
    """

    __tablename__ = "gocardless_connections"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    requisition_id = Column(String, unique=True, index=True, nullable=False)
    agreement_id = Column(String, nullable=True)
    institution_id = Column(String, nullable=False)
    institution_name = Column(String, nullable=True)
    institution_logo = Column(String, nullable=True)
    status = Column(String, nullable=False, default="active")  # "active" | "disconnected" | "error"
    connected_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)
    access_valid_for_days = Column(Integer, nullable=False, default=90)
    last_sync_at = Column(DateTime, nullable=True)
    last_sync_error = Column(String, nullable=True)
    linked_account_ids = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

from sqlalchemy import Column, Integer, String, JSON
from sqlalchemy.dialects.postgresql import JSONB
from recordexport.database import Base, TimestampMixin


class StoredPreference(Base, TimestampMixin):
    """
    One persisted key-value entry of the preference store.

    Keys follow the `<kind>-<entityType>[-<tenantSlug>]` scheme, e.g.
    `column-order-company-acme`. Values are the JSON state blobs written by
    the selection store; each carries its own `lastUpdated` timestamp.
    """
    __tablename__ = "stored_preference"

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String, nullable=False, unique=True, index=True)
    value = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=False)

# backend/callscribe/models/client_settings.py
from sqlalchemy import Column, Integer, String, DateTime, Text
from sqlalchemy.sql import func

from callscribe.database import Base


class ClientSettings(Base):
    """CRM credentials for one tenant."""
    __tablename__ = "client_settings"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    tenant_id = Column(String(100), unique=True, index=True, nullable=False)

    # Inbound webhooks only carry the location, so it is indexed for tenant routing
    ghl_location_id = Column(String(100), unique=True, index=True, nullable=False)
    ghl_access_token = Column(Text, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

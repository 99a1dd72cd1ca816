"""Schemas for the admin portal's settings endpoints."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class SettingValue(BaseModel):
    """Body of a single-setting update."""

    value: Optional[str] = None


class SettingEntry(BaseModel):
    """One stored setting."""

    key: str
    value: str


class InstanceInfo(BaseModel):
    """Identity of this deployment as reported to the admin portal."""

    model_config = ConfigDict(populate_by_name=True)

    instance_name: str = Field(..., alias="instanceName")
    instance_token: str = Field(..., alias="instanceToken")
    tenant_id: Optional[str] = Field(None, alias="tenantId")
    domain: str
    version: str
    environment: str
    timestamp: datetime

"""
Vipps ePayment webhook payload. Only the fields reconciliation uses are
declared; anything else the gateway sends is ignored.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class VippsWebhookEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    reference: Optional[str] = None
    psp_reference: Optional[str] = Field(default=None, alias="pspReference")
    name: Optional[str] = None

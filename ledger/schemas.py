from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from ledger.models import DeliveryStatus


class PayoutRequest(BaseModel):
    recipient_id: str
    amount: int = Field(gt=0)
    destination: Optional[str] = None     # connected account to transfer to


class RefundRequest(BaseModel):
    amount: int = Field(gt=0)
    provider_ref: str = Field(min_length=1)


class CollectFeesRequest(BaseModel):
    cutoff: Optional[datetime] = None


class DeliveryStatusRequest(BaseModel):
    status: DeliveryStatus


class SellerPayoutRequest(BaseModel):
    destination: Optional[str] = None     # connected account to transfer to

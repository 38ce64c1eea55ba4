from datetime import date
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class CreateRentalRequestDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentID: int
    startDate: date
    endDate: date
    deliveryAddress: str = Field(min_length=1, max_length=1000)
    receiverName: Optional[str] = None
    receiverPhone: Optional[str] = None
    additionalNotes: Optional[str] = None


class ApproveRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    adminNotes: Optional[str] = None


class RejectRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    reason: str
    adminNotes: Optional[str] = None


class CancelRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    reason: Optional[str] = None


class ReissueTokenRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    direction: Literal["pickup", "return"] = "pickup"


class HandoverScanRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    token: str


class NotificationRunRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    returnDueDays: int = Field(default=1, ge=0, le=30)
